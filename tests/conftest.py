"""
Pytest fixtures shared by the service and API tests.

Provides:
- An in-memory SQLite database, rebuilt for every test
- A FastAPI TestClient wired to that database and to a dry-run AlimTalk client
- Small factories for unions, land lots and members
"""

import os

# Must be set before johapon.database creates its engine
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ALIMTALK_PROXY_URL"] = ""
os.environ.pop("LOGFIRE_TOKEN", None)

import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from johapon import models  # noqa: F401  registers tables
from johapon.database import Base, get_db
from johapon.main import app, get_alimtalk_client
from johapon.models import LandLot, Union, User, UserPropertyUnit
from johapon.notifications import AlimtalkClient
from johapon.schemas import OwnershipType, UserRole, UserStatus
from johapon.stores import AdAdminStore, MemberInviteStore


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    """Session bound to the per-test database."""
    TestingSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = TestingSession()
    yield session
    session.close()


@pytest.fixture
def alimtalk_client():
    """Client with no proxy URL: sends are logged and reported delivered."""
    return AlimtalkClient(base_url="", sender_key="test-key")


@pytest.fixture
def client(db, alimtalk_client):
    """TestClient using the test session and fresh caches."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_alimtalk_client] = lambda: alimtalk_client
    app.state.invite_store = MemberInviteStore()
    app.state.ad_store = AdAdminStore()
    yield TestClient(app)
    app.dependency_overrides.clear()


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def admin_id():
    return uuid.uuid4()


@pytest.fixture
def union(db):
    union = Union(name="미아2구역 재개발조합", slug="mia2")
    db.add(union)
    db.commit()
    return union


@pytest.fixture
def other_union(db):
    union = Union(name="장위10구역 재개발조합", slug="jangwi10")
    db.add(union)
    db.commit()
    return union


@pytest.fixture
def land_lots(db, union):
    lots = [
        LandLot(
            union_id=union.id,
            pnu="1130510100107910001",
            address_text="서울특별시 강북구 미아동 791-1",
            road_address="서울특별시 강북구 삼양로 101",
            area=120.5,
        ),
        LandLot(
            union_id=union.id,
            pnu="1130510100107911234",
            address_text="서울특별시 강북구 미아동 791-1234",
            road_address="서울특별시 강북구 삼양로 123",
            area=88.0,
        ),
        LandLot(
            union_id=union.id,
            pnu="1130510100108020005",
            address_text="서울특별시 강북구 미아동 802-5",
            road_address=None,
            area=64.2,
        ),
    ]
    db.add_all(lots)
    db.commit()
    return lots


@pytest.fixture
def make_member(db, union):
    """Create a member holding one property unit."""
    def _make(
        name: str,
        status: UserStatus = UserStatus.APPROVED,
        pnu: str | None = "1130510100107911234",
        dong: str | None = None,
        ho: str | None = None,
        ratio: float | None = 100.0,
        ownership_type: OwnershipType = OwnershipType.OWNER,
        phone_number: str | None = None,
        building_unit_id: str | None = None,
        union_id: uuid.UUID | None = None,
        **fields,
    ) -> User:
        user = User(
            union_id=union_id or union.id,
            name=name,
            phone_number=phone_number or f"010-{uuid.uuid4().int % 10000:04d}-0000",
            role=UserRole.USER,
            user_status=status,
            property_pnu=pnu,
            property_dong=dong,
            property_ho=ho,
            **fields,
        )
        user.property_units.append(UserPropertyUnit(
            pnu=pnu,
            dong=dong,
            ho=ho,
            building_unit_id=building_unit_id,
            ownership_type=ownership_type,
            land_ownership_ratio=ratio,
            building_ownership_ratio=ratio,
        ))
        db.add(user)
        db.commit()
        return user

    return _make
