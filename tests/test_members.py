"""
Tests for member approval and ownership conflict resolution.
"""

import uuid

import pytest
from pydantic import ValidationError
from sqlalchemy import select

from johapon.errors import InvalidState, NotFound, ValidationFailed
from johapon.members import (
    approve_member,
    cancel_rejection,
    check_conflicts,
    list_members,
    merge_notes,
    reject_member,
    resolve_conflict,
)
from johapon.models import (
    AlimtalkLog,
    MemberAccessLog,
    MemberInvite,
    PropertyOwnershipHistory,
    UserPropertyUnit,
    UserRelationship,
)
from johapon.schemas import (
    ConflictAction,
    ConflictResolutionRequest,
    CoOwnerAdjustment,
    InviteStatus,
    OwnershipChangeType,
    OwnershipType,
    RelationshipType,
    UserStatus,
)

LOT = "1130510100107911234"
OTHER_LOT = "1130510100108020005"


def access_logs(db):
    return db.execute(select(MemberAccessLog)).scalars().all()


def history(db):
    return db.execute(select(PropertyOwnershipHistory)).scalars().all()


@pytest.fixture
def owner(make_member):
    return make_member("김철수", status=UserStatus.APPROVED, ratio=100.0, phone_number="010-1111-2222")


@pytest.fixture
def pending(make_member):
    return make_member("박민수", status=UserStatus.PENDING_APPROVAL, ratio=None, phone_number="010-3333-4444")


def conflict_request(db, action, pending, owner, **fields):
    conflict = next(c for c in check_conflicts(db, pending.id).conflicts if c.existing_user_id == owner.id)
    return ConflictResolutionRequest(
        action=action,
        pending_user_id=pending.id,
        existing_user_id=owner.id,
        pending_unit_id=conflict.pending_unit_id,
        existing_unit_id=conflict.existing_unit_id,
        **fields,
    )


class TestApproval:
    """Approve, reject and cancel-rejection transitions."""

    def test_approve(self, db, admin_id, pending):
        user = approve_member(db, pending.id, admin_id)

        assert user.user_status == UserStatus.APPROVED
        assert user.approved_at is not None
        [log] = access_logs(db)
        assert (log.action, log.succeeded, log.admin_id) == ("APPROVE", True, admin_id)
        assert log.union_id == pending.union_id

    def test_approve_wrong_status_logs_failure(self, db, admin_id, owner):
        with pytest.raises(InvalidState, match="pending approval"):
            approve_member(db, owner.id, admin_id)

        [log] = access_logs(db)
        assert log.action == "APPROVE"
        assert not log.succeeded
        assert "APPROVED" in log.details["reason"]

    def test_approve_unknown_user(self, db):
        with pytest.raises(NotFound):
            approve_member(db, uuid.uuid4())

    def test_reject_then_cancel(self, db, pending):
        user = reject_member(db, pending.id, "Ownership documents missing")

        assert user.user_status == UserStatus.REJECTED
        assert user.rejected_reason == "Ownership documents missing"
        assert user.rejected_at is not None

        user = cancel_rejection(db, pending.id)

        assert user.user_status == UserStatus.PENDING_APPROVAL
        assert user.rejected_reason is None
        assert user.rejected_at is None
        assert {log.action for log in access_logs(db)} == {"REJECT", "CANCEL_REJECTION"}

    def test_cancel_requires_rejected(self, db, pending):
        with pytest.raises(InvalidState):
            cancel_rejection(db, pending.id)

        assert pending.user_status == UserStatus.PENDING_APPROVAL

    def test_list_members_by_status(self, db, union, owner, pending):
        assert {u.id for u in list_members(db, union.id)} == {owner.id, pending.id}
        assert [u.id for u in list_members(db, union.id, UserStatus.PENDING_APPROVAL)] == [pending.id]


class TestConflictCheck:
    """Finding owners of the property a pending member claims."""

    def test_conflict_on_same_pnu(self, db, owner, pending):
        result = check_conflicts(db, pending.id)

        assert result.has_conflict
        [conflict] = result.conflicts
        assert conflict.existing_user_id == owner.id
        assert conflict.existing_user_name == "김철수"
        assert conflict.ratio == 100.0
        assert conflict.pending_unit_id == pending.property_units[0].id

    def test_conflict_display_fields(self, db, make_member):
        owner = make_member("김철수", dong="101", ho="1001")
        unit = owner.property_units[0]
        unit.property_address_jibun = "미아동 791-1234"
        unit.property_address_road = "삼양로 123"
        db.commit()
        pending = make_member("박민수", status=UserStatus.PENDING_APPROVAL, dong="101", ho="1001")

        [conflict] = check_conflicts(db, pending.id).conflicts

        assert conflict.unit_display == "101동 1001호"
        assert conflict.address_display == "미아동 791-1234 (삼양로 123)"

    def test_rejected_holders_ignored(self, db, make_member, pending):
        make_member("이영희", status=UserStatus.REJECTED)

        assert not check_conflicts(db, pending.id).has_conflict

    def test_different_unit_no_conflict(self, db, make_member):
        make_member("김철수", dong="101", ho="1001")
        pending = make_member("박민수", status=UserStatus.PENDING_APPROVAL, dong="101", ho="1002")

        assert not check_conflicts(db, pending.id).has_conflict

    def test_building_unit_id_takes_precedence(self, db, make_member):
        make_member("김철수", pnu=OTHER_LOT, building_unit_id="11305-100123")
        pending = make_member(
            "박민수", status=UserStatus.PENDING_APPROVAL, pnu=LOT, building_unit_id="11305-100123",
        )

        assert check_conflicts(db, pending.id).has_conflict

    def test_pre_registered_counts_as_owner(self, db, make_member, pending):
        make_member("김철수", status=UserStatus.PRE_REGISTERED)

        assert check_conflicts(db, pending.id).has_conflict


class TestResolveUpdate:
    """Same person signed up twice."""

    def test_merges_into_existing(self, db, union, owner, pending):
        owner.notes = "Prefers phone contact"
        pending.notes = "Lives abroad"
        pending.resident_address = "서울특별시 노원구 상계로 1"
        pending.property_units.append(UserPropertyUnit(pnu=OTHER_LOT, land_ownership_ratio=100.0))
        invite = MemberInvite(
            union_id=union.id, name="박민수", phone_number="01033334444", property_address="미아동 791-1234",
            invite_token="tok-update", status=InviteStatus.USED, expires_at=pending.created_at, user_id=pending.id,
        )
        db.add(invite)
        db.commit()

        result = resolve_conflict(db, conflict_request(db, ConflictAction.UPDATE, pending, owner))

        assert result.merged_into_user_id == owner.id
        db.refresh(owner)
        db.refresh(pending)
        db.refresh(invite)
        assert owner.phone_number == "010-3333-4444"
        assert owner.resident_address == "서울특별시 노원구 상계로 1"
        assert owner.notes == "Prefers phone contact\n---\nLives abroad"
        assert {u.pnu for u in owner.property_units} == {LOT, OTHER_LOT}
        assert pending.user_status == UserStatus.REJECTED
        assert pending.rejected_reason == "Merged into existing member account"
        assert pending.property_units == []
        assert invite.user_id == owner.id
        [log] = access_logs(db)
        assert log.action == "RESOLVE_CONFLICT"

    def test_merge_notes(self):
        assert merge_notes(None, "a") == "a"
        assert merge_notes("a", None) == "a"
        assert merge_notes("a\n---\nb", "b") == "a\n---\nb"


class TestResolveTransfer:
    """Property sold to the pending member."""

    def test_transfer(self, db, owner, pending):
        result = resolve_conflict(db, conflict_request(db, ConflictAction.TRANSFER, pending, owner))

        assert result.approved_user_id == pending.id
        assert result.transferred_user_ids == [owner.id]
        db.refresh(owner)
        db.refresh(pending)
        assert owner.user_status == UserStatus.TRANSFERRED
        assert owner.property_units[0].land_ownership_ratio == 0.0
        assert pending.user_status == UserStatus.APPROVED
        unit = pending.property_units[0]
        assert (unit.ownership_type, unit.land_ownership_ratio, unit.building_ownership_ratio) == (
            OwnershipType.OWNER, 100.0, 100.0,
        )
        [row] = history(db)
        assert row.change_type == OwnershipChangeType.TRANSFER
        assert (row.from_user_id, row.to_user_id) == (owner.id, pending.id)
        assert (row.previous_ratio, row.new_ratio) == (100.0, 100.0)

    def test_owner_with_other_property_stays_approved(self, db, owner, pending):
        owner.property_units.append(UserPropertyUnit(pnu=OTHER_LOT, land_ownership_ratio=100.0))
        db.commit()

        result = resolve_conflict(db, conflict_request(db, ConflictAction.TRANSFER, pending, owner))

        assert result.transferred_user_ids == []
        db.refresh(owner)
        assert owner.user_status == UserStatus.APPROVED


class TestResolveCoOwner:
    """Both members own the property."""

    @pytest.fixture
    def co_owned(self, db, make_member, owner):
        owner.property_units[0].land_ownership_ratio = 70.0
        owner.property_units[0].building_ownership_ratio = 70.0
        db.commit()
        return make_member("이영희", ratio=30.0, ownership_type=OwnershipType.CO_OWNER)

    def test_add_co_owner(self, db, admin_id, owner, pending, co_owned):
        request = conflict_request(
            db, ConflictAction.ADD_CO_OWNER, pending, owner,
            existing_ratio=56, new_ratio=20,
            adjustments=[CoOwnerAdjustment(owner_id=co_owned.id, previous_ratio=30, new_ratio=24)],
            admin_id=admin_id,
        )

        result = resolve_conflict(db, request)

        assert result.approved_user_id == pending.id
        for user in (owner, pending, co_owned):
            db.refresh(user)
        assert owner.property_units[0].ownership_type == OwnershipType.CO_OWNER
        assert owner.property_units[0].land_ownership_ratio == 56
        assert co_owned.property_units[0].land_ownership_ratio == 24
        assert pending.property_units[0].ownership_type == OwnershipType.CO_OWNER
        assert pending.property_units[0].land_ownership_ratio == 20
        assert pending.user_status == UserStatus.APPROVED

        rows = history(db)
        assert sorted(r.change_type.value for r in rows) == ["CO_OWNER_ADDED", "RATIO_CHANGED", "RATIO_CHANGED"]
        assert all(r.changed_by == admin_id for r in rows)

    def test_total_must_be_100(self, db, owner, pending, co_owned):
        request = conflict_request(
            db, ConflictAction.ADD_CO_OWNER, pending, owner, existing_ratio=60, new_ratio=20,
        )

        with pytest.raises(ValidationFailed, match="exceeds 100%"):
            resolve_conflict(db, request)

        db.refresh(owner)
        db.refresh(pending)
        assert owner.property_units[0].land_ownership_ratio == 70
        assert pending.user_status == UserStatus.PENDING_APPROVAL
        assert history(db) == []

    def test_ratios_required(self, db, owner, pending):
        with pytest.raises(ValidationError):
            conflict_request(db, ConflictAction.ADD_CO_OWNER, pending, owner, new_ratio=20)


class TestResolveProxy:
    """Pending member represents the owner."""

    def test_add_family_proxy(self, db, owner, pending, alimtalk_client):
        request = conflict_request(
            db, ConflictAction.ADD_PROXY, pending, owner, relationship_type=RelationshipType.FAMILY,
        )

        result = resolve_conflict(db, request, client=alimtalk_client)

        assert result.approved_user_id == pending.id
        db.refresh(pending)
        unit = pending.property_units[0]
        assert unit.ownership_type == OwnershipType.FAMILY
        assert unit.land_ownership_ratio == 0.0
        assert pending.user_status == UserStatus.APPROVED

        [relationship] = db.execute(select(UserRelationship)).scalars().all()
        assert (relationship.user_id, relationship.related_user_id) == (pending.id, owner.id)
        assert relationship.relationship_type == RelationshipType.FAMILY

        [log] = db.execute(select(AlimtalkLog)).scalars().all()
        assert log.template_code == "PROXY_REGISTERED"
        assert log.success_count == 1

    def test_relationship_type_required(self, db, owner, pending):
        with pytest.raises(ValidationError):
            conflict_request(db, ConflictAction.ADD_PROXY, pending, owner)


class TestResolveGuards:
    """Requests that can't be applied."""

    def test_pending_user_must_be_pending(self, db, owner, pending):
        request = conflict_request(db, ConflictAction.TRANSFER, pending, owner)
        approve_member(db, pending.id)

        with pytest.raises(InvalidState):
            resolve_conflict(db, request)

    def test_units_must_belong_to_users(self, db, owner, pending):
        request = conflict_request(db, ConflictAction.TRANSFER, pending, owner)
        request.existing_unit_id = request.pending_unit_id

        with pytest.raises(NotFound):
            resolve_conflict(db, request)
