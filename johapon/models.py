"""SQLAlchemy models for the Johapon union platform.

Data Architecture Overview:
- Union is the TENANT. Every member, parcel, invite and most ads belong to one union
- User is a member account; UserPropertyUnit records what each member owns and at what ratio
- LandLot is the union's parcel table that spreadsheet addresses are matched against
- Ownership changes made by admins are kept in PropertyOwnershipHistory

Key Concepts:
- PNU: 19-digit parcel number identifying a land lot
- Dong/Ho: building and unit numbers inside a multi-unit property
- Ratios are percentages (0-100). The ratios of one unit's owners should sum to 100

References:
- See johapon/schemas.py for enums and API validation models
- See johapon/share_ratio.py for how co-owner ratios are reallocated
"""

import uuid
from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .schemas import (
    AdType,
    BillingCycle,
    ContractStatus,
    InviteStatus,
    InvoiceStatus,
    OwnershipChangeType,
    OwnershipType,
    RelationshipType,
    UserRole,
    UserStatus,
)


class Union(Base):
    """A redevelopment/reconstruction union (조합). The tenant."""

    __tablename__ = "unions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(
        String(100), unique=True, nullable=False, index=True,
        doc="URL path segment for the union's public pages"
    )
    phone: Mapped[str | None] = mapped_column(String(30))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    users: Mapped[list["User"]] = relationship("User", back_populates="union")
    land_lots: Mapped[list["LandLot"]] = relationship("LandLot", back_populates="union")

    def __repr__(self) -> str:
        return f"<Union {self.slug}>"


class User(Base):
    """A member account within one union.

    Pre-registered users come from the union's member spreadsheet and have no
    login yet. When the owner signs up, the account moves to PENDING_APPROVAL
    and an admin approves it, possibly after resolving an ownership conflict.

    The property_* columns mirror the primary property for list views; the
    authoritative ownership data lives in user_property_units.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    union_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("unions.id"), index=True,
        doc="Null only for SYSTEM_ADMIN accounts"
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    phone_number: Mapped[str | None] = mapped_column(String(30))
    email: Mapped[str | None] = mapped_column(String(255))
    birth_date: Mapped[date | None] = mapped_column(Date)
    role: Mapped[UserRole] = mapped_column(SQLEnum(UserRole), default=UserRole.USER)
    user_status: Mapped[UserStatus] = mapped_column(
        SQLEnum(UserStatus), default=UserStatus.PENDING_APPROVAL, index=True
    )

    # Where the member lives (may differ from the property they own)
    resident_address: Mapped[str | None] = mapped_column(Text)
    resident_address_detail: Mapped[str | None] = mapped_column(Text)
    resident_address_jibun: Mapped[str | None] = mapped_column(
        Text,
        doc="Jibun form of the resident address. Used with name to find duplicate accounts"
    )

    # Primary property, denormalized for lists
    property_pnu: Mapped[str | None] = mapped_column(String(19), index=True)
    property_address_jibun: Mapped[str | None] = mapped_column(Text)
    property_address_road: Mapped[str | None] = mapped_column(Text)
    property_dong: Mapped[str | None] = mapped_column(String(20))
    property_ho: Mapped[str | None] = mapped_column(String(20))

    notes: Mapped[str | None] = mapped_column(Text)

    approved_at: Mapped[datetime | None] = mapped_column(DateTime)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime)
    rejected_reason: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    union: Mapped["Union | None"] = relationship("Union", back_populates="users")
    property_units: Mapped[list["UserPropertyUnit"]] = relationship(
        "UserPropertyUnit", back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User {self.name} ({self.user_status.value if self.user_status else None})>"


class UserPropertyUnit(Base):
    """One property (land lot, optionally a dong/ho inside it) held by a user.

    building_unit_id identifies the exact unit when the building registry is
    available; otherwise ownership is compared by pnu.
    """

    __tablename__ = "user_property_units"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    pnu: Mapped[str | None] = mapped_column(String(19), index=True)
    building_unit_id: Mapped[str | None] = mapped_column(
        String(50), index=True,
        doc="Building registry unit id; more precise than pnu for apartments"
    )
    dong: Mapped[str | None] = mapped_column(String(20))
    ho: Mapped[str | None] = mapped_column(String(20))
    ownership_type: Mapped[OwnershipType] = mapped_column(
        SQLEnum(OwnershipType), default=OwnershipType.OWNER
    )
    land_ownership_ratio: Mapped[float | None] = mapped_column(
        Float,
        doc="Percent of the land share held (0-100)"
    )
    building_ownership_ratio: Mapped[float | None] = mapped_column(
        Float,
        doc="Percent of the building share held (0-100)"
    )
    property_address_jibun: Mapped[str | None] = mapped_column(Text)
    property_address_road: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    user: Mapped["User"] = relationship("User", back_populates="property_units")

    def __repr__(self) -> str:
        return f"<UserPropertyUnit {self.pnu} {self.dong}/{self.ho} user={self.user_id}>"


class LandLot(Base):
    """A parcel inside the union's redevelopment zone."""

    __tablename__ = "land_lots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    union_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("unions.id"), nullable=False, index=True
    )
    pnu: Mapped[str] = mapped_column(String(19), nullable=False, index=True)
    address_text: Mapped[str | None] = mapped_column(
        Text,
        doc="Jibun address, e.g. '서울특별시 강북구 미아동 791-1234'"
    )
    road_address: Mapped[str | None] = mapped_column(
        Text,
        doc="Road-name address, e.g. '서울특별시 강북구 삼양로 123'"
    )
    area: Mapped[float | None] = mapped_column(Float, doc="Lot area in square meters")

    union: Mapped["Union"] = relationship("Union", back_populates="land_lots")

    __table_args__ = (
        Index("ix_land_lots_union_pnu", "union_id", "pnu"),
    )

    def __repr__(self) -> str:
        return f"<LandLot {self.pnu}>"


class PropertyOwnershipHistory(Base):
    """Audit trail of ownership changes made while resolving conflicts."""

    __tablename__ = "property_ownership_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    property_unit_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("user_property_units.id", ondelete="SET NULL"), index=True
    )
    change_type: Mapped[OwnershipChangeType] = mapped_column(SQLEnum(OwnershipChangeType))
    from_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    to_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    previous_ratio: Mapped[float | None] = mapped_column(Float)
    new_ratio: Mapped[float | None] = mapped_column(Float)
    changed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<PropertyOwnershipHistory {self.change_type.value} unit={self.property_unit_id}>"


class UserRelationship(Base):
    """A FAMILY or PROXY user acting for an owner."""

    __tablename__ = "user_relationships"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
        doc="The representative"
    )
    related_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
        doc="The owner being represented"
    )
    relationship_type: Mapped[RelationshipType] = mapped_column(SQLEnum(RelationshipType))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class MemberInvite(Base):
    """Invite link sent to a member listed in the union's roster."""

    __tablename__ = "member_invites"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    union_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("unions.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(30), nullable=False)
    property_address: Mapped[str] = mapped_column(Text, nullable=False)
    invite_token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    status: Mapped[InviteStatus] = mapped_column(
        SQLEnum(InviteStatus), default=InviteStatus.PENDING
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime)
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"),
        doc="Account created through this invite"
    )
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<MemberInvite {self.name} {self.status.value if self.status else None}>"


class MemberAccessLog(Base):
    """Admin action audit log for member approval workflows."""

    __tablename__ = "member_access_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    union_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, index=True)
    admin_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    target_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    succeeded: Mapped[bool] = mapped_column(Boolean, default=True)
    details: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Ad(Base):
    """A partner advertisement.

    MAIN/SUB ads are banners (image_url, link_url); BOARD ads are text posts
    (title, content). schemas.AdCreate enforces the per-type shape.
    """

    __tablename__ = "ads"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    union_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("unions.id"), index=True,
        doc="Null means the ad is shown in every union"
    )
    ad_type: Mapped[AdType] = mapped_column(SQLEnum(AdType), nullable=False, index=True)
    partner_name: Mapped[str] = mapped_column(String(100), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(30))
    title: Mapped[str | None] = mapped_column(String(200))
    content: Mapped[str | None] = mapped_column(Text)
    image_url: Mapped[str | None] = mapped_column(Text)
    link_url: Mapped[str | None] = mapped_column(Text)
    contract_file_url: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    contracts: Mapped[list["AdContract"]] = relationship(
        "AdContract", back_populates="ad", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Ad {self.ad_type.value if self.ad_type else None} {self.partner_name}>"


class AdContract(Base):
    """Paid placement period for an ad."""

    __tablename__ = "ad_contracts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ad_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ads.id", ondelete="CASCADE"), nullable=False, index=True
    )
    union_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, index=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    billing_cycle: Mapped[BillingCycle] = mapped_column(
        SQLEnum(BillingCycle), default=BillingCycle.MONTHLY
    )
    amount: Mapped[int] = mapped_column(
        Integer, nullable=False,
        doc="KRW per billing cycle"
    )
    status: Mapped[ContractStatus] = mapped_column(
        SQLEnum(ContractStatus), default=ContractStatus.PENDING, index=True
    )
    auto_invoice: Mapped[bool] = mapped_column(Boolean, default=True)
    memo: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    ad: Mapped["Ad"] = relationship("Ad", back_populates="contracts")
    invoices: Mapped[list["AdInvoice"]] = relationship(
        "AdInvoice", back_populates="contract", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<AdContract {self.ad_id} {self.start_date}~{self.end_date}>"


class AdInvoice(Base):
    """One month's bill for a contract."""

    __tablename__ = "ad_invoices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    contract_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ad_contracts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(
        SQLEnum(InvoiceStatus), default=InvoiceStatus.DUE, index=True
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    contract: Mapped["AdContract"] = relationship("AdContract", back_populates="invoices")

    __table_args__ = (
        Index("ix_ad_invoices_contract_period", "contract_id", "period_start"),
    )


class AlimtalkLog(Base):
    """One notification send, summarised across all recipients."""

    __tablename__ = "alimtalk_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    union_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, index=True)
    sender_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    template_code: Mapped[str] = mapped_column(String(50), nullable=False)
    template_name: Mapped[str | None] = mapped_column(String(100))
    recipient_count: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    fail_count: Mapped[int] = mapped_column(Integer, default=0)
    kakao_success_count: Mapped[int] = mapped_column(Integer, default=0)
    sms_success_count: Mapped[int] = mapped_column(Integer, default=0)
    estimated_cost: Mapped[int] = mapped_column(Integer, default=0)
    sent_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
