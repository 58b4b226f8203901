"""Pydantic validation schemas for the Johapon union platform.

Schema Engineering Philosophy:
- Enums are the canonical value sets stored in the database and sent over the API
- Field descriptions document the business rule each field carries
- Validators enforce those rules at the API boundary so services receive clean input

References:
- models.py for the persisted shape of each entity
- matching.py and share_ratio.py keep their own models next to the logic they drive
"""

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


# =============================================================================
# ENUMS: Canonical value sets with descriptions
# =============================================================================


class UserRole(str, Enum):
    """Role of a user within the platform."""

    SYSTEM_ADMIN = "SYSTEM_ADMIN"
    """Operator of the whole platform. Manages unions and ads."""

    ADMIN = "ADMIN"
    """Union office staff. Approves members and sends notifications."""

    USER = "USER"
    """Regular union member."""


class UserStatus(str, Enum):
    """Lifecycle of a member account.

    PRE_REGISTERED -> (signs up) -> PENDING_APPROVAL -> APPROVED
                                                     -> REJECTED -> PENDING_APPROVAL
    APPROVED -> TRANSFERRED once every owned unit has been handed over.
    """

    PRE_REGISTERED = "PRE_REGISTERED"
    """Imported from the union's member spreadsheet, not yet signed up."""

    PENDING_APPROVAL = "PENDING_APPROVAL"
    """Signed up and waiting for an admin decision."""

    APPROVED = "APPROVED"
    """Confirmed member."""

    REJECTED = "REJECTED"
    """Rejected by an admin, or merged into another account."""

    BLOCKED = "BLOCKED"
    """Access revoked."""

    TRANSFERRED = "TRANSFERRED"
    """Former owner who transferred all property to someone else."""


class OwnershipType(str, Enum):
    """How a user relates to a property unit."""

    OWNER = "OWNER"
    """Sole owner. Holds 100% unless co-owners are added."""

    CO_OWNER = "CO_OWNER"
    """One of several owners sharing the unit by ratio."""

    FAMILY = "FAMILY"
    """Family member acting for the owner. Holds 0%."""

    PROXY = "PROXY"
    """Legal proxy acting for the owner. Holds 0%."""


class OwnershipChangeType(str, Enum):
    """Kinds of rows written to property_ownership_history."""

    TRANSFER = "TRANSFER"
    RATIO_CHANGED = "RATIO_CHANGED"
    CO_OWNER_ADDED = "CO_OWNER_ADDED"


class RelationshipType(str, Enum):
    """Link between a representative and the owner they act for."""

    FAMILY = "FAMILY"
    PROXY = "PROXY"


class ConflictAction(str, Enum):
    """Ways an admin can resolve a pending user claiming an owned unit."""

    UPDATE = "update"
    """Same person signed up twice. Merge into the existing account."""

    TRANSFER = "transfer"
    """Ownership moved. Existing owner drops to 0%, new owner takes 100%."""

    ADD_CO_OWNER = "add_co_owner"
    """Both own the unit. Ratios come from the share-ratio calculator."""

    ADD_PROXY = "add_proxy"
    """New user represents the existing owner. Holds 0%."""


class InviteStatus(str, Enum):
    """Status of a member invite link."""

    PENDING = "PENDING"
    USED = "USED"
    EXPIRED = "EXPIRED"


class AccessAction(str, Enum):
    """Admin actions recorded in member_access_logs."""

    APPROVE = "APPROVE"
    REJECT = "REJECT"
    CANCEL_REJECTION = "CANCEL_REJECTION"
    RESOLVE_CONFLICT = "RESOLVE_CONFLICT"


class AdType(str, Enum):
    """Advertisement slot.

    The slot decides which fields an ad carries, see BannerAdCreate and BoardAdCreate.
    """

    MAIN = "MAIN"
    """Large banner on the union landing page."""

    SUB = "SUB"
    """Small banner in the side column."""

    BOARD = "BOARD"
    """Text post shown in the partner board."""


class BillingCycle(str, Enum):
    """How often a contract is invoiced."""

    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"
    """Contract amount is for a year; monthly invoices carry a twelfth."""


class ContractStatus(str, Enum):
    """Lifecycle of an advertisement contract."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class InvoiceStatus(str, Enum):
    """Payment state of a monthly invoice."""

    DUE = "DUE"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


# =============================================================================
# Members
# =============================================================================


class PropertyUnitOut(BaseModel):
    """A property unit held by a user."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    pnu: str | None = None
    building_unit_id: str | None = None
    dong: str | None = None
    ho: str | None = None
    ownership_type: OwnershipType
    land_ownership_ratio: float | None = None
    building_ownership_ratio: float | None = None
    property_address_jibun: str | None = None
    property_address_road: str | None = None


class UserOut(BaseModel):
    """Member as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    union_id: UUID | None
    name: str
    phone_number: str | None = None
    email: str | None = None
    role: UserRole
    user_status: UserStatus
    resident_address: str | None = None
    property_pnu: str | None = None
    property_address_jibun: str | None = None
    property_dong: str | None = None
    property_ho: str | None = None
    notes: str | None = None
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    rejected_reason: str | None = None
    created_at: datetime | None = None


class ApproveRequest(BaseModel):
    """Approve a pending member."""

    user_id: UUID
    admin_id: UUID | None = Field(default=None, description="Admin performing the action, for the access log")


class RejectRequest(BaseModel):
    """Reject a pending member."""

    user_id: UUID
    reason: str = Field(min_length=1, description="Shown to the member")
    admin_id: UUID | None = None


class CancelRejectionRequest(BaseModel):
    """Move a rejected member back to PENDING_APPROVAL."""

    user_id: UUID
    admin_id: UUID | None = None


class OwnerConflict(BaseModel):
    """An existing owner already holding a unit the pending user claims."""

    pending_unit_id: UUID = Field(description="Pending user's property unit")
    existing_unit_id: UUID = Field(description="Existing owner's property unit")
    existing_user_id: UUID
    existing_user_name: str
    existing_user_status: UserStatus
    ownership_type: OwnershipType
    ratio: float | None = Field(default=None, description="Existing owner's land ownership ratio")
    pnu: str | None = None
    building_unit_id: str | None = None
    dong: str | None = None
    ho: str | None = None
    address_display: str = Field(default="", description="'jibun (road)' of the existing owner's unit")
    unit_display: str = Field(default="", description="'101동 1001호', empty when the unit has no dong/ho")


class ConflictCheckResult(BaseModel):
    """Conflicts found for one pending user."""

    user_id: UUID
    has_conflict: bool
    conflicts: list[OwnerConflict] = Field(default_factory=list)


class CoOwnerAdjustment(BaseModel):
    """New ratio for a co-owner other than the existing and new owner."""

    owner_id: UUID = Field(description="User id of the co-owner")
    previous_ratio: float = Field(ge=0, le=100)
    new_ratio: float = Field(ge=0, le=100)


class ConflictResolutionRequest(BaseModel):
    """Admin decision for one conflict.

    add_co_owner requires existing_ratio and new_ratio as produced by the
    share-ratio calculator; add_proxy requires relationship_type.
    """

    action: ConflictAction
    pending_user_id: UUID
    existing_user_id: UUID
    pending_unit_id: UUID
    existing_unit_id: UUID
    existing_ratio: float | None = Field(default=None, ge=0, le=100)
    new_ratio: float | None = Field(default=None, ge=0, le=100)
    adjustments: list[CoOwnerAdjustment] = Field(default_factory=list)
    relationship_type: RelationshipType | None = None
    admin_id: UUID | None = None

    @model_validator(mode="after")
    def check_action_fields(self):
        """Require the fields each action needs."""
        if self.action == ConflictAction.ADD_CO_OWNER:
            if self.existing_ratio is None or self.new_ratio is None:
                raise ValueError("add_co_owner requires existing_ratio and new_ratio")
        if self.action == ConflictAction.ADD_PROXY and self.relationship_type is None:
            raise ValueError("add_proxy requires relationship_type")
        return self


class ConflictResolutionResult(BaseModel):
    """Outcome of a conflict resolution."""

    action: ConflictAction
    approved_user_id: UUID | None = None
    merged_into_user_id: UUID | None = None
    transferred_user_ids: list[UUID] = Field(default_factory=list)
    message: str


# =============================================================================
# Member invites
# =============================================================================


class InviteMemberRow(BaseModel):
    """One row of the invite spreadsheet. (name, phone, address) is the sync key."""

    name: str = Field(min_length=1)
    phone_number: str = Field(min_length=1)
    property_address: str = Field(min_length=1)

    @field_validator("name", "phone_number", "property_address", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v


class InviteSyncRequest(BaseModel):
    """Replace a union's invite list with the uploaded spreadsheet."""

    union_id: UUID
    created_by: UUID | None = None
    expires_hours: int = Field(default=24, gt=0, description="Invite lifetime from creation")
    members: list[InviteMemberRow]


class InviteSyncResult(BaseModel):
    """Counts from an invite sync."""

    inserted: int = 0
    deleted_pending: int = 0
    deleted_used: int = 0
    deleted_user_ids: list[UUID] = Field(default_factory=list)


class InviteAcceptRequest(BaseModel):
    """Mark an invite used by the user who signed up with it."""

    invite_token: str = Field(min_length=1)
    user_id: UUID


class MemberInviteOut(BaseModel):
    """Invite as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    union_id: UUID
    name: str
    phone_number: str
    property_address: str
    invite_token: str
    status: InviteStatus
    expires_at: datetime
    used_at: datetime | None = None
    user_id: UUID | None = None
    created_at: datetime | None = None


# =============================================================================
# Advertisements
# =============================================================================


class AdFields(BaseModel):
    """Fields every ad carries regardless of slot."""

    union_id: UUID | None = Field(default=None, description="None shows the ad in every union")
    partner_name: str = Field(min_length=1, description="Advertiser business name")
    phone: str | None = None
    contract_file_url: str | None = Field(default=None, description="Public URL of the signed contract")
    is_active: bool = True


class BannerAdCreate(AdFields):
    """MAIN or SUB banner. Rendered as an image linking out."""

    ad_type: Literal["MAIN", "SUB"]
    image_url: str = Field(min_length=1)
    link_url: str | None = None
    title: str | None = None


class BoardAdCreate(AdFields):
    """BOARD post. Rendered as a titled text entry."""

    ad_type: Literal["BOARD"]
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)


AdCreate = Annotated[BannerAdCreate | BoardAdCreate, Field(discriminator="ad_type")]
ad_create_adapter = TypeAdapter(AdCreate)


class AdUpdate(BaseModel):
    """Partial update. The merged ad is re-validated against its slot's shape."""

    ad_type: AdType | None = None
    union_id: UUID | None = None
    partner_name: str | None = None
    phone: str | None = None
    contract_file_url: str | None = None
    is_active: bool | None = None
    image_url: str | None = None
    link_url: str | None = None
    title: str | None = None
    content: str | None = None


class AdOut(BaseModel):
    """Ad as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    union_id: UUID | None = None
    ad_type: AdType
    partner_name: str
    phone: str | None = None
    title: str | None = None
    content: str | None = None
    image_url: str | None = None
    link_url: str | None = None
    contract_file_url: str | None = None
    is_active: bool
    created_at: datetime | None = None


class AdContractCreate(BaseModel):
    """New contract for an ad."""

    ad_id: UUID
    union_id: UUID | None = None
    start_date: date
    end_date: date
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    amount: int = Field(description="KRW per billing cycle")
    status: ContractStatus = ContractStatus.PENDING
    auto_invoice: bool = Field(default=True, description="Include in monthly invoice generation")
    memo: str | None = None

    @model_validator(mode="after")
    def check_terms(self):
        """End must follow start and the amount must be positive."""
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        if self.amount <= 0:
            raise ValueError("amount must be greater than 0")
        return self


class AdContractUpdate(BaseModel):
    """Partial contract update."""

    status: ContractStatus | None = None
    end_date: date | None = None
    amount: int | None = Field(default=None, gt=0)
    auto_invoice: bool | None = None
    memo: str | None = None


class AdContractOut(BaseModel):
    """Contract as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    ad_id: UUID
    union_id: UUID | None = None
    start_date: date
    end_date: date
    billing_cycle: BillingCycle
    amount: int
    status: ContractStatus
    auto_invoice: bool
    memo: str | None = None


class InvoiceGenerateRequest(BaseModel):
    """Generate invoices for one calendar month."""

    month: str = Field(pattern=r"^\d{4}-(0[1-9]|1[0-2])$", description="YYYY-MM")


class InvoiceGenerateResult(BaseModel):
    month: str
    created: int
    skipped: int


class AdInvoiceUpdate(BaseModel):
    """Change an invoice's payment state."""

    status: InvoiceStatus
    paid_at: datetime | None = Field(default=None, description="Defaults to now when marking PAID")


class AdInvoiceOut(BaseModel):
    """Invoice as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contract_id: UUID
    period_start: date
    period_end: date
    due_date: date
    amount: int
    status: InvoiceStatus
    paid_at: datetime | None = None


class MonthlyStats(BaseModel):
    """Money figures for the current month."""

    paid_amount: int
    due_amount: int
    overdue_amount: int
    overdue_partner_count: int


class ContractStats(BaseModel):
    """Contract counts by status."""

    pending: int = 0
    active: int = 0
    expired: int = 0
    cancelled: int = 0
    expiring_soon: int = Field(default=0, description="ACTIVE contracts ending within 30 days")


class OverduePartner(BaseModel):
    invoice_id: UUID
    partner_name: str
    phone: str | None = None
    amount: int
    due_date: date
    overdue_days: int


class ExpiringContract(BaseModel):
    contract_id: UUID
    partner_name: str
    end_date: date
    days_until_expiry: int


class AdsDashboard(BaseModel):
    """Admin billing dashboard."""

    monthly: MonthlyStats
    contracts: ContractStats
    overdue_partners: list[OverduePartner]
    expiring_contracts: list[ExpiringContract]


class Page(BaseModel):
    """One page of a paginated list."""

    items: list
    total: int
    page: int
    page_size: int
    has_more: bool


# =============================================================================
# Notifications
# =============================================================================


class AlimtalkRecipient(BaseModel):
    """One message recipient and the template variables for them."""

    phone_number: str = Field(min_length=1)
    name: str
    variables: dict[str, str] = Field(default_factory=dict)

    @field_validator("phone_number", mode="before")
    @classmethod
    def strip_hyphens(cls, v):
        """Provider expects digits only."""
        return v.replace("-", "").strip() if isinstance(v, str) else v


class AlimtalkSendRequest(BaseModel):
    """Send one template to many recipients."""

    union_id: UUID | None = None
    template_code: str = Field(min_length=1)
    template_name: str | None = None
    recipients: list[AlimtalkRecipient] = Field(min_length=1)
    sender_id: UUID | None = None


class AlimtalkSendResult(BaseModel):
    """Aggregated result of a send, across all batches."""

    success: bool
    recipient_count: int = 0
    success_count: int = 0
    fail_count: int = 0
    kakao_count: int = Field(default=0, description="Delivered as KakaoTalk AlimTalk")
    sms_count: int = Field(default=0, description="Delivered through SMS/LMS fallback")
    estimated_cost: int = 0
    error: str | None = None
