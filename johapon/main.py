"""FastAPI application for the Johapon union platform.

Every JSON route answers with the same envelope:
    {"success": true, "data": ...}                       (lists: data.items)
    {"success": false, "error": {"code": ..., "message": ...}}
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import date
from typing import Annotated, Literal
from uuid import UUID

import logfire
from fastapi import Body, Depends, FastAPI, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from starlette.requests import Request

from . import ads, invites, matching, members
from .database import get_db, init_db
from .errors import ErrorCode, JohaponError, NotFound, ValidationFailed, fail, ok
from .models import Union
from .notifications import AlimtalkClient, send_alimtalk
from .schemas import (
    AdContractCreate,
    AdContractOut,
    AdContractUpdate,
    AdInvoiceOut,
    AdInvoiceUpdate,
    AdOut,
    AdType,
    AdUpdate,
    AlimtalkSendRequest,
    ApproveRequest,
    BannerAdCreate,
    BoardAdCreate,
    CancelRejectionRequest,
    ConflictResolutionRequest,
    ContractStatus,
    InviteAcceptRequest,
    InviteStatus,
    InviteSyncRequest,
    InvoiceGenerateRequest,
    InvoiceStatus,
    MemberInviteOut,
    RejectRequest,
    UserOut,
    UserStatus,
)
from .share_ratio import AllocationRequest, compute_allocation
from .stores import AdAdminStore, MemberInviteStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield


app = FastAPI(
    title="Johapon API",
    description="Member, parcel and advertisement management for redevelopment unions",
    version="0.1.0",
    lifespan=lifespan,
)

# Configure Logfire for observability (after app creation)
if os.getenv("LOGFIRE_TOKEN"):
    logfire.configure()
    logfire.instrument_fastapi(app)
    logfire.instrument_httpx()

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.invite_store = MemberInviteStore()
app.state.ad_store = AdAdminStore()


# =============================================================================
# Dependencies & Error Envelope
# =============================================================================


def get_invite_store(request: Request) -> MemberInviteStore:
    return request.app.state.invite_store


def get_ad_store(request: Request) -> AdAdminStore:
    return request.app.state.ad_store


def get_alimtalk_client() -> AlimtalkClient:
    return AlimtalkClient()


@app.exception_handler(JohaponError)
async def johapon_error_handler(request: Request, exc: JohaponError):
    return JSONResponse(status_code=exc.status_code, content=fail(exc.code, exc.message, exc.details))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(e.get("loc", [])), "msg": e.get("msg", ""), "type": e.get("type", "")}
        for e in exc.errors()
    ]
    message = errors[0]["msg"] if errors else "Invalid request"
    return JSONResponse(
        status_code=422,
        content=fail(ErrorCode.VALIDATION_ERROR, message, {"errors": errors}),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content=fail(ErrorCode.INTERNAL_ERROR, "Internal server error"))


def dump(model_cls: type[BaseModel], obj) -> dict:
    return model_cls.model_validate(obj).model_dump(mode="json")


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "Johapon API"}


# =============================================================================
# Share Ratio
# =============================================================================


@app.post("/api/share-ratio/preview")
async def preview_share_ratio(body: AllocationRequest):
    """Compute a co-owner split for display. Nothing is written."""
    result = compute_allocation(body)
    data = result.model_dump(mode="json")
    data["is_valid"] = result.is_valid
    data["message"] = result.message
    return ok(data)


# =============================================================================
# GIS Matching & Pre-registration
# =============================================================================


class MemberMatchRequest(BaseModel):
    """Spreadsheet rows to match against the union's land lots."""
    members: list[matching.MemberMatchRow] = Field(min_length=1)


class ManualMatchRequest(BaseModel):
    """Re-match one member to a corrected address."""
    user_id: UUID
    union_id: UUID
    property_address: str = Field(min_length=1)
    dong: str | None = None
    ho: str | None = None


def _require_union(db: Session, union_id: UUID) -> Union:
    union = db.get(Union, union_id)
    if not union:
        raise NotFound(f"Union {union_id} not found")
    return union


@app.post("/api/unions/{union_id}/gis/match")
async def match_members_endpoint(union_id: UUID, body: MemberMatchRequest, db: Session = Depends(get_db)):
    _require_union(db, union_id)
    results = matching.match_members(db, union_id, body.members)
    return ok({"items": [r.model_dump(mode="json") for r in results]})


@app.post("/api/unions/{union_id}/gis/pre-register")
async def pre_register_members(union_id: UUID, body: MemberMatchRequest, db: Session = Depends(get_db)):
    """Match rows and store them as PRE_REGISTERED members."""
    _require_union(db, union_id)
    results = matching.match_members(db, union_id, body.members)
    outcome = matching.save_pre_registered_members(db, union_id, results)
    return ok(outcome.model_dump(mode="json"))


@app.get("/api/unions/{union_id}/gis/pre-registered")
async def list_pre_registered(union_id: UUID, db: Session = Depends(get_db)):
    users = matching.get_pre_registered_members(db, union_id)
    return ok({"items": [dump(UserOut, u) for u in users]})


@app.delete("/api/unions/{union_id}/gis/pre-registered")
async def delete_all_pre_registered(union_id: UUID, db: Session = Depends(get_db)):
    deleted, error = matching.delete_all_pre_registered_members(db, union_id)
    if error:
        raise JohaponError(error)
    return ok({"deleted_count": deleted})


@app.delete("/api/gis/pre-registered/{user_id}")
async def delete_pre_registered(user_id: UUID, db: Session = Depends(get_db)):
    success, error = matching.delete_pre_registered_member(db, user_id)
    if not success:
        raise ValidationFailed(error)
    return ok({"id": str(user_id)})


@app.post("/api/gis/manual-match")
async def manual_match(body: ManualMatchRequest, db: Session = Depends(get_db)):
    result = matching.manual_match_user(db, body.user_id, body.union_id, body.property_address, body.dong, body.ho)
    if not result.success:
        raise ValidationFailed(result.error)
    return ok({"pnu": result.pnu})


# =============================================================================
# Member Approval & Conflicts
# =============================================================================


@app.get("/api/unions/{union_id}/members")
async def list_members_endpoint(
    union_id: UUID,
    status: UserStatus | None = None,
    db: Session = Depends(get_db),
):
    users = members.list_members(db, union_id, status)
    return ok({"items": [dump(UserOut, u) for u in users]})


@app.post("/api/members/approve")
async def approve_member_endpoint(body: ApproveRequest, db: Session = Depends(get_db)):
    return ok(dump(UserOut, members.approve_member(db, body.user_id, body.admin_id)))


@app.post("/api/members/reject")
async def reject_member_endpoint(body: RejectRequest, db: Session = Depends(get_db)):
    return ok(dump(UserOut, members.reject_member(db, body.user_id, body.reason, body.admin_id)))


@app.post("/api/members/cancel-rejection")
async def cancel_rejection_endpoint(body: CancelRejectionRequest, db: Session = Depends(get_db)):
    return ok(dump(UserOut, members.cancel_rejection(db, body.user_id, body.admin_id)))


@app.get("/api/members/{user_id}/conflicts")
async def check_conflicts_endpoint(user_id: UUID, db: Session = Depends(get_db)):
    return ok(members.check_conflicts(db, user_id).model_dump(mode="json"))


@app.post("/api/members/resolve-conflict")
def resolve_conflict_endpoint(
    body: ConflictResolutionRequest,
    db: Session = Depends(get_db),
    client: AlimtalkClient = Depends(get_alimtalk_client),
):
    return ok(members.resolve_conflict(db, body, client=client).model_dump(mode="json"))


# =============================================================================
# Member Invites
# =============================================================================


class InviteNotifyRequest(BaseModel):
    """Send invite links to pending invitees (all of them when invite_ids is empty)."""
    union_id: UUID
    invite_ids: list[UUID] = Field(default_factory=list)


@app.post("/api/member-invite/sync")
async def sync_invites(
    body: InviteSyncRequest,
    db: Session = Depends(get_db),
    store: MemberInviteStore = Depends(get_invite_store),
):
    result = invites.sync_member_invites(db, body)
    store.invalidate(body.union_id)
    return ok(result.model_dump(mode="json"))


@app.get("/api/unions/{union_id}/member-invites")
async def list_invites_endpoint(
    union_id: UUID,
    status: Literal["all", "pending", "used"] = "all",
    db: Session = Depends(get_db),
    store: MemberInviteStore = Depends(get_invite_store),
):
    return ok({"items": store.get(db, union_id, status)})


@app.get("/api/member-invite/token/{token}")
async def get_invite_by_token(
    token: str,
    db: Session = Depends(get_db),
    store: MemberInviteStore = Depends(get_invite_store),
):
    invite = invites.get_invite_by_token(db, token)
    if invite.status == InviteStatus.EXPIRED:
        store.invalidate(invite.union_id)
    data = dump(MemberInviteOut, invite)
    data["invite_link"] = invites.invite_link(invite.invite_token)
    return ok(data)


@app.post("/api/member-invite/accept")
async def accept_invite_endpoint(
    body: InviteAcceptRequest,
    db: Session = Depends(get_db),
    store: MemberInviteStore = Depends(get_invite_store),
):
    invite = invites.accept_invite(db, body.invite_token, body.user_id)
    store.invalidate(invite.union_id)
    return ok(dump(MemberInviteOut, invite))


@app.delete("/api/member-invites/{invite_id}")
async def delete_invite_endpoint(
    invite_id: UUID,
    db: Session = Depends(get_db),
    store: MemberInviteStore = Depends(get_invite_store),
):
    union_id = invites.delete_invite(db, invite_id)
    store.invalidate(union_id)
    return ok({"id": str(invite_id)})


@app.post("/api/member-invite/notify")
def notify_invitees(
    body: InviteNotifyRequest,
    db: Session = Depends(get_db),
    client: AlimtalkClient = Depends(get_alimtalk_client),
):
    result = invites.send_invite_notifications(db, body.union_id, body.invite_ids, client=client)
    return ok(result.model_dump(mode="json"))


# =============================================================================
# ADMIN API: Advertisements
# =============================================================================


def _check_union_param(union_id: str | None) -> None:
    """Union filters accept an id or 'common'."""
    if union_id and union_id != ads.COMMON_UNION:
        try:
            UUID(union_id)
        except ValueError:
            raise ValidationFailed(f"Invalid union_id '{union_id}'")


@app.get("/api/admin/ads")
async def list_ads_endpoint(
    union_id: str | None = None,
    ad_type: AdType | None = None,
    is_active: bool | None = None,
    search: str | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    store: AdAdminStore = Depends(get_ad_store),
):
    """Ad list. union_id='common' selects ads shown in every union."""
    _check_union_param(union_id)
    return ok(store.get(db, union_id, ad_type, is_active, search, page, page_size))


@app.post("/api/admin/ads")
async def create_ad_endpoint(
    body: Annotated[BannerAdCreate | BoardAdCreate, Body(discriminator="ad_type")],
    db: Session = Depends(get_db),
    store: AdAdminStore = Depends(get_ad_store),
):
    ad = ads.create_ad(db, body)
    store.invalidate_all()
    return ok(dump(AdOut, ad))


@app.get("/api/admin/ads/{ad_id}")
async def get_ad_endpoint(ad_id: UUID, db: Session = Depends(get_db)):
    return ok(dump(AdOut, ads.get_ad(db, ad_id)))


@app.patch("/api/admin/ads/{ad_id}")
async def update_ad_endpoint(
    ad_id: UUID,
    body: AdUpdate,
    db: Session = Depends(get_db),
    store: AdAdminStore = Depends(get_ad_store),
):
    ad = ads.update_ad(db, ad_id, body)
    store.invalidate_all()
    return ok(dump(AdOut, ad))


@app.delete("/api/admin/ads/{ad_id}")
async def delete_ad_endpoint(
    ad_id: UUID,
    db: Session = Depends(get_db),
    store: AdAdminStore = Depends(get_ad_store),
):
    ads.delete_ad(db, ad_id)
    store.invalidate_all()
    return ok({"id": str(ad_id)})


@app.get("/api/admin/ad-contracts")
async def list_contracts_endpoint(
    ad_id: UUID | None = None,
    status: ContractStatus | None = None,
    union_id: str | None = None,
    db: Session = Depends(get_db),
):
    _check_union_param(union_id)
    contracts = ads.list_contracts(db, ad_id, status, union_id)
    return ok({"items": [dump(AdContractOut, c) for c in contracts]})


@app.post("/api/admin/ad-contracts")
async def create_contract_endpoint(body: AdContractCreate, db: Session = Depends(get_db)):
    return ok(dump(AdContractOut, ads.create_contract(db, body)))


@app.patch("/api/admin/ad-contracts/{contract_id}")
async def update_contract_endpoint(contract_id: UUID, body: AdContractUpdate, db: Session = Depends(get_db)):
    return ok(dump(AdContractOut, ads.update_contract(db, contract_id, body)))


@app.get("/api/admin/ad-invoices")
async def list_invoices_endpoint(
    union_id: str | None = None,
    status: InvoiceStatus | None = None,
    month: str | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    _check_union_param(union_id)
    result = ads.list_invoices(db, union_id, status, month, page, page_size)
    result["items"] = [
        {**dump(AdInvoiceOut, row), "partner_name": row["partner_name"], "ad_title": row["ad_title"]}
        for row in result["items"]
    ]
    return ok(result)


@app.post("/api/admin/ad-invoices/generate")
async def generate_invoices_endpoint(body: InvoiceGenerateRequest, db: Session = Depends(get_db)):
    return ok(ads.generate_invoices(db, body.month).model_dump(mode="json"))


@app.patch("/api/admin/ad-invoices/{invoice_id}")
async def update_invoice_endpoint(invoice_id: UUID, body: AdInvoiceUpdate, db: Session = Depends(get_db)):
    return ok(dump(AdInvoiceOut, ads.update_invoice(db, invoice_id, body)))


@app.get("/api/admin/ads-dashboard")
async def ads_dashboard_endpoint(db: Session = Depends(get_db)):
    return ok(ads.ads_dashboard(db, date.today()).model_dump(mode="json"))


@app.get("/api/tenant/{slug}/ads")
async def tenant_ads_endpoint(
    slug: str,
    ad_type: AdType = AdType.MAIN,
    limit: int | None = Query(None, ge=1, le=50),
    db: Session = Depends(get_db),
):
    """Ads currently running on a union's pages."""
    return ok({"items": [dump(AdOut, ad) for ad in ads.tenant_ads(db, slug, ad_type, limit)]})


# =============================================================================
# Notifications
# =============================================================================


# Sync routes: the messaging proxy call blocks, so FastAPI runs these in its threadpool
@app.post("/api/notifications/send")
def send_notification(
    body: AlimtalkSendRequest,
    db: Session = Depends(get_db),
    client: AlimtalkClient = Depends(get_alimtalk_client),
):
    return ok(send_alimtalk(db, body, client=client).model_dump(mode="json"))
