"""Member invites.

The union office uploads its roster spreadsheet; that list is the source of
truth for who may sign up. Syncing compares it against stored invites by
(name, phone, property address):

- rows without an invite get a new PENDING invite and token
- unused invites whose row disappeared are deleted
- used invites whose row disappeared are deleted together with the account
  created through them
"""

import logging
import os
import secrets
from datetime import datetime, timedelta
from typing import Literal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import InvalidState, NotFound
from .models import MemberInvite, Union, User
from .notifications import ALIMTALK_BATCH_SIZE, AlimtalkClient, ProgressCallback, send_alimtalk
from .schemas import (
    AlimtalkRecipient,
    AlimtalkSendRequest,
    AlimtalkSendResult,
    InviteMemberRow,
    InviteStatus,
    InviteSyncRequest,
    InviteSyncResult,
)

logger = logging.getLogger(__name__)

APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000")
MEMBER_INVITE_TEMPLATE = "MEMBER_INVITE"

InviteFilter = Literal["all", "pending", "used"]


def invite_key(name: str, phone_number: str, property_address: str) -> tuple[str, str, str]:
    """Identity of an invite row; phone compared without hyphens."""
    return name.strip(), phone_number.replace("-", "").strip(), property_address.strip()


def invite_link(token: str, base_url: str | None = None) -> str:
    return f"{(base_url or APP_BASE_URL).rstrip('/')}/member-invite/{token}"


def new_invite_token() -> str:
    return secrets.token_urlsafe(24)


def sync_member_invites(db: Session, request: InviteSyncRequest) -> InviteSyncResult:
    """Make the union's invites match the uploaded list, in one transaction."""
    if not db.get(Union, request.union_id):
        raise NotFound(f"Union {request.union_id} not found")

    incoming: dict[tuple[str, str, str], InviteMemberRow] = {}
    for row in request.members:
        incoming.setdefault(invite_key(row.name, row.phone_number, row.property_address), row)

    existing = db.execute(
        select(MemberInvite).where(MemberInvite.union_id == request.union_id)
    ).scalars().all()
    existing_keys = set()
    result = InviteSyncResult()

    try:
        for invite in existing:
            key = invite_key(invite.name, invite.phone_number, invite.property_address)
            existing_keys.add(key)
            if key in incoming:
                continue
            if invite.status == InviteStatus.USED:
                if invite.user_id:
                    user = db.get(User, invite.user_id)
                    if user:
                        result.deleted_user_ids.append(user.id)
                        db.delete(user)
                result.deleted_used += 1
            else:
                result.deleted_pending += 1
            db.delete(invite)

        expires_at = datetime.utcnow() + timedelta(hours=request.expires_hours)
        for key, row in incoming.items():
            if key in existing_keys:
                continue
            db.add(MemberInvite(
                union_id=request.union_id,
                name=key[0],
                phone_number=key[1],
                property_address=key[2],
                invite_token=new_invite_token(),
                status=InviteStatus.PENDING,
                expires_at=expires_at,
                created_by=request.created_by,
            ))
            result.inserted += 1

        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        f"Invite sync for union {request.union_id}: {result.inserted} inserted, "
        f"{result.deleted_pending} pending deleted, {result.deleted_used} used deleted"
    )
    return result


def list_invites(db: Session, union_id: UUID, status: InviteFilter = "all") -> list[MemberInvite]:
    """Invites of a union, newest first, optionally filtered to pending or used."""
    query = select(MemberInvite).where(MemberInvite.union_id == union_id)
    if status == "pending":
        query = query.where(MemberInvite.status == InviteStatus.PENDING)
    elif status == "used":
        query = query.where(MemberInvite.status == InviteStatus.USED)
    return list(db.execute(query.order_by(MemberInvite.created_at.desc())).scalars())


def get_invite_by_token(db: Session, token: str) -> MemberInvite:
    """Look up an invite, expiring it first if its time has passed."""
    invite = db.execute(
        select(MemberInvite).where(MemberInvite.invite_token == token)
    ).scalar_one_or_none()
    if not invite:
        raise NotFound("Invite not found")

    if invite.status == InviteStatus.PENDING and invite.expires_at < datetime.utcnow():
        invite.status = InviteStatus.EXPIRED
        db.commit()
    return invite


def accept_invite(db: Session, token: str, user_id: UUID) -> MemberInvite:
    """PENDING -> USED, linking the account created through the invite."""
    invite = get_invite_by_token(db, token)
    if invite.status == InviteStatus.EXPIRED:
        raise InvalidState("Invite has expired")
    if invite.status == InviteStatus.USED:
        raise InvalidState("Invite has already been used")
    if not db.get(User, user_id):
        raise NotFound(f"User {user_id} not found")

    invite.status = InviteStatus.USED
    invite.used_at = datetime.utcnow()
    invite.user_id = user_id
    db.commit()
    return invite


def delete_invite(db: Session, invite_id: UUID) -> UUID:
    """Delete an invite, returning its union id."""
    invite = db.get(MemberInvite, invite_id)
    if not invite:
        raise NotFound(f"Invite {invite_id} not found")
    union_id = invite.union_id
    db.delete(invite)
    db.commit()
    return union_id


def send_invite_notifications(
    db: Session,
    union_id: UUID,
    invite_ids: list[UUID] | None = None,
    client: AlimtalkClient | None = None,
    batch_size: int = ALIMTALK_BATCH_SIZE,
    on_progress: ProgressCallback | None = None,
) -> AlimtalkSendResult:
    """Send the invite link to pending invitees, in batches."""
    union = db.get(Union, union_id)
    if not union:
        raise NotFound(f"Union {union_id} not found")

    invites = [i for i in list_invites(db, union_id, "pending") if not invite_ids or i.id in invite_ids]
    if not invites:
        return AlimtalkSendResult(success=True)

    recipients = [
        AlimtalkRecipient(
            phone_number=invite.phone_number,
            name=invite.name,
            variables={
                "unionName": union.name,
                "memberName": invite.name,
                "propertyAddress": invite.property_address,
                "inviteUrl": invite_link(invite.invite_token),
                "expiresAt": invite.expires_at.strftime("%Y-%m-%d %H:%M"),
            },
        )
        for invite in invites
    ]
    request = AlimtalkSendRequest(
        union_id=union_id,
        template_code=MEMBER_INVITE_TEMPLATE,
        template_name="Member invite",
        recipients=recipients,
    )
    return send_alimtalk(db, request, client=client, batch_size=batch_size, on_progress=on_progress)
