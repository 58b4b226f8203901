"""Member approval and ownership conflict resolution.

A member who signs up lands in PENDING_APPROVAL. Before approving, an admin
checks whether someone else already holds the property the member claims.
If so the conflict is resolved one of four ways (see ConflictAction):

- update: it is the same person; fold the new account into the old one
- transfer: the property was sold; the old owner drops to 0% and the new one takes 100%
- add_co_owner: both own it; ratios come from share_ratio.compute_allocation
- add_proxy: the new user represents the owner (family or legal proxy) at 0%

Each resolution is written in one transaction. Secondary steps (the
relationship record, the owner notification) are best-effort.
"""

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import InvalidState, NotFound, ValidationFailed
from .matching import format_address_display, format_unit_display
from .models import (
    MemberAccessLog,
    MemberInvite,
    PropertyOwnershipHistory,
    User,
    UserPropertyUnit,
    UserRelationship,
)
from .notifications import AlimtalkClient, notify_user
from .schemas import (
    AccessAction,
    ConflictAction,
    ConflictCheckResult,
    ConflictResolutionRequest,
    ConflictResolutionResult,
    OwnerConflict,
    OwnershipChangeType,
    OwnershipType,
    RelationshipType,
    UserRole,
    UserStatus,
)
from .share_ratio import validate_total

logger = logging.getLogger(__name__)

# Statuses whose holders count as current owners
OWNER_STATUSES = (UserStatus.APPROVED, UserStatus.PRE_REGISTERED)

PROXY_NOTIFICATION_TEMPLATE = "PROXY_REGISTERED"
NOTES_SEPARATOR = "\n---\n"


def _get_user(db: Session, user_id: UUID) -> User:
    user = db.get(User, user_id)
    if not user:
        raise NotFound(f"User {user_id} not found")
    return user


def record_access(
    db: Session,
    action: AccessAction,
    user: User | None,
    admin_id: UUID | None,
    succeeded: bool = True,
    details: dict | None = None,
) -> None:
    """Add a member_access_logs row to the current transaction."""
    db.add(MemberAccessLog(
        union_id=user.union_id if user else None,
        admin_id=admin_id,
        target_user_id=user.id if user else None,
        action=action.value,
        succeeded=succeeded,
        details=details,
    ))


def _record_failure(db: Session, action: AccessAction, user: User, admin_id: UUID | None, reason: str) -> None:
    db.rollback()
    record_access(db, action, user, admin_id, succeeded=False, details={"reason": reason})
    db.commit()


# =============================================================================
# Approval
# =============================================================================


def approve_member(db: Session, user_id: UUID, admin_id: UUID | None = None) -> User:
    """PENDING_APPROVAL -> APPROVED."""
    user = _get_user(db, user_id)
    if user.user_status != UserStatus.PENDING_APPROVAL:
        reason = f"Only members pending approval can be approved (current: {user.user_status.value})"
        _record_failure(db, AccessAction.APPROVE, user, admin_id, reason)
        raise InvalidState(reason)

    user.user_status = UserStatus.APPROVED
    user.role = UserRole.USER
    user.approved_at = datetime.utcnow()
    user.rejected_at = None
    user.rejected_reason = None
    record_access(db, AccessAction.APPROVE, user, admin_id)
    db.commit()
    logger.info(f"Approved member {user.name} ({user.id})")
    return user


def reject_member(db: Session, user_id: UUID, reason: str, admin_id: UUID | None = None) -> User:
    """PENDING_APPROVAL -> REJECTED with a reason shown to the member."""
    user = _get_user(db, user_id)
    if user.user_status != UserStatus.PENDING_APPROVAL:
        message = f"Only members pending approval can be rejected (current: {user.user_status.value})"
        _record_failure(db, AccessAction.REJECT, user, admin_id, message)
        raise InvalidState(message)

    user.user_status = UserStatus.REJECTED
    user.rejected_at = datetime.utcnow()
    user.rejected_reason = reason
    record_access(db, AccessAction.REJECT, user, admin_id, details={"reason": reason})
    db.commit()
    logger.info(f"Rejected member {user.name} ({user.id}): {reason}")
    return user


def cancel_rejection(db: Session, user_id: UUID, admin_id: UUID | None = None) -> User:
    """REJECTED -> PENDING_APPROVAL."""
    user = _get_user(db, user_id)
    if user.user_status != UserStatus.REJECTED:
        message = f"Only rejected members can be restored (current: {user.user_status.value})"
        _record_failure(db, AccessAction.CANCEL_REJECTION, user, admin_id, message)
        raise InvalidState(message)

    user.user_status = UserStatus.PENDING_APPROVAL
    user.rejected_at = None
    user.rejected_reason = None
    record_access(db, AccessAction.CANCEL_REJECTION, user, admin_id)
    db.commit()
    return user


def list_members(db: Session, union_id: UUID, status: UserStatus | None = None) -> list[User]:
    query = select(User).where(User.union_id == union_id)
    if status:
        query = query.where(User.user_status == status)
    return list(db.execute(query.order_by(User.created_at.desc())).scalars())


# =============================================================================
# Conflict Check
# =============================================================================


def same_property_filters(unit: UserPropertyUnit) -> list | None:
    """WHERE clauses selecting units for the same property, None if the unit is unidentifiable.

    building_unit_id is used when known; otherwise pnu plus dong/ho, where a
    missing dong or ho only matches a missing one.
    """
    if unit.building_unit_id:
        return [UserPropertyUnit.building_unit_id == unit.building_unit_id]
    if not unit.pnu:
        return None
    return [
        UserPropertyUnit.pnu == unit.pnu,
        UserPropertyUnit.dong == unit.dong if unit.dong else UserPropertyUnit.dong.is_(None),
        UserPropertyUnit.ho == unit.ho if unit.ho else UserPropertyUnit.ho.is_(None),
    ]


def check_conflicts(db: Session, user_id: UUID) -> ConflictCheckResult:
    """Find approved or pre-registered members holding the pending user's properties."""
    user = _get_user(db, user_id)
    conflicts = []

    for unit in user.property_units:
        filters = same_property_filters(unit)
        if filters is None:
            continue
        rows = db.execute(
            select(UserPropertyUnit, User)
            .join(User, UserPropertyUnit.user_id == User.id)
            .where(UserPropertyUnit.user_id != user.id)
            .where(User.union_id == user.union_id)
            .where(User.user_status.in_(OWNER_STATUSES))
            .where(*filters)
        ).all()
        for existing_unit, existing_user in rows:
            conflicts.append(OwnerConflict(
                pending_unit_id=unit.id,
                existing_unit_id=existing_unit.id,
                existing_user_id=existing_user.id,
                existing_user_name=existing_user.name,
                existing_user_status=existing_user.user_status,
                ownership_type=existing_unit.ownership_type,
                ratio=existing_unit.land_ownership_ratio,
                pnu=existing_unit.pnu,
                building_unit_id=existing_unit.building_unit_id,
                dong=existing_unit.dong,
                ho=existing_unit.ho,
                address_display=format_address_display(
                    existing_unit.property_address_jibun, existing_unit.property_address_road
                ),
                unit_display=format_unit_display(existing_unit.dong, existing_unit.ho),
            ))

    return ConflictCheckResult(user_id=user.id, has_conflict=bool(conflicts), conflicts=conflicts)


# =============================================================================
# Conflict Resolution
# =============================================================================


def merge_notes(existing: str | None, incoming: str | None) -> str | None:
    """Append incoming notes to existing ones unless already contained."""
    if not incoming:
        return existing or None
    if not existing:
        return incoming
    if incoming in existing:
        return existing
    return f"{existing}{NOTES_SEPARATOR}{incoming}"


def _set_ratio(unit: UserPropertyUnit, ratio: float) -> None:
    unit.land_ownership_ratio = ratio
    unit.building_ownership_ratio = ratio


def _approve(user: User) -> None:
    user.user_status = UserStatus.APPROVED
    user.role = UserRole.USER
    user.approved_at = datetime.utcnow()
    user.rejected_at = None
    user.rejected_reason = None


def _history(
    db: Session,
    change_type: OwnershipChangeType,
    unit: UserPropertyUnit,
    from_user_id: UUID | None,
    to_user_id: UUID | None,
    previous_ratio: float | None,
    new_ratio: float | None,
    reason: str,
    admin_id: UUID | None,
) -> None:
    db.add(PropertyOwnershipHistory(
        property_unit_id=unit.id,
        change_type=change_type,
        from_user_id=from_user_id,
        to_user_id=to_user_id,
        previous_ratio=previous_ratio,
        new_ratio=new_ratio,
        changed_by=admin_id,
        reason=reason,
    ))


def _resolve_update(db, req, pending, existing, pending_unit, existing_unit) -> ConflictResolutionResult:
    for field in ("phone_number", "email", "birth_date", "resident_address",
                  "resident_address_detail", "resident_address_jibun"):
        value = getattr(pending, field)
        if value:
            setattr(existing, field, value)
    existing.notes = merge_notes(existing.notes, pending.notes)

    # The conflicting unit is already held by the existing user
    for unit in list(pending.property_units):
        if unit.id == pending_unit.id:
            pending.property_units.remove(unit)
        else:
            existing.property_units.append(unit)

    db.query(MemberInvite).filter(MemberInvite.user_id == pending.id).update(
        {MemberInvite.user_id: existing.id}, synchronize_session=False
    )

    pending.user_status = UserStatus.REJECTED
    pending.rejected_at = datetime.utcnow()
    pending.rejected_reason = "Merged into existing member account"

    return ConflictResolutionResult(
        action=req.action,
        merged_into_user_id=existing.id,
        message=f"Merged {pending.name} into existing member {existing.name}",
    )


def _resolve_transfer(db, req, pending, existing, pending_unit, existing_unit) -> ConflictResolutionResult:
    previous_ratio = existing_unit.land_ownership_ratio or 100.0
    _set_ratio(existing_unit, 0.0)
    existing_unit.notes = "Ownership transferred"
    db.flush()

    transferred = []
    remaining = db.execute(
        select(UserPropertyUnit)
        .where(UserPropertyUnit.user_id == existing.id)
        .where(UserPropertyUnit.land_ownership_ratio > 0)
    ).first()
    if not remaining:
        existing.user_status = UserStatus.TRANSFERRED
        existing.rejected_at = datetime.utcnow()
        existing.rejected_reason = "Membership ended by ownership transfer"
        transferred.append(existing.id)

    _approve(pending)
    pending_unit.ownership_type = OwnershipType.OWNER
    _set_ratio(pending_unit, 100.0)

    _history(db, OwnershipChangeType.TRANSFER, pending_unit, existing.id, pending.id,
             previous_ratio, 100.0, "Ownership transfer (sale)", req.admin_id)

    return ConflictResolutionResult(
        action=req.action,
        approved_user_id=pending.id,
        transferred_user_ids=transferred,
        message=f"Transferred ownership from {existing.name} to {pending.name}",
    )


def _resolve_add_co_owner(db, req, pending, existing, pending_unit, existing_unit) -> ConflictResolutionResult:
    filters = same_property_filters(existing_unit) or [UserPropertyUnit.id == existing_unit.id]
    other_units = db.execute(
        select(UserPropertyUnit)
        .join(User, UserPropertyUnit.user_id == User.id)
        .where(*filters)
        .where(UserPropertyUnit.user_id.not_in([existing.id, pending.id]))
        .where(UserPropertyUnit.ownership_type.in_([OwnershipType.OWNER, OwnershipType.CO_OWNER]))
        .where(User.user_status == UserStatus.APPROVED)
    ).scalars().all()

    adjustments = {a.owner_id: a for a in req.adjustments}
    validate_total(
        req.existing_ratio,
        req.new_ratio,
        [
            adjustments[u.user_id].new_ratio if u.user_id in adjustments else (u.land_ownership_ratio or 0.0)
            for u in other_units
        ],
    )

    previous_ratio = existing_unit.land_ownership_ratio or 100.0
    existing_unit.ownership_type = OwnershipType.CO_OWNER
    _set_ratio(existing_unit, req.existing_ratio)
    _history(db, OwnershipChangeType.RATIO_CHANGED, existing_unit, existing.id, existing.id,
             previous_ratio, req.existing_ratio, "Ratio changed by co-owner addition", req.admin_id)

    for unit in other_units:
        adjustment = adjustments.get(unit.user_id)
        if adjustment is None:
            continue
        _set_ratio(unit, adjustment.new_ratio)
        _history(db, OwnershipChangeType.RATIO_CHANGED, unit, unit.user_id, unit.user_id,
                 adjustment.previous_ratio, adjustment.new_ratio,
                 "Ratio changed by co-owner addition", req.admin_id)

    _approve(pending)
    pending_unit.ownership_type = OwnershipType.CO_OWNER
    _set_ratio(pending_unit, req.new_ratio)
    _history(db, OwnershipChangeType.CO_OWNER_ADDED, pending_unit, None, pending.id,
             0.0, req.new_ratio, "Registered as new co-owner", req.admin_id)

    return ConflictResolutionResult(
        action=req.action,
        approved_user_id=pending.id,
        message=f"Added {pending.name} as co-owner ({req.new_ratio}%) with {existing.name} ({req.existing_ratio}%)",
    )


def _resolve_add_proxy(db, req, pending, existing, pending_unit, existing_unit) -> ConflictResolutionResult:
    relationship_type = req.relationship_type
    _approve(pending)
    pending_unit.ownership_type = (
        OwnershipType.FAMILY if relationship_type == RelationshipType.FAMILY else OwnershipType.PROXY
    )
    _set_ratio(pending_unit, 0.0)
    pending_unit.notes = f"{relationship_type.value.lower()} of {existing.name}"

    return ConflictResolutionResult(
        action=req.action,
        approved_user_id=pending.id,
        message=f"Registered {pending.name} as {relationship_type.value.lower()} of {existing.name}",
    )


def record_relationship(
    db: Session,
    user_id: UUID,
    related_user_id: UUID,
    relationship_type: RelationshipType,
) -> bool:
    """Best-effort user_relationships insert after a proxy approval."""
    try:
        db.add(UserRelationship(
            user_id=user_id,
            related_user_id=related_user_id,
            relationship_type=relationship_type,
        ))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Could not record relationship {user_id} -> {related_user_id}: {e}")
        return False
    return True


RESOLVERS = {
    ConflictAction.UPDATE: _resolve_update,
    ConflictAction.TRANSFER: _resolve_transfer,
    ConflictAction.ADD_CO_OWNER: _resolve_add_co_owner,
    ConflictAction.ADD_PROXY: _resolve_add_proxy,
}


def resolve_conflict(
    db: Session,
    req: ConflictResolutionRequest,
    client: AlimtalkClient | None = None,
) -> ConflictResolutionResult:
    """Apply an admin's conflict decision in a single transaction."""
    pending = _get_user(db, req.pending_user_id)
    existing = _get_user(db, req.existing_user_id)
    if pending.id == existing.id:
        raise ValidationFailed("Pending and existing user must differ")
    if pending.user_status != UserStatus.PENDING_APPROVAL:
        raise InvalidState(f"{pending.name} is not pending approval (current: {pending.user_status.value})")

    pending_unit = db.get(UserPropertyUnit, req.pending_unit_id)
    existing_unit = db.get(UserPropertyUnit, req.existing_unit_id)
    if not pending_unit or pending_unit.user_id != pending.id:
        raise NotFound("Pending user's property unit not found")
    if not existing_unit or existing_unit.user_id != existing.id:
        raise NotFound("Existing owner's property unit not found")

    try:
        result = RESOLVERS[req.action](db, req, pending, existing, pending_unit, existing_unit)
        record_access(db, AccessAction.RESOLVE_CONFLICT, pending, req.admin_id,
                      details={"action": req.action.value, "existing_user_id": str(existing.id)})
        db.commit()
    except (SQLAlchemyError, ValidationFailed):
        db.rollback()
        raise

    logger.info(result.message)

    if req.action == ConflictAction.ADD_PROXY:
        record_relationship(db, pending.id, existing.id, req.relationship_type)
        notify_user(
            db,
            PROXY_NOTIFICATION_TEMPLATE,
            existing.phone_number,
            existing.name,
            {
                "ownerName": existing.name,
                "proxyName": pending.name,
                "relationshipType": req.relationship_type.value,
            },
            union_id=existing.union_id,
            client=client,
        )

    return result
