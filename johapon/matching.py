"""Address-to-parcel matching and member pre-registration.

Rows from a union's member spreadsheet carry a free-text property address.
These models and functions resolve each address to a land lot (PNU) of the
union, store the member as PRE_REGISTERED and keep duplicate claims out.

Matching Rules:
- Addresses are normalized first: parenthesised text and special characters
  are removed and whitespace collapsed
- A case-insensitive substring search over the jibun and road address columns
  wins first; otherwise the lot number (e.g. "791-1234") alone is searched
- Unmatched rows are still saved so an admin can match them by hand later
- Database errors never propagate; they come back in the result's error field
"""

import logging
import re
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .models import LandLot, MemberInvite, User, UserPropertyUnit, UserRelationship
from .schemas import OwnershipType, UserRole, UserStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Address & Name Normalization
# =============================================================================

PARENTHESISED = re.compile(r"\([^)]*\)")
SPECIAL_CHARS = re.compile(r"[^0-9A-Za-z_\s가-힣-]")
WHITESPACE = re.compile(r"\s+")
LOT_NUMBER = re.compile(r"\d+(-\d+)?")


def normalize_address(address: str | None) -> str:
    """Strip parenthesised text and special characters, collapse whitespace."""
    if not address or not address.strip():
        return ""
    cleaned = PARENTHESISED.sub("", address)
    cleaned = SPECIAL_CHARS.sub("", cleaned)
    return WHITESPACE.sub(" ", cleaned).strip()


def normalize_name(name: str | None) -> str:
    """Remove all whitespace and lowercase, for duplicate-account matching."""
    if not name:
        return ""
    return WHITESPACE.sub("", name).lower()


def user_matching_key(name: str | None, resident_address_jibun: str | None) -> str:
    """'name|address' key identifying the same person across registrations, '' if unusable."""
    normalized_name = normalize_name(name)
    normalized_address = normalize_address(resident_address_jibun)
    if not normalized_name or not normalized_address:
        return ""
    return f"{normalized_name}|{normalized_address}"


def extract_lot_number(address: str) -> str | None:
    """First lot-number-like token, e.g. '791-1234' from '미아동 791-1234'."""
    match = LOT_NUMBER.search(address)
    return match.group(0) if match else None


def format_address_display(jibun: str | None, road: str | None) -> str:
    """'jibun (road)', or whichever one is present."""
    jibun = (jibun or "").strip()
    road = (road or "").strip()
    if jibun and road:
        return f"{jibun} ({road})"
    return jibun or road


# =============================================================================
# Dong / Ho Normalization
# =============================================================================


def normalize_dong(dong: str | None) -> str | None:
    """'101동' -> '101'."""
    if not dong:
        return None
    normalized = re.sub(r"동$", "", dong.strip())
    return normalized.strip() or None


def normalize_ho(ho: str | None) -> str | None:
    """'1001호' -> '1001'; basement prefixes 비/지하/지 become 'B' ('비101호' -> 'B101')."""
    if not ho:
        return None
    normalized = re.sub(r"호$", "", ho.strip())
    normalized = re.sub(r"^비", "B", normalized)
    normalized = re.sub(r"^지하", "B", normalized)
    normalized = re.sub(r"^지(?=\d)", "B", normalized)
    return normalized.strip() or None


def format_unit_display(dong: str | None, ho: str | None) -> str:
    """'101동 1001호' from normalized values."""
    parts = []
    if dong:
        parts.append(f"{dong}동")
    if ho:
        parts.append(f"{ho}호")
    return " ".join(parts)


# =============================================================================
# Spreadsheet Rows & Results
# =============================================================================


class MemberMatchRow(BaseModel):
    """One member row read from the union's roster spreadsheet."""

    name: str = Field(min_length=1)
    property_address: str = Field(min_length=1, description="Jibun address of the owned property (required)")
    property_road_address: str | None = None
    phone_number: str | None = None
    resident_address: str | None = None
    resident_address_jibun: str | None = Field(
        default=None,
        description="Jibun form of where the member lives; used with name to merge duplicate accounts"
    )
    building_name: str | None = None
    dong: str | None = Field(default=None, description="Normalized: trailing 동 removed")
    ho: str | None = Field(default=None, description="Normalized: trailing 호 removed, basement as B")
    land_ownership_ratio: float | None = Field(default=None, ge=0, le=100)
    building_ownership_ratio: float | None = Field(default=None, ge=0, le=100)
    ownership_type: OwnershipType = OwnershipType.OWNER
    notes: str | None = None

    @field_validator("name", "property_address", mode="before")
    @classmethod
    def strip_required(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("dong", mode="before")
    @classmethod
    def clean_dong(cls, v):
        return normalize_dong(str(v)) if v is not None else None

    @field_validator("ho", mode="before")
    @classmethod
    def clean_ho(cls, v):
        return normalize_ho(str(v)) if v is not None else None


class AddressMatch(BaseModel):
    """Result of resolving one address to a land lot."""

    pnu: str | None = Field(default=None, description="Matched parcel number or None")
    matched_address: str | None = None
    method: Literal["address", "lot_number", None] = Field(
        default=None,
        description="How the match was found"
    )
    error: str | None = Field(default=None, description="Database error, if the lookup failed")


class MatchingResult(BaseModel):
    """A spreadsheet row together with its match."""

    row: MemberMatchRow
    matched: bool
    pnu: str | None = None
    matched_address: str | None = None
    error: str | None = None


class DuplicateCheck(BaseModel):
    """Whether another member already claims the same pnu/dong/ho."""

    is_duplicate: bool
    existing_user_id: UUID | None = None
    existing_user_name: str | None = None


class PreRegisterResult(BaseModel):
    """Outcome of saving a batch of matched rows."""

    success: bool
    total_count: int = 0
    matched_count: int = 0
    unmatched_count: int = 0
    saved_count: int = 0
    errors: list[str] = Field(default_factory=list)
    results: list[MatchingResult] = Field(default_factory=list)

    @property
    def match_rate(self) -> float:
        if self.total_count == 0:
            return 0.0
        return self.matched_count / self.total_count


class ManualMatchResult(BaseModel):
    success: bool
    pnu: str | None = None
    error: str | None = None


class MergeResult(BaseModel):
    """Duplicate accounts folded into a newly created one."""

    keeper_id: UUID
    merged_user_ids: list[UUID] = Field(default_factory=list)
    error: str | None = None


# =============================================================================
# Matching
# =============================================================================


def match_address_to_pnu(db: Session, union_id: UUID, property_address: str) -> AddressMatch:
    """Resolve a free-text address to a land lot of the union."""
    normalized = normalize_address(property_address)
    if not normalized:
        return AddressMatch()

    # As typed (whitespace collapsed) first, then normalized
    as_typed = WHITESPACE.sub(" ", property_address).strip()
    candidates = [as_typed] if as_typed == normalized else [as_typed, normalized]

    try:
        for text in candidates:
            lot = db.execute(
                select(LandLot)
                .where(LandLot.union_id == union_id)
                .where(or_(
                    LandLot.address_text.icontains(text, autoescape=True),
                    LandLot.road_address.icontains(text, autoescape=True),
                ))
                .order_by(LandLot.pnu)
                .limit(1)
            ).scalar_one_or_none()
            if lot:
                return AddressMatch(pnu=lot.pnu, matched_address=lot.address_text, method="address")

        lot_number = extract_lot_number(normalized)
        if lot_number:
            lot = db.execute(
                select(LandLot)
                .where(LandLot.union_id == union_id)
                .where(LandLot.address_text.icontains(lot_number, autoescape=True))
                .order_by(LandLot.pnu)
                .limit(1)
            ).scalar_one_or_none()
            if lot:
                return AddressMatch(pnu=lot.pnu, matched_address=lot.address_text, method="lot_number")
    except SQLAlchemyError as e:
        logger.error(f"Address match failed for '{property_address}': {e}")
        return AddressMatch(error=str(e))

    return AddressMatch()


def match_members(db: Session, union_id: UUID, rows: list[MemberMatchRow]) -> list[MatchingResult]:
    """Match every spreadsheet row against the union's land lots."""
    results = []
    for row in rows:
        match = match_address_to_pnu(db, union_id, row.property_address)
        results.append(MatchingResult(
            row=row,
            matched=match.pnu is not None,
            pnu=match.pnu,
            matched_address=match.matched_address,
            error=match.error,
        ))
    return results


def check_duplicate_pnu(
    db: Session,
    union_id: UUID,
    pnu: str,
    dong: str | None,
    ho: str | None,
    exclude_user_id: UUID | None = None,
) -> DuplicateCheck:
    """Look for another member of the union holding the same pnu/dong/ho.

    Missing dong or ho only matches members with the same field missing.
    """
    query = (
        select(User)
        .where(User.union_id == union_id)
        .where(User.property_pnu == pnu)
        .where(User.property_dong == dong if dong else User.property_dong.is_(None))
        .where(User.property_ho == ho if ho else User.property_ho.is_(None))
    )
    if exclude_user_id:
        query = query.where(User.id != exclude_user_id)

    try:
        existing = db.execute(query.limit(1)).scalar_one_or_none()
    except SQLAlchemyError as e:
        logger.error(f"Duplicate check failed for pnu {pnu}: {e}")
        return DuplicateCheck(is_duplicate=False)

    if existing:
        return DuplicateCheck(
            is_duplicate=True,
            existing_user_id=existing.id,
            existing_user_name=existing.name,
        )
    return DuplicateCheck(is_duplicate=False)


# =============================================================================
# Pre-registration
# =============================================================================


def _new_pre_registered_user(union_id: UUID, result: MatchingResult) -> User:
    row = result.row
    user = User(
        union_id=union_id,
        name=row.name,
        phone_number=row.phone_number,
        role=UserRole.USER,
        user_status=UserStatus.PRE_REGISTERED,
        resident_address=row.resident_address,
        resident_address_jibun=row.resident_address_jibun,
        property_pnu=result.pnu,
        property_address_jibun=row.property_address,
        property_address_road=row.property_road_address,
        property_dong=row.dong,
        property_ho=row.ho,
        notes=row.notes,
    )
    user.property_units.append(UserPropertyUnit(
        pnu=result.pnu,
        dong=row.dong,
        ho=row.ho,
        ownership_type=row.ownership_type,
        land_ownership_ratio=row.land_ownership_ratio,
        building_ownership_ratio=row.building_ownership_ratio,
        property_address_jibun=row.property_address,
        property_address_road=row.property_road_address,
        notes=row.notes,
    ))
    return user


def save_pre_registered_members(
    db: Session,
    union_id: UUID,
    results: list[MatchingResult],
) -> PreRegisterResult:
    """Store matched rows as PRE_REGISTERED members.

    Each member and its property unit are committed together. A duplicate
    claim or a failed insert is reported in errors and the row skipped; the
    rest of the batch still goes through.
    """
    errors = []
    saved = 0

    for result in results:
        row = result.row
        if result.pnu:
            duplicate = check_duplicate_pnu(db, union_id, result.pnu, row.dong, row.ho)
            if duplicate.is_duplicate:
                errors.append(
                    f"{row.name}: property already registered "
                    f"(existing registrant: {duplicate.existing_user_name})"
                )
                continue

        user = _new_pre_registered_user(union_id, result)
        try:
            db.add(user)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to pre-register {row.name}: {e}")
            errors.append(f"{row.name}: {e}")
            continue
        saved += 1

        merge_duplicate_users(db, user)

    matched = sum(1 for r in results if r.matched)
    logger.info(f"Pre-registered {saved}/{len(results)} members for union {union_id}")

    return PreRegisterResult(
        success=not errors,
        total_count=len(results),
        matched_count=matched,
        unmatched_count=len(results) - matched,
        saved_count=saved,
        errors=errors,
        results=results,
    )


def find_duplicate_users(db: Session, user: User) -> list[User]:
    """Other members of the union with the same normalized name and resident jibun."""
    key = user_matching_key(user.name, user.resident_address_jibun)
    if not key:
        return []
    candidates = db.execute(
        select(User)
        .where(User.union_id == user.union_id)
        .where(User.id != user.id)
        .where(User.resident_address_jibun.is_not(None))
    ).scalars()
    return [c for c in candidates if user_matching_key(c.name, c.resident_address_jibun) == key]


def merge_duplicate_users(db: Session, keeper: User) -> MergeResult:
    """Fold older duplicate accounts into the newly created one.

    Property units, invites and relationships move to the keeper, then the
    duplicates are deleted. Failure is logged and leaves the keeper in place.
    """
    try:
        duplicates = find_duplicate_users(db, keeper)
        if not duplicates:
            return MergeResult(keeper_id=keeper.id)

        duplicate_ids = [d.id for d in duplicates]
        logger.info(f"Merging {len(duplicate_ids)} duplicate(s) into user {keeper.id}")

        for duplicate in duplicates:
            for unit in list(duplicate.property_units):
                keeper.property_units.append(unit)

        db.query(MemberInvite).filter(MemberInvite.user_id.in_(duplicate_ids)).update(
            {MemberInvite.user_id: keeper.id}, synchronize_session=False
        )
        db.query(UserRelationship).filter(UserRelationship.user_id.in_(duplicate_ids)).update(
            {UserRelationship.user_id: keeper.id}, synchronize_session=False
        )
        db.query(UserRelationship).filter(UserRelationship.related_user_id.in_(duplicate_ids)).update(
            {UserRelationship.related_user_id: keeper.id}, synchronize_session=False
        )

        for duplicate in duplicates:
            db.delete(duplicate)
        db.commit()
        return MergeResult(keeper_id=keeper.id, merged_user_ids=duplicate_ids)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Duplicate merge for user {keeper.id} failed, keeping accounts separate: {e}")
        return MergeResult(keeper_id=keeper.id, error=str(e))


# =============================================================================
# Manual Matching & Housekeeping
# =============================================================================


def manual_match_user(
    db: Session,
    user_id: UUID,
    union_id: UUID,
    property_address: str,
    dong: str | None = None,
    ho: str | None = None,
) -> ManualMatchResult:
    """Re-match an unmatched member to a new address."""
    dong = normalize_dong(dong)
    ho = normalize_ho(ho)

    match = match_address_to_pnu(db, union_id, property_address)
    if match.error:
        return ManualMatchResult(success=False, error=match.error)
    if not match.pnu:
        return ManualMatchResult(success=False, error="Address not found in the union's parcel data")

    duplicate = check_duplicate_pnu(db, union_id, match.pnu, dong, ho, exclude_user_id=user_id)
    if duplicate.is_duplicate:
        return ManualMatchResult(
            success=False,
            error=f"Property is already assigned to another member ({duplicate.existing_user_name})",
        )

    try:
        user = db.get(User, user_id)
        if not user:
            return ManualMatchResult(success=False, error="User not found")

        user.property_pnu = match.pnu
        user.property_address_jibun = property_address
        user.property_dong = dong
        user.property_ho = ho
        # Keep the primary unit in step with the denormalized columns
        if user.property_units:
            unit = user.property_units[0]
            unit.pnu = match.pnu
            unit.property_address_jibun = property_address
            unit.dong = dong
            unit.ho = ho
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        return ManualMatchResult(success=False, error=str(e))

    return ManualMatchResult(success=True, pnu=match.pnu)


def get_pre_registered_members(db: Session, union_id: UUID) -> list[User]:
    """PRE_REGISTERED members of the union, newest first."""
    return list(db.execute(
        select(User)
        .where(User.union_id == union_id)
        .where(User.user_status == UserStatus.PRE_REGISTERED)
        .order_by(User.created_at.desc())
    ).scalars())


def delete_pre_registered_member(db: Session, user_id: UUID) -> tuple[bool, str | None]:
    """Delete one member, only while still PRE_REGISTERED. Returns (success, error)."""
    try:
        user = db.get(User, user_id)
        if not user:
            return False, "User not found"
        if user.user_status != UserStatus.PRE_REGISTERED:
            return False, "Only pre-registered members can be deleted"
        db.delete(user)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        return False, str(e)
    return True, None


def delete_all_pre_registered_members(db: Session, union_id: UUID) -> tuple[int, str | None]:
    """Delete every PRE_REGISTERED member of the union. Returns (deleted_count, error)."""
    try:
        members = get_pre_registered_members(db, union_id)
        if not members:
            return 0, None
        member_ids = [m.id for m in members]
        db.query(UserPropertyUnit).filter(UserPropertyUnit.user_id.in_(member_ids)).delete(
            synchronize_session=False
        )
        db.query(User).filter(User.id.in_(member_ids)).delete(synchronize_session=False)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        return 0, str(e)
    logger.info(f"Deleted {len(member_ids)} pre-registered members from union {union_id}")
    return len(member_ids), None
