"""Application-state caches for admin lists.

Lists the admin screens request repeatedly are cached here and held on
app.state. Handlers that change the underlying rows call invalidate()
explicitly; nothing refreshes on its own.
"""

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from .ads import list_ads
from .invites import InviteFilter, list_invites
from .schemas import AdOut, AdType, MemberInviteOut

logger = logging.getLogger(__name__)


class MemberInviteStore:
    """Serialized invite lists keyed by (union, filter)."""

    def __init__(self):
        self._cache: dict[tuple[UUID, str], list[dict]] = {}

    def get(self, db: Session, union_id: UUID, status: InviteFilter = "all") -> list[dict]:
        key = (union_id, status)
        if key not in self._cache:
            self._cache[key] = [
                MemberInviteOut.model_validate(invite).model_dump(mode="json")
                for invite in list_invites(db, union_id, status)
            ]
        return self._cache[key]

    def invalidate(self, union_id: UUID) -> None:
        for key in [k for k in self._cache if k[0] == union_id]:
            del self._cache[key]
        logger.debug(f"Invite cache cleared for union {union_id}")

    def invalidate_all(self) -> None:
        self._cache.clear()


class AdAdminStore:
    """Serialized ad list pages keyed by the full filter set.

    Common ads appear under every union filter, so any ad change clears everything.
    """

    def __init__(self):
        self._cache: dict[tuple, dict] = {}

    def get(
        self,
        db: Session,
        union: str | None = None,
        ad_type: AdType | None = None,
        is_active: bool | None = None,
        search: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> dict:
        key = (union, ad_type, is_active, search, page, page_size)
        if key not in self._cache:
            result = list_ads(db, union, ad_type, is_active, search, page, page_size)
            result["items"] = [AdOut.model_validate(ad).model_dump(mode="json") for ad in result["items"]]
            self._cache[key] = result
        return self._cache[key]

    def invalidate_all(self) -> None:
        self._cache.clear()
        logger.debug("Ad list cache cleared")
