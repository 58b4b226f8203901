"""Co-owner share-ratio reallocation.

When a new owner joins a property unit as co-owner, room has to be made for
their ratio by taking it from the people who already hold the unit. Three
policies are supported:

- proportional: each holder gives up a share of the new ratio matching their
  share of the whole (a 70% holder covers 70% of the new owner's ratio)
- equal: every holder gives up the same amount
- manual: the admin types every ratio; nothing is recomputed

Every ratio is shown rounded half-up to one decimal. When every holder could
cover their deduction, the existing owner absorbs the rounding residual so the
split adds up to exactly 100.

Deductions never push a ratio below 0. The part of a deduction a holder
couldn't cover is not moved to anyone else; the total is shown as computed
and any total other than 100 blocks confirmation.

Example (proportional, new owner 20%, co-owner A 30%):
    existing owner 70 - 14 = 56, A 30 - 6 = 24, total 56 + 20 + 24 = 100
"""

import math
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from .errors import ValidationFailed

TOTAL_RATIO = 100.0


class AllocationMode(str, Enum):
    """Policy for taking the new owner's ratio from existing holders."""

    PROPORTIONAL = "proportional"
    EQUAL = "equal"
    MANUAL = "manual"


def clamp_ratio(value: float) -> float:
    """Clamp a percentage into [0, 100]."""
    return max(0.0, min(TOTAL_RATIO, float(value)))


def round_ratio(value: float) -> float:
    """Round half-up to one decimal place."""
    return math.floor(value * 10 + 0.5) / 10


# =============================================================================
# Input models
# =============================================================================


class CoOwnerShare(BaseModel):
    """A co-owner other than the existing owner and the new owner."""

    owner_id: str = Field(description="User id of the co-owner")
    original_ratio: float = Field(description="Ratio held before reallocation, clamped to [0, 100]")

    @field_validator("owner_id", mode="before")
    @classmethod
    def stringify_id(cls, v):
        return str(v)

    @field_validator("original_ratio", mode="before")
    @classmethod
    def clamp(cls, v):
        return clamp_ratio(v)


class AllocationRequest(BaseModel):
    """One recomputation of the ratio split. Built fresh on every change, never stored."""

    mode: AllocationMode = AllocationMode.PROPORTIONAL
    new_owner_ratio: float = Field(description="Ratio requested for the incoming owner, clamped to [0, 100]")
    other_co_owners: list[CoOwnerShare] = Field(default_factory=list)
    manual_existing_ratio: float | None = Field(
        default=None,
        description="Manual mode: existing owner's ratio as typed by the admin"
    )
    manual_ratios: dict[str, float] = Field(
        default_factory=dict,
        description="Manual mode: owner_id -> ratio overrides for other co-owners"
    )

    @field_validator("new_owner_ratio", mode="before")
    @classmethod
    def clamp_new(cls, v):
        return clamp_ratio(v)

    @field_validator("manual_existing_ratio", mode="before")
    @classmethod
    def clamp_manual_existing(cls, v):
        return None if v is None else clamp_ratio(v)

    @field_validator("manual_ratios", mode="before")
    @classmethod
    def clamp_manual(cls, v):
        if not v:
            return {}
        return {str(owner_id): clamp_ratio(ratio) for owner_id, ratio in v.items()}

    @property
    def existing_owner_original_ratio(self) -> float:
        """What the existing owner holds: everything the other co-owners don't."""
        return clamp_ratio(TOTAL_RATIO - sum(c.original_ratio for c in self.other_co_owners))


# =============================================================================
# Output models
# =============================================================================


class CoOwnerAllocation(BaseModel):
    """Before and after ratio for one other co-owner."""

    owner_id: str
    previous_ratio: float
    new_ratio: float


class AllocationResult(BaseModel):
    """Computed split, ready for display and confirmation."""

    mode: AllocationMode
    existing_original_ratio: float
    existing_ratio: float
    new_owner_ratio: float
    co_owners: list[CoOwnerAllocation] = Field(default_factory=list)
    total: float
    warning: Literal["exceeds", "under"] | None = Field(
        default=None,
        description="'exceeds' when total > 100, 'under' when total < 100"
    )

    @property
    def is_valid(self) -> bool:
        return self.warning is None

    @property
    def message(self) -> str | None:
        if self.warning == "exceeds":
            return f"Total ratio exceeds 100% ({self.total}%)"
        if self.warning == "under":
            return f"Total ratio is under 100% ({self.total}%)"
        return None

    def confirm(self) -> tuple[float, float, list[CoOwnerAllocation]]:
        """Return (existing_ratio, new_owner_ratio, adjustments) or raise if the total isn't 100."""
        if not self.is_valid:
            raise ValidationFailed(self.message, details={"total": self.total})
        return self.existing_ratio, self.new_owner_ratio, list(self.co_owners)


# =============================================================================
# Computation
# =============================================================================


def _deduct(original: float, deduction: float) -> float:
    return round_ratio(max(0.0, original - deduction))


def compute_allocation(request: AllocationRequest) -> AllocationResult:
    """Split the unit between existing owner, new owner and other co-owners."""
    new_ratio = request.new_owner_ratio
    existing_original = request.existing_owner_original_ratio
    others = request.other_co_owners

    if not others:
        if request.mode == AllocationMode.MANUAL and request.manual_existing_ratio is not None:
            existing_ratio = request.manual_existing_ratio
        else:
            existing_ratio = round_ratio(TOTAL_RATIO - new_ratio)
        co_owners = []
    elif request.mode in (AllocationMode.EQUAL, AllocationMode.PROPORTIONAL):
        if request.mode == AllocationMode.EQUAL:
            per_owner = new_ratio / (len(others) + 1)
            existing_deduction = per_owner
            deductions = [per_owner for _ in others]
        else:
            existing_deduction = existing_original / TOTAL_RATIO * new_ratio
            deductions = [c.original_ratio / TOTAL_RATIO * new_ratio for c in others]

        co_owners = [
            CoOwnerAllocation(
                owner_id=c.owner_id,
                previous_ratio=c.original_ratio,
                new_ratio=_deduct(c.original_ratio, d),
            )
            for c, d in zip(others, deductions)
        ]
        covered = (
            sum(c.original_ratio for c in others) <= TOTAL_RATIO
            and existing_original >= existing_deduction
            and all(c.original_ratio >= d for c, d in zip(others, deductions))
        )
        if covered:
            # Rounding residual goes to the existing owner
            existing_ratio = round_ratio(TOTAL_RATIO - new_ratio - sum(c.new_ratio for c in co_owners))
        else:
            existing_ratio = _deduct(existing_original, existing_deduction)
    else:
        # Manual: unset values stay at their original ratio
        existing_ratio = (
            request.manual_existing_ratio
            if request.manual_existing_ratio is not None
            else existing_original
        )
        co_owners = [
            CoOwnerAllocation(
                owner_id=c.owner_id,
                previous_ratio=c.original_ratio,
                new_ratio=request.manual_ratios.get(c.owner_id, c.original_ratio),
            )
            for c in others
        ]

    total = round_ratio(existing_ratio + new_ratio + sum(c.new_ratio for c in co_owners))
    warning = None
    if total > TOTAL_RATIO:
        warning = "exceeds"
    elif total < TOTAL_RATIO:
        warning = "under"

    return AllocationResult(
        mode=request.mode,
        existing_original_ratio=existing_original,
        existing_ratio=existing_ratio,
        new_owner_ratio=new_ratio,
        co_owners=co_owners,
        total=total,
        warning=warning,
    )


def validate_total(existing_ratio: float, new_ratio: float, other_ratios: list[float]) -> None:
    """Server-side re-check of a confirmed split before it is written."""
    total = round_ratio(existing_ratio + new_ratio + sum(other_ratios))
    if total > TOTAL_RATIO:
        raise ValidationFailed(f"Total ratio exceeds 100% ({total}%)", details={"total": total})
    if total < TOTAL_RATIO:
        raise ValidationFailed(f"Total ratio is under 100% ({total}%)", details={"total": total})
