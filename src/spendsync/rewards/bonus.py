from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum


class BonusStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PAID_OUT = "paid_out"
    EXPIRED = "expired"


CLOSED_STATUSES = frozenset(
    {BonusStatus.COMPLETED, BonusStatus.PAID_OUT, BonusStatus.EXPIRED}
)


@dataclass(frozen=True, slots=True)
class BonusProgress:
    """Immutable snapshot of a bonus's progress."""

    bonus_id: int
    spending_required_cents: int
    current_spending_cents: int = 0
    status: BonusStatus = BonusStatus.NOT_STARTED
    category: str | None = None
    auto_tracking: bool = True
    end_date: date | None = None
    date_completed: date | None = None
    spending_by_category: dict[str, int] = field(default_factory=dict)


def _status(value: object) -> BonusStatus | None:
    try:
        return BonusStatus(value)
    except ValueError:
        return None


def expire_bonus(bonus: BonusProgress, today: date) -> BonusProgress:
    """Move an open bonus to ``expired`` once ``today`` is past its end date."""
    status = _status(bonus.status)
    if status is None or status in CLOSED_STATUSES:
        return bonus
    if bonus.end_date is None or today <= bonus.end_date:
        return bonus
    return replace(bonus, status=BonusStatus.EXPIRED)


def qualifies(bonus: BonusProgress, category: str | None) -> bool:
    status = _status(bonus.status)
    if status is None or status in CLOSED_STATUSES:
        return False
    if not bonus.auto_tracking:
        return False
    return bonus.category is None or bonus.category == category


def advance_bonus(
    bonus: BonusProgress,
    amount_cents: int,
    category: str | None,
    today: date,
) -> BonusProgress:
    """Apply one qualifying spend to a bonus.

    Expiry is checked first. Non-qualifying or non-positive spend returns the
    bonus unchanged; the status never moves backwards.
    """
    bonus = expire_bonus(bonus, today)
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        return bonus
    if amount_cents <= 0 or not qualifies(bonus, category):
        return bonus

    spent = bonus.current_spending_cents + amount_cents
    breakdown = dict(bonus.spending_by_category)
    key = category or "Other"
    breakdown[key] = breakdown.get(key, 0) + amount_cents

    if spent >= bonus.spending_required_cents:
        return replace(
            bonus,
            current_spending_cents=spent,
            spending_by_category=breakdown,
            status=BonusStatus.COMPLETED,
            date_completed=today,
        )
    return replace(
        bonus,
        current_spending_cents=spent,
        spending_by_category=breakdown,
        status=BonusStatus.IN_PROGRESS,
    )
