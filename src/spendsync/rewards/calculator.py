from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any


class RewardType(str, Enum):
    CASHBACK = "cashback"
    POINTS = "points"
    MILES = "miles"


DEFAULT_REWARD_RATE = 0.01

_CENT = Decimal("0.01")


@dataclass(frozen=True, slots=True)
class CategoryReward:
    """Per-category override.

    ``rate`` is a percentage for cashback (3 means 3%) and units per dollar
    for points and miles.
    """

    reward_type: RewardType
    rate: float


@dataclass(frozen=True, slots=True)
class RewardConfig:
    reward_type: RewardType = RewardType.CASHBACK
    reward_rate: float | None = None
    category_rewards: Mapping[str, CategoryReward] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RewardResult:
    reward_amount: float
    reward_type: RewardType


def _reward_type(value: Any) -> RewardType | None:
    # str() of a str-mixin member is "RewardType.CASHBACK", not its value.
    if isinstance(value, RewardType):
        return value
    if not isinstance(value, str):
        return None
    try:
        return RewardType(value.strip().lower())
    except ValueError:
        return None


def _rate(value: Any) -> Decimal | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not rate.is_finite() or rate < 0:
        return None
    return rate


def reward_config_from_card(
    reward_type: str | None,
    reward_rate: float | None,
    category_rewards: Mapping[str, Any] | None,
) -> RewardConfig:
    """Build a RewardConfig from stored card columns.

    Malformed category entries are dropped rather than rejected so a bad
    override never blocks reward processing for the rest of the card.
    """
    overrides: dict[str, CategoryReward] = {}
    for category, raw in (category_rewards or {}).items():
        if not isinstance(raw, Mapping):
            continue
        kind = _reward_type(raw.get("type"))
        rate = _rate(raw.get("rate"))
        if kind is None or rate is None:
            continue
        overrides[category] = CategoryReward(kind, float(rate))

    return RewardConfig(
        reward_type=_reward_type(reward_type) or RewardType.CASHBACK,
        reward_rate=reward_rate,
        category_rewards=overrides,
    )


def calculate_reward(
    amount_cents: int, category: str | None, config: RewardConfig
) -> RewardResult:
    """Compute the reward earned by one charge.

    A category override wins over the card default. Cashback overrides treat
    the rate as a percentage; points and miles overrides multiply dollars by
    the rate. Without an override the card's ``reward_rate`` (a plain
    fraction, 0.01 when unset) applies in the card's own reward type.

    Non-positive amounts, unknown reward types and unusable rates yield a
    zero reward instead of raising.
    """
    default_type = _reward_type(getattr(config, "reward_type", None))
    zero = RewardResult(0.0, default_type or RewardType.CASHBACK)
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        return zero
    if amount_cents <= 0 or default_type is None:
        return zero

    dollars = Decimal(amount_cents) / 100
    override = config.category_rewards.get(category) if category else None

    if override is not None:
        kind = _reward_type(override.reward_type)
        rate = _rate(override.rate)
        if kind is None or rate is None:
            return zero
        if kind is RewardType.CASHBACK:
            raw = dollars * rate / 100
        else:
            raw = dollars * rate
    else:
        kind = default_type
        rate = _rate(
            DEFAULT_REWARD_RATE if config.reward_rate is None else config.reward_rate
        )
        if rate is None:
            return zero
        raw = dollars * rate

    return RewardResult(float(raw.quantize(_CENT, rounding=ROUND_HALF_UP)), kind)
