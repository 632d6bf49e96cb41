"""Reward calculation and sign-up bonus tracking."""

from spendsync.rewards.bonus import (
    BonusProgress,
    BonusStatus,
    advance_bonus,
    expire_bonus,
)
from spendsync.rewards.calculator import (
    CategoryReward,
    RewardConfig,
    RewardResult,
    RewardType,
    calculate_reward,
    reward_config_from_card,
)

__all__ = [
    "BonusProgress",
    "BonusStatus",
    "CategoryReward",
    "RewardConfig",
    "RewardResult",
    "RewardType",
    "advance_bonus",
    "calculate_reward",
    "expire_bonus",
    "reward_config_from_card",
]
