from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any


class InternalCategory(str, Enum):
    """Canonical spending categories used by budgets and rewards."""

    FOOD_AND_DINING = "Food & Dining"
    TRANSPORTATION = "Transportation"
    SHOPPING = "Shopping"
    ENTERTAINMENT = "Entertainment"
    HEALTHCARE = "Healthcare"
    SERVICES = "Services"
    GOVERNMENT = "Government"
    TRAVEL = "Travel"
    INCOME = "Income"
    TRANSFER = "Transfer"
    OTHER = "Other"


@dataclass(frozen=True, slots=True)
class CategoryRule:
    fragment: str
    category: InternalCategory
    confidence: float


@dataclass(frozen=True, slots=True)
class CategoryMatch:
    category: InternalCategory
    confidence: float


# Checked in order against the primary provider category; first hit wins.
CATEGORY_RULES: tuple[CategoryRule, ...] = (
    CategoryRule("Food and Drink", InternalCategory.FOOD_AND_DINING, 0.9),
    CategoryRule("Transportation", InternalCategory.TRANSPORTATION, 0.9),
    CategoryRule("Shops", InternalCategory.SHOPPING, 0.8),
    CategoryRule("Recreation", InternalCategory.ENTERTAINMENT, 0.8),
    CategoryRule("Healthcare", InternalCategory.HEALTHCARE, 0.9),
    CategoryRule("Service", InternalCategory.SERVICES, 0.7),
    CategoryRule("Government and Non-Profit", InternalCategory.GOVERNMENT, 0.9),
    CategoryRule("Travel", InternalCategory.TRAVEL, 0.9),
    CategoryRule("Deposit", InternalCategory.INCOME, 0.9),
    CategoryRule("Transfer", InternalCategory.TRANSFER, 0.9),
    CategoryRule("Restaurants", InternalCategory.FOOD_AND_DINING, 0.95),
    CategoryRule("Gas Stations", InternalCategory.TRANSPORTATION, 0.9),
    CategoryRule("Payroll", InternalCategory.INCOME, 0.95),
)

KEYWORD_CONFIDENCE = 0.5

KEYWORD_RULES: tuple[tuple[tuple[str, ...], InternalCategory], ...] = (
    (("food", "restaurant"), InternalCategory.FOOD_AND_DINING),
    (("gas", "transport"), InternalCategory.TRANSPORTATION),
    (("shop", "retail"), InternalCategory.SHOPPING),
    (("transfer", "payment"), InternalCategory.TRANSFER),
    (("deposit", "income"), InternalCategory.INCOME),
)

UNCATEGORIZED = CategoryMatch(InternalCategory.OTHER, 0.0)


def _primary(categories: Any) -> str | None:
    if not isinstance(categories, Sequence) or isinstance(categories, str):
        return None
    if not categories:
        return None
    first = categories[0]
    if not isinstance(first, str) or not first.strip():
        return None
    return first


def map_categories(
    categories: Sequence[str] | None,
    rules: Sequence[CategoryRule] = CATEGORY_RULES,
) -> CategoryMatch:
    """Map a provider category hierarchy to an internal category.

    Only the primary (first) provider category is considered. Rules are
    matched case-insensitively as substrings in table order, then a small
    keyword heuristic applies, and anything else is ``Other``.

    Never raises: ``None``, an empty list, or non-string entries map to
    ``Other`` with confidence 0.
    """
    primary = _primary(categories)
    if primary is None:
        return UNCATEGORIZED

    lowered = primary.lower()
    for rule in rules:
        if rule.fragment.lower() in lowered:
            return CategoryMatch(rule.category, rule.confidence)

    for keywords, category in KEYWORD_RULES:
        if any(keyword in lowered for keyword in keywords):
            return CategoryMatch(category, KEYWORD_CONFIDENCE)

    return UNCATEGORIZED
