from __future__ import annotations

from typing import TypedDict


class ProviderLocation(TypedDict, total=False):
    """Location block attached to a provider transaction."""

    address: str | None
    city: str | None
    region: str | None
    postal_code: str | None
    country: str | None


class ProviderTransaction(TypedDict):
    """
    Transaction as delivered by the aggregation provider.

    Note: This structure mirrors Plaid's /transactions/get payload. Amounts
    follow Plaid's convention: positive values are money leaving the account
    (debits and card charges), negative values are money coming in.
    """
    transaction_id: str
    account_id: str
    amount: float
    date: str  # ISO date, e.g. "2025-01-31"
    name: str
    merchant_name: str | None
    category: list[str] | None  # e.g., ["Food and Drink", "Restaurants"]
    pending: bool
    location: ProviderLocation | None


class ProviderBalance(TypedDict):
    available: float | None
    current: float | None
    limit: float | None
    iso_currency_code: str | None


class ProviderAccount(TypedDict):
    account_id: str
    name: str
    official_name: str | None
    mask: str | None
    type: str | None
    subtype: str | None
    balances: ProviderBalance
