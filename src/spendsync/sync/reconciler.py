from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date
import math
from typing import Any, Literal

from sqlalchemy.exc import IntegrityError

from spendsync.adapters.db.facade import DB
from spendsync.adapters.db.models import Transaction
from spendsync.models.transaction import ProviderTransaction
from spendsync.sync.logger import SyncLogger
from spendsync.taxonomy.mapper import map_categories


class MalformedRecordError(ValueError):
    """Raised when a provider record cannot be turned into a transaction."""


@dataclass(frozen=True, slots=True)
class ReconciledRecord:
    transaction: Transaction
    action: Literal["added", "updated"]


@dataclass(frozen=True, slots=True)
class RecordError:
    provider_transaction_id: str | None
    message: str

    def describe(self) -> str:
        label = self.provider_transaction_id or "<missing id>"
        return f"{label}: {self.message}"


RecordResult = ReconciledRecord | RecordError


@dataclass
class ReconcileOutcome:
    added: list[Transaction] = field(default_factory=list)
    updated: list[Transaction] = field(default_factory=list)
    errors: list[RecordError] = field(default_factory=list)

    @classmethod
    def from_results(cls, results: Iterable[RecordResult]) -> ReconcileOutcome:
        outcome = cls()
        for result in results:
            if isinstance(result, RecordError):
                outcome.errors.append(result)
            elif result.action == "added":
                outcome.added.append(result.transaction)
            else:
                outcome.updated.append(result.transaction)
        return outcome

    @property
    def transactions(self) -> list[Transaction]:
        return [*self.added, *self.updated]


def _provider_id(record: Mapping[str, Any]) -> str | None:
    value = record.get("transaction_id")
    if isinstance(value, str) and value.strip():
        return value
    return None


def _parse_amount(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise MalformedRecordError(f"amount must be a number, got {value!r}")
    if not math.isfinite(value):
        raise MalformedRecordError(f"amount must be finite, got {value!r}")
    return int(round(value * 100))


def _parse_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise MalformedRecordError(f"date must be an ISO string, got {value!r}")
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise MalformedRecordError(f"invalid date {value!r}") from e


def _location(value: Any) -> dict[str, Any] | None:
    if not isinstance(value, Mapping):
        return None
    cleaned = {k: v for k, v in value.items() if v is not None}
    return cleaned or None


def _categories(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [c for c in value if isinstance(c, str)]


def collapse_duplicates(
    records: Iterable[ProviderTransaction],
) -> list[ProviderTransaction | Mapping[str, Any]]:
    """Keep the last occurrence of each provider id, in first-seen order.

    Records without an id are kept as-is so they surface as errors.
    """
    by_id: dict[str, ProviderTransaction] = {}
    ordered: list[str | int] = []
    anonymous: dict[int, Mapping[str, Any]] = {}
    for index, record in enumerate(records):
        provider_id = _provider_id(record) if isinstance(record, Mapping) else None
        if provider_id is None:
            anonymous[index] = record
            ordered.append(index)
            continue
        if provider_id not in by_id:
            ordered.append(provider_id)
        by_id[provider_id] = record
    return [
        anonymous[key] if isinstance(key, int) else by_id[key] for key in ordered
    ]


class TransactionReconciler:
    """Upsert provider transactions into canonical storage.

    Each provider id maps to exactly one stored Transaction per user. New
    records receive the mapped internal category; existing records only
    receive the provider-mutable fields so user edits survive re-syncs.
    """

    def __init__(self, db: DB, *, sync_logger: SyncLogger | None = None) -> None:
        self._db = db
        self._logger = sync_logger or SyncLogger()

    def reconcile(
        self,
        user_id: str,
        connection_id: str,
        records: Iterable[ProviderTransaction],
    ) -> ReconcileOutcome:
        results = [
            self.reconcile_record(user_id, connection_id, record)
            for record in collapse_duplicates(records)
        ]
        outcome = ReconcileOutcome.from_results(results)
        self._logger.reconcile_complete(
            len(outcome.added), len(outcome.updated), len(outcome.errors)
        )
        return outcome

    def reconcile_record(
        self,
        user_id: str,
        connection_id: str,
        record: ProviderTransaction | Mapping[str, Any],
    ) -> RecordResult:
        """Reconcile one record; failures come back as a RecordError."""
        provider_id = _provider_id(record) if isinstance(record, Mapping) else None
        try:
            if provider_id is None:
                raise MalformedRecordError("missing transaction_id")
            return self._upsert(user_id, connection_id, provider_id, record)
        except Exception as e:
            error = RecordError(provider_id, str(e) or type(e).__name__)
            self._logger.record_failed(provider_id or "<missing id>", error.message)
            return error

    def _upsert(
        self,
        user_id: str,
        connection_id: str,
        provider_id: str,
        record: Mapping[str, Any],
    ) -> ReconciledRecord:
        account_id = record.get("account_id")
        if not isinstance(account_id, str) or not account_id:
            raise MalformedRecordError("missing account_id")

        mutable = {
            "amount_cents": _parse_amount(record.get("amount")),
            "name": record.get("name") or "",
            "merchant_name": record.get("merchant_name"),
            "provider_categories": _categories(record.get("category")),
            "pending": bool(record.get("pending", False)),
            "location": _location(record.get("location")),
        }
        posted_at = _parse_date(record.get("date"))

        existing = self._db.get_transaction_by_provider_id(user_id, provider_id)
        if existing is not None:
            updated = self._db.update_transaction_mutable(
                existing.transaction_id, mutable
            )
            return ReconciledRecord(updated, "updated")

        match = map_categories(mutable["provider_categories"])
        try:
            created = self._db.insert_transaction(
                {
                    **mutable,
                    "user_id": user_id,
                    "connection_id": connection_id,
                    "provider_transaction_id": provider_id,
                    "account_id": account_id,
                    "posted_at": posted_at,
                    "internal_category": match.category.value,
                    "category_confidence": match.confidence,
                }
            )
        except IntegrityError:
            # Inserted by someone else since the lookup; fall back to update.
            existing = self._db.get_transaction_by_provider_id(user_id, provider_id)
            if existing is None:
                raise
            updated = self._db.update_transaction_mutable(
                existing.transaction_id, mutable
            )
            return ReconciledRecord(updated, "updated")
        return ReconciledRecord(created, "added")
