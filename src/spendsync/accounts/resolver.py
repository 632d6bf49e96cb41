from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from sqlalchemy.exc import SQLAlchemyError

from spendsync.adapters.db.facade import DB
from spendsync.sync.logger import SyncLogger

AccountType = Literal["bank", "credit"]


@dataclass(frozen=True, slots=True)
class AccountResolution:
    account_type: AccountType
    credit_card_id: int | None = None

    @property
    def is_credit(self) -> bool:
        return self.account_type == "credit"


BANK = AccountResolution("bank")


class AccountTypeResolver:
    """Decide whether a provider account is a plain bank account or a mapped card.

    One instance is meant to live for a single sync run; lookups are cached
    per ``(user_id, provider_account_id)`` for that lifetime.
    """

    def __init__(self, db: DB, *, sync_logger: SyncLogger | None = None) -> None:
        self._db = db
        self._logger = sync_logger or SyncLogger()
        self._cache: dict[tuple[str, str], AccountResolution] = {}

    def resolve(self, user_id: str, provider_account_id: str) -> AccountResolution:
        key = (user_id, provider_account_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        try:
            mapping = self._db.get_active_mapping(user_id, provider_account_id)
        except SQLAlchemyError as e:
            # Not cached, so the next record retries the lookup.
            self._logger.resolve_failed(provider_account_id, str(e))
            return BANK

        if mapping is None:
            resolution = BANK
        else:
            resolution = AccountResolution("credit", mapping.credit_card_id)
        self._cache[key] = resolution
        return resolution
