from __future__ import annotations

from datetime import date

import loguru
from loguru import logger


class SyncLogger:
    """Handles all logging for the sync pipeline with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def run_started(
        self,
        sync_log_id: str,
        connection_id: str,
        sync_type: str,
        start_date: date,
        end_date: date,
    ) -> None:
        """Log start of a sync run."""
        self._logger.bind(
            sync_log_id=sync_log_id,
            connection_id=connection_id,
            sync_type=sync_type,
        ).info(
            "Starting {} sync for connection {} ({} to {})",
            sync_type,
            connection_id,
            start_date.isoformat(),
            end_date.isoformat(),
        )

    def run_rejected(self, connection_id: str, reason: str) -> None:
        self._logger.bind(connection_id=connection_id).warning(
            "Sync not started for connection {}: {}", connection_id, reason
        )

    def fetch_complete(self, connection_id: str, record_count: int) -> None:
        """Log completion of the provider fetch."""
        self._logger.bind(connection_id=connection_id, records=record_count).info(
            "Provider returned {} transactions for connection {}",
            record_count,
            connection_id,
        )

    def reconcile_complete(self, added: int, updated: int, errors: int) -> None:
        self._logger.bind(added=added, updated=updated, errors=errors).info(
            "Reconciled transactions: {} added, {} updated, {} errors",
            added,
            updated,
            errors,
        )

    def record_failed(self, provider_transaction_id: str, message: str) -> None:
        """Log a single record that could not be reconciled."""
        self._logger.bind(provider_transaction_id=provider_transaction_id).warning(
            "Failed to reconcile transaction {}: {}",
            provider_transaction_id,
            message,
        )

    def propagation_failed(self, transaction_id: int, message: str) -> None:
        self._logger.bind(transaction_id=transaction_id).warning(
            "Failed to propagate transaction {}: {}", transaction_id, message
        )

    def reward_applied(
        self, card_id: int, transaction_id: int, delta: float, reward_type: str
    ) -> None:
        self._logger.bind(card_id=card_id, transaction_id=transaction_id).debug(
            "Applied {:+.2f} {} to card {} for transaction {}",
            delta,
            reward_type,
            card_id,
            transaction_id,
        )

    def bonus_completed(self, card_id: int, bonus_id: int) -> None:
        self._logger.bind(card_id=card_id, bonus_id=bonus_id).info(
            "Bonus {} on card {} completed", bonus_id, card_id
        )

    def bonus_expired(self, card_id: int, bonus_id: int) -> None:
        self._logger.bind(card_id=card_id, bonus_id=bonus_id).info(
            "Bonus {} on card {} expired", bonus_id, card_id
        )

    def bonus_expiry_failed(self, user_id: str, message: str) -> None:
        self._logger.bind(user_id=user_id).warning(
            "Failed to expire bonuses for user {}: {}", user_id, message
        )

    def budget_applied(self, budget_id: int, transaction_id: int, delta: int) -> None:
        self._logger.bind(budget_id=budget_id, transaction_id=transaction_id).debug(
            "Applied {} cents to budget {} for transaction {}",
            delta,
            budget_id,
            transaction_id,
        )

    def resolve_failed(self, provider_account_id: str, message: str) -> None:
        """Log an account lookup failure that fell back to bank."""
        self._logger.bind(provider_account_id=provider_account_id).warning(
            "Account lookup failed for {}, treating as bank: {}",
            provider_account_id,
            message,
        )

    def accounts_refresh_failed(self, connection_id: str, message: str) -> None:
        self._logger.bind(connection_id=connection_id).warning(
            "Failed to refresh account balances for connection {}: {}",
            connection_id,
            message,
        )

    def last_sync_write_failed(self, connection_id: str, message: str) -> None:
        self._logger.bind(connection_id=connection_id).warning(
            "Could not stamp last sync for connection {}: {}", connection_id, message
        )

    def run_completed(
        self, sync_log_id: str, added: int, updated: int, error_count: int
    ) -> None:
        """Log a completed run."""
        self._logger.bind(
            sync_log_id=sync_log_id,
            added=added,
            updated=updated,
            errors=error_count,
        ).info(
            "Sync {} completed: {} added, {} updated, {} issues",
            sync_log_id,
            added,
            updated,
            error_count,
        )

    def run_failed(self, sync_log_id: str, failure_kind: str, message: str) -> None:
        """Log a failed run."""
        self._logger.bind(sync_log_id=sync_log_id, failure_kind=failure_kind).error(
            "Sync {} failed ({}): {}", sync_log_id, failure_kind, message
        )

    def sync_log_write_failed(self, sync_log_id: str, message: str) -> None:
        self._logger.bind(sync_log_id=sync_log_id).error(
            "Could not record failure for sync {}: {}", sync_log_id, message
        )
