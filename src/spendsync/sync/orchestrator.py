from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Literal, Protocol, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from spendsync.accounts.resolver import AccountTypeResolver
from spendsync.adapters.db.facade import DB
from spendsync.adapters.db.models import BankConnection
from spendsync.config import SyncConfig
from spendsync.infra.clients.plaid import PlaidClientError, PlaidTimeoutError
from spendsync.models.transaction import ProviderAccount, ProviderTransaction
from spendsync.sync.logger import SyncLogger
from spendsync.sync.propagator import RewardBudgetPropagator
from spendsync.sync.reconciler import (
    ReconciledRecord,
    ReconcileOutcome,
    RecordResult,
    TransactionReconciler,
    collapse_duplicates,
)
from spendsync.sync.sync_log import (
    FailureKind,
    InvalidSyncTransitionError,
    SyncLogRecorder,
    SyncType,
    utcnow,
)

T = TypeVar("T")


class TransactionProvider(Protocol):
    def fetch_transactions(
        self, access_token: str, start_date: date, end_date: date
    ) -> list[ProviderTransaction]: ...

    def fetch_accounts(self, access_token: str) -> list[ProviderAccount]: ...


class ConnectionNotFoundError(LookupError):
    """Raised when a connection is unknown, inactive, or owned by someone else."""

    def __init__(self, connection_id: str) -> None:
        super().__init__(f"Connection {connection_id} not found")
        self.connection_id = connection_id


class SyncInProgressError(RuntimeError):
    """Raised when a connection already has a sync run in flight."""

    def __init__(self, connection_id: str) -> None:
        super().__init__(f"Sync already in progress for connection {connection_id}")
        self.connection_id = connection_id


@dataclass
class SyncSummary:
    """Result returned to the caller of a sync run.

    ``status="completed"`` with a non-empty ``errors`` list means the run
    finished with per-record issues; ``status="failed"`` means the run itself
    was aborted and nothing beyond already-reconciled records was applied.
    """

    status: Literal["completed", "failed"]
    added: int = 0
    updated: int = 0
    errors: list[str] = field(default_factory=list)
    sync_log_id: str | None = None
    failure_kind: FailureKind | None = None


def classify_failure(exc: BaseException) -> FailureKind:
    if isinstance(exc, PlaidTimeoutError | TimeoutError):
        return "timeout"
    if isinstance(exc, PlaidClientError):
        return "provider"
    if isinstance(exc, SQLAlchemyError):
        return "store"
    return "unexpected"


def _failure_message(exc: BaseException, kind: FailureKind) -> str:
    message = str(exc)
    if kind == "timeout" and not message:
        return "Timed out waiting for the transaction provider"
    return message or type(exc).__name__


class SyncOrchestrator:
    """Coordinates one sync run per connection.

    A run opens a sync log, fetches the provider window, reconciles and
    propagates each record, refreshes account balances and closes the log.
    Fetches run in worker threads; all storage work happens on the event
    loop, so record processing from concurrent runs never interleaves
    inside a single card or budget update.
    """

    def __init__(
        self,
        db: DB,
        provider: TransactionProvider,
        *,
        config: SyncConfig | None = None,
        sync_logger: SyncLogger | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._db = db
        self._provider = provider
        self._config = config or SyncConfig()
        self._logger = sync_logger or SyncLogger()
        self._today = today
        self._recorder = SyncLogRecorder(db)
        self._reconciler = TransactionReconciler(db, sync_logger=self._logger)
        self._in_flight: set[str] = set()

    @property
    def recorder(self) -> SyncLogRecorder:
        return self._recorder

    def default_window(self) -> tuple[date, date]:
        end = self._today()
        return end - timedelta(days=self._config.sync_window_days), end

    def is_running(self, connection_id: str) -> bool:
        return connection_id in self._in_flight

    async def run_sync(
        self,
        user_id: str,
        connection_id: str,
        date_range: tuple[date, date] | None = None,
        sync_type: SyncType = "manual",
    ) -> SyncSummary:
        """Run one sync against one connection.

        Raises:
            ConnectionNotFoundError: If the connection is not the user's or is inactive
            SyncInProgressError: If the connection already has a run in flight,
                in this process or in another one sharing the database
            ValueError: If the date range is inverted
        """
        connection = self._db.get_connection(user_id, connection_id)
        if connection is None or not connection.is_active:
            self._logger.run_rejected(connection_id, "not found")
            raise ConnectionNotFoundError(connection_id)
        if connection_id in self._in_flight:
            self._logger.run_rejected(connection_id, "already running")
            raise SyncInProgressError(connection_id)

        start_date, end_date = date_range or self.default_window()
        if start_date > end_date:
            raise ValueError(
                f"start_date {start_date} is after end_date {end_date}"
            )

        sync_log = self._recorder.claim(
            user_id,
            connection_id,
            sync_type,
            stale_after=timedelta(minutes=self._config.stale_sync_minutes),
        )
        if sync_log is None:
            self._logger.run_rejected(connection_id, "already running elsewhere")
            raise SyncInProgressError(connection_id)

        self._in_flight.add(connection_id)
        try:
            return await self._run(
                connection, sync_log.sync_log_id, start_date, end_date, sync_type
            )
        finally:
            self._in_flight.discard(connection_id)

    async def run_sync_all(
        self, user_id: str, sync_type: SyncType = "automatic"
    ) -> dict[str, SyncSummary]:
        """Sync every active connection of a user concurrently.

        A connection whose run cannot start gets a failed summary with no
        sync log instead of aborting the others.
        """
        connections = self._db.list_connections(user_id, active_only=True)
        results = await asyncio.gather(
            *(
                self.run_sync(user_id, c.connection_id, sync_type=sync_type)
                for c in connections
            ),
            return_exceptions=True,
        )

        summaries: dict[str, SyncSummary] = {}
        for connection, result in zip(connections, results, strict=True):
            if isinstance(result, SyncSummary):
                summaries[connection.connection_id] = result
                continue
            kind = (
                None
                if isinstance(result, ConnectionNotFoundError | SyncInProgressError)
                else classify_failure(result)
            )
            summaries[connection.connection_id] = SyncSummary(
                status="failed",
                errors=[str(result) or type(result).__name__],
                failure_kind=kind,
            )
        return summaries

    async def _call_provider(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args),
            timeout=self._config.fetch_timeout_seconds,
        )

    async def _run(
        self,
        connection: BankConnection,
        sync_log_id: str,
        start_date: date,
        end_date: date,
        sync_type: SyncType,
    ) -> SyncSummary:
        user_id = connection.user_id
        connection_id = connection.connection_id

        try:
            self._recorder.mark_running(sync_log_id)
            self._logger.run_started(
                sync_log_id, connection_id, sync_type, start_date, end_date
            )

            records = await self._call_provider(
                self._provider.fetch_transactions,
                connection.access_token,
                start_date,
                end_date,
            )
            self._logger.fetch_complete(connection_id, len(records))

            outcome, errors = await self._process(user_id, connection_id, records)

            try:
                accounts = await self._call_provider(
                    self._provider.fetch_accounts, connection.access_token
                )
                self._db.replace_connection_accounts(connection_id, accounts)
            except Exception as e:
                message = f"account refresh failed: {str(e) or type(e).__name__}"
                self._logger.accounts_refresh_failed(connection_id, message)
                errors.append(message)

            self._recorder.mark_completed(
                sync_log_id,
                added=len(outcome.added),
                updated=len(outcome.updated),
                errors=errors,
            )
        except asyncio.CancelledError:
            self._fail(sync_log_id, "sync cancelled", "unexpected")
            raise
        except Exception as e:
            kind = classify_failure(e)
            message = _failure_message(e, kind)
            self._fail(sync_log_id, message, kind)
            return SyncSummary(
                status="failed",
                errors=[message],
                sync_log_id=sync_log_id,
                failure_kind=kind,
            )

        # The log is already closed; a failed stamp must not contradict it.
        try:
            self._db.mark_connection_synced(connection_id, utcnow())
        except (SQLAlchemyError, ValueError) as e:
            self._logger.last_sync_write_failed(connection_id, str(e))

        self._logger.run_completed(
            sync_log_id, len(outcome.added), len(outcome.updated), len(errors)
        )
        return SyncSummary(
            status="completed",
            added=len(outcome.added),
            updated=len(outcome.updated),
            errors=errors,
            sync_log_id=sync_log_id,
        )

    async def _process(
        self,
        user_id: str,
        connection_id: str,
        records: list[ProviderTransaction],
    ) -> tuple[ReconcileOutcome, list[str]]:
        """Expire lapsed bonuses, then reconcile and propagate each record.

        Yields to the event loop between records.
        """
        propagator = RewardBudgetPropagator(
            self._db,
            AccountTypeResolver(self._db, sync_logger=self._logger),
            sync_logger=self._logger,
            today=self._today,
        )
        propagation_errors: list[str] = []
        try:
            propagator.expire_bonuses(user_id)
        except (SQLAlchemyError, ValueError) as e:
            self._logger.bonus_expiry_failed(user_id, str(e))
            propagation_errors.append(f"bonus expiry failed: {e}")

        results: list[RecordResult] = []
        for record in collapse_duplicates(records):
            result = self._reconciler.reconcile_record(user_id, connection_id, record)
            results.append(result)
            if isinstance(result, ReconciledRecord):
                txn = result.transaction
                try:
                    propagator.propagate(user_id, txn)
                except Exception as e:
                    message = str(e) or type(e).__name__
                    self._logger.propagation_failed(txn.transaction_id, message)
                    propagation_errors.append(
                        f"{txn.provider_transaction_id}: propagation failed: {message}"
                    )
            await asyncio.sleep(0)

        outcome = ReconcileOutcome.from_results(results)
        self._logger.reconcile_complete(
            len(outcome.added), len(outcome.updated), len(outcome.errors)
        )
        errors = [error.describe() for error in outcome.errors]
        errors.extend(propagation_errors)
        return outcome, errors

    def _fail(self, sync_log_id: str, message: str, kind: FailureKind) -> None:
        self._logger.run_failed(sync_log_id, kind, message)
        try:
            self._recorder.mark_failed(sync_log_id, message, kind)
        except (SQLAlchemyError, InvalidSyncTransitionError, LookupError) as e:
            self._logger.sync_log_write_failed(sync_log_id, str(e))
