from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Literal

from spendsync.adapters.db.facade import DB
from spendsync.adapters.db.models import SyncLog

SyncType = Literal["manual", "automatic", "initial"]
FailureKind = Literal["timeout", "provider", "store", "unexpected"]


class SyncLogStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[SyncLogStatus, frozenset[SyncLogStatus]] = {
    SyncLogStatus.PENDING: frozenset({SyncLogStatus.RUNNING, SyncLogStatus.FAILED}),
    SyncLogStatus.RUNNING: frozenset(
        {SyncLogStatus.COMPLETED, SyncLogStatus.FAILED}
    ),
    SyncLogStatus.COMPLETED: frozenset(),
    SyncLogStatus.FAILED: frozenset(),
}


class InvalidSyncTransitionError(Exception):
    """Raised when a sync log is moved along an edge that does not exist."""

    def __init__(self, sync_log_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Sync log {sync_log_id} cannot move from {current} to {target}"
        )
        self.sync_log_id = sync_log_id
        self.current = current
        self.target = target


def utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class SyncLogRecorder:
    """Creates sync-run records and advances their lifecycle.

    pending -> running -> completed | failed, plus pending -> failed for runs
    that die before they start working. Completed and failed are terminal.
    """

    def __init__(self, db: DB, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._db = db
        self._clock = clock

    def open(self, user_id: str, connection_id: str, sync_type: SyncType) -> SyncLog:
        return self._db.insert_sync_log(
            user_id=user_id,
            connection_id=connection_id,
            sync_type=sync_type,
            started_at=self._clock(),
        )

    def claim(
        self,
        user_id: str,
        connection_id: str,
        sync_type: SyncType,
        *,
        stale_after: timedelta,
    ) -> SyncLog | None:
        """Open a log only if no other live run holds the connection.

        The check lives in the store so separate processes see each other.
        Live runs older than ``stale_after`` are closed as failed first.
        """
        now = self._clock()
        return self._db.claim_sync_log(
            user_id=user_id,
            connection_id=connection_id,
            sync_type=sync_type,
            started_at=now,
            stale_before=now - stale_after,
        )

    def _transition(
        self, sync_log_id: str, target: SyncLogStatus, **values: object
    ) -> SyncLog:
        current = self._db.get_sync_log(sync_log_id)
        if current is None:
            raise LookupError(f"Sync log {sync_log_id} not found")
        if target not in ALLOWED_TRANSITIONS[SyncLogStatus(current.status)]:
            raise InvalidSyncTransitionError(sync_log_id, current.status, target.value)
        return self._db.update_sync_log(sync_log_id, status=target.value, **values)

    def mark_running(self, sync_log_id: str) -> SyncLog:
        return self._transition(sync_log_id, SyncLogStatus.RUNNING)

    def mark_completed(
        self,
        sync_log_id: str,
        *,
        added: int,
        updated: int,
        errors: list[str],
    ) -> SyncLog:
        return self._transition(
            sync_log_id,
            SyncLogStatus.COMPLETED,
            completed_at=self._clock(),
            transactions_added=added,
            transactions_updated=updated,
            errors=list(errors),
        )

    def mark_failed(
        self, sync_log_id: str, message: str, failure_kind: FailureKind
    ) -> SyncLog:
        """Terminate a run as failed; counters stay at zero."""
        return self._transition(
            sync_log_id,
            SyncLogStatus.FAILED,
            completed_at=self._clock(),
            errors=[message],
            failure_kind=failure_kind,
        )

    def recent(self, user_id: str, limit: int = 20) -> list[SyncLog]:
        return self._db.list_sync_logs(user_id, limit=limit)
