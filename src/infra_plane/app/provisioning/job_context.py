"""Per-session job context.

A ``JobContext`` is the single mutable record of one session's provisioning
lifecycle. Status, progress, and log history are always updated together
under one lock, so readers never observe a status without its log line.
Every update is handed to an optional listener (the snapshot store) after
the lock is released.
"""

from __future__ import annotations

import asyncio
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from .state_machine import (
    JobStatus,
    check_lifecycle_start,
    check_transition,
)

if TYPE_CHECKING:
    from .persistence import JobSnapshot
    from .templates import DesiredParameters

DEFAULT_LOG_HISTORY_LIMIT = 100
NO_SESSION_MESSAGE = 'No session found'

UpdateListener = Callable[['JobContext'], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class JobStatusRecord:
    """Status query result for one session."""

    session_id: str
    status: JobStatus
    progress_percentage: int
    last_log_message: str
    last_updated: datetime

    @classmethod
    def not_found(cls, session_id: str) -> JobStatusRecord:
        """Default record returned for an unknown session."""
        return cls(
            session_id=session_id,
            status=JobStatus.INIT,
            progress_percentage=0,
            last_log_message=NO_SESSION_MESSAGE,
            last_updated=_utcnow(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            'sessionId': self.session_id,
            'status': self.status.value,
            'progressPercentage': self.progress_percentage,
            'latestLog': self.last_log_message,
            'updateTime': self.last_updated.isoformat(),
        }


@dataclass(eq=False)
class JobContext:
    """Execution context for one session.

    ``active_task`` and ``desired_parameters`` are process-local and never
    serialized.
    """

    session_id: str
    working_directory: Path
    status: JobStatus = JobStatus.INIT
    progress_percentage: int = 0
    log_history: deque[str] = field(default_factory=deque)
    created_at: datetime = field(default_factory=_utcnow)
    last_updated: datetime = field(default_factory=_utcnow)
    log_history_limit: int = DEFAULT_LOG_HISTORY_LIMIT
    active_task: asyncio.Task | None = field(default=None, repr=False)
    desired_parameters: DesiredParameters | None = field(default=None, repr=False)
    _listener: UpdateListener | None = field(default=None, init=False, repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)

    def __post_init__(self) -> None:
        self.working_directory = Path(self.working_directory)
        self.log_history = deque(self.log_history, maxlen=self.log_history_limit)
        if not self.log_history:
            self.log_history.append('Initialized')

    # ── Listener wiring ──────────────────────────────────────────────

    def attach(self, listener: UpdateListener) -> None:
        """Persist every future update through ``listener``."""
        self._listener = listener

    def detach(self) -> None:
        """Stop persisting updates (the working directory is going away)."""
        self._listener = None

    # ── Mutations ────────────────────────────────────────────────────

    def update_status(self, status: JobStatus, progress: int, message: str) -> None:
        """Move to ``status`` and record ``message``.

        Progress never decreases within a lifecycle; a lower value keeps the
        current percentage.
        """
        with self._lock:
            check_transition(self.status, status)
            self._apply(status, max(self.progress_percentage, _clamp(progress)), message)
        self._notify()

    def append_log(self, message: str) -> None:
        """Record ``message`` without changing status or progress."""
        with self._lock:
            self._apply(self.status, self.progress_percentage, message)
        self._notify()

    def begin_lifecycle(self, status: JobStatus, message: str) -> None:
        """Start a new apply (INIT) or destroy (DESTROYING) lifecycle at 0%."""
        with self._lock:
            check_lifecycle_start(self.status, status)
            self._apply(status, 0, message)
        self._notify()

    def mark_failed(self, message: str) -> None:
        """Move to FAILED, keeping the current progress."""
        self.update_status(JobStatus.FAILED, self.progress_percentage, message)

    def _apply(self, status: JobStatus, progress: int, message: str) -> None:
        self.status = status
        self.progress_percentage = progress
        self.log_history.append(message)
        self.last_updated = _utcnow()

    def _notify(self) -> None:
        listener = self._listener
        if listener is not None:
            listener(self)

    # ── Queries ──────────────────────────────────────────────────────

    @property
    def latest_log(self) -> str:
        with self._lock:
            return self.log_history[-1] if self.log_history else ''

    @property
    def is_busy(self) -> bool:
        task = self.active_task
        return task is not None and not task.done()

    def logs(self) -> list[str]:
        with self._lock:
            return list(self.log_history)

    def status_record(self) -> JobStatusRecord:
        with self._lock:
            return JobStatusRecord(
                session_id=self.session_id,
                status=self.status,
                progress_percentage=self.progress_percentage,
                last_log_message=self.log_history[-1] if self.log_history else '',
                last_updated=self.last_updated,
            )

    # ── Snapshots ────────────────────────────────────────────────────

    def to_snapshot(self) -> JobSnapshot:
        from .persistence import JobSnapshot

        with self._lock:
            return JobSnapshot(
                session_id=self.session_id,
                working_directory=str(self.working_directory),
                status=self.status,
                progress_percentage=self.progress_percentage,
                latest_log=self.log_history[-1] if self.log_history else '',
                logs=list(self.log_history),
                created_at=self.created_at,
                last_updated=self.last_updated,
            )

    @classmethod
    def from_snapshot(
        cls,
        snapshot: JobSnapshot,
        *,
        session_id: str,
        working_directory: Path,
        log_history_limit: int = DEFAULT_LOG_HISTORY_LIMIT,
    ) -> JobContext:
        """Rebuild a context, trusting the directory over the snapshot for identity."""
        logs = list(snapshot.logs) or [snapshot.latest_log or 'Initialized']
        return cls(
            session_id=session_id,
            working_directory=working_directory,
            status=snapshot.status,
            progress_percentage=_clamp(snapshot.progress_percentage),
            log_history=deque(logs),
            created_at=snapshot.created_at or _utcnow(),
            last_updated=snapshot.last_updated or _utcnow(),
            log_history_limit=log_history_limit,
        )


def _clamp(progress: int) -> int:
    return max(0, min(100, int(progress)))
