"""Startup recovery of persisted sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from ..observability import get_logger
from .errors import SnapshotError
from .job_context import DEFAULT_LOG_HISTORY_LIMIT, JobContext
from .persistence import SnapshotStore
from .registry import SessionRegistry
from .state_machine import ACTIVE_STATES

logger = get_logger(__name__)

RESTART_MESSAGE = (
    'Server restarted during provisioning. You can retry or destroy the resources.'
)


@dataclass
class RecoveryReport:
    recovered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    coerced: list[str] = field(default_factory=list)


class RecoveryManager:
    """Rebuilds the registry from the snapshots under the workspace root.

    Identity comes from the directory, not from the snapshot contents. Jobs
    found mid-flight can never resume (their task handles are gone), so they
    are forced to FAILED. Working directories are never deleted here.
    """

    def __init__(
        self,
        workspace_root: Path,
        registry: SessionRegistry,
        store: SnapshotStore,
        *,
        log_history_limit: int = DEFAULT_LOG_HISTORY_LIMIT,
    ) -> None:
        self.workspace_root = Path(workspace_root)
        self._registry = registry
        self._store = store
        self._log_history_limit = log_history_limit

    def recover(self) -> RecoveryReport:
        report = RecoveryReport()
        if not self.workspace_root.is_dir():
            logger.info('recovery_skipped', workspace_root=str(self.workspace_root))
            return report

        for directory in sorted(self.workspace_root.iterdir()):
            if not directory.is_dir() or not self._store.exists(directory):
                continue
            session_id = directory.name
            if session_id in self._registry:
                continue
            try:
                snapshot = self._store.load(directory)
            except SnapshotError as exc:
                logger.warning('recovery_snapshot_invalid', session_id=session_id, error=str(exc))
                report.failed.append(session_id)
                continue

            context = JobContext.from_snapshot(
                snapshot,
                session_id=session_id,
                working_directory=directory,
                log_history_limit=self._log_history_limit,
            )
            context.attach(self._store.save)
            if context.status in ACTIVE_STATES:
                context.mark_failed(RESTART_MESSAGE)
                report.coerced.append(session_id)
            self._registry.put(context)
            report.recovered.append(session_id)

        logger.info(
            'recovery_completed',
            recovered=len(report.recovered),
            coerced=len(report.coerced),
            failed=len(report.failed),
        )
        return report
