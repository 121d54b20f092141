"""Per-session snapshot persistence.

One JSON snapshot per session lives inside the session's working directory
(``.progress.json`` by default). Writes go to a temp file in the same
directory followed by ``os.replace`` so a crash mid-write never leaves a
truncated snapshot behind. Saving is best-effort: failures are logged and
never propagate into the job.
"""

from __future__ import annotations

import os
import tempfile
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..observability import get_logger
from .errors import SnapshotError
from .job_context import JobContext
from .state_machine import JobStatus

logger = get_logger(__name__)

DEFAULT_SNAPSHOT_FILENAME = '.progress.json'


class JobSnapshot(BaseModel):
    """Serialized job context (task handle and raw parameters excluded)."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias='sessionId')
    working_directory: str = Field(alias='workingDirectory')
    status: JobStatus
    progress_percentage: int = Field(default=0, alias='progressPercentage', ge=0, le=100)
    latest_log: str = Field(default='', alias='latestLog')
    logs: list[str] = Field(default_factory=list)
    created_at: datetime | None = Field(default=None, alias='createdAt')
    last_updated: datetime | None = Field(default=None, alias='lastUpdated')


class SnapshotStore:
    """Reads and writes job snapshots next to each working directory."""

    def __init__(self, filename: str = DEFAULT_SNAPSHOT_FILENAME) -> None:
        self.filename = filename

    def path_for(self, working_directory: Path) -> Path:
        return Path(working_directory) / self.filename

    def exists(self, working_directory: Path) -> bool:
        return self.path_for(working_directory).is_file()

    def save(self, context: JobContext) -> None:
        """Write ``context`` atomically. Never raises."""
        target = self.path_for(context.working_directory)
        try:
            payload = context.to_snapshot().model_dump_json(by_alias=True, indent=2)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f'{self.filename}.', suffix='.tmp', dir=target.parent,
            )
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as fh:
                    fh.write(payload)
                os.replace(tmp_name, target)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            logger.warning(
                'snapshot_save_failed',
                session_id=context.session_id,
                path=str(target),
                error=str(exc),
            )
            return
        logger.debug('snapshot_saved', session_id=context.session_id)

    def load(self, working_directory: Path) -> JobSnapshot:
        """Read the snapshot stored in ``working_directory``.

        Raises:
            SnapshotError: If the file is missing, unreadable, or invalid.
        """
        path = self.path_for(working_directory)
        try:
            raw = path.read_bytes()
        except OSError as exc:
            raise SnapshotError(f'cannot read snapshot {path}: {exc}') from exc
        # Bytes go straight to pydantic so bad UTF-8 surfaces as a ValidationError.
        try:
            return JobSnapshot.model_validate_json(raw)
        except (PydanticValidationError, UnicodeDecodeError) as exc:
            raise SnapshotError(f'invalid snapshot {path}: {exc}') from exc

    def delete(self, working_directory: Path) -> None:
        self.path_for(working_directory).unlink(missing_ok=True)
