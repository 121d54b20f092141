"""Remote state-lock contention handling.

When a step fails because another holder owns the remote lock, the resolver
force-releases that exact lock once. It never retries by itself; the engine
re-runs the failed step exactly one more time.
"""

from __future__ import annotations

from ..observability import get_logger
from ..observability.metrics import LOCK_RELEASES_TOTAL
from .errors import ExecutionError, LockContentionError
from .job_context import JobContext
from .provisioner import Provisioner

logger = get_logger(__name__)


class LockContentionResolver:
    """Force-releases a contended lock identified by a ``LockContentionError``."""

    def resolve(
        self,
        context: JobContext,
        provisioner: Provisioner,
        error: LockContentionError,
    ) -> None:
        """Release the lock named in ``error``.

        Raises:
            LockContentionError: The original ``error`` if the lock id is
                unknown or the forced release fails.
        """
        lock_id = error.lock_id
        if not lock_id:
            logger.error('lock_id_unavailable', session_id=context.session_id)
            raise error

        logger.warning('lock_contention_detected', session_id=context.session_id, lock_id=lock_id)
        context.append_log('Detected state lock. Forcing unlock...')
        try:
            provisioner.force_release_lock(lock_id)
        except ExecutionError as exc:
            logger.error(
                'lock_release_failed',
                session_id=context.session_id,
                lock_id=lock_id,
                error=str(exc),
            )
            LOCK_RELEASES_TOTAL.labels(result='failed').inc()
            raise error from exc

        LOCK_RELEASES_TOTAL.labels(result='released').inc()
        logger.info('lock_released', session_id=context.session_id, lock_id=lock_id)
        context.append_log('Lock released. Retrying...')
