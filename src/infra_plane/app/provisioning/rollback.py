"""Automatic rollback of a failed or timed-out apply.

Rollback mirrors the destroy sequence but tolerates every intermediate
failure, recording it in the job log instead. It runs on its own executor so
it is never stuck behind queued apply work, and the job always ends FAILED:
the log says whether cleanup fully succeeded, stopped at destroy, or crashed.
"""

from __future__ import annotations

import asyncio
import shutil
from concurrent.futures import ThreadPoolExecutor
from enum import Enum

from ..observability import bind_job_context, get_logger, in_current_context
from ..observability.metrics import ROLLBACKS_TOTAL
from .errors import ExecutionError
from .job_context import JobContext
from .provisioner import ProvisionerFactory
from .registry import SessionRegistry
from .state_machine import (
    COMPLETE_PROGRESS,
    DESTROY_CLEANUP_PROGRESS,
    DESTROY_RUN_PROGRESS,
    JobStatus,
)

logger = get_logger(__name__)

ROLLBACK_STARTED_MESSAGE = 'Auto-rollback: Cleaning up partial resources...'
ROLLBACK_DESTROY_MESSAGE = 'Auto-rollback: Running terraform destroy...'
ROLLBACK_CLEANUP_MESSAGE = 'Auto-rollback: Cleaning up workspace...'
ROLLBACK_SUCCEEDED_MESSAGE = (
    'Provisioning failed. All resources have been rolled back successfully.'
)


class RollbackOutcome(str, Enum):
    SUCCEEDED = 'SUCCEEDED'
    PARTIAL = 'PARTIAL'
    ERRORED = 'ERRORED'


class RollbackController:
    """Schedules and runs rollbacks; never awaited by the job that failed."""

    def __init__(
        self,
        registry: SessionRegistry,
        provisioner_factory: ProvisionerFactory,
        *,
        workers: int = 1,
    ) -> None:
        self._registry = registry
        self._provisioner_factory = provisioner_factory
        self._executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix='rollback'
        )

    def schedule(self, context: JobContext) -> asyncio.Task:
        """Start a rollback for ``context`` and make it the session's active task."""
        loop = asyncio.get_running_loop()
        with bind_job_context(context.session_id, 'rollback'):
            task = loop.create_task(
                self._run_async(context), name=f'rollback:{context.session_id}'
            )
            logger.warning('rollback_scheduled')
        context.active_task = task
        return task

    async def _run_async(self, context: JobContext) -> RollbackOutcome:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, in_current_context(self.run, context))

    def run(self, context: JobContext) -> RollbackOutcome:
        """Run the rollback sequence synchronously on the calling thread."""
        outcome = self._rollback(context)
        ROLLBACKS_TOTAL.labels(outcome=outcome.value).inc()
        return outcome

    def _rollback(self, context: JobContext) -> RollbackOutcome:
        session_id = context.session_id
        try:
            context.begin_lifecycle(JobStatus.DESTROYING, ROLLBACK_STARTED_MESSAGE)
            provisioner = self._provisioner_factory(context.working_directory)

            try:
                provisioner.select_namespace(session_id)
            except ExecutionError as exc:
                logger.warning('rollback_select_failed', session_id=session_id, error=str(exc))

            context.update_status(JobStatus.DESTROYING, DESTROY_RUN_PROGRESS, ROLLBACK_DESTROY_MESSAGE)
            try:
                provisioner.destroy()
            except ExecutionError as exc:
                logger.error('rollback_destroy_failed', session_id=session_id, error=str(exc))
                context.mark_failed(
                    f'Auto-rollback failed: {exc} (Manual cleanup may be required)'
                )
                return RollbackOutcome.PARTIAL

            context.update_status(
                JobStatus.DESTROYING, DESTROY_CLEANUP_PROGRESS, ROLLBACK_CLEANUP_MESSAGE
            )
            try:
                provisioner.delete_namespace(session_id)
            except ExecutionError as exc:
                logger.warning('rollback_namespace_cleanup_failed', session_id=session_id, error=str(exc))

            context.detach()
            shutil.rmtree(context.working_directory, ignore_errors=True)
            self._registry.remove(session_id, expected=context)

            context.update_status(JobStatus.FAILED, COMPLETE_PROGRESS, ROLLBACK_SUCCEEDED_MESSAGE)
            logger.info('rollback_completed', session_id=session_id)
            return RollbackOutcome.SUCCEEDED
        except Exception as exc:
            logger.exception('rollback_critical_error', session_id=session_id)
            context.mark_failed(
                f'Auto-rollback critical error: {exc} (URGENT: Manual cleanup required!)'
            )
            return RollbackOutcome.ERRORED

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
