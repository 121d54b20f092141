"""Provisioning engine.

Owns the apply and destroy state machines for every session. Callers get an
immediate accept/reject answer; the work itself runs as one asyncio task per
job, with every blocking provisioner call pushed onto a dedicated thread
pool sized to the admission limit.

Apply flow (checkpoints in parentheses)::

    backend (5) -> templates (10) -> variables (15) -> init (20)
      -> namespace (25) -> plan (40) -> apply (60) -> outputs -> COMPLETE (100)

Destroy flow::

    select namespace (10) -> destroy (30, retry 40) -> cleanup (80)
      -> COMPLETE (100) -> registry + working directory removed

An apply that fails after ``init`` succeeded, or that outlives
``apply_timeout_seconds``, is handed to the ``RollbackController``.
"""

from __future__ import annotations

import asyncio
import functools
import re
import shutil
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Coroutine, TypeVar

from ..observability import bind_job_context, get_logger, in_current_context
from ..observability.metrics import PROVISION_JOB_DURATION_SECONDS, PROVISION_JOBS_TOTAL
from ..settings import EngineSettings
from .admission import AdmissionGate, AdmissionTicket
from .errors import (
    ApplyTimeoutError,
    BackendUnavailableError,
    BusyError,
    ConflictError,
    DestroyTimeoutError,
    ExecutionError,
    LockContentionError,
    NotFoundError,
    ProvisioningError,
    ValidationError,
)
from .job_context import JobContext, JobStatusRecord
from .lock_resolver import LockContentionResolver
from .persistence import SnapshotStore
from .provisioner import BackendBootstrap, Provisioner, ProvisionerFactory
from .recovery import RecoveryManager, RecoveryReport
from .registry import SessionRegistry
from .rollback import RollbackController
from .state_machine import (
    APPLY_APPLY_PROGRESS,
    APPLY_BACKEND_PROGRESS,
    APPLY_INIT_PROGRESS,
    APPLY_NAMESPACE_PROGRESS,
    APPLY_PLAN_PROGRESS,
    APPLY_TEMPLATES_PROGRESS,
    APPLY_VARIABLES_PROGRESS,
    COMPLETE_PROGRESS,
    DESTROY_CLEANUP_PROGRESS,
    DESTROY_RETRY_PROGRESS,
    DESTROY_RUN_PROGRESS,
    DESTROY_SELECT_PROGRESS,
    JobStatus,
)
from .templates import DesiredParameters, TemplateSet, write_variables

logger = get_logger(__name__)

T = TypeVar('T')

# Namespace names double as directory names.
SESSION_ID_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$')

APPLY_COMPLETE_MESSAGE = 'Infrastructure provisioning completed!'
DESTROY_COMPLETE_MESSAGE = 'Infrastructure destroyed successfully'


def validate_session_id(session_id: str | None) -> str:
    """Return ``session_id`` stripped, or raise ``ValidationError``."""
    if session_id is None or not str(session_id).strip():
        raise ValidationError('Session ID is required')
    session_id = str(session_id).strip()
    if not SESSION_ID_PATTERN.match(session_id):
        raise ValidationError(
            f'Invalid session ID {session_id!r}: use letters, digits, "-" or "_"'
        )
    return session_id


# ── Result types ─────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class JobOutcome:
    """What an apply or destroy task resolved to."""

    session_id: str
    operation: str
    status: JobStatus
    outputs: dict[str, Any] = field(default_factory=dict)
    error: ProvisioningError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class OperationAccepted:
    """Synchronous acknowledgment of an admitted or queued operation."""

    session_id: str
    operation: str
    queue_position: int
    record: JobStatusRecord
    task: asyncio.Task = field(repr=False, compare=False)

    @property
    def queued(self) -> bool:
        return self.queue_position > 0


@dataclass(frozen=True, slots=True)
class InfraInfo:
    session_id: str
    status: JobStatus
    outputs: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            'sessionId': self.session_id,
            'status': self.status.value,
            'outputs': self.outputs,
            'message': 'Infrastructure information retrieved',
        }


@dataclass
class _ApplyProgress:
    initialized: bool = False


# ── Step helpers (run on worker threads) ─────────────────────────────


def ensure_namespace(provisioner: Provisioner, namespace: str) -> None:
    """Create or select ``namespace`` and verify it is the active one."""
    if namespace in provisioner.list_namespaces():
        logger.info('namespace_selected', namespace=namespace)
        provisioner.select_namespace(namespace)
    else:
        logger.info('namespace_created', namespace=namespace)
        provisioner.create_namespace(namespace)

    current = provisioner.current_namespace()
    if current != namespace:
        raise ExecutionError(
            f"Failed to switch to workspace '{namespace}'. Current workspace: '{current}'"
        )


def read_outputs(provisioner: Provisioner) -> dict[str, Any]:
    """Fetch output values; any failure yields an empty mapping."""
    try:
        return provisioner.outputs()
    except ExecutionError as exc:
        logger.error('outputs_unavailable', error=str(exc))
        return {}


class ProvisioningEngine:
    """Apply/destroy orchestration over an injected registry and gate."""

    def __init__(
        self,
        settings: EngineSettings,
        registry: SessionRegistry,
        store: SnapshotStore,
        gate: AdmissionGate,
        provisioner_factory: ProvisionerFactory,
        bootstrap: BackendBootstrap,
        templates: TemplateSet,
        *,
        resolver: LockContentionResolver | None = None,
        rollback: RollbackController | None = None,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._store = store
        self._gate = gate
        self._provisioner_factory = provisioner_factory
        self._bootstrap = bootstrap
        self._templates = templates
        self._resolver = resolver or LockContentionResolver()
        self._rollback = rollback or RollbackController(
            registry, provisioner_factory, workers=settings.rollback_workers
        )
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent_operations,
            thread_name_prefix='provisioner',
        )
        self._tasks: set[asyncio.Task] = set()

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def gate(self) -> AdmissionGate:
        return self._gate

    # ── Apply ────────────────────────────────────────────────────────

    async def apply(
        self,
        session_id: str,
        params: DesiredParameters | None = None,
    ) -> OperationAccepted:
        """Admit (or queue) an apply job and return without waiting for it.

        Raises:
            ValidationError: If ``session_id`` is missing or malformed.
            ConflictError: If the session already has an active operation.
            BusyError: If the admission queue is full.
        """
        session_id = validate_session_id(session_id)
        params = params or DesiredParameters()

        existing = self._registry.get(session_id)
        if existing is not None and existing.is_busy:
            logger.warning('apply_conflict', session_id=session_id)
            raise ConflictError(session_id, 'Provisioning')

        ticket = self._gate.reserve(session_id)
        try:
            context = existing
            if context is None:
                context = self._registry.get_or_create(
                    session_id, functools.partial(self._new_context, session_id)
                )
            context.working_directory.mkdir(parents=True, exist_ok=True)
            context.desired_parameters = params
            context.begin_lifecycle(
                JobStatus.INIT,
                self._admission_message(ticket, 'Initializing Terraform...'),
            )
        except BaseException:
            self._gate.cancel(ticket)
            raise

        task = self._start(context, self._run_apply(context, ticket, params), 'apply')
        logger.info('apply_accepted', session_id=session_id, queue_position=ticket.position)
        return OperationAccepted(
            session_id=session_id,
            operation='apply',
            queue_position=ticket.position,
            record=context.status_record(),
            task=task,
        )

    async def _run_apply(
        self,
        context: JobContext,
        ticket: AdmissionTicket,
        params: DesiredParameters,
    ) -> JobOutcome:
        session_id = context.session_id
        timeout = self._settings.apply_timeout_seconds
        provisioner = self._provisioner_factory(context.working_directory)
        progress = _ApplyProgress()

        try:
            outputs = await asyncio.wait_for(
                self._apply_steps(context, ticket, provisioner, params, progress),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            error = ApplyTimeoutError(session_id, timeout)
            logger.error('apply_timeout', session_id=session_id, timeout=timeout)
            context.mark_failed(str(error))
            await self._terminate(provisioner)
            self._schedule_rollback(context)
            return self._failed(context, 'apply', error)
        except BusyError as exc:
            logger.error('apply_not_admitted', session_id=session_id, error=str(exc))
            context.mark_failed(str(exc))
            return self._failed(context, 'apply', exc)
        except ProvisioningError as exc:
            logger.error('apply_failed', session_id=session_id, code=exc.code, error=str(exc))
            context.mark_failed(f'Error: {exc}')
            if progress.initialized:
                self._schedule_rollback(context)
            return self._failed(context, 'apply', exc)
        except Exception as exc:
            logger.exception('apply_unexpected_error', session_id=session_id)
            context.mark_failed(f'Error: {exc}')
            if progress.initialized:
                self._schedule_rollback(context)
            return self._failed(context, 'apply', ExecutionError(str(exc)))

        logger.info('apply_completed', session_id=session_id, outputs=sorted(outputs))
        return JobOutcome(session_id, 'apply', JobStatus.COMPLETE, outputs=outputs)

    async def _apply_steps(
        self,
        context: JobContext,
        ticket: AdmissionTicket,
        provisioner: Provisioner,
        params: DesiredParameters,
        progress: _ApplyProgress,
    ) -> dict[str, Any]:
        session_id = context.session_id
        workdir = context.working_directory

        async with self._gate.hold(ticket):
            context.update_status(JobStatus.INIT, 0, 'Starting Terraform execution...')

            context.update_status(
                JobStatus.INIT, APPLY_BACKEND_PROGRESS,
                'Ensuring Terraform backend resources exist...',
            )
            await self._call(self._ensure_backend)

            context.update_status(JobStatus.INIT, APPLY_TEMPLATES_PROGRESS, 'Copying terraform files...')
            await self._call(self._templates.materialize, workdir)

            context.update_status(JobStatus.INIT, APPLY_VARIABLES_PROGRESS, 'Creating terraform.tfvars...')
            await self._call(write_variables, workdir, session_id, params)

            context.update_status(JobStatus.INIT, APPLY_INIT_PROGRESS, 'Running terraform init...')
            await self._call(self._initialize, provisioner)
            progress.initialized = True

            context.update_status(
                JobStatus.INIT, APPLY_NAMESPACE_PROGRESS, 'Setting up terraform workspace...'
            )
            await self._call(ensure_namespace, provisioner, session_id)

            context.update_status(JobStatus.PLANNING, APPLY_PLAN_PROGRESS, 'Running terraform plan...')
            plan = await self._call(self._with_lock_retry, context, provisioner, provisioner.plan)

            context.update_status(JobStatus.APPLYING, APPLY_APPLY_PROGRESS, 'Running terraform apply...')
            await self._call(self._with_lock_retry, context, provisioner, provisioner.apply, plan)

            outputs = await self._call(read_outputs, provisioner)
            context.update_status(JobStatus.COMPLETE, COMPLETE_PROGRESS, APPLY_COMPLETE_MESSAGE)
            return outputs

    def _ensure_backend(self) -> None:
        try:
            self._bootstrap.ensure_remote_store_exists()
        except BackendUnavailableError:
            raise
        except (ExecutionError, OSError) as exc:
            raise BackendUnavailableError(f'Backend bootstrap failed: {exc}') from exc

    def _initialize(self, provisioner: Provisioner) -> None:
        try:
            provisioner.init()
        except ExecutionError as exc:
            raise BackendUnavailableError(f'Terraform init failed: {exc}') from exc

    # ── Destroy ──────────────────────────────────────────────────────

    async def destroy(self, session_id: str) -> OperationAccepted:
        """Admit (or queue) a destroy job.

        A session with no in-memory context is rebuilt around
        ``<workspace_root>/<session_id>`` so remote resources can still be
        removed after a lost registry.

        Raises:
            ValidationError: If ``session_id`` is missing or malformed.
            ConflictError: If the session already has an active operation.
            BusyError: If the admission queue is full.
        """
        session_id = validate_session_id(session_id)

        context = self._registry.get(session_id)
        if context is not None and context.is_busy:
            logger.warning('destroy_conflict', session_id=session_id)
            raise ConflictError(session_id, 'Destroy')

        ticket = self._gate.reserve(session_id)
        message = self._admission_message(ticket, 'Starting terraform destroy...')
        try:
            if context is None:
                context = self._reconstruct(session_id)
                context.append_log(message)
            else:
                context.begin_lifecycle(JobStatus.DESTROYING, message)
        except BaseException:
            self._gate.cancel(ticket)
            raise

        task = self._start(context, self._run_destroy(context, ticket), 'destroy')
        logger.info('destroy_accepted', session_id=session_id, queue_position=ticket.position)
        return OperationAccepted(
            session_id=session_id,
            operation='destroy',
            queue_position=ticket.position,
            record=context.status_record(),
            task=task,
        )

    async def destroy_and_wait(
        self,
        session_id: str,
        timeout: float | None = None,
    ) -> JobOutcome:
        """Destroy and wait for the result, up to ``timeout`` seconds.

        Raises:
            DestroyTimeoutError: If the wait exceeds the ceiling. The destroy
                itself keeps running.
            ProvisioningError: The destroy's own failure.
        """
        if timeout is None:
            timeout = self._settings.destroy_wait_timeout_seconds
        accepted = await self.destroy(session_id)
        try:
            outcome = await asyncio.wait_for(asyncio.shield(accepted.task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error('destroy_wait_timeout', session_id=accepted.session_id, timeout=timeout)
            raise DestroyTimeoutError(accepted.session_id, timeout) from None
        if outcome.error is not None:
            raise outcome.error
        return outcome

    def _reconstruct(self, session_id: str) -> JobContext:
        working_directory = self._workspace_dir(session_id)
        existed = working_directory.is_dir()
        working_directory.mkdir(parents=True, exist_ok=True)
        context = self._registry.get_or_create(
            session_id, functools.partial(self._new_context, session_id)
        )
        logger.warning('destroy_context_reconstructed', session_id=session_id, existed=existed)
        context.begin_lifecycle(
            JobStatus.DESTROYING,
            'Recovered session for destruction'
            if existed
            else 'Created workspace to destroy remote resources',
        )
        return context

    async def _run_destroy(self, context: JobContext, ticket: AdmissionTicket) -> JobOutcome:
        session_id = context.session_id
        provisioner = self._provisioner_factory(context.working_directory)
        try:
            async with self._gate.hold(ticket):
                context.update_status(JobStatus.DESTROYING, 0, 'Destroying infrastructure...')
                await self._call(self._destroy_steps, context, provisioner)
        except BusyError as exc:
            logger.error('destroy_not_admitted', session_id=session_id, error=str(exc))
            context.mark_failed(str(exc))
            return self._failed(context, 'destroy', exc)
        except ProvisioningError as exc:
            logger.error('destroy_failed', session_id=session_id, code=exc.code, error=str(exc))
            context.mark_failed(f'Destroy failed: {exc}')
            return self._failed(context, 'destroy', exc)
        except Exception as exc:
            logger.exception('destroy_unexpected_error', session_id=session_id)
            context.mark_failed(f'Destroy failed: {exc}')
            return self._failed(context, 'destroy', ExecutionError(str(exc)))

        logger.info('destroy_completed', session_id=session_id)
        return JobOutcome(session_id, 'destroy', JobStatus.COMPLETE)

    def _destroy_steps(self, context: JobContext, provisioner: Provisioner) -> None:
        session_id = context.session_id

        context.update_status(JobStatus.DESTROYING, DESTROY_SELECT_PROGRESS, 'Selecting workspace...')
        try:
            provisioner.select_namespace(session_id)
        except ExecutionError as exc:
            logger.warning('destroy_select_failed', session_id=session_id, error=str(exc))

        context.update_status(JobStatus.DESTROYING, DESTROY_RUN_PROGRESS, 'Running terraform destroy...')
        self._with_lock_retry(
            context,
            provisioner,
            provisioner.destroy,
            on_retry=lambda: context.update_status(
                JobStatus.DESTROYING, DESTROY_RETRY_PROGRESS, 'Retrying terraform destroy...'
            ),
        )

        context.update_status(JobStatus.DESTROYING, DESTROY_CLEANUP_PROGRESS, 'Cleaning up workspace...')
        try:
            provisioner.delete_namespace(session_id)
        except ExecutionError as exc:
            logger.warning('destroy_namespace_cleanup_failed', session_id=session_id, error=str(exc))

        context.update_status(JobStatus.COMPLETE, COMPLETE_PROGRESS, DESTROY_COMPLETE_MESSAGE)

        self._registry.remove(session_id, expected=context)
        context.detach()
        try:
            shutil.rmtree(context.working_directory)
        except OSError as exc:
            logger.warning(
                'destroy_workdir_cleanup_failed',
                session_id=session_id,
                path=str(context.working_directory),
                error=str(exc),
            )

    # ── Lock retry ───────────────────────────────────────────────────

    def _with_lock_retry(
        self,
        context: JobContext,
        provisioner: Provisioner,
        step: Callable[..., T],
        *args: Any,
        on_retry: Callable[[], None] | None = None,
    ) -> T:
        """Run ``step``; on lock contention release the lock and retry once."""
        try:
            return step(*args)
        except LockContentionError as exc:
            self._resolver.resolve(context, provisioner, exc)

        if on_retry is not None:
            on_retry()
        try:
            return step(*args)
        except LockContentionError as exc:
            logger.error('lock_contention_persisted', session_id=context.session_id)
            raise ExecutionError(
                f'State lock still held after forced release: {exc}', result=exc.result
            ) from exc

    # ── Queries ──────────────────────────────────────────────────────

    def get_status(self, session_id: str) -> JobStatusRecord:
        context = self._registry.get(session_id)
        if context is None:
            return JobStatusRecord.not_found(session_id)
        return context.status_record()

    def list_statuses(self) -> list[JobStatusRecord]:
        return [context.status_record() for context in self._registry.list()]

    def get_context(self, session_id: str) -> JobContext | None:
        return self._registry.get(session_id)

    async def get_infrastructure_info(self, session_id: str) -> InfraInfo:
        """Return the session's status and live output values.

        Raises:
            NotFoundError: If the session is unknown.
        """
        context = self._require(session_id)
        provisioner = self._provisioner_factory(context.working_directory)
        outputs = await asyncio.to_thread(read_outputs, provisioner)
        return InfraInfo(session_id=session_id, status=context.status, outputs=outputs)

    async def get_graph(self, session_id: str) -> str:
        """Return the resource graph (DOT) for a session.

        Raises:
            NotFoundError: If the session is unknown.
            ExecutionError: If the graph cannot be produced.
        """
        context = self._require(session_id)
        provisioner = self._provisioner_factory(context.working_directory)
        return await asyncio.to_thread(provisioner.graph)

    def resource_status(self) -> dict[str, Any]:
        status: dict[str, Any] = self._gate.stats().to_dict()
        status['activeSessions'] = [
            {
                'sessionId': context.session_id,
                'status': context.status.value,
                'progress': context.progress_percentage,
            }
            for context in self._registry.list()
            if context.is_busy
        ]
        return status

    # ── Lifecycle ────────────────────────────────────────────────────

    def recover(self) -> RecoveryReport:
        manager = RecoveryManager(
            self._settings.workspace_root,
            self._registry,
            self._store,
            log_history_limit=self._settings.log_history_limit,
        )
        return manager.recover()

    async def shutdown(self, timeout: float | None = None) -> None:
        """Persist every session, wait for in-flight jobs, then stop workers."""
        if timeout is None:
            timeout = self._settings.shutdown_timeout_seconds
        contexts = self._registry.list()
        logger.info('shutdown_started', sessions=len(contexts), pending=len(self._tasks))
        for context in contexts:
            self._store.save(context)

        pending = [task for task in self._tasks if not task.done()]
        if pending:
            _, not_done = await asyncio.wait(pending, timeout=timeout)
            if not_done:
                logger.warning(
                    'shutdown_tasks_pending',
                    tasks=sorted(task.get_name() for task in not_done),
                )
        self.close()
        logger.info('shutdown_completed', sessions=len(contexts))

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._rollback.close()

    # ── Internals ────────────────────────────────────────────────────

    def _workspace_dir(self, session_id: str) -> Path:
        return Path(self._settings.workspace_root) / session_id

    def _new_context(self, session_id: str) -> JobContext:
        context = JobContext(
            session_id=session_id,
            working_directory=self._workspace_dir(session_id),
            log_history_limit=self._settings.log_history_limit,
        )
        context.attach(self._store.save)
        return context

    def _require(self, session_id: str) -> JobContext:
        context = self._registry.get(session_id)
        if context is None:
            raise NotFoundError(session_id)
        return context

    def _admission_message(self, ticket: AdmissionTicket, ready: str) -> str:
        if ticket.queued:
            return f'Waiting in queue... (position {ticket.position}/{self._gate.max_queue})'
        return ready

    def _start(
        self,
        context: JobContext,
        coro: Coroutine[Any, Any, JobOutcome],
        operation: str,
    ) -> asyncio.Task:
        with bind_job_context(context.session_id, operation):
            task = asyncio.get_running_loop().create_task(
                coro, name=f'{operation}:{context.session_id}'
            )
        context.active_task = task
        self._track(task)
        task.add_done_callback(functools.partial(_record_job, operation, time.monotonic()))
        return task

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _schedule_rollback(self, context: JobContext) -> None:
        self._track(self._rollback.schedule(context))

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, in_current_context(fn, *args))
        except TimeoutError as exc:
            # A step's own TimeoutError must not read as the job ceiling.
            raise ExecutionError(str(exc) or 'provisioning step timed out') from exc

    async def _terminate(self, provisioner: Provisioner) -> None:
        try:
            await asyncio.to_thread(provisioner.terminate)
        except Exception:
            logger.exception('provisioner_terminate_failed')

    @staticmethod
    def _failed(context: JobContext, operation: str, error: ProvisioningError) -> JobOutcome:
        return JobOutcome(context.session_id, operation, JobStatus.FAILED, error=error)


def build_engine(
    settings: EngineSettings,
    *,
    provisioner_factory: ProvisionerFactory | None = None,
    bootstrap: BackendBootstrap | None = None,
    registry: SessionRegistry | None = None,
) -> ProvisioningEngine:
    """Wire a ``ProvisioningEngine`` from settings.

    Without overrides the engine drives the real Terraform binary and runs
    the configured backend bootstrap script.
    """
    from .terraform import ScriptBackendBootstrap, TerraformProvisioner

    if provisioner_factory is None:
        provisioner_factory = functools.partial(
            TerraformProvisioner, binary=settings.provisioner_binary
        )
    if bootstrap is None:
        bootstrap = ScriptBackendBootstrap(settings.backend_bootstrap_script)

    if registry is None:
        registry = SessionRegistry()
    return ProvisioningEngine(
        settings,
        registry,
        SnapshotStore(settings.snapshot_filename),
        AdmissionGate(
            max_concurrent=settings.max_concurrent_operations,
            max_queue=settings.max_queue_size,
            acquire_timeout=settings.admission_timeout_seconds,
        ),
        provisioner_factory,
        bootstrap,
        TemplateSet(settings.template_dir, settings.required_template_files),
    )


def _record_job(operation: str, started: float, task: asyncio.Task) -> None:
    PROVISION_JOB_DURATION_SECONDS.labels(operation=operation).observe(time.monotonic() - started)
    if task.cancelled():
        outcome = 'CANCELLED'
    elif task.exception() is not None:
        outcome = 'ERROR'
    else:
        outcome = task.result().status.value
    PROVISION_JOBS_TOTAL.labels(operation=operation, outcome=outcome).inc()
