"""Provisioning orchestration: sessions, admission, apply/destroy, rollback."""

from .admission import AdmissionGate, AdmissionTicket
from .engine import (
    InfraInfo,
    JobOutcome,
    OperationAccepted,
    ProvisioningEngine,
    build_engine,
    validate_session_id,
)
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
    SnapshotError,
    TemplateError,
    ValidationError,
)
from .job_context import JobContext, JobStatusRecord
from .persistence import JobSnapshot, SnapshotStore
from .provisioner import (
    BackendBootstrap,
    CommandResult,
    LockContention,
    Provisioner,
)
from .recovery import RecoveryManager, RecoveryReport
from .registry import SessionRegistry
from .rollback import RollbackController, RollbackOutcome
from .state_machine import InvalidStateTransition, JobStatus
from .templates import DesiredParameters, TemplateSet

__all__ = [
    'AdmissionGate',
    'AdmissionTicket',
    'ApplyTimeoutError',
    'BackendBootstrap',
    'BackendUnavailableError',
    'BusyError',
    'CommandResult',
    'ConflictError',
    'DesiredParameters',
    'DestroyTimeoutError',
    'ExecutionError',
    'InfraInfo',
    'InvalidStateTransition',
    'JobContext',
    'JobOutcome',
    'JobSnapshot',
    'JobStatus',
    'JobStatusRecord',
    'LockContention',
    'LockContentionError',
    'NotFoundError',
    'OperationAccepted',
    'Provisioner',
    'ProvisioningEngine',
    'ProvisioningError',
    'RecoveryManager',
    'RecoveryReport',
    'RollbackController',
    'RollbackOutcome',
    'SessionRegistry',
    'SnapshotError',
    'SnapshotStore',
    'TemplateError',
    'TemplateSet',
    'ValidationError',
    'build_engine',
    'validate_session_id',
]
