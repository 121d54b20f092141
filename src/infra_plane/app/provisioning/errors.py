"""Provisioning engine error hierarchy.

Every error the engine raises at its boundary derives from
``ProvisioningError`` and carries a stable ``code`` so the HTTP adapter can
map it without inspecting message text.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .provisioner import CommandResult, LockContention


class ProvisioningError(Exception):
    """Base class for engine errors."""

    code = 'PROVISIONING_ERROR'


class ValidationError(ProvisioningError, ValueError):
    """Raised when a session identifier is missing or invalid."""

    code = 'VALIDATION_ERROR'


class ConflictError(ProvisioningError):
    """Raised when a session already has an active operation."""

    code = 'CONFLICT'

    def __init__(self, session_id: str, operation: str = 'operation') -> None:
        self.session_id = session_id
        self.operation = operation
        super().__init__(
            f'{operation} already in progress for session: {session_id}'
        )


class BusyError(ProvisioningError):
    """Raised when the admission queue is full or a slot wait timed out."""

    code = 'SERVER_BUSY'

    def __init__(self, message: str = 'Server is too busy. Please try again later.') -> None:
        super().__init__(message)


class NotFoundError(ProvisioningError, LookupError):
    """Raised when an info query targets an unknown session."""

    code = 'NOT_FOUND'

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f'No infrastructure found for session: {session_id}')


class BackendUnavailableError(ProvisioningError):
    """Raised when the remote backend cannot be bootstrapped or initialized."""

    code = 'BACKEND_UNAVAILABLE'


class ExecutionError(ProvisioningError):
    """Raised when a provisioner invocation exits non-zero."""

    code = 'EXECUTION_FAILED'

    def __init__(self, message: str, *, result: CommandResult | None = None) -> None:
        self.result = result
        super().__init__(message)


class LockContentionError(ExecutionError):
    """Raised when the remote state lock is held by another holder."""

    code = 'LOCK_CONTENTION'

    def __init__(
        self,
        message: str,
        *,
        contention: LockContention,
        result: CommandResult | None = None,
    ) -> None:
        self.contention = contention
        super().__init__(message, result=result)

    @property
    def lock_id(self) -> str | None:
        return self.contention.lock_id


class ApplyTimeoutError(ProvisioningError):
    """Raised when an apply job exceeds its wall-clock ceiling."""

    code = 'TIMEOUT'

    def __init__(self, session_id: str, timeout_seconds: float) -> None:
        self.session_id = session_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f'Timeout: apply exceeded {_format_seconds(timeout_seconds)}'
        )


class DestroyTimeoutError(ProvisioningError):
    """Raised when a synchronous destroy wait exceeds its ceiling."""

    code = 'TIMEOUT'

    def __init__(self, session_id: str, timeout_seconds: float) -> None:
        self.session_id = session_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f'Delete operation exceeded {_format_seconds(timeout_seconds)}. '
            'Please check the status manually.'
        )


class TemplateError(ProvisioningError):
    """Raised when the canonical template set is incomplete."""

    code = 'TEMPLATE_ERROR'


class SnapshotError(ProvisioningError):
    """Raised when a persisted snapshot cannot be read or parsed."""

    code = 'SNAPSHOT_ERROR'


def _format_seconds(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f'{minutes} minute{"s" if minutes != 1 else ""}'
    if float(seconds).is_integer():
        return f'{int(seconds)} seconds'
    return f'{seconds} seconds'
