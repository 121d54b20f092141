"""Provisioning job status state-machine.

Implements the shared apply/destroy flow:
  INIT -> PLANNING -> APPLYING -> COMPLETE     (apply)
  DESTROYING -> COMPLETE                       (destroy)

And deterministic error transitions:
  any active state -> FAILED
  FAILED -> DESTROYING -> FAILED               (rollback)

COMPLETE and FAILED end a lifecycle; a new lifecycle starts at INIT (apply)
or DESTROYING (destroy).
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType


class JobStatus(str, Enum):
    INIT = 'INIT'
    PLANNING = 'PLANNING'
    APPLYING = 'APPLYING'
    COMPLETE = 'COMPLETE'
    FAILED = 'FAILED'
    DESTROYING = 'DESTROYING'

    def __str__(self) -> str:
        return self.value


TERMINAL_STATES = frozenset({JobStatus.COMPLETE, JobStatus.FAILED})
ACTIVE_STATES = frozenset(
    {
        JobStatus.INIT,
        JobStatus.PLANNING,
        JobStatus.APPLYING,
        JobStatus.DESTROYING,
    }
)

# Self-transitions carry log-only updates (queue position, lock handling).
ALLOWED_TRANSITIONS = MappingProxyType(
    {
        JobStatus.INIT: frozenset(
            {JobStatus.INIT, JobStatus.PLANNING, JobStatus.DESTROYING, JobStatus.FAILED}
        ),
        JobStatus.PLANNING: frozenset(
            {JobStatus.PLANNING, JobStatus.APPLYING, JobStatus.FAILED}
        ),
        JobStatus.APPLYING: frozenset(
            {JobStatus.APPLYING, JobStatus.COMPLETE, JobStatus.FAILED}
        ),
        JobStatus.DESTROYING: frozenset(
            {JobStatus.DESTROYING, JobStatus.COMPLETE, JobStatus.FAILED}
        ),
        JobStatus.COMPLETE: frozenset({JobStatus.INIT, JobStatus.DESTROYING}),
        JobStatus.FAILED: frozenset(
            {JobStatus.INIT, JobStatus.DESTROYING, JobStatus.FAILED}
        ),
    }
)

LIFECYCLE_START_STATES = frozenset({JobStatus.INIT, JobStatus.DESTROYING})

# ── Progress checkpoints ─────────────────────────────────────────────

APPLY_BACKEND_PROGRESS = 5
APPLY_TEMPLATES_PROGRESS = 10
APPLY_VARIABLES_PROGRESS = 15
APPLY_INIT_PROGRESS = 20
APPLY_NAMESPACE_PROGRESS = 25
APPLY_PLAN_PROGRESS = 40
APPLY_APPLY_PROGRESS = 60

DESTROY_SELECT_PROGRESS = 10
DESTROY_RUN_PROGRESS = 30
DESTROY_RETRY_PROGRESS = 40
DESTROY_CLEANUP_PROGRESS = 80

COMPLETE_PROGRESS = 100


class InvalidStateTransition(ValueError):
    """Raised for invalid job status transitions."""

    def __init__(self, from_state: JobStatus, to_state: JobStatus) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f'invalid state transition: {from_state.value!r} -> {to_state.value!r}'
        )


def check_transition(from_state: JobStatus, to_state: JobStatus) -> None:
    """Raise ``InvalidStateTransition`` unless ``from_state -> to_state`` is allowed."""
    allowed = ALLOWED_TRANSITIONS.get(from_state, frozenset())
    if to_state not in allowed:
        raise InvalidStateTransition(from_state, to_state)


def check_lifecycle_start(from_state: JobStatus, to_state: JobStatus) -> None:
    """Validate the first transition of a new apply or destroy lifecycle."""
    if to_state not in LIFECYCLE_START_STATES:
        raise InvalidStateTransition(from_state, to_state)
    if from_state in ACTIVE_STATES and from_state is not JobStatus.INIT:
        raise InvalidStateTransition(from_state, to_state)


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATES
