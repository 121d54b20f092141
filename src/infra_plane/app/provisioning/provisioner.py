"""Provisioner and backend-bootstrap contracts.

The engine never talks to the infrastructure tool directly. It drives a
``Provisioner`` bound to one session working directory; every method is a
blocking call and is only ever invoked from a worker thread. Failures raise
``ExecutionError`` carrying the captured ``CommandResult``; a failure caused
by a held remote lock raises ``LockContentionError`` with a structured
``LockContention`` descriptor, so the engine never parses tool output.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable

from .errors import BackendUnavailableError, ExecutionError, LockContentionError

DEFAULT_NAMESPACE = 'default'


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Captured output and exit status of one provisioner invocation."""

    command: tuple[str, ...]
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True, slots=True)
class LockContention:
    """The remote state lock is held; ``lock_id`` is None if unrecoverable."""

    lock_id: str | None


# ── Protocols ────────────────────────────────────────────────────────


@runtime_checkable
class Provisioner(Protocol):
    """Provisioning steps for one session working directory."""

    def init(self) -> None: ...
    def list_namespaces(self) -> list[str]: ...
    def create_namespace(self, namespace: str) -> None: ...
    def select_namespace(self, namespace: str) -> None: ...
    def current_namespace(self) -> str: ...
    def delete_namespace(self, namespace: str) -> None: ...
    def plan(self) -> str: ...
    def apply(self, plan: str) -> None: ...
    def destroy(self) -> None: ...
    def outputs(self) -> dict[str, Any]: ...
    def graph(self) -> str: ...
    def force_release_lock(self, lock_id: str) -> None: ...
    def terminate(self) -> None: ...


ProvisionerFactory = Callable[[Path], Provisioner]


@runtime_checkable
class BackendBootstrap(Protocol):
    """Ensures the shared remote state store exists. Must be idempotent."""

    def ensure_remote_store_exists(self) -> None: ...


# ── In-memory implementations (testing) ──────────────────────────────


class InMemoryBackendBootstrap:
    """Test bootstrap that counts calls and can be told to fail."""

    def __init__(self, *, fails: bool = False) -> None:
        self.fails = fails
        self.calls = 0

    def ensure_remote_store_exists(self) -> None:
        self.calls += 1
        if self.fails:
            raise BackendUnavailableError('remote state store is unreachable')


class InMemoryProvisioner:
    """Scriptable provisioner double that records every call.

    One instance stands in for the remote backend shared by all sessions;
    ``bind`` is the factory handed to the engine.

    Example::

        provisioner = InMemoryProvisioner(delays={'apply': 0.2})
        provisioner.contend('plan', lock_id='abc-123')
        engine = build_engine(..., provisioner_factory=provisioner.bind)
    """

    def __init__(
        self,
        *,
        delays: dict[str, float] | None = None,
        outputs: dict[str, Any] | None = None,
        graph: str = 'digraph {}',
    ) -> None:
        self.delays: dict[str, float] = dict(delays or {})
        self.output_values: dict[str, Any] = dict(outputs or {'instance_ip': '10.0.0.1'})
        self.graph_text = graph
        self.namespaces: set[str] = {DEFAULT_NAMESPACE}
        self.current = DEFAULT_NAMESPACE
        self.calls: list[tuple[str, ...]] = []
        self.bound_directories: list[Path] = []
        self.released_locks: list[str] = []
        self.terminate_calls = 0
        self.fail_release = False
        self.wrong_namespace: str | None = None
        self._script: dict[str, deque[Exception]] = defaultdict(deque)
        self._cancel = threading.Event()
        self._lock = threading.Lock()

    # ── Scripting ────────────────────────────────────────────────────

    def bind(self, working_directory: Path) -> InMemoryProvisioner:
        self.bound_directories.append(Path(working_directory))
        return self

    def fail(self, step: str, error: Exception | None = None, *, times: int = 1) -> None:
        """Make the next ``times`` calls of ``step`` raise ``error``."""
        for _ in range(times):
            self._script[step].append(
                error or ExecutionError(f'{step} failed with exit code 1')
            )

    def contend(self, step: str, *, lock_id: str | None = 'lock-1', times: int = 1) -> None:
        """Make the next ``times`` calls of ``step`` report a held lock."""
        for _ in range(times):
            self._script[step].append(
                LockContentionError(
                    f'Error acquiring the state lock (step {step})',
                    contention=LockContention(lock_id=lock_id),
                )
            )

    def count(self, step: str) -> int:
        return sum(1 for call in self.calls if call[0] == step)

    # ── Provisioner contract ─────────────────────────────────────────

    def init(self) -> None:
        self._step('init')

    def list_namespaces(self) -> list[str]:
        self._step('list_namespaces')
        return sorted(self.namespaces)

    def create_namespace(self, namespace: str) -> None:
        self._step('create_namespace', namespace)
        self.namespaces.add(namespace)
        self.current = namespace

    def select_namespace(self, namespace: str) -> None:
        self._step('select_namespace', namespace)
        if namespace not in self.namespaces:
            raise ExecutionError(f'Workspace "{namespace}" doesn\'t exist.')
        self.current = namespace

    def current_namespace(self) -> str:
        self._step('current_namespace')
        return self.wrong_namespace or self.current

    def delete_namespace(self, namespace: str) -> None:
        self._step('delete_namespace', namespace)
        self.namespaces.discard(namespace)

    def plan(self) -> str:
        self._step('plan')
        return 'tfplan'

    def apply(self, plan: str) -> None:
        self._step('apply', plan)

    def destroy(self) -> None:
        self._step('destroy')

    def outputs(self) -> dict[str, Any]:
        self._step('outputs')
        return dict(self.output_values)

    def graph(self) -> str:
        self._step('graph')
        return self.graph_text

    def force_release_lock(self, lock_id: str) -> None:
        self._step('force_release_lock', lock_id)
        if self.fail_release:
            raise ExecutionError(f'failed to unlock {lock_id}')
        self.released_locks.append(lock_id)

    def terminate(self) -> None:
        self.terminate_calls += 1
        self._cancel.set()

    # ── Internals ────────────────────────────────────────────────────

    def _step(self, name: str, *args: str) -> None:
        with self._lock:
            self.calls.append((name, *args))
            scripted = self._script[name].popleft() if self._script[name] else None
        delay = self.delays.get(name, 0.0)
        if delay:
            started = time.monotonic()
            # A terminate that lands between steps interrupts the next wait.
            if self._cancel.wait(delay):
                self._cancel.clear()
                raise ExecutionError(
                    f'{name} terminated after {time.monotonic() - started:.2f}s'
                )
        if scripted is not None:
            raise scripted
