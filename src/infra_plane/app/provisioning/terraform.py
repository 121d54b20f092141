"""Terraform CLI adapter.

Runs the Terraform binary as a blocking subprocess inside a session working
directory, streaming merged stdout/stderr line by line into the structured
log. Lock-contention failures are classified here so callers receive a
``LockContentionError`` with the lock id instead of raw text.
"""

from __future__ import annotations

import json
import os
import re
import subprocess
import threading
from pathlib import Path
from typing import Any

from ..observability import get_logger
from .errors import BackendUnavailableError, ExecutionError, LockContentionError
from .provisioner import DEFAULT_NAMESPACE, CommandResult, LockContention

logger = get_logger(__name__)

LOCK_CONTENTION_SIGNATURE = 'Error acquiring the state lock'
LOCK_ID_PATTERN = re.compile(r'ID:\s+([a-f0-9-]+)')
PLAN_FILE = 'tfplan'


def detect_lock_contention(output: str) -> LockContention | None:
    """Return a contention descriptor if ``output`` reports a held state lock."""
    if LOCK_CONTENTION_SIGNATURE not in output:
        return None
    match = LOCK_ID_PATTERN.search(output)
    return LockContention(lock_id=match.group(1) if match else None)


class CommandRunner:
    """Runs one command at a time and can terminate the live process."""

    def __init__(
        self,
        working_directory: Path,
        *,
        env: dict[str, str] | None = None,
        terminate_grace_seconds: float = 5.0,
    ) -> None:
        self.working_directory = Path(working_directory)
        self.env = env
        self.terminate_grace_seconds = terminate_grace_seconds
        self._process: subprocess.Popen | None = None
        self._lock = threading.Lock()

    def run(self, *args: str, quiet: bool = False) -> CommandResult:
        """Run ``args`` to completion and capture its output.

        Raises:
            ExecutionError: If the executable cannot be started.
        """
        try:
            process = subprocess.Popen(
                args,
                cwd=str(self.working_directory),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
                env=self.env,
            )
        except OSError as exc:
            raise ExecutionError(f'failed to start {args[0]!r}: {exc}') from exc

        with self._lock:
            self._process = process

        lines: list[str] = []
        try:
            assert process.stdout is not None
            for line in process.stdout:
                lines.append(line)
                if not quiet:
                    logger.info(
                        'provisioner_output',
                        cwd=str(self.working_directory),
                        line=line.rstrip(),
                    )
            exit_code = process.wait()
        finally:
            with self._lock:
                if self._process is process:
                    self._process = None

        return CommandResult(command=tuple(args), exit_code=exit_code, output=''.join(lines))

    def terminate(self) -> None:
        """Stop the running process, escalating to kill after the grace period."""
        with self._lock:
            process = self._process
        if process is None or process.poll() is not None:
            return
        logger.warning('provisioner_terminate', cwd=str(self.working_directory), pid=process.pid)
        process.terminate()
        try:
            process.wait(timeout=self.terminate_grace_seconds)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()


class TerraformProvisioner:
    """Terraform implementation of the ``Provisioner`` contract.

    Each session maps to one Terraform workspace (the namespace) inside a
    shared remote backend.
    """

    def __init__(
        self,
        working_directory: Path,
        *,
        binary: str = 'terraform',
        runner: CommandRunner | None = None,
    ) -> None:
        self.working_directory = Path(working_directory)
        self.binary = binary
        self.runner = runner or CommandRunner(
            self.working_directory,
            env={**os.environ, 'TF_IN_AUTOMATION': '1'},
        )

    # ── Provisioner contract ─────────────────────────────────────────

    def init(self) -> None:
        self._run('init', '-input=false', '-no-color')

    def list_namespaces(self) -> list[str]:
        result = self._run('workspace', 'list')
        names = []
        for line in result.output.splitlines():
            name = line.strip().lstrip('*').strip()
            if name:
                names.append(name)
        return names

    def create_namespace(self, namespace: str) -> None:
        self._run('workspace', 'new', namespace)

    def select_namespace(self, namespace: str) -> None:
        self._run('workspace', 'select', namespace)

    def current_namespace(self) -> str:
        return self._run('workspace', 'show').output.strip()

    def delete_namespace(self, namespace: str) -> None:
        self._run('workspace', 'select', DEFAULT_NAMESPACE)
        self._run('workspace', 'delete', namespace)

    def plan(self) -> str:
        self._run('plan', f'-out={PLAN_FILE}', '-input=false', '-no-color')
        return PLAN_FILE

    def apply(self, plan: str) -> None:
        self._run('apply', '-input=false', '-auto-approve', '-no-color', plan)

    def destroy(self) -> None:
        self._run('destroy', '-auto-approve', '-input=false', '-no-color')

    def outputs(self) -> dict[str, Any]:
        raw = self._run('output', '-json', quiet=True).output
        if not raw.strip():
            logger.warning('outputs_empty', cwd=str(self.working_directory))
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.error('outputs_parse_failed', cwd=str(self.working_directory), raw=raw)
            return {}
        if not isinstance(parsed, dict):
            return {}
        return {
            key: value['value']
            for key, value in parsed.items()
            if isinstance(value, dict) and 'value' in value
        }

    def graph(self) -> str:
        return self._run('graph', quiet=True).output

    def force_release_lock(self, lock_id: str) -> None:
        self._run('force-unlock', '-force', lock_id)

    def terminate(self) -> None:
        self.runner.terminate()

    # ── Internals ────────────────────────────────────────────────────

    def _run(self, *args: str, quiet: bool = False) -> CommandResult:
        result = self.runner.run(self.binary, *args, quiet=quiet)
        if result.ok:
            return result
        message = f'Command failed with exit code {result.exit_code}: {result.output}'
        contention = detect_lock_contention(result.output)
        if contention is not None:
            raise LockContentionError(message, contention=contention, result=result)
        raise ExecutionError(message, result=result)


class ScriptBackendBootstrap:
    """Runs a backend bootstrap script once per process.

    The script is expected to check for and create the shared remote state
    store (bucket and lock table). Success is cached; failures are retried on
    the next call.
    """

    def __init__(self, script: Path | None, *, working_directory: Path | None = None) -> None:
        self.script = Path(script) if script else None
        self.working_directory = Path(working_directory or Path.cwd())
        self._ready = False
        self._lock = threading.Lock()

    def ensure_remote_store_exists(self) -> None:
        if self._ready:
            return
        with self._lock:
            if self._ready:
                return
            if self.script is None:
                logger.info('backend_bootstrap_skipped')
                self._ready = True
                return
            runner = CommandRunner(self.working_directory)
            try:
                result = runner.run('bash', str(self.script))
            except ExecutionError as exc:
                raise BackendUnavailableError(str(exc)) from exc
            if not result.ok:
                raise BackendUnavailableError(
                    f'backend bootstrap failed with exit code {result.exit_code}: '
                    f'{result.output}'
                )
            logger.info('backend_bootstrap_ready', script=str(self.script))
            self._ready = True
