"""Provisioning engine configuration settings.

EngineSettings is the single configuration object accepted by create_app()
and build_engine(). It is intentionally a plain dataclass (not env-coupled)
so tests can inject config without touching os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_REQUIRED_TEMPLATE_FILES: tuple[str, ...] = (
    "provider.tf",
    "variables.tf",
    "backend.tf",
)


@dataclass(frozen=True, slots=True)
class EngineSettings:
    """Configuration for the provisioning engine and its HTTP adapter.

    All fields have sensible defaults for local development.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = "local"
    """One of: local, dev, staging, production."""

    # ── Filesystem ─────────────────────────────────────────────────
    workspace_root: Path = Path("./terraform-workspaces")
    """Parent directory of every session working directory."""

    template_dir: Path = Path("./terraform")
    """Canonical template set copied into each session working directory."""

    required_template_files: tuple[str, ...] = DEFAULT_REQUIRED_TEMPLATE_FILES
    """Template files that must exist before a session is materialized."""

    snapshot_filename: str = ".progress.json"
    """Name of the per-session snapshot file inside the working directory."""

    # ── Provisioner ────────────────────────────────────────────────
    provisioner_binary: str = "terraform"
    """Executable used for every provisioning command."""

    backend_bootstrap_script: Path | None = None
    """Optional script that creates the shared remote state store."""

    # ── Admission ──────────────────────────────────────────────────
    max_concurrent_operations: int = 1
    """Provisioning jobs allowed to run at the same time, process-wide."""

    max_queue_size: int = 10
    """Callers allowed to wait for a slot before submissions are rejected."""

    admission_timeout_seconds: float = 30.0
    """How long a queued job waits for a slot before failing as busy."""

    # ── Deadlines ──────────────────────────────────────────────────
    apply_timeout_seconds: float = 600.0
    """Hard ceiling for one apply job; exceeding it triggers rollback."""

    destroy_wait_timeout_seconds: float = 600.0
    """Ceiling for callers waiting synchronously on a destroy."""

    shutdown_timeout_seconds: float = 30.0
    """How long shutdown waits for in-flight jobs."""

    # ── Workers ────────────────────────────────────────────────────
    rollback_workers: int = 1
    """Size of the dedicated rollback executor."""

    log_history_limit: int = 100
    """Maximum log lines kept per session."""

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if self.max_concurrent_operations < 1:
            errors.append("max_concurrent_operations must be >= 1")
        if self.max_queue_size < 0:
            errors.append("max_queue_size must be >= 0")
        if self.admission_timeout_seconds <= 0:
            errors.append("admission_timeout_seconds must be > 0")
        if self.apply_timeout_seconds <= 0:
            errors.append("apply_timeout_seconds must be > 0")
        if self.destroy_wait_timeout_seconds <= 0:
            errors.append("destroy_wait_timeout_seconds must be > 0")
        if self.shutdown_timeout_seconds < 0:
            errors.append("shutdown_timeout_seconds must be >= 0")
        if self.rollback_workers < 1:
            errors.append("rollback_workers must be >= 1")
        if self.log_history_limit < 1:
            errors.append("log_history_limit must be >= 1")
        if not self.provisioner_binary:
            errors.append("provisioner_binary is required")
        if not self.is_local and not self.template_dir.is_dir():
            errors.append(
                f"{self.environment}: template_dir {str(self.template_dir)!r} does not exist"
            )
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> EngineSettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct EngineSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        required_raw = env.get("INFRA_REQUIRED_TEMPLATE_FILES", "")
        required = (
            tuple(f.strip() for f in required_raw.split(",") if f.strip())
            if required_raw
            else DEFAULT_REQUIRED_TEMPLATE_FILES
        )

        return cls(
            environment=env.get("ENVIRONMENT", "local"),
            workspace_root=Path(env.get("INFRA_WORKSPACE_ROOT", "./terraform-workspaces")),
            template_dir=Path(env.get("INFRA_TEMPLATE_DIR", "./terraform")),
            required_template_files=required,
            provisioner_binary=env.get("INFRA_PROVISIONER_BINARY", "terraform"),
            backend_bootstrap_script=(
                Path(env["INFRA_BACKEND_BOOTSTRAP_SCRIPT"])
                if env.get("INFRA_BACKEND_BOOTSTRAP_SCRIPT")
                else None
            ),
            max_concurrent_operations=int(env.get("INFRA_MAX_CONCURRENT_OPERATIONS", "1")),
            max_queue_size=int(env.get("INFRA_MAX_QUEUE_SIZE", "10")),
            admission_timeout_seconds=float(env.get("INFRA_ADMISSION_TIMEOUT_SECONDS", "30")),
            apply_timeout_seconds=float(env.get("INFRA_APPLY_TIMEOUT_SECONDS", "600")),
            destroy_wait_timeout_seconds=float(
                env.get("INFRA_DESTROY_WAIT_TIMEOUT_SECONDS", "600")
            ),
            shutdown_timeout_seconds=float(
                env.get("INFRA_SHUTDOWN_TIMEOUT_SECONDS", "30")
            ),
            rollback_workers=int(env.get("INFRA_ROLLBACK_WORKERS", "1")),
            log_history_limit=int(env.get("INFRA_LOG_HISTORY_LIMIT", "100")),
        )
