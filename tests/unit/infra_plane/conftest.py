"""Shared fixtures for infra_plane engine tests."""

from __future__ import annotations

import dataclasses

import pytest

from infra_plane.app.provisioning.engine import build_engine
from infra_plane.app.provisioning.provisioner import (
    InMemoryBackendBootstrap,
    InMemoryProvisioner,
)
from infra_plane.app.provisioning.registry import SessionRegistry
from infra_plane.app.settings import EngineSettings


@pytest.fixture
def settings(workspace_root, template_dir):
    return EngineSettings(
        workspace_root=workspace_root,
        template_dir=template_dir,
        admission_timeout_seconds=5.0,
        destroy_wait_timeout_seconds=5.0,
        shutdown_timeout_seconds=5.0,
    )


@pytest.fixture
def make_engine(settings):
    """Build engines over an in-memory provisioner; closed on teardown.

    Returns ``(engine, provisioner, bootstrap)``. Keyword arguments override
    individual settings fields.
    """
    engines = []

    def _make(
        *,
        provisioner: InMemoryProvisioner | None = None,
        bootstrap: InMemoryBackendBootstrap | None = None,
        registry: SessionRegistry | None = None,
        **overrides,
    ):
        provisioner = provisioner or InMemoryProvisioner()
        bootstrap = bootstrap or InMemoryBackendBootstrap()
        engine = build_engine(
            dataclasses.replace(settings, **overrides),
            provisioner_factory=provisioner.bind,
            bootstrap=bootstrap,
            registry=registry,
        )
        engines.append(engine)
        return engine, provisioner, bootstrap

    yield _make

    for engine in engines:
        engine.close()
