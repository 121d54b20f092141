"""Startup recovery tests."""

from __future__ import annotations

import json

from infra_plane.app.provisioning.job_context import JobContext
from infra_plane.app.provisioning.persistence import SnapshotStore
from infra_plane.app.provisioning.recovery import RESTART_MESSAGE, RecoveryManager
from infra_plane.app.provisioning.registry import SessionRegistry
from infra_plane.app.provisioning.state_machine import JobStatus


def _persist(workspace_root, session_id, status, progress, message):
    workdir = workspace_root / session_id
    workdir.mkdir()
    ctx = JobContext(session_id=session_id, working_directory=workdir)
    ctx.status = status
    ctx.progress_percentage = progress
    ctx.log_history.append(message)
    SnapshotStore().save(ctx)
    return workdir


def _recover(workspace_root, registry=None):
    registry = registry if registry is not None else SessionRegistry()
    report = RecoveryManager(workspace_root, registry, SnapshotStore()).recover()
    return report, registry


class TestRecovery:
    def test_terminal_sessions_restored_as_is(self, workspace_root):
        _persist(workspace_root, 'done', JobStatus.COMPLETE, 100, 'Infrastructure provisioning completed!')

        report, registry = _recover(workspace_root)

        assert report.recovered == ['done']
        assert report.coerced == []
        ctx = registry.get('done')
        assert ctx.status is JobStatus.COMPLETE
        assert ctx.latest_log == 'Infrastructure provisioning completed!'

    def test_mid_flight_session_coerced_to_failed(self, workspace_root):
        workdir = _persist(workspace_root, 's1', JobStatus.APPLYING, 60, 'Running terraform apply...')

        report, registry = _recover(workspace_root)

        assert report.coerced == ['s1']
        ctx = registry.get('s1')
        assert ctx.status is JobStatus.FAILED
        assert ctx.progress_percentage == 60
        assert ctx.latest_log == RESTART_MESSAGE
        assert workdir.is_dir()
        assert ctx.active_task is None

    def test_coercion_is_persisted(self, workspace_root):
        workdir = _persist(workspace_root, 's1', JobStatus.DESTROYING, 30, 'Running terraform destroy...')
        _recover(workspace_root)

        data = json.loads((workdir / '.progress.json').read_text())
        assert data['status'] == 'FAILED'
        assert data['latestLog'] == RESTART_MESSAGE

    def test_identity_comes_from_directory(self, workspace_root):
        workdir = _persist(workspace_root, 's1', JobStatus.COMPLETE, 100, 'done')
        renamed = workspace_root / 'renamed'
        workdir.rename(renamed)

        _, registry = _recover(workspace_root)

        ctx = registry.get('renamed')
        assert ctx.session_id == 'renamed'
        assert ctx.working_directory == renamed
        assert registry.get('s1') is None

    def test_corrupt_snapshot_skipped(self, workspace_root):
        bad = workspace_root / 'bad'
        bad.mkdir()
        (bad / '.progress.json').write_text('{')
        _persist(workspace_root, 'good', JobStatus.FAILED, 40, 'Error: x')

        report, registry = _recover(workspace_root)

        assert report.failed == ['bad']
        assert report.recovered == ['good']
        assert bad.is_dir()

    def test_non_utf8_snapshot_does_not_abort_scan(self, workspace_root):
        bad = workspace_root / 'a-bad'
        bad.mkdir()
        (bad / '.progress.json').write_bytes(b'\xff\xfe{"sessionId": "a-bad"}')
        _persist(workspace_root, 'b-good', JobStatus.APPLYING, 60, 'apply')

        report, registry = _recover(workspace_root)

        assert report.failed == ['a-bad']
        assert report.recovered == ['b-good']
        assert registry.get('b-good').status is JobStatus.FAILED

    def test_directories_without_snapshot_ignored(self, workspace_root):
        (workspace_root / 'empty').mkdir()
        (workspace_root / 'stray.txt').write_text('')

        report, registry = _recover(workspace_root)

        assert report.recovered == []
        assert len(registry) == 0

    def test_existing_registry_entry_wins(self, workspace_root):
        workdir = _persist(workspace_root, 's1', JobStatus.APPLYING, 60, 'apply')
        registry = SessionRegistry()
        live = JobContext(session_id='s1', working_directory=workdir)
        registry.put(live)

        report, _ = _recover(workspace_root, registry)

        assert report.recovered == []
        assert registry.get('s1') is live

    def test_missing_root(self, tmp_path):
        report, registry = _recover(tmp_path / 'missing')
        assert report.recovered == []
        assert len(registry) == 0
