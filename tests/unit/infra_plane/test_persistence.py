"""Snapshot store tests."""

from __future__ import annotations

import json

import pytest

from infra_plane.app.provisioning.errors import SnapshotError
from infra_plane.app.provisioning.job_context import JobContext
from infra_plane.app.provisioning.persistence import JobSnapshot, SnapshotStore
from infra_plane.app.provisioning.state_machine import JobStatus


@pytest.fixture
def session_dir(workspace_root):
    path = workspace_root / 's1'
    path.mkdir()
    return path


class TestSave:
    def test_writes_camel_case_json(self, session_dir):
        store = SnapshotStore()
        ctx = JobContext(session_id='s1', working_directory=session_dir)
        ctx.update_status(JobStatus.INIT, 20, 'Running terraform init...')

        store.save(ctx)

        data = json.loads((session_dir / '.progress.json').read_text())
        assert data['sessionId'] == 's1'
        assert data['workingDirectory'] == str(session_dir)
        assert data['status'] == 'INIT'
        assert data['progressPercentage'] == 20
        assert data['latestLog'] == 'Running terraform init...'
        assert data['logs'] == ['Initialized', 'Running terraform init...']

    def test_leaves_no_temp_files(self, session_dir):
        store = SnapshotStore()
        ctx = JobContext(session_id='s1', working_directory=session_dir)
        store.save(ctx)
        store.save(ctx)
        assert sorted(p.name for p in session_dir.iterdir()) == ['.progress.json']

    def test_missing_directory_is_swallowed(self, workspace_root):
        store = SnapshotStore()
        ctx = JobContext(session_id='gone', working_directory=workspace_root / 'gone')
        store.save(ctx)
        assert not (workspace_root / 'gone').exists()

    def test_attached_store_persists_every_update(self, session_dir):
        store = SnapshotStore()
        ctx = JobContext(session_id='s1', working_directory=session_dir)
        ctx.attach(store.save)

        ctx.update_status(JobStatus.PLANNING, 40, 'Running terraform plan...')

        assert store.load(session_dir).status is JobStatus.PLANNING

    def test_custom_filename(self, session_dir):
        store = SnapshotStore('state.json')
        store.save(JobContext(session_id='s1', working_directory=session_dir))
        assert store.exists(session_dir)
        assert (session_dir / 'state.json').is_file()


class TestLoad:
    def test_round_trip(self, session_dir):
        store = SnapshotStore()
        ctx = JobContext(session_id='s1', working_directory=session_dir)
        ctx.update_status(JobStatus.PLANNING, 40, 'plan')
        store.save(ctx)

        snapshot = store.load(session_dir)

        assert isinstance(snapshot, JobSnapshot)
        assert snapshot.session_id == 's1'
        assert snapshot.progress_percentage == 40
        assert snapshot.created_at == ctx.created_at

    def test_missing_file_raises(self, session_dir):
        with pytest.raises(SnapshotError, match='cannot read snapshot'):
            SnapshotStore().load(session_dir)

    def test_corrupt_json_raises(self, session_dir):
        (session_dir / '.progress.json').write_text('{not json')
        with pytest.raises(SnapshotError, match='invalid snapshot'):
            SnapshotStore().load(session_dir)

    def test_non_utf8_snapshot_raises(self, session_dir):
        (session_dir / '.progress.json').write_bytes(b'\xff\xfe{"sessionId": "s1"}')
        with pytest.raises(SnapshotError, match='invalid snapshot'):
            SnapshotStore().load(session_dir)

    def test_unknown_status_raises(self, session_dir):
        (session_dir / '.progress.json').write_text(
            json.dumps({'sessionId': 's1', 'workingDirectory': '/x', 'status': 'EXPLODED'})
        )
        with pytest.raises(SnapshotError):
            SnapshotStore().load(session_dir)

    def test_minimal_snapshot_defaults(self, session_dir):
        (session_dir / '.progress.json').write_text(
            json.dumps({'sessionId': 's1', 'workingDirectory': '/x', 'status': 'COMPLETE'})
        )
        snapshot = SnapshotStore().load(session_dir)
        assert snapshot.progress_percentage == 0
        assert snapshot.logs == []
        assert snapshot.created_at is None


class TestDelete:
    def test_delete_is_idempotent(self, session_dir):
        store = SnapshotStore()
        store.save(JobContext(session_id='s1', working_directory=session_dir))
        store.delete(session_dir)
        store.delete(session_dir)
        assert not store.exists(session_dir)
