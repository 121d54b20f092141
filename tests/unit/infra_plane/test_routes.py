"""Provisioning HTTP API tests.

The router is mounted on a bare FastAPI app over an engine backed by the
in-memory provisioner. Jobs run on the TestClient's event loop, so tests
poll the status endpoints the way a frontend would.
"""

from __future__ import annotations

import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from infra_plane.app.provisioning.provisioner import InMemoryProvisioner
from infra_plane.app.routes.provisioning import ProvisionRequest, create_provisioning_router

OUTPUTS = {
    'ec2_instance_id': 'i-0abc',
    'ec2_public_ip': '3.35.1.2',
    'vpc_id': 'vpc-1',
    'app_data_table_name': 'penguin-table',
    'static_files_bucket_name': 'penguin-bucket',
    'lambda_function_name': 'alarm-processor',
    'sns_topic_arn': 'arn:aws:sns:ap-northeast-2:1:alerts',
}


@pytest.fixture
def api(make_engine):
    """Return ``(client, provisioner, engine)`` over a router-only app."""

    def _make(provisioner=None, **overrides):
        provisioner = provisioner or InMemoryProvisioner(outputs=OUTPUTS)
        engine, _, _ = make_engine(provisioner=provisioner, **overrides)
        app = FastAPI()
        app.include_router(create_provisioning_router(engine))
        return app, provisioner, engine

    return _make


def _wait_for(client, session_id, predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f'/api/v1/infra/status/{session_id}').json()
        if predicate(body):
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f'session {session_id} stuck at {body}')
        time.sleep(0.02)


def _status_is(*statuses):
    return lambda body: body['status'] in statuses


def _gone(body):
    return body['latestLog'] == 'No session found'


# ── Request schema ───────────────────────────────────────────────────


class TestProvisionRequest:
    def test_camel_case_aliases(self):
        body = ProvisionRequest.model_validate(
            {'sessionId': 's1', 'ec2InstanceType': 't3.small', 'cpuWarningThreshold': 60}
        )
        params = body.to_parameters()
        assert body.session_id == 's1'
        assert params.ec2_instance_type == 't3.small'
        assert params.cpu_warning_threshold == 60
        assert params.aws_region == 'ap-northeast-2'

    def test_snake_case_accepted(self):
        body = ProvisionRequest.model_validate({'session_id': 's1', 'project_name': 'p'})
        assert body.to_parameters().project_name == 'p'


# ── /api/v1/infra ────────────────────────────────────────────────────


class TestInfraProvision:
    def test_provision_accepted_then_completes(self, api):
        app, _, _ = api()
        with TestClient(app) as client:
            resp = client.put(
                '/api/v1/infra/provision',
                json={'sessionId': 's1', 'projectName': 'demo'},
            )
            assert resp.status_code == 202
            assert resp.json()['sessionId'] == 's1'
            assert resp.json()['status'] == 'ACCEPTED'

            body = _wait_for(client, 's1', _status_is('COMPLETE'))

        assert body['progressPercentage'] == 100
        assert body['latestLog'] == 'Infrastructure provisioning completed!'
        assert set(body) == {
            'sessionId', 'status', 'progressPercentage', 'latestLog', 'updateTime',
        }

    def test_missing_session_id_is_400(self, api):
        app, _, _ = api()
        with TestClient(app) as client:
            resp = client.put('/api/v1/infra/provision', json={})
        assert resp.status_code == 400
        assert resp.json() == {
            'error': 'VALIDATION_ERROR',
            'message': 'Session ID is required',
        }

    def test_invalid_threshold_is_422(self, api):
        app, _, _ = api()
        with TestClient(app) as client:
            resp = client.put(
                '/api/v1/infra/provision',
                json={'sessionId': 's1', 'cpuWarningThreshold': -1},
            )
        assert resp.status_code == 422

    def test_conflict_is_409(self, api):
        app, _, _ = api(InMemoryProvisioner(delays={'plan': 0.3}))
        with TestClient(app) as client:
            assert client.put('/api/v1/infra/provision', json={'sessionId': 's1'}).status_code == 202
            resp = client.put('/api/v1/infra/provision', json={'sessionId': 's1'})
            _wait_for(client, 's1', _status_is('COMPLETE'))
        assert resp.status_code == 409
        assert resp.json()['error'] == 'CONFLICT'

    def test_busy_is_503(self, api):
        app, _, _ = api(InMemoryProvisioner(delays={'plan': 0.3}), max_queue_size=0)
        with TestClient(app) as client:
            client.put('/api/v1/infra/provision', json={'sessionId': 's1'})
            resp = client.put('/api/v1/infra/provision', json={'sessionId': 's2'})
            _wait_for(client, 's1', _status_is('COMPLETE'))
        assert resp.status_code == 503
        assert resp.json() == {
            'error': 'SERVER_BUSY',
            'message': 'Server queue is full. Please try again later.',
        }


class TestInfraQueries:
    def test_unknown_status_default_record(self, api):
        app, _, _ = api()
        with TestClient(app) as client:
            body = client.get('/api/v1/infra/status/ghost').json()
        assert body['status'] == 'INIT'
        assert body['progressPercentage'] == 0
        assert body['latestLog'] == 'No session found'

    def test_info(self, api):
        app, _, _ = api()
        with TestClient(app) as client:
            client.put('/api/v1/infra/provision', json={'sessionId': 's1'})
            _wait_for(client, 's1', _status_is('COMPLETE'))
            resp = client.get('/api/v1/infra/info/s1')
        assert resp.status_code == 200
        assert resp.json()['outputs']['ec2_public_ip'] == '3.35.1.2'

    def test_info_unknown_is_404(self, api):
        app, _, _ = api()
        with TestClient(app) as client:
            resp = client.get('/api/v1/infra/info/ghost')
        assert resp.status_code == 404
        assert resp.json()['error'] == 'NOT_FOUND'

    def test_sessions_and_resources(self, api):
        app, _, _ = api()
        with TestClient(app) as client:
            client.put('/api/v1/infra/provision', json={'sessionId': 's1'})
            _wait_for(client, 's1', _status_is('COMPLETE'))
            sessions = client.get('/api/v1/infra/sessions').json()
            resources = client.get('/api/v1/infra/server/resources').json()
        assert [s['sessionId'] for s in sessions] == ['s1']
        assert resources['totalExecutionSlots'] == 1
        assert resources['maxQueueSize'] == 10
        assert resources['activeSessions'] == []


class TestInfraDestroy:
    def test_destroy_accepted_then_removed(self, api, workspace_root):
        app, _, _ = api()
        with TestClient(app) as client:
            client.put('/api/v1/infra/provision', json={'sessionId': 's1'})
            _wait_for(client, 's1', _status_is('COMPLETE'))

            resp = client.delete('/api/v1/infra/destroy/s1')
            assert resp.status_code == 202
            _wait_for(client, 's1', _gone)
            info = client.get('/api/v1/infra/info/s1')

        assert info.status_code == 404
        assert not (workspace_root / 's1').exists()

    def test_destroy_invalid_id_is_400(self, api):
        app, _, _ = api()
        with TestClient(app) as client:
            resp = client.delete('/api/v1/infra/destroy/bad..id')
        assert resp.status_code == 400


# ── /api/v1/deploy ───────────────────────────────────────────────────


class TestDeploy:
    def test_deploy_generates_session_id(self, api):
        app, _, _ = api()
        with TestClient(app) as client:
            resp = client.post('/api/v1/deploy')
            assert resp.status_code == 202
            session_id = resp.json()['sessionId']
            _wait_for(client, session_id, _status_is('COMPLETE'))
        assert session_id.startswith('deploy-')
        assert len(session_id) == len('deploy-') + 8

    def test_deploy_status(self, api):
        app, _, _ = api()
        with TestClient(app) as client:
            client.post('/api/v1/deploy', json={'sessionId': 'd1'})
            _wait_for(client, 'd1', _status_is('COMPLETE'))
            body = client.get('/api/v1/deploy/status/d1').json()
        assert body['state'] == 'COMPLETE'
        assert body['progress'] == 100
        assert body['currentStage'] == 'Infrastructure provisioning completed!'
        assert 'Running terraform apply...' in body['logs']
        assert {'createdAt', 'updatedAt'} <= set(body)

    def test_deploy_status_unknown_is_404(self, api):
        app, _, _ = api()
        with TestClient(app) as client:
            resp = client.get('/api/v1/deploy/status/ghost')
        assert resp.status_code == 404

    def test_resources(self, api):
        app, _, _ = api()
        with TestClient(app) as client:
            client.post('/api/v1/deploy', json={'sessionId': 'd1'})
            _wait_for(client, 'd1', _status_is('COMPLETE'))
            body = client.get('/api/v1/deploy/resources/d1').json()
        assert body['resources'] == {
            'ec2InstanceId': 'i-0abc',
            'ec2PublicIp': '3.35.1.2',
            'vpcId': 'vpc-1',
            'dynamoDbTableName': 'penguin-table',
            's3BucketName': 'penguin-bucket',
            'lambdaFunctionName': 'alarm-processor',
            'snsTopicArn': 'arn:aws:sns:ap-northeast-2:1:alerts',
        }
        assert body['graph'] == 'digraph {}'

    def test_resources_graph_failure_tolerated(self, api):
        app, provisioner, _ = api()
        provisioner.fail('graph')
        with TestClient(app) as client:
            client.post('/api/v1/deploy', json={'sessionId': 'd1'})
            _wait_for(client, 'd1', _status_is('COMPLETE'))
            body = client.get('/api/v1/deploy/resources/d1').json()
        assert body['graph'] is None
        assert body['resources']['vpcId'] == 'vpc-1'

    def test_resources_not_ready_is_404(self, api):
        provisioner = InMemoryProvisioner(outputs=OUTPUTS)
        provisioner.fail('init')
        app, _, _ = api(provisioner)
        with TestClient(app) as client:
            client.post('/api/v1/deploy', json={'sessionId': 'd1'})
            _wait_for(client, 'd1', _status_is('FAILED'))
            resp = client.get('/api/v1/deploy/resources/d1')
        assert resp.status_code == 404
        assert resp.json()['error'] == 'NOT_READY'

    def test_resources_unknown_is_404(self, api):
        app, _, _ = api()
        with TestClient(app) as client:
            resp = client.get('/api/v1/deploy/resources/ghost')
        assert resp.status_code == 404
        assert resp.json()['error'] == 'NOT_FOUND'


class TestDeployDelete:
    def test_delete_waits_for_destroy(self, api, workspace_root):
        app, _, _ = api()
        with TestClient(app) as client:
            client.post('/api/v1/deploy', json={'sessionId': 'd1'})
            _wait_for(client, 'd1', _status_is('COMPLETE'))
            resp = client.delete('/api/v1/deploy/d1')
        assert resp.status_code == 200
        assert resp.json() == {'message': 'Resources deleted successfully', 'sessionId': 'd1'}
        assert not (workspace_root / 'd1').exists()

    def test_delete_failure_is_500(self, api):
        app, provisioner, _ = api()
        with TestClient(app) as client:
            client.post('/api/v1/deploy', json={'sessionId': 'd1'})
            _wait_for(client, 'd1', _status_is('COMPLETE'))
            provisioner.fail('destroy')
            resp = client.delete('/api/v1/deploy/d1')
        assert resp.status_code == 500
        assert resp.json()['error'] == 'DELETE_FAILED'

    def test_delete_timeout_is_504(self, api):
        app, provisioner, _ = api(destroy_wait_timeout_seconds=0.05)
        with TestClient(app) as client:
            client.post('/api/v1/deploy', json={'sessionId': 'd1'})
            _wait_for(client, 'd1', _status_is('COMPLETE'))
            provisioner.delays['destroy'] = 0.3
            resp = client.delete('/api/v1/deploy/d1')
            _wait_for(client, 'd1', _gone)
        assert resp.status_code == 504
        assert resp.json()['error'] == 'TIMEOUT'
