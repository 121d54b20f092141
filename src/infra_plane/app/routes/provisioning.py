"""Provisioning HTTP API.

Thin translation layer over ``ProvisioningEngine``:
  PUT    /api/v1/infra/provision             → start apply (202)
  GET    /api/v1/infra/status/{session_id}   → status record (default when unknown)
  GET    /api/v1/infra/info/{session_id}     → status + outputs (404 when unknown)
  DELETE /api/v1/infra/destroy/{session_id}  → start destroy (202)
  GET    /api/v1/infra/sessions              → every known session
  GET    /api/v1/infra/server/resources      → admission slots and active sessions

Simplified deploy API for the frontend:
  POST   /api/v1/deploy                      → apply with defaults
  GET    /api/v1/deploy/status/{session_id}  → status with full log history
  GET    /api/v1/deploy/resources/{session_id} → structured outputs + graph
  DELETE /api/v1/deploy/{session_id}         → synchronous destroy (504 on ceiling)

Errors are returned as ``{"error": CODE, "message": ...}``.
"""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from infra_plane.app.observability import get_logger
from infra_plane.app.provisioning.engine import ProvisioningEngine
from infra_plane.app.provisioning.errors import (
    BusyError,
    ConflictError,
    DestroyTimeoutError,
    NotFoundError,
    ProvisioningError,
    ValidationError,
)
from infra_plane.app.provisioning.state_machine import JobStatus
from infra_plane.app.provisioning.templates import DesiredParameters

logger = get_logger(__name__)

# Output name -> response field for /deploy/resources.
RESOURCE_OUTPUTS = {
    'ec2InstanceId': 'ec2_instance_id',
    'ec2PublicIp': 'ec2_public_ip',
    'vpcId': 'vpc_id',
    'dynamoDbTableName': 'app_data_table_name',
    's3BucketName': 'static_files_bucket_name',
    'lambdaFunctionName': 'lambda_function_name',
    'snsTopicArn': 'sns_topic_arn',
}


# ── Request schemas ───────────────────────────────────────────────────


class ProvisionRequest(BaseModel):
    """Every tunable Terraform variable; camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str | None = None
    aws_region: str = 'ap-northeast-2'
    project_name: str = 'penguin-land'
    environment: str = 'dev'
    ec2_instance_type: str = 't2.micro'
    ec2_key_name: str = ''
    alert_email: str = ''
    cpu_warning_threshold: int = Field(default=50, ge=0)
    cpu_critical_threshold: int = Field(default=70, ge=0)
    error_rate_warning_threshold: int = Field(default=3, ge=0)
    error_rate_critical_threshold: int = Field(default=5, ge=0)
    latency_warning_threshold: int = Field(default=400, ge=0)
    latency_critical_threshold: int = Field(default=700, ge=0)

    def to_parameters(self) -> DesiredParameters:
        return DesiredParameters(**self.model_dump(exclude={'session_id'}))


class DeployRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str | None = None


# ── Response helpers ──────────────────────────────────────────────────


def _error_response(status_code: int, exc: ProvisioningError, code: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={'error': code or exc.code, 'message': str(exc)},
    )


def _rejection(exc: ProvisioningError) -> JSONResponse:
    """Map a synchronous admission rejection to its HTTP status."""
    if isinstance(exc, ValidationError):
        return _error_response(status.HTTP_400_BAD_REQUEST, exc)
    if isinstance(exc, ConflictError):
        return _error_response(status.HTTP_409_CONFLICT, exc)
    if isinstance(exc, BusyError):
        return _error_response(status.HTTP_503_SERVICE_UNAVAILABLE, exc)
    if isinstance(exc, NotFoundError):
        return _error_response(status.HTTP_404_NOT_FOUND, exc)
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, exc)


def _accepted(session_id: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={'sessionId': session_id, 'status': 'ACCEPTED', 'message': message},
    )


def _string_or_none(outputs: dict[str, Any], key: str) -> str | None:
    value = outputs.get(key)
    return None if value is None else str(value)


# ── Route factory ─────────────────────────────────────────────────────


def create_provisioning_router(engine: ProvisioningEngine) -> APIRouter:
    """Create the infra and deploy routers over ``engine``."""
    router = APIRouter(tags=['provisioning'])

    # ── /api/v1/infra ─────────────────────────────────────────────────

    @router.put('/api/v1/infra/provision')
    async def provision(body: ProvisionRequest):
        try:
            accepted = await engine.apply(body.session_id, body.to_parameters())
        except ProvisioningError as exc:
            logger.warning('provision_rejected', session_id=body.session_id, code=exc.code)
            return _rejection(exc)
        return _accepted(
            accepted.session_id,
            'Infrastructure provisioning started. '
            'Use /status/{sessionId} to check progress.',
        )

    @router.get('/api/v1/infra/status/{session_id}')
    async def get_status(session_id: str):
        return engine.get_status(session_id).to_dict()

    @router.get('/api/v1/infra/info/{session_id}')
    async def get_info(session_id: str):
        try:
            info = await engine.get_infrastructure_info(session_id)
        except NotFoundError as exc:
            return _error_response(status.HTTP_404_NOT_FOUND, exc)
        return info.to_dict()

    @router.delete('/api/v1/infra/destroy/{session_id}')
    async def destroy(session_id: str):
        try:
            accepted = await engine.destroy(session_id)
        except ProvisioningError as exc:
            logger.warning('destroy_rejected', session_id=session_id, code=exc.code)
            return _rejection(exc)
        return _accepted(
            accepted.session_id,
            'Infrastructure destruction started. '
            'Use /status/{sessionId} to check progress.',
        )

    @router.get('/api/v1/infra/sessions')
    async def list_sessions():
        return [record.to_dict() for record in engine.list_statuses()]

    @router.get('/api/v1/infra/server/resources')
    async def server_resources():
        return engine.resource_status()

    # ── /api/v1/deploy ────────────────────────────────────────────────

    @router.post('/api/v1/deploy')
    async def deploy(body: DeployRequest | None = None):
        session_id = (
            body.session_id
            if body and body.session_id
            else f'deploy-{uuid.uuid4().hex[:8]}'
        )
        try:
            await engine.apply(session_id, DesiredParameters())
        except ProvisioningError as exc:
            logger.warning('deploy_rejected', session_id=session_id, code=exc.code)
            return _rejection(exc)
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={'sessionId': session_id},
        )

    @router.get('/api/v1/deploy/status/{session_id}')
    async def deploy_status(session_id: str):
        context = engine.get_context(session_id)
        if context is None:
            return _error_response(status.HTTP_404_NOT_FOUND, NotFoundError(session_id))
        record = context.status_record()
        return {
            'sessionId': session_id,
            'state': record.status.value,
            'progress': record.progress_percentage,
            'currentStage': record.last_log_message,
            'logs': context.logs(),
            'createdAt': context.created_at.isoformat(),
            'updatedAt': record.last_updated.isoformat(),
        }

    @router.get('/api/v1/deploy/resources/{session_id}')
    async def deploy_resources(session_id: str):
        try:
            info = await engine.get_infrastructure_info(session_id)
        except NotFoundError as exc:
            return _error_response(status.HTTP_404_NOT_FOUND, exc)
        if info.status is not JobStatus.COMPLETE:
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={
                    'error': 'NOT_READY',
                    'message': f'Infrastructure for session {session_id} is {info.status.value}',
                },
            )

        graph: str | None = None
        try:
            graph = await engine.get_graph(session_id)
        except ProvisioningError as exc:
            logger.warning('graph_unavailable', session_id=session_id, error=str(exc))

        return {
            'resources': {
                field_name: _string_or_none(info.outputs, output_name)
                for field_name, output_name in RESOURCE_OUTPUTS.items()
            },
            'graph': graph,
        }

    @router.delete('/api/v1/deploy/{session_id}')
    async def deploy_delete(session_id: str):
        try:
            await engine.destroy_and_wait(session_id)
        except DestroyTimeoutError as exc:
            return _error_response(status.HTTP_504_GATEWAY_TIMEOUT, exc)
        except (ValidationError, ConflictError, BusyError) as exc:
            return _rejection(exc)
        except ProvisioningError as exc:
            logger.error('deploy_delete_failed', session_id=session_id, error=str(exc))
            return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, exc, code='DELETE_FAILED')
        return {'message': 'Resources deleted successfully', 'sessionId': session_id}

    return router
