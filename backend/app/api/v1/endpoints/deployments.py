"""
API endpoints for built-in deployments.

Mutating endpoints claim the status transition synchronously (so a lost race
is a 409 to the caller) and hand the runtime work to the worker through the
task dispatcher. Domain exceptions are mapped to HTTP by the exception handlers.
"""
import json
from typing import Callable, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.exceptions import ServiceUnavailableError
from app.models.deployment import Deployment
from app.repositories.deployment_repository import DeploymentRepository
from app.schemas.deployment import (
    BuildpackDetectRequest,
    BuildpackResponse,
    ContainerHealthResponse,
    DeploymentCreate,
    DeploymentLogsResponse,
    DeploymentResponse,
    DeploymentStatus,
)
from app.schemas.pagination import PaginatedResponse
from app.services.deployment.buildpack import detect_buildpack
from app.services.deployment.deployment_service import deployment_service
from app.services.task_dispatcher import task_dispatcher

router = APIRouter()

TASK_QUEUE = "task queue"


async def _hand_off(
    db: AsyncSession,
    deployment: Deployment,
    previous_status: str,
    dispatch: Callable[[UUID], Optional[str]],
) -> DeploymentResponse:
    """
    Queue the worker task for a claimed deployment.

    Raises:
        ServiceUnavailableError: If the task could not be queued (503); the
            claim is reverted first
    """
    if dispatch(deployment.id) is None:
        await deployment_service.release_claim(db, deployment.id, deployment.status, previous_status)
        raise ServiceUnavailableError(TASK_QUEUE, f"could not queue the {deployment.status} task")
    return DeploymentResponse.from_deployment(deployment)


@router.post("", response_model=DeploymentResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_deployment(
    deployment_data: DeploymentCreate,
    db: AsyncSession = Depends(get_db),
) -> DeploymentResponse:
    """
    Create a pending deployment and queue its build.

    Raises:
        DeploymentInProgressError: If the project already has one in flight (409)
        ServiceUnavailableError: If the build could not be queued (503)
    """
    deployment = await deployment_service.create_deployment(
        db,
        project_id=deployment_data.project_id,
        project_name=deployment_data.project_name,
        cpu_limit=deployment_data.cpu_limit,
        memory_limit=deployment_data.memory_limit,
        metadata=deployment_data.metadata,
    )

    files_json = json.dumps([f.model_dump() for f in deployment_data.files])
    if task_dispatcher.dispatch_deployment(deployment.id, files_json) is None:
        await deployment_service.abandon_deployment(db, deployment.id, "Deployment build could not be queued")
        raise ServiceUnavailableError(TASK_QUEUE, "could not queue the deployment build")

    return DeploymentResponse.from_deployment(deployment)


@router.get("", response_model=PaginatedResponse[DeploymentResponse])
async def list_deployments(
    project_id: Optional[str] = Query(None, description="Filter by project"),
    status: Optional[DeploymentStatus] = Query(None, description="Filter by status"),
    page: int = Query(1, ge=1, description="Page number"),
    size: int = Query(10, ge=1, le=100, description="Page size"),
    db: AsyncSession = Depends(get_db),
) -> PaginatedResponse[DeploymentResponse]:
    """List deployments with optional filters (paginated)."""
    deployments, total = await deployment_service.list_deployments(
        db,
        project_id=project_id,
        status=status.value if status else None,
        page=page,
        size=size,
    )

    items = [DeploymentResponse.from_deployment(deployment) for deployment in deployments]

    return PaginatedResponse.create(items=items, total=total, page=page, size=size)


@router.post("/buildpack/detect", response_model=BuildpackResponse)
async def detect_project_buildpack(request: BuildpackDetectRequest) -> BuildpackResponse:
    """Run buildpack detection on a set of files without deploying them."""
    info = detect_buildpack(request.files)
    return BuildpackResponse(
        framework=info.framework,
        build_command=info.build_command,
        start_command=info.start_command,
    )


@router.get("/{deployment_id}", response_model=DeploymentResponse)
async def get_deployment(
    deployment_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> DeploymentResponse:
    """
    Get a deployment by ID.

    Raises:
        DeploymentNotFoundError: If deployment not found (404)
    """
    deployment = await DeploymentRepository(db).get_by_id_or_raise(deployment_id)
    return DeploymentResponse.from_deployment(deployment)


@router.get("/{deployment_id}/logs", response_model=DeploymentLogsResponse)
async def get_deployment_logs(
    deployment_id: UUID,
    tail: int = Query(100, ge=1, le=10000, description="Container log lines"),
    db: AsyncSession = Depends(get_db),
) -> DeploymentLogsResponse:
    """Build/deploy log plus the tail of the container's own output."""
    deployment, container_logs = await deployment_service.get_logs(db, deployment_id, tail)
    return DeploymentLogsResponse(
        deployment_id=deployment.id,
        status=deployment.status,
        build_logs=deployment.logs or "",
        container_logs=container_logs,
    )


@router.get("/{deployment_id}/health", response_model=ContainerHealthResponse)
async def get_deployment_health(
    deployment_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> ContainerHealthResponse:
    """Container health; 'unknown' when it cannot be determined."""
    health = await deployment_service.get_health(db, deployment_id)
    return ContainerHealthResponse(
        deployment_id=deployment_id,
        status=health.status,
        uptime=health.uptime,
        state=health.state,
    )


@router.post("/{deployment_id}/stop", response_model=DeploymentResponse, status_code=status.HTTP_202_ACCEPTED)
async def stop_deployment(
    deployment_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> DeploymentResponse:
    """
    Stop a running deployment.

    Raises:
        DeploymentNotFoundError: If deployment not found (404)
        InvalidStatusTransitionError: If it is not running (409)
        ServiceUnavailableError: If the stop could not be queued (503)
    """
    deployment = await deployment_service.begin_stop(db, deployment_id)
    return await _hand_off(db, deployment, "running", task_dispatcher.dispatch_stop)


@router.post("/{deployment_id}/restart", response_model=DeploymentResponse, status_code=status.HTTP_202_ACCEPTED)
async def restart_deployment(
    deployment_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> DeploymentResponse:
    """
    Restart a running or stopped deployment.

    Raises:
        DeploymentNotFoundError: If deployment not found (404)
        InvalidStatusTransitionError: If it is neither running nor stopped (409)
        DeploymentInProgressError: If the project has another deployment in flight (409)
        ServiceUnavailableError: If the restart could not be queued (503)
    """
    current = await DeploymentRepository(db).get_by_id_or_raise(deployment_id)
    previous_status = current.status
    deployment = await deployment_service.begin_restart(db, deployment_id, from_status=previous_status)
    return await _hand_off(db, deployment, previous_status, task_dispatcher.dispatch_restart)


@router.post("/{deployment_id}/cancel", response_model=DeploymentResponse)
async def cancel_deployment(
    deployment_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> DeploymentResponse:
    """
    Cancel an in-flight build or restart.

    Raises:
        InvalidStatusTransitionError: If nothing is in flight (409)
    """
    deployment = await deployment_service.request_cancel(db, deployment_id)
    return DeploymentResponse.from_deployment(deployment)


@router.delete("/{deployment_id}", response_model=DeploymentResponse, status_code=status.HTTP_202_ACCEPTED)
async def remove_deployment(
    deployment_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> DeploymentResponse:
    """
    Remove a deployment's container and release its subdomain and port.

    Raises:
        InvalidStatusTransitionError: If an operation is still in flight (409)
        ServiceUnavailableError: If the removal could not be queued (503)
    """
    current = await DeploymentRepository(db).get_by_id_or_raise(deployment_id)
    previous_status = current.status
    deployment = await deployment_service.begin_remove(db, deployment_id, from_status=previous_status)
    return await _hand_off(db, deployment, previous_status, task_dispatcher.dispatch_remove)
