"""
Celery tasks for background job execution.

Every container runtime call happens here, in the worker process, which has
access to the Docker socket. Tasks run the async DeploymentService through
run_async_with_db and use the DeploymentTask base class for automatic
failure handling.
"""
import json
import logging
from uuid import UUID

from app.core.async_helpers import run_async_with_db
from app.core.celery_app import celery_app, DeploymentTask
from app.core.config import settings
from app.core.exceptions import InvalidStatusTransitionError
from app.core.process import CancellationToken
from app.schemas.deployment import SourceFile

logger = logging.getLogger(__name__)


def _cancellation_token(deployment_id: UUID) -> CancellationToken:
    """
    Token that fires once the API has flagged the deployment as cancelled.

    The poll uses its own session: the task's session is busy with the
    deployment itself while a build is running.
    """
    from app.core.database import async_session_maker
    from app.repositories.deployment_repository import DeploymentRepository

    async def poll() -> bool:
        async with async_session_maker() as db:
            return await DeploymentRepository(db).is_cancel_requested(deployment_id)

    return CancellationToken(poll=poll, poll_interval=settings.CANCEL_POLL_INTERVAL)


# =============================================================================
# Deployment Tasks
#
# These tasks use the DeploymentTask base class which automatically marks
# deployments as failed via the on_failure hook when a task raises an exception.
# =============================================================================

@celery_app.task(base=DeploymentTask, bind=True, acks_late=True)
def deploy_project_task(self, deployment_id: str, files_json: str):
    """
    Build and run a pending deployment.

    Args:
        deployment_id: UUID of the deployment
        files_json: JSON list of {"path", "content"} source files
    """
    logger.info(f"Starting deployment task for {deployment_id}")

    from app.services.deployment.deployment_service import deployment_service

    files = [SourceFile(**item) for item in json.loads(files_json)]

    async def run_deployment(db):
        cancel = _cancellation_token(UUID(deployment_id))
        return await deployment_service.execute_deployment(db, UUID(deployment_id), files, cancel)

    try:
        deployment = run_async_with_db(run_deployment)
    except InvalidStatusTransitionError as e:
        # Cancelled or cleaned up before the worker picked it up
        logger.warning(f"Deployment task for {deployment_id} skipped: {e}")
        return f"Deployment {deployment_id} skipped"

    logger.info(f"Deployment task for {deployment_id} completed")
    return f"Deployment {deployment_id} running at {deployment.deployment_url}"


@celery_app.task(base=DeploymentTask, bind=True, acks_late=True)
def stop_deployment_task(self, deployment_id: str):
    """
    Stop the container of a deployment the API already moved to stopping.

    Args:
        deployment_id: UUID of the deployment to stop
    """
    logger.info(f"Starting stop task for deployment {deployment_id}")

    from app.services.deployment.deployment_service import deployment_service

    async def run_stop(db):
        await deployment_service.finish_stop(db, UUID(deployment_id))

    run_async_with_db(run_stop)

    logger.info(f"Stop task for {deployment_id} completed")
    return f"Deployment {deployment_id} stopped"


@celery_app.task(base=DeploymentTask, bind=True, acks_late=True)
def restart_deployment_task(self, deployment_id: str):
    """
    Restart the container of a deployment the API already moved to deploying.

    Args:
        deployment_id: UUID of the deployment to restart
    """
    logger.info(f"Starting restart task for deployment {deployment_id}")

    from app.services.deployment.deployment_service import deployment_service

    async def run_restart(db):
        cancel = _cancellation_token(UUID(deployment_id))
        await deployment_service.finish_restart(db, UUID(deployment_id), cancel)

    run_async_with_db(run_restart)

    logger.info(f"Restart task for {deployment_id} completed")
    return f"Deployment {deployment_id} restarted"


@celery_app.task(base=DeploymentTask, bind=True, acks_late=True)
def remove_deployment_task(self, deployment_id: str):
    """
    Remove the container and release the reservations of a removed deployment.

    Args:
        deployment_id: UUID of the deployment to remove
    """
    logger.info(f"Starting remove task for deployment {deployment_id}")

    from app.services.deployment.deployment_service import deployment_service

    async def run_remove(db):
        await deployment_service.finish_remove(db, UUID(deployment_id))

    run_async_with_db(run_remove)

    logger.info(f"Remove task for {deployment_id} completed")
    return f"Deployment {deployment_id} removed"


# =============================================================================
# Periodic Maintenance Tasks
# =============================================================================

@celery_app.task(acks_late=True)
def cleanup_stuck_deployments_task():
    """
    Periodic task to fail deployments stuck in intermediate states.
    """
    logger.info("Running stuck deployment cleanup")
    try:
        from app.services.deployment.deployment_service import deployment_service

        cleaned = run_async_with_db(deployment_service.cleanup_stuck_deployments)

        logger.info(f"Stuck deployment cleanup marked {cleaned} deployments as failed")
        return f"Cleaned up {cleaned} stuck deployments"
    except Exception as e:
        logger.error(f"Stuck deployment cleanup failed: {e}")
        return f"Stuck deployment cleanup failed: {e}"


@celery_app.task(acks_late=True)
def reconcile_deployments_task():
    """
    Periodic task to compare deployment records with actual containers.
    """
    logger.info("Running deployment reconciliation")
    try:
        from app.services.deployment.deployment_service import deployment_service

        report = run_async_with_db(deployment_service.reconcile_deployments)
        return report.as_dict()
    except Exception as e:
        logger.error(f"Deployment reconciliation failed: {e}")
        return {"error": str(e)}
