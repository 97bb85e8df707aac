import logging
from datetime import datetime
from uuid import UUID

from celery import Celery, Task
from celery.signals import after_setup_logger, worker_ready

from app.core.async_helpers import run_async_with_db
from app.core.config import settings

logger = logging.getLogger(__name__)


class DeploymentTask(Task):
    """
    Base Celery task class for deployment-related tasks.

    Provides automatic failure handling to mark deployments as failed
    when a task errors out, preventing stuck "building"/"deploying"/"stopping"
    states.

    Usage:
        @celery_app.task(base=DeploymentTask, bind=True, acks_late=True)
        def deploy_project_task(self, deployment_id: str, files_json: str):
            # Task implementation
            pass
    """

    # Subclasses can override which statuses should be marked as failed
    fail_on_statuses = ("pending", "building", "deploying", "stopping")

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        """
        Called when the task raises an exception.

        Args:
            exc: The exception raised by the task
            task_id: The unique task ID
            args: The positional arguments passed to the task
            kwargs: The keyword arguments passed to the task
            einfo: The exception info (traceback)
        """
        # The first argument is always deployment_id for deployment tasks
        deployment_id = args[0] if args else kwargs.get("deployment_id")

        if deployment_id:
            logger.error(
                f"Deployment task failed for {deployment_id}: {exc}",
                exc_info=einfo.exc_info if einfo else None
            )
            self._mark_deployment_failed(deployment_id, str(exc))
        else:
            logger.error(f"Task failed but no deployment_id found: {exc}")

        super().on_failure(exc, task_id, args, kwargs, einfo)

    def _mark_deployment_failed(self, deployment_id: str, error: str) -> bool:
        """
        Mark a deployment as failed if it is still in an intermediate state.

        The service normally records failures itself; this catches crashes
        that escaped it. Uses a separate event loop since this runs in the
        Celery worker context.

        Returns:
            True if marked, False otherwise
        """
        try:
            from app.models.deployment import Deployment
            from app.repositories.deployment_repository import DeploymentRepository
            from app.services.deployment.port_allocator import port_allocator

            async def mark_failed(db):
                repo = DeploymentRepository(db)
                deployment = await repo.get_by_id(UUID(deployment_id))

                if deployment is None or deployment.status not in self.fail_on_statuses:
                    return False

                marked = await repo.transition_status(
                    deployment.id,
                    "failed",
                    error_message=error,
                    logs=Deployment.logs + f"ERROR: {error}\n",
                    completed_at=datetime.utcnow(),
                )
                if marked:
                    await port_allocator.release(db, UUID(deployment_id))
                    logger.info(f"Marked deployment {deployment_id} as failed due to task error")
                return marked

            return run_async_with_db(mark_failed)
        except Exception as e:
            logger.warning(f"Could not mark deployment {deployment_id} as failed: {e}")
            return False


celery_app = Celery(
    "worker",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["app.worker"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Default task expiration - prevents stale deployments from running after a backlog
    task_default_expires=settings.TASK_EXPIRY_HOURS * 3600,
    # Result expiration (1 day)
    result_expires=86400,
    # Beat schedule for periodic tasks; reconciliation is scheduled by the API process
    beat_schedule={
        'cleanup-stuck-deployments': {
            'task': 'app.worker.cleanup_stuck_deployments_task',
            'schedule': 300.0,  # Every 5 minutes
        },
    },
)


@after_setup_logger.connect
def on_setup_logger(**kwargs):
    from app.core.logging import configure_logging
    configure_logging()


def purge_stale_tasks():
    """
    Purge stale tasks from the queue on worker startup.

    Deployments whose task is dropped here stay pending and are failed by
    the stuck-deployment cleanup.
    """
    try:
        purged = celery_app.control.purge()
        if purged:
            logger.warning(f"Purged {purged} stale tasks from queue on startup")
        return purged
    except Exception as e:
        logger.error(f"Failed to purge stale tasks: {e}")
        return 0


@worker_ready.connect
def on_worker_ready(sender, **kwargs):
    """
    Handle worker ready signal.

    1. Purges stale tasks from the queue
    2. Marks deployments left in intermediate states by a crashed worker as failed
    """
    logger.info("Worker ready - running startup tasks...")

    purge_stale_tasks()

    try:
        from app.services.deployment.deployment_service import deployment_service

        cleaned = run_async_with_db(deployment_service.cleanup_stuck_deployments)
        if cleaned:
            logger.info(f"Startup cleanup: {cleaned} stuck deployments marked as failed")
        else:
            logger.info("Startup cleanup: No stuck deployments found")
    except Exception as e:
        logger.error(f"Error during worker startup tasks: {e}")
