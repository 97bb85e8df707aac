"""
Task dispatcher service for decoupling endpoints from Celery.

Endpoints hand work to the worker through this layer, so the API can be
tested without a broker or a running worker.

Usage:
    from app.services.task_dispatcher import task_dispatcher

    # In endpoint:
    task_dispatcher.dispatch_deployment(deployment_id, files_json)

    # In tests, replace with mock:
    with patch('app.api.v1.endpoints.deployments.task_dispatcher') as mock:
        mock.dispatch_deployment.return_value = "task-id"
        # ... test code
"""
import logging
from typing import Optional, Protocol
from uuid import UUID

from app.core.config import settings

logger = logging.getLogger(__name__)


class TaskDispatcherProtocol(Protocol):
    """Protocol defining the task dispatcher interface."""

    def dispatch_deployment(self, deployment_id: UUID, files_json: str) -> Optional[str]:
        """Dispatch a build-and-run task."""
        ...

    def dispatch_stop(self, deployment_id: UUID) -> Optional[str]:
        ...

    def dispatch_restart(self, deployment_id: UUID) -> Optional[str]:
        ...

    def dispatch_remove(self, deployment_id: UUID) -> Optional[str]:
        ...

    def dispatch_reconcile(self) -> Optional[str]:
        """Dispatch a reconciliation pass."""
        ...


class CeleryTaskDispatcher:
    """
    Task dispatcher implementation using Celery.

    All Celery imports are deferred to method calls to avoid circular imports.
    """

    def _send(self, task_name: str, label: str, *args: str) -> Optional[str]:
        """
        Queue a task from app.worker by name.

        Returns:
            Task ID if dispatched successfully, None otherwise
        """
        try:
            from app import worker

            result = getattr(worker, task_name).delay(*args)
            logger.info(f"Dispatched {label} task {result.id}")
            return result.id
        except Exception as e:
            logger.error(f"Failed to dispatch {label} task: {e}")
            return None

    def dispatch_deployment(self, deployment_id: UUID, files_json: str) -> Optional[str]:
        return self._send("deploy_project_task", f"deployment {deployment_id}", str(deployment_id), files_json)

    def dispatch_stop(self, deployment_id: UUID) -> Optional[str]:
        return self._send("stop_deployment_task", f"stop {deployment_id}", str(deployment_id))

    def dispatch_restart(self, deployment_id: UUID) -> Optional[str]:
        return self._send("restart_deployment_task", f"restart {deployment_id}", str(deployment_id))

    def dispatch_remove(self, deployment_id: UUID) -> Optional[str]:
        return self._send("remove_deployment_task", f"remove {deployment_id}", str(deployment_id))

    def dispatch_reconcile(self) -> Optional[str]:
        return self._send("reconcile_deployments_task", "reconciliation")


class NoOpTaskDispatcher:
    """
    No-op task dispatcher for testing.

    This implementation does nothing, allowing tests to run without Celery.
    """

    def dispatch_deployment(self, deployment_id: UUID, files_json: str) -> Optional[str]:
        logger.debug(f"NoOp: dispatch_deployment({deployment_id})")
        return f"noop-deployment-{deployment_id}"

    def dispatch_stop(self, deployment_id: UUID) -> Optional[str]:
        logger.debug(f"NoOp: dispatch_stop({deployment_id})")
        return f"noop-stop-{deployment_id}"

    def dispatch_restart(self, deployment_id: UUID) -> Optional[str]:
        logger.debug(f"NoOp: dispatch_restart({deployment_id})")
        return f"noop-restart-{deployment_id}"

    def dispatch_remove(self, deployment_id: UUID) -> Optional[str]:
        logger.debug(f"NoOp: dispatch_remove({deployment_id})")
        return f"noop-remove-{deployment_id}"

    def dispatch_reconcile(self) -> Optional[str]:
        logger.debug("NoOp: dispatch_reconcile()")
        return "noop-reconcile"


def _create_dispatcher() -> TaskDispatcherProtocol:
    """
    Create the appropriate task dispatcher based on environment.

    Returns CeleryTaskDispatcher for production, NoOpTaskDispatcher for tests.
    """
    if settings.ENVIRONMENT == "test":
        logger.info("Using NoOpTaskDispatcher for test environment")
        return NoOpTaskDispatcher()

    return CeleryTaskDispatcher()


# Singleton instance for shared use
task_dispatcher: TaskDispatcherProtocol = _create_dispatcher()
