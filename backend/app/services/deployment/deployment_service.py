"""
Deployment orchestration service.

Coordinates between:
- DeploymentRepository for state and compare-and-set status transitions
- SubdomainAllocator / PortAllocator for globally unique reservations
- ImageBuilder, ContainerRunner and ContainerLifecycle for the runtime
- Celery tasks, which call into this service from worker processes
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    ContainerNotFoundError,
    ContainerRuntimeError,
    DomainException,
    InvalidStatusTransitionError,
)
from app.core.process import CancellationToken
from app.models.deployment import Deployment
from app.repositories.deployment_repository import DeploymentRepository
from app.repositories.reservation_repository import ReservationRepository
from app.schemas.deployment import HealthStatus, SourceFile
from app.services.deployment.buildpack import detect_buildpack
from app.services.deployment.container_runner import ContainerRunner, container_runner
from app.services.deployment.lifecycle import ContainerHealth, ContainerLifecycle, container_lifecycle
from app.services.deployment.port_allocator import PortAllocator, port_allocator
from app.services.deployment.subdomain import SubdomainAllocator, subdomain_allocator
from app.services.docker.image_builder import BuildContext, ImageBuilder, image_builder

logger = logging.getLogger(__name__)

PENDING_TIMEOUT = timedelta(minutes=10)
STOPPING_TIMEOUT = timedelta(minutes=10)
REMOVING_TIMEOUT = timedelta(minutes=10)
BUILD_GRACE = timedelta(minutes=5)

# Statuses whose record may still own a container
LIVE_STATUSES = ("pending", "building", "deploying", "running", "stopping", "stopped", "removing")
CANCELLABLE_STATUSES = ("pending", "building", "deploying")


def _narrow(allowed: Tuple[str, ...], from_status: Optional[str]) -> Tuple[str, ...]:
    if from_status is None:
        return allowed
    return tuple(s for s in allowed if s == from_status)


@dataclass
class ReconcileReport:
    """Outcome of one reconciliation pass."""

    checked: int = 0
    failed: int = 0
    orphans: int = 0
    removed_orphans: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "checked": self.checked,
            "failed": self.failed,
            "orphans": self.orphans,
            "removed_orphans": self.removed_orphans,
        }


class DeploymentService:
    """
    Orchestration service for built-in deployments.

    Every mutating operation starts with a compare-and-set status transition,
    so concurrent callers on the same deployment get a 409 instead of issuing
    a second runtime command.
    """

    def __init__(
        self,
        builder: Optional[ImageBuilder] = None,
        runner: Optional[ContainerRunner] = None,
        lifecycle: Optional[ContainerLifecycle] = None,
        ports: Optional[PortAllocator] = None,
        subdomains: Optional[SubdomainAllocator] = None,
    ):
        self.builder = builder or image_builder
        self.runner = runner or container_runner
        self.lifecycle = lifecycle or container_lifecycle
        self.ports = ports or port_allocator
        self.subdomains = subdomains or subdomain_allocator

    async def _append_log(self, db: AsyncSession, deployment: Deployment, text: str) -> None:
        deployment.append_log(text)
        await db.commit()

    async def _mark_failed(
        self,
        db: AsyncSession,
        deployment_id: UUID,
        error: str,
        from_statuses: Optional[Tuple[str, ...]] = None,
        release_port: bool = True,
    ) -> bool:
        """
        Move a deployment to failed, record the error and free its port.

        Args:
            from_statuses: Only fail the deployment from these statuses
            release_port: Keep the reservation when a container may still
                be bound to it

        Returns:
            True if this call performed the transition
        """
        await db.rollback()
        failed = await DeploymentRepository(db).transition_status(
            deployment_id,
            "failed",
            from_statuses,
            error_message=error,
            logs=Deployment.logs + f"ERROR: {error}\n",
            completed_at=datetime.utcnow(),
        )
        if failed:
            logger.error(f"Deployment {deployment_id} failed: {error}")
        else:
            logger.warning(f"Deployment {deployment_id} could not be marked failed: {error}")
        if failed and release_port:
            await self.ports.release(db, deployment_id)
        return failed

    async def abandon_deployment(self, db: AsyncSession, deployment_id: UUID, reason: str) -> bool:
        """Fail a pending deployment whose build could not be queued."""
        return await self._mark_failed(db, deployment_id, reason, from_statuses=("pending",))

    async def release_claim(
        self,
        db: AsyncSession,
        deployment_id: UUID,
        claimed_status: str,
        previous_status: str,
    ) -> bool:
        """
        Put a deployment back into the status it had before a claim whose
        worker task could not be queued.
        """
        reverted = await DeploymentRepository(db).revert_status(deployment_id, claimed_status, previous_status)
        if reverted:
            logger.warning(f"Deployment {deployment_id} returned from {claimed_status} to {previous_status}")
        else:
            logger.warning(f"Deployment {deployment_id} is no longer {claimed_status}, claim left as is")
        return reverted

    async def create_deployment(
        self,
        db: AsyncSession,
        project_id: str,
        project_name: str,
        cpu_limit: Optional[int] = None,
        memory_limit: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> Deployment:
        """
        Create a pending deployment with a freshly reserved subdomain.

        Raises:
            DeploymentInProgressError: The project already has an in-flight deployment
            SubdomainAllocationError: No unique subdomain could be reserved
        """
        repo = DeploymentRepository(db)

        subdomain = await self.subdomains.allocate(db, project_name, project_id)
        deployment = await repo.add_pending(
            project_id=project_id,
            project_name=project_name,
            subdomain=subdomain,
            cpu_limit=cpu_limit or settings.DEFAULT_CPU_LIMIT,
            memory_limit=memory_limit or settings.DEFAULT_MEMORY_LIMIT,
            metadata=metadata,
        )
        await ReservationRepository(db).attach_subdomain(subdomain, deployment.id)
        await db.commit()
        await db.refresh(deployment)

        logger.info(f"Created deployment {deployment.id} for project {project_id} ({subdomain})")
        return deployment

    async def execute_deployment(
        self,
        db: AsyncSession,
        deployment_id: UUID,
        files: List[SourceFile],
        cancel: Optional[CancellationToken] = None,
    ) -> Deployment:
        """
        Build and start a pending deployment.

        This is called by the Celery worker.

        Raises:
            InvalidStatusTransitionError: The deployment is no longer pending
            DomainException: Any build or runtime failure, after the record
                has been marked failed
        """
        repo = DeploymentRepository(db)
        deployment = await repo.transition_or_raise(deployment_id, "building")
        container_id = None

        try:
            buildpack = detect_buildpack(files)
            deployment.framework = buildpack.framework
            await self._append_log(
                db, deployment,
                f"Detected buildpack: {buildpack.framework} "
                f"(build: {buildpack.build_command or '-'}, start: {buildpack.start_command or '-'})",
            )

            build = await self.builder.build(
                BuildContext(
                    project_id=deployment.project_id,
                    project_name=deployment.project_name,
                    subdomain=deployment.subdomain,
                    source_files=files,
                ),
                cancel=cancel,
            )
            await self._append_log(db, deployment, build.build_logs)
            await self._append_log(db, deployment, f"Built image {build.image_name}")

            deployment = await repo.transition_or_raise(
                deployment_id, "deploying", from_statuses=("building",), image_name=build.image_name
            )

            host_port = await self.ports.allocate(db, deployment_id)
            handle = await self.runner.run(
                build.image_name,
                deployment.subdomain,
                cpu_limit=deployment.cpu_limit,
                memory_limit=deployment.memory_limit,
                host_port=host_port,
                cancel=cancel,
            )
            container_id = handle.container_id

            now = datetime.utcnow()
            deployment = await repo.transition_or_raise(
                deployment_id,
                "running",
                container_id=handle.container_id,
                host_port=handle.port,
                deployment_url=handle.deployment_url,
                started_at=now,
                completed_at=now,
            )
            await self._append_log(
                db, deployment,
                f"Container {handle.container_id[:12]} running at {handle.deployment_url}",
            )
            await repo.clear_cancel_request(deployment_id)
        except Exception as e:
            if container_id:
                await self._discard_container(container_id)
            await self._mark_failed(db, deployment_id, str(e))
            raise

        logger.info(f"Deployment {deployment_id} running at {deployment.deployment_url}")
        return deployment

    async def _discard_container(self, container_id: str) -> None:
        try:
            await self.lifecycle.remove(container_id, force=True)
        except DomainException as e:
            logger.warning(f"Could not remove container {container_id[:12]}: {e}")

    async def begin_stop(self, db: AsyncSession, deployment_id: UUID) -> Deployment:
        """Claim running -> stopping. The loser of a race gets a 409."""
        return await DeploymentRepository(db).transition_or_raise(deployment_id, "stopping")

    async def finish_stop(self, db: AsyncSession, deployment_id: UUID) -> Deployment:
        """
        Stop the container of a deployment already claimed as stopping.

        The port reservation is kept so a restart gets the same port back.
        """
        repo = DeploymentRepository(db)
        deployment = await repo.get_by_id_or_raise(deployment_id)
        if deployment.status != "stopping":
            raise InvalidStatusTransitionError(str(deployment_id), deployment.status, "stopped")

        if deployment.container_id:
            try:
                await self.lifecycle.stop(deployment.container_id)
            except ContainerNotFoundError:
                logger.warning(f"Container {deployment.container_id} not found, considering it stopped")
            except Exception as e:
                await self._mark_failed(db, deployment_id, str(e))
                raise

        deployment = await repo.transition_or_raise(
            deployment_id, "stopped", stopped_at=datetime.utcnow()
        )
        logger.info(f"Deployment {deployment_id} stopped")
        return deployment

    async def stop_deployment(self, db: AsyncSession, deployment_id: UUID) -> Deployment:
        await self.begin_stop(db, deployment_id)
        return await self.finish_stop(db, deployment_id)

    async def begin_restart(
        self,
        db: AsyncSession,
        deployment_id: UUID,
        from_status: Optional[str] = None,
    ) -> Deployment:
        """
        Claim running|stopped -> deploying.

        A cancellation flag left over from an earlier build is dropped first,
        so it cannot abort this restart.

        Args:
            from_status: Only claim from this exact status
        """
        repo = DeploymentRepository(db)
        allowed = _narrow(("running", "stopped"), from_status)
        deployment = await repo.get_by_id_or_raise(deployment_id)
        # An in-flight build keeps its flag; the claim below rejects it anyway
        if deployment.status in allowed:
            await repo.clear_cancel_request(deployment_id)
        return await repo.transition_or_raise(deployment_id, "deploying", from_statuses=allowed)

    async def finish_restart(
        self,
        db: AsyncSession,
        deployment_id: UUID,
        cancel: Optional[CancellationToken] = None,
    ) -> Deployment:
        """
        Restart the container of a deployment already claimed as deploying.

        When the container has disappeared, a fresh one is started from the
        deployment's image on its reserved port. A fired cancellation token
        kills the runtime command and fails the deployment.
        """
        repo = DeploymentRepository(db)
        deployment = await repo.get_by_id_or_raise(deployment_id)
        if deployment.status != "deploying":
            raise InvalidStatusTransitionError(str(deployment_id), deployment.status, "running")

        values: Dict[str, Any] = {}
        try:
            restarted = False
            if deployment.container_id:
                try:
                    await self.lifecycle.restart(deployment.container_id, cancel=cancel)
                    restarted = True
                except ContainerNotFoundError:
                    logger.warning(
                        f"Container {deployment.container_id} for deployment {deployment_id} "
                        f"is gone, starting a new one"
                    )

            if not restarted:
                if not deployment.image_name:
                    raise ContainerRuntimeError("restart", "no container or image to restart from")
                host_port = await self.ports.allocate(db, deployment_id)
                handle = await self.runner.run(
                    deployment.image_name,
                    deployment.subdomain,
                    cpu_limit=deployment.cpu_limit,
                    memory_limit=deployment.memory_limit,
                    host_port=host_port,
                    cancel=cancel,
                )
                values.update(
                    container_id=handle.container_id,
                    host_port=handle.port,
                    deployment_url=handle.deployment_url,
                )

            deployment = await repo.transition_or_raise(
                deployment_id,
                "running",
                started_at=datetime.utcnow(),
                stopped_at=None,
                error_message=None,
                **values,
            )
        except Exception as e:
            await self._mark_failed(db, deployment_id, str(e))
            raise

        await self._append_log(db, deployment, "Deployment restarted")
        await repo.clear_cancel_request(deployment_id)
        logger.info(f"Deployment {deployment_id} restarted")
        return deployment

    async def restart_deployment(self, db: AsyncSession, deployment_id: UUID) -> Deployment:
        await self.begin_restart(db, deployment_id)
        return await self.finish_restart(db, deployment_id)

    async def begin_remove(
        self,
        db: AsyncSession,
        deployment_id: UUID,
        from_status: Optional[str] = None,
    ) -> Deployment:
        """
        Claim running|stopped|failed -> removing.

        Args:
            from_status: Only claim from this exact status
        """
        return await DeploymentRepository(db).transition_or_raise(
            deployment_id, "removing", from_statuses=_narrow(("running", "stopped", "failed"), from_status)
        )

    async def finish_remove(self, db: AsyncSession, deployment_id: UUID) -> Deployment:
        """
        Force-remove the container of a deployment claimed as removing, then
        free its port and subdomain and mark it removed.

        When the container cannot be removed the deployment goes to failed
        with its reservations kept, so the removal can be retried.
        """
        repo = DeploymentRepository(db)
        deployment = await repo.get_by_id_or_raise(deployment_id)
        if deployment.status != "removing":
            raise InvalidStatusTransitionError(str(deployment_id), deployment.status, "removed")

        if deployment.container_id:
            try:
                await self.lifecycle.remove(deployment.container_id, force=True)
            except ContainerNotFoundError:
                logger.info(f"Container {deployment.container_id} already gone")
            except Exception as e:
                await self._mark_failed(
                    db, deployment_id, str(e), from_statuses=("removing",), release_port=False
                )
                raise

        reservations = ReservationRepository(db)
        await reservations.release_port(deployment_id)
        await reservations.release_subdomain(deployment.subdomain)
        deployment = await repo.transition_or_raise(
            deployment_id,
            "removed",
            stopped_at=deployment.stopped_at or datetime.utcnow(),
        )

        logger.info(f"Deployment {deployment_id} removed")
        return deployment

    async def remove_deployment(self, db: AsyncSession, deployment_id: UUID) -> Deployment:
        await self.begin_remove(db, deployment_id)
        return await self.finish_remove(db, deployment_id)

    async def request_cancel(self, db: AsyncSession, deployment_id: UUID) -> Deployment:
        """
        Cancel an in-flight build or restart.

        A pending deployment fails immediately. For building/deploying the
        cancellation flag is set; the worker's token picks it up and kills the
        running external command. The flag is cleared once the deployment
        reaches running.

        Raises:
            InvalidStatusTransitionError: The deployment is not in flight
        """
        repo = DeploymentRepository(db)
        deployment = await repo.get_by_id_or_raise(deployment_id)

        if deployment.status not in CANCELLABLE_STATUSES:
            raise InvalidStatusTransitionError(str(deployment_id), deployment.status, "failed")

        await repo.update_metadata(
            deployment_id,
            {"cancel_requested": True, "cancel_requested_at": datetime.utcnow().isoformat()},
        )

        if deployment.status == "pending":
            await self._mark_failed(db, deployment_id, "Deployment cancelled before the build started")

        logger.info(f"Cancellation requested for deployment {deployment_id}")
        deployment = await repo.get_by_id_or_raise(deployment_id)
        await db.refresh(deployment)
        return deployment

    async def get_health(self, db: AsyncSession, deployment_id: UUID) -> ContainerHealth:
        deployment = await DeploymentRepository(db).get_by_id_or_raise(deployment_id)
        if not deployment.container_id or deployment.status == "removed":
            return ContainerHealth(status=HealthStatus.UNKNOWN)
        return await self.lifecycle.health_check(deployment.container_id)

    async def get_logs(
        self,
        db: AsyncSession,
        deployment_id: UUID,
        tail: Optional[int] = None,
    ) -> Tuple[Deployment, Optional[str]]:
        """
        Get the build/deploy log and the container log tail.

        Returns:
            (deployment, container_logs); container_logs is None when the
            deployment never started a container
        """
        deployment = await DeploymentRepository(db).get_by_id_or_raise(deployment_id)
        if not deployment.container_id or deployment.status == "removed":
            return deployment, None
        return deployment, await self.lifecycle.get_logs(deployment.container_id, tail)

    async def list_deployments(
        self,
        db: AsyncSession,
        project_id: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        size: int = 100,
    ) -> Tuple[List[Deployment], int]:
        return await DeploymentRepository(db).list_deployments(project_id, status, page, size)

    async def cleanup_stuck_deployments(self, db: AsyncSession) -> int:
        """
        Clean up deployments stuck in transitional states.

        Marks as failed any deployments that have been stuck too long in:
        - pending (>10 min): task never started
        - building/deploying (>BUILD_TIMEOUT + 5 min): worker crashed
        - stopping (>10 min): stop task crashed
        - removing (>10 min): remove task crashed

        Returns:
            Number of deployments cleaned up
        """
        repo = DeploymentRepository(db)
        now = datetime.utcnow()
        build_timeout = timedelta(seconds=settings.BUILD_TIMEOUT) + BUILD_GRACE

        # A stuck removal may still have a live container, so its port stays reserved
        checks = [
            (("pending",), PENDING_TIMEOUT, "Deployment task never started (timeout)", True),
            (("building", "deploying"), build_timeout, "Deployment execution crashed (timeout)", True),
            (("stopping",), STOPPING_TIMEOUT, "Stop task crashed (timeout)", True),
            (("removing",), REMOVING_TIMEOUT, "Remove task crashed (timeout)", False),
        ]

        stuck = []
        for statuses, timeout, reason, release_port in checks:
            for deployment in await repo.get_by_status(statuses, older_than=now - timeout):
                stuck.append((deployment.id, deployment.status, reason, release_port))

        cleaned = 0
        for deployment_id, status, reason, release_port in stuck:
            logger.warning(f"Deployment {deployment_id} stuck in {status}, marking as failed")
            if await self._mark_failed(
                db, deployment_id, reason, from_statuses=(status,), release_port=release_port
            ):
                cleaned += 1

        if cleaned > 0:
            logger.info(f"Cleaned up {cleaned} stuck deployments")
        return cleaned

    async def reconcile_deployments(self, db: AsyncSession) -> ReconcileReport:
        """
        Compare deployment records with the containers actually present.

        - running records whose container is gone or not running -> failed
        - managed containers without a live record -> logged as orphans,
          force-removed only when RECONCILE_REMOVE_ORPHANS is set

        Running records are read before the container snapshot and live
        records after it, so neither check sees a container that started
        during the pass as missing. A record is only failed while it is
        still running.
        """
        report = ReconcileReport()
        repo = DeploymentRepository(db)
        running = [(d.id, d.subdomain) for d in await repo.get_by_status(("running",))]

        containers = await self.lifecycle.list_managed_containers()
        by_subdomain = {c.subdomain: c for c in containers if c.subdomain}

        for deployment_id, subdomain in running:
            report.checked += 1
            container = by_subdomain.get(subdomain)
            if container is None:
                reason = "Container no longer exists"
            elif container.state != "running":
                reason = f"Container is {container.state}"
            else:
                continue
            logger.warning(f"Deployment {deployment_id}: {reason}, marking as failed")
            if await self._mark_failed(db, deployment_id, reason, from_statuses=("running",)):
                report.failed += 1

        live_subdomains = {d.subdomain for d in await repo.get_by_status(LIVE_STATUSES)}
        for container in containers:
            if container.subdomain in live_subdomains:
                continue
            report.orphans += 1
            logger.warning(
                f"Orphaned container {container.container_id} "
                f"(subdomain={container.subdomain}, state={container.state})"
            )
            if settings.RECONCILE_REMOVE_ORPHANS:
                try:
                    await self.lifecycle.remove(container.container_id, force=True)
                    report.removed_orphans += 1
                except DomainException as e:
                    logger.warning(f"Failed to remove orphaned container {container.container_id}: {e}")

        logger.info(f"Reconciliation finished: {report.as_dict()}")
        return report


# Singleton instance
deployment_service = DeploymentService()
