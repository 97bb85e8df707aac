"""
Repository for Deployment entity database operations.
"""
from datetime import datetime
from typing import Any, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import and_, desc, func, select, update
from sqlalchemy.exc import IntegrityError

from app.core.database import is_unique_violation
from app.core.exceptions import (
    DeploymentInProgressError,
    DeploymentNotFoundError,
    InvalidStatusTransitionError,
)
from app.models.deployment import Deployment
from app.repositories.base import BaseRepository
from app.schemas.deployment import ALLOWED_TRANSITIONS

IN_FLIGHT_CONSTRAINT = "uq_deployments_project_in_flight"


class DeploymentRepository(BaseRepository[Deployment]):
    """Repository for Deployment database operations."""

    model = Deployment

    async def get_by_id_or_raise(self, id: UUID) -> Deployment:
        """Get a deployment by ID, raising exception if not found."""
        deployment = await self.get_by_id(id)
        if not deployment:
            raise DeploymentNotFoundError(str(id))
        return deployment

    async def list_deployments(
        self,
        project_id: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        size: int = 100,
    ) -> Tuple[List[Deployment], int]:
        """List deployments with optional filters, newest first."""
        conditions = []

        if project_id:
            conditions.append(Deployment.project_id == project_id)
        if status:
            conditions.append(Deployment.status == status)

        count_stmt = select(func.count(Deployment.id))
        if conditions:
            count_stmt = count_stmt.where(and_(*conditions))
        total = (await self.db.execute(count_stmt)).scalar_one()

        query = (
            select(Deployment)
            .order_by(desc(Deployment.created_at), Deployment.id)
            .offset((page - 1) * size)
            .limit(size)
        )
        if conditions:
            query = query.where(and_(*conditions))

        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def add_pending(
        self,
        project_id: str,
        project_name: str,
        subdomain: str,
        cpu_limit: int,
        memory_limit: int,
        metadata: Optional[dict] = None,
    ) -> Deployment:
        """
        Insert a pending deployment without committing.

        Raises:
            DeploymentInProgressError: The project already has an in-flight deployment
        """
        deployment = Deployment(
            project_id=project_id,
            project_name=project_name,
            provider="builtin",
            subdomain=subdomain,
            status="pending",
            cpu_limit=cpu_limit,
            memory_limit=memory_limit,
            logs="",
            meta_data=metadata or {},
        )
        self.db.add(deployment)
        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            if is_unique_violation(e, IN_FLIGHT_CONSTRAINT):
                raise DeploymentInProgressError(project_id)
            raise
        return deployment

    async def transition_status(
        self,
        deployment_id: UUID,
        target_status: str,
        from_statuses: Optional[Iterable[str]] = None,
        **values: Any,
    ) -> bool:
        """
        Atomically move a deployment into target_status.

        The UPDATE only matches when the current status is an allowed
        predecessor of target_status, so two concurrent operations on the same
        deployment cannot both succeed.

        Args:
            deployment_id: Deployment UUID
            target_status: New status value
            from_statuses: Narrower set of predecessor statuses for this call
            **values: Extra columns to set in the same statement

        Returns:
            True if this caller won the transition

        Raises:
            DeploymentInProgressError: Entering an in-flight status while the
                project already has another in-flight deployment
        """
        allowed = ALLOWED_TRANSITIONS[target_status]
        if from_statuses is not None:
            allowed = allowed.intersection(from_statuses)
        stmt = (
            update(Deployment)
            .where(
                Deployment.id == deployment_id,
                Deployment.status.in_(allowed),
            )
            .values(status=target_status, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            if is_unique_violation(e, IN_FLIGHT_CONSTRAINT):
                project_id = (await self.db.execute(
                    select(Deployment.project_id).where(Deployment.id == deployment_id)
                )).scalar_one_or_none()
                raise DeploymentInProgressError(project_id or str(deployment_id))
            raise
        return result.rowcount == 1

    async def transition_or_raise(
        self,
        deployment_id: UUID,
        target_status: str,
        from_statuses: Optional[Iterable[str]] = None,
        **values: Any,
    ) -> Deployment:
        """
        Transition a deployment and return the refreshed record.

        Raises:
            DeploymentNotFoundError: If deployment not found
            InvalidStatusTransitionError: If the current status does not allow it
        """
        if not await self.transition_status(deployment_id, target_status, from_statuses, **values):
            deployment = await self.get_by_id_or_raise(deployment_id)
            raise InvalidStatusTransitionError(str(deployment_id), deployment.status, target_status)

        deployment = await self.get_by_id_or_raise(deployment_id)
        await self.db.refresh(deployment)
        return deployment

    async def revert_status(
        self,
        deployment_id: UUID,
        claimed_status: str,
        previous_status: str,
    ) -> bool:
        """
        Undo a claim whose follow-up work was never queued.

        Only matches while the deployment still holds the claimed status, so
        a worker that already picked the work up is never overridden.

        Returns:
            True if the claim was reverted
        """
        stmt = (
            update(Deployment)
            .where(
                Deployment.id == deployment_id,
                Deployment.status == claimed_status,
            )
            .values(status=previous_status, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount == 1

    async def update_metadata(
        self,
        deployment_id: UUID,
        metadata: dict,
        merge: bool = True,
    ) -> Deployment:
        """
        Update deployment metadata.

        Args:
            deployment_id: Deployment UUID
            metadata: Metadata to set or merge
            merge: If True, merge with existing metadata; if False, replace
        """
        deployment = await self.get_by_id_or_raise(deployment_id)

        if merge:
            current = deployment.meta_data or {}
            deployment.meta_data = {**current, **metadata}
        else:
            deployment.meta_data = metadata

        await self.db.commit()
        return deployment

    async def is_cancel_requested(self, deployment_id: UUID) -> bool:
        """Read the cancellation flag straight from the database."""
        result = await self.db.execute(
            select(Deployment.meta_data).where(Deployment.id == deployment_id)
        )
        metadata = result.scalar_one_or_none() or {}
        return bool(metadata.get("cancel_requested"))

    async def clear_cancel_request(self, deployment_id: UUID) -> None:
        """Drop the cancellation flag so it cannot fire on a later operation."""
        deployment = await self.get_by_id_or_raise(deployment_id)
        metadata = dict(deployment.meta_data or {})
        if metadata.pop("cancel_requested", None) is None:
            return
        metadata.pop("cancel_requested_at", None)
        await self.update_metadata(deployment_id, metadata, merge=False)

    async def get_by_status(
        self,
        statuses: Tuple[str, ...],
        older_than: Optional[datetime] = None,
    ) -> List[Deployment]:
        """Deployments in any of the given statuses, optionally last updated before a cutoff."""
        stmt = select(Deployment).where(Deployment.status.in_(statuses))
        if older_than is not None:
            stmt = stmt.where(Deployment.updated_at < older_than)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
