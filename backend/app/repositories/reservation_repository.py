"""
Repository for subdomain and port reservations.

Reservation inserts run inside a SAVEPOINT so a primary-key collision only
rolls back the failed claim, not the caller's surrounding transaction.
"""
import logging
from typing import Optional, Set
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.reservation import PortReservation, SubdomainReservation

logger = logging.getLogger(__name__)


class ReservationRepository:
    """Claims and releases subdomains and host ports."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def reserve_subdomain(self, subdomain: str, project_id: str) -> bool:
        """
        Try to claim a subdomain.

        Returns:
            True if claimed, False if another deployment already holds it
        """
        try:
            async with self.db.begin_nested():
                self.db.add(SubdomainReservation(subdomain=subdomain, project_id=project_id))
                await self.db.flush()
        except IntegrityError:
            logger.info(f"Subdomain {subdomain} already reserved")
            return False
        return True

    async def attach_subdomain(self, subdomain: str, deployment_id: UUID) -> None:
        await self.db.execute(
            update(SubdomainReservation)
            .where(SubdomainReservation.subdomain == subdomain)
            .values(deployment_id=deployment_id)
        )

    async def release_subdomain(self, subdomain: str) -> None:
        await self.db.execute(
            delete(SubdomainReservation).where(SubdomainReservation.subdomain == subdomain)
        )

    async def get_reserved_ports(self) -> Set[int]:
        result = await self.db.execute(select(PortReservation.port))
        return {row[0] for row in result.fetchall()}

    async def get_port_for_deployment(self, deployment_id: UUID) -> Optional[int]:
        result = await self.db.execute(
            select(PortReservation.port).where(PortReservation.deployment_id == deployment_id)
        )
        return result.scalar_one_or_none()

    async def reserve_port(self, port: int, deployment_id: UUID) -> bool:
        """
        Try to claim a host port for a deployment.

        Returns:
            True if claimed, False if the port is already reserved
        """
        try:
            async with self.db.begin_nested():
                self.db.add(PortReservation(port=port, deployment_id=deployment_id))
                await self.db.flush()
        except IntegrityError:
            logger.info(f"Port {port} already reserved")
            return False
        return True

    async def release_port(self, deployment_id: UUID) -> Optional[int]:
        """Delete a deployment's port reservation and return the freed port."""
        port = await self.get_port_for_deployment(deployment_id)
        if port is None:
            return None
        await self.db.execute(
            delete(PortReservation).where(PortReservation.deployment_id == deployment_id)
        )
        return port
