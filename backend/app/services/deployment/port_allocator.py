"""
Port allocation service for built-in deployments.

Allocates host ports in a configurable range (default 3000-9000). A port is
owned by whichever deployment inserts its reservation row first, so two
concurrent allocations can never hand out the same port.
"""
import logging
from typing import Optional, Set
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import PortAllocationError
from app.core.process import run_command
from app.repositories.reservation_repository import ReservationRepository

logger = logging.getLogger(__name__)


class PortAllocator:
    """
    Host port allocation with database reservations.

    Candidates exclude ports already reserved in the database and ports
    published by running containers that the database does not know about.
    """

    def __init__(
        self,
        port_range_start: int = None,
        port_range_end: int = None,
        max_attempts: int = None,
    ):
        self.port_range_start = port_range_start or settings.DEPLOYMENT_PORT_RANGE_START
        self.port_range_end = port_range_end or settings.DEPLOYMENT_PORT_RANGE_END
        self.max_attempts = max_attempts or settings.PORT_ALLOCATION_ATTEMPTS

    async def get_docker_ports_in_use(self) -> Set[int]:
        """
        Get all host ports bound by RUNNING Docker containers.

        Stopped containers don't hold ports, so only `docker ps` without -a
        is consulted.
        """
        ports = set()
        try:
            result = await run_command(
                [settings.DOCKER_BINARY, "ps", "--format", "{{.Ports}}"],
                timeout=settings.COMMAND_TIMEOUT,
            )
        except Exception as e:
            logger.warning(f"Error checking Docker ports: {e}")
            return ports

        if not result.ok:
            logger.warning(f"Docker ps error: {result.stderr}")
            return ports

        # Port mappings look like "0.0.0.0:9000->3000/tcp, :::9000->3000/tcp"
        for line in result.stdout.splitlines():
            for mapping in line.split(", "):
                if "->" not in mapping or ":" not in mapping:
                    continue
                try:
                    host_port = int(mapping.split("->")[0].rsplit(":", 1)[1])
                except (ValueError, IndexError):
                    continue
                if self.port_range_start <= host_port <= self.port_range_end:
                    ports.add(host_port)
        return ports

    async def allocate(self, db: AsyncSession, deployment_id: UUID) -> int:
        """
        Reserve a host port for a deployment.

        A deployment that already holds a reservation (restart) gets the
        same port back.

        Args:
            db: Database session
            deployment_id: Deployment that will own the port

        Returns:
            Reserved port number

        Raises:
            PortAllocationError: If the range is exhausted or every attempt collided
        """
        repo = ReservationRepository(db)

        existing = await repo.get_port_for_deployment(deployment_id)
        if existing is not None:
            logger.info(f"Reusing port {existing} for deployment {deployment_id}")
            return existing

        reserved = await repo.get_reserved_ports()
        docker_used = await self.get_docker_ports_in_use()

        orphaned = docker_used - reserved
        if orphaned:
            logger.warning(f"Found Docker ports without reservations: {sorted(orphaned)}")

        unavailable = reserved | docker_used
        attempts = 0

        for port in range(self.port_range_start, self.port_range_end + 1):
            if port in unavailable:
                continue

            attempts += 1
            if await repo.reserve_port(port, deployment_id):
                await db.commit()
                logger.info(f"Allocated port {port} for deployment {deployment_id}")
                return port

            if attempts >= self.max_attempts:
                raise PortAllocationError(
                    self.port_range_start,
                    self.port_range_end,
                    f"gave up after {attempts} concurrent reservation conflicts",
                )

        raise PortAllocationError(self.port_range_start, self.port_range_end)

    async def release(self, db: AsyncSession, deployment_id: UUID) -> Optional[int]:
        """
        Release a deployment's port reservation.

        Returns:
            The released port, or None if the deployment held none
        """
        port = await ReservationRepository(db).release_port(deployment_id)
        await db.commit()
        if port is not None:
            logger.info(f"Port {port} released by deployment {deployment_id}")
        return port


# Singleton instance
port_allocator = PortAllocator()
