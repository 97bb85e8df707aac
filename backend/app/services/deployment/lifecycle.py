"""
Lifecycle controller for deployment containers.

Stop, restart, remove, health and log access for containers started by the
ContainerRunner, keyed by container ID.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from app.core.config import settings
from app.core.exceptions import ContainerNotFoundError, ContainerRuntimeError
from app.core.process import CancellationToken, CommandResult, run_command
from app.schemas.deployment import HealthStatus
from app.services.deployment.container_runner import MANAGED_LABEL, SUBDOMAIN_LABEL

logger = logging.getLogger(__name__)

NOT_FOUND_MARKERS = ("No such container", "No such object")


@dataclass
class ContainerHealth:
    """Point-in-time container health."""

    status: HealthStatus
    uptime: int = 0  # seconds
    state: Optional[str] = None


@dataclass
class ManagedContainer:
    """A container carrying the managed label."""

    container_id: str
    subdomain: Optional[str]
    state: str


def _is_not_found(output: str) -> bool:
    return any(marker in output for marker in NOT_FOUND_MARKERS)


def _parse_started_at(value: str) -> Optional[datetime]:
    """Parse Docker's RFC3339 StartedAt (nanosecond precision, Z suffix)."""
    if not value or value.startswith("0001-01-01"):
        return None
    try:
        trimmed = value.split(".")[0].replace("Z", "")
        return datetime.fromisoformat(trimmed).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


class ContainerLifecycle:
    """Controls existing deployment containers through the Docker CLI."""

    def __init__(self, docker_binary: Optional[str] = None, timeout: Optional[int] = None):
        self.docker = docker_binary or settings.DOCKER_BINARY
        self.timeout = timeout or settings.COMMAND_TIMEOUT

    async def _run(
        self,
        operation: str,
        container_id: str,
        *args: str,
        cancel: Optional[CancellationToken] = None,
    ) -> CommandResult:
        """
        Run a single container command, mapping failures to domain errors.

        Raises:
            ContainerNotFoundError: The container does not exist
            ContainerRuntimeError: Any other non-zero exit
        """
        cmd = [self.docker, *args]
        try:
            result = await run_command(cmd, timeout=self.timeout, cancel=cancel)
        except OSError as e:
            raise ContainerRuntimeError(operation, str(e))

        if not result.ok:
            if _is_not_found(result.output):
                raise ContainerNotFoundError(container_id)
            logger.error(f"docker {operation} failed for {container_id}: {result.output}")
            raise ContainerRuntimeError(operation, result.output or f"exit code {result.return_code}")
        return result

    async def stop(self, container_id: str) -> None:
        await self._run("stop", container_id, "stop", container_id)
        logger.info(f"Stopped container {container_id[:12]}")

    async def restart(self, container_id: str, cancel: Optional[CancellationToken] = None) -> None:
        await self._run("restart", container_id, "restart", container_id, cancel=cancel)
        logger.info(f"Restarted container {container_id[:12]}")

    async def remove(self, container_id: str, force: bool = False) -> None:
        args = ["rm", "-f", container_id] if force else ["rm", container_id]
        await self._run("remove", container_id, *args)
        logger.info(f"Removed container {container_id[:12]}")

    async def health_check(self, container_id: str) -> ContainerHealth:
        """
        Inspect a container's state.

        Never raises: any failure reports status 'unknown' with zero uptime.
        """
        cmd = [
            self.docker, "inspect", container_id,
            "--format", '{"status": "{{.State.Status}}", "started_at": "{{.State.StartedAt}}"}',
        ]
        try:
            result = await run_command(cmd, timeout=self.timeout)
            if not result.ok:
                logger.debug(f"Health inspect failed for {container_id}: {result.output}")
                return ContainerHealth(status=HealthStatus.UNKNOWN)

            data = json.loads(result.stdout)
            state = data.get("status") or None
            started_at = _parse_started_at(data.get("started_at", ""))
        except Exception as e:
            logger.debug(f"Health check failed for {container_id}: {e}")
            return ContainerHealth(status=HealthStatus.UNKNOWN)

        uptime = 0
        if started_at is not None:
            uptime = max(0, int((datetime.now(timezone.utc) - started_at).total_seconds()))

        status = HealthStatus.HEALTHY if state == "running" else HealthStatus.UNHEALTHY
        return ContainerHealth(status=status, uptime=uptime, state=state)

    async def get_logs(self, container_id: str, tail: Optional[int] = None) -> str:
        """
        Get the tail of a container's logs.

        Returns:
            Combined stdout and stderr; on failure, the error text
        """
        tail = tail or settings.LOG_TAIL_DEFAULT
        cmd = [self.docker, "logs", "--tail", str(tail), container_id]
        try:
            result = await run_command(cmd, timeout=self.timeout)
        except Exception as e:
            return f"Error getting logs: {e}"

        if not result.ok:
            return f"Error getting logs: {result.output}"
        return result.output

    async def list_managed_containers(self) -> List[ManagedContainer]:
        """
        List every container (running or not) carrying the managed label.

        Raises:
            ContainerRuntimeError: If docker ps fails
        """
        cmd = [
            self.docker, "ps", "-a",
            "--filter", f"label={MANAGED_LABEL}=true",
            "--format", f'{{{{.ID}}}}\t{{{{.Label "{SUBDOMAIN_LABEL}"}}}}\t{{{{.State}}}}',
        ]
        try:
            result = await run_command(cmd, timeout=self.timeout)
        except OSError as e:
            raise ContainerRuntimeError("ps", str(e))
        if not result.ok:
            raise ContainerRuntimeError("ps", result.output)

        containers = []
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if not parts or not parts[0]:
                continue
            containers.append(ManagedContainer(
                container_id=parts[0],
                subdomain=parts[1] if len(parts) > 1 and parts[1] else None,
                state=parts[2] if len(parts) > 2 else "unknown",
            ))
        return containers


container_lifecycle = ContainerLifecycle()
