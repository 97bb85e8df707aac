"""
Container runner using the Docker CLI.

Starts a detached, auto-restarting container for a built image with CPU and
memory limits, a host port mapping and a subdomain label.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from app.core.config import settings
from app.core.exceptions import ContainerRuntimeError, InvalidResourceLimitError
from app.core.process import CancellationToken, run_command
from app.services.deployment.subdomain import normalize_subdomain

logger = logging.getLogger(__name__)

SUBDOMAIN_LABEL = "catalyst.subdomain"
MANAGED_LABEL = "catalyst.managed"

CPU_LIMIT_RANGE = (100, 8000)  # millicores
MEMORY_LIMIT_RANGE = (64, 16384)  # MB


@dataclass
class ContainerHandle:
    """A started container, as persisted into the deployment record."""

    container_id: str
    port: int
    deployment_url: str


def deployment_url_for(subdomain: str) -> str:
    return f"https://{subdomain}.{settings.DEPLOYMENT_DOMAIN}"


def container_name_for(subdomain: str) -> str:
    return f"{settings.CONTAINER_PREFIX}-{subdomain}"


def format_cpus(cpu_limit: int) -> str:
    """Millicores to the runtime's fractional CPU count: 1500 -> '1.5'."""
    return f"{cpu_limit / 1000:g}" if cpu_limit % 1000 else f"{cpu_limit // 1000}.0"


def _check_range(field: str, value: int, bounds: tuple) -> None:
    minimum, maximum = bounds
    if not minimum <= value <= maximum:
        raise InvalidResourceLimitError(field, value, minimum, maximum)


class ContainerRunner:
    """
    Runs deployment containers.

    Responsibilities:
    - Sanitize the subdomain before it reaches container names or labels
    - Convert resource limits to runtime units
    - Map the host port and read back Docker-assigned ports
    - Remove partially created containers when docker run fails
    """

    def __init__(
        self,
        docker_binary: Optional[str] = None,
        container_port: Optional[int] = None,
        timeout: Optional[int] = None,
    ):
        self.docker = docker_binary or settings.DOCKER_BINARY
        self.container_port = container_port or settings.DEPLOYMENT_CONTAINER_PORT
        self.timeout = timeout or settings.RUN_TIMEOUT

    def build_run_command(
        self,
        image_name: str,
        subdomain: str,
        cpu_limit: int,
        memory_limit: int,
        host_port: Optional[int] = None,
        environment: Optional[Dict[str, str]] = None,
    ) -> List[str]:
        """
        Build the docker run argument vector.

        Args:
            image_name: Image tag to run
            subdomain: Already-sanitized subdomain
            cpu_limit: Millicores
            memory_limit: Megabytes
            host_port: Host port; None lets Docker assign one
            environment: Extra environment variables
        """
        # Host port 0 asks Docker for an ephemeral port
        port_mapping = f"{host_port or 0}:{self.container_port}"

        cmd = [
            self.docker, "run",
            "-d",
            "--name", container_name_for(subdomain),
            f"--cpus={format_cpus(cpu_limit)}",
            f"--memory={memory_limit}m",
            "-p", port_mapping,
            "-e", f"PORT={self.container_port}",
            "--restart", "unless-stopped",
            "--label", f"{SUBDOMAIN_LABEL}={subdomain}",
            "--label", f"{MANAGED_LABEL}=true",
        ]

        for key, value in (environment or {}).items():
            cmd.extend(["-e", f"{key}={value}"])

        cmd.append(image_name)
        return cmd

    async def run(
        self,
        image_name: str,
        subdomain: str,
        cpu_limit: int = 1000,
        memory_limit: int = 512,
        host_port: Optional[int] = None,
        environment: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> ContainerHandle:
        """
        Start a container for an image.

        Returns:
            ContainerHandle with container ID, host port and public URL

        Raises:
            InvalidNameError: If the subdomain has nothing valid left after sanitizing
            InvalidResourceLimitError: If limits are out of range
            ContainerRuntimeError: If docker run fails or the port cannot be read
            CommandTimeoutError / OperationCancelledError: docker run was killed
        """
        safe_subdomain = normalize_subdomain(subdomain)
        _check_range("cpu_limit", cpu_limit, CPU_LIMIT_RANGE)
        _check_range("memory_limit", memory_limit, MEMORY_LIMIT_RANGE)

        cmd = self.build_run_command(
            image_name, safe_subdomain, cpu_limit, memory_limit, host_port, environment
        )
        logger.info(
            f"Starting container {container_name_for(safe_subdomain)} from {image_name} "
            f"(cpus={format_cpus(cpu_limit)}, memory={memory_limit}m, port={host_port or 'auto'})"
        )

        try:
            result = await run_command(cmd, timeout=timeout or self.timeout, cancel=cancel)
        except OSError as e:
            raise ContainerRuntimeError("run", str(e))

        if not result.ok:
            error_msg = result.output or "Unknown error"
            logger.error(f"Failed to start container for {safe_subdomain}: {error_msg}")
            await self._cleanup_failed_container(container_name_for(safe_subdomain))
            raise ContainerRuntimeError("run", error_msg)

        container_id = result.stdout.strip().splitlines()[-1][:64] if result.stdout.strip() else ""
        if not container_id:
            raise ContainerRuntimeError("run", "docker run returned no container ID")

        port = host_port
        if not port:
            port = await self._get_container_host_port(container_id)
            if not port:
                await self._cleanup_failed_container(container_name_for(safe_subdomain))
                raise ContainerRuntimeError("run", "Failed to retrieve auto-assigned port from Docker")

        logger.info(f"Started container {container_id[:12]} for {safe_subdomain} on port {port}")

        return ContainerHandle(
            container_id=container_id,
            port=port,
            deployment_url=deployment_url_for(safe_subdomain),
        )

    async def _get_container_host_port(self, container_id: str) -> Optional[int]:
        """Read the host port Docker assigned to the container port."""
        cmd = [self.docker, "port", container_id, str(self.container_port)]
        result = await run_command(cmd, timeout=settings.COMMAND_TIMEOUT)
        if result.ok and result.stdout:
            # Output format: "0.0.0.0:49153" or "[::]:49153"
            for line in result.stdout.splitlines():
                if ":" in line:
                    try:
                        return int(line.rsplit(":", 1)[1])
                    except (ValueError, IndexError):
                        continue
        return None

    async def _cleanup_failed_container(self, container_name: str) -> None:
        """
        Remove a container left in 'Created' state by a failed docker run.
        """
        try:
            check_cmd = [self.docker, "ps", "-a", "--filter", f"name=^{container_name}$", "--format", "{{.ID}}"]
            result = await run_command(check_cmd, timeout=settings.COMMAND_TIMEOUT)

            if result.ok and result.stdout:
                container_id = result.stdout.strip()
                logger.info(f"Cleaning up failed container {container_name} ({container_id})")
                await run_command([self.docker, "rm", "-f", container_id], timeout=settings.COMMAND_TIMEOUT)
        except Exception as e:
            logger.warning(f"Error cleaning up failed container {container_name}: {e}")


container_runner = ContainerRunner()
