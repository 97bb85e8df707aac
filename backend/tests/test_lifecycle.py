"""
Tests for ContainerLifecycle.

Run with: pytest backend/tests/test_lifecycle.py -v
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from app.core.exceptions import ContainerNotFoundError, ContainerRuntimeError, CommandTimeoutError
from app.core.process import CancellationToken, CommandResult
from app.schemas.deployment import HealthStatus
from app.services.deployment.lifecycle import ContainerLifecycle

RUN_COMMAND_PATCH = "app.services.deployment.lifecycle.run_command"


@pytest.fixture
def lifecycle():
    return ContainerLifecycle(docker_binary="docker", timeout=10)


class TestControl:

    @pytest.mark.asyncio
    async def test_stop(self, lifecycle):
        mock_run = AsyncMock(return_value=CommandResult(0, "abc", ""))

        with patch(RUN_COMMAND_PATCH, new=mock_run):
            await lifecycle.stop("abc")

        assert mock_run.call_args.args[0] == ["docker", "stop", "abc"]

    @pytest.mark.asyncio
    async def test_force_remove(self, lifecycle):
        mock_run = AsyncMock(return_value=CommandResult(0, "abc", ""))

        with patch(RUN_COMMAND_PATCH, new=mock_run):
            await lifecycle.remove("abc", force=True)

        assert mock_run.call_args.args[0] == ["docker", "rm", "-f", "abc"]

    @pytest.mark.asyncio
    async def test_restart_passes_cancellation_token(self, lifecycle):
        mock_run = AsyncMock(return_value=CommandResult(0, "abc", ""))
        token = CancellationToken()

        with patch(RUN_COMMAND_PATCH, new=mock_run):
            await lifecycle.restart("abc", cancel=token)

        assert mock_run.call_args.args[0] == ["docker", "restart", "abc"]
        assert mock_run.call_args.kwargs["cancel"] is token

    @pytest.mark.asyncio
    async def test_missing_container_is_not_found(self, lifecycle):
        result = CommandResult(1, "", "Error response from daemon: No such container: abc")

        with patch(RUN_COMMAND_PATCH, new=AsyncMock(return_value=result)):
            with pytest.raises(ContainerNotFoundError):
                await lifecycle.restart("abc")

    @pytest.mark.asyncio
    async def test_other_failure_is_runtime_error(self, lifecycle):
        result = CommandResult(1, "", "Cannot connect to the Docker daemon")

        with patch(RUN_COMMAND_PATCH, new=AsyncMock(return_value=result)):
            with pytest.raises(ContainerRuntimeError) as exc_info:
                await lifecycle.stop("abc")

        assert "Cannot connect" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_timeout_propagates(self, lifecycle):
        with patch(RUN_COMMAND_PATCH, new=AsyncMock(side_effect=CommandTimeoutError("docker stop abc", 10))):
            with pytest.raises(CommandTimeoutError):
                await lifecycle.stop("abc")


class TestHealthCheck:

    @pytest.mark.asyncio
    async def test_running_container_is_healthy(self, lifecycle):
        started = (datetime.now(timezone.utc) - timedelta(seconds=120)).strftime("%Y-%m-%dT%H:%M:%S.123456789Z")
        stdout = f'{{"status": "running", "started_at": "{started}"}}'

        with patch(RUN_COMMAND_PATCH, new=AsyncMock(return_value=CommandResult(0, stdout, ""))):
            health = await lifecycle.health_check("abc")

        assert health.status == HealthStatus.HEALTHY
        assert 110 <= health.uptime <= 180

    @pytest.mark.asyncio
    async def test_exited_container_is_unhealthy(self, lifecycle):
        stdout = '{"status": "exited", "started_at": "0001-01-01T00:00:00Z"}'

        with patch(RUN_COMMAND_PATCH, new=AsyncMock(return_value=CommandResult(0, stdout, ""))):
            health = await lifecycle.health_check("abc")

        assert health.status == HealthStatus.UNHEALTHY
        assert health.uptime == 0
        assert health.state == "exited"

    @pytest.mark.asyncio
    async def test_exited_container_reports_uptime_since_start(self, lifecycle):
        started = (datetime.now(timezone.utc) - timedelta(seconds=300)).strftime("%Y-%m-%dT%H:%M:%S.000000001Z")
        stdout = f'{{"status": "exited", "started_at": "{started}"}}'

        with patch(RUN_COMMAND_PATCH, new=AsyncMock(return_value=CommandResult(0, stdout, ""))):
            health = await lifecycle.health_check("abc")

        assert health.status == HealthStatus.UNHEALTHY
        assert 290 <= health.uptime <= 360
        assert health.state == "exited"

    @pytest.mark.asyncio
    async def test_inspect_failure_is_unknown(self, lifecycle):
        result = CommandResult(1, "", "No such object: abc")

        with patch(RUN_COMMAND_PATCH, new=AsyncMock(return_value=result)):
            health = await lifecycle.health_check("abc")

        assert health.status == HealthStatus.UNKNOWN
        assert health.uptime == 0

    @pytest.mark.asyncio
    async def test_garbage_output_is_unknown(self, lifecycle):
        with patch(RUN_COMMAND_PATCH, new=AsyncMock(return_value=CommandResult(0, "not json", ""))):
            health = await lifecycle.health_check("abc")

        assert health.status == HealthStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_timeout_is_unknown(self, lifecycle):
        with patch(RUN_COMMAND_PATCH, new=AsyncMock(side_effect=CommandTimeoutError("docker inspect", 10))):
            health = await lifecycle.health_check("abc")

        assert health.status == HealthStatus.UNKNOWN


class TestLogs:

    @pytest.mark.asyncio
    async def test_tail_argument(self, lifecycle):
        mock_run = AsyncMock(return_value=CommandResult(0, "line 1\nline 2", ""))

        with patch(RUN_COMMAND_PATCH, new=mock_run):
            logs = await lifecycle.get_logs("abc", tail=50)

        assert logs == "line 1\nline 2"
        assert mock_run.call_args.args[0] == ["docker", "logs", "--tail", "50", "abc"]

    @pytest.mark.asyncio
    async def test_default_tail(self, lifecycle):
        mock_run = AsyncMock(return_value=CommandResult(0, "", ""))

        with patch(RUN_COMMAND_PATCH, new=mock_run):
            await lifecycle.get_logs("abc")

        assert "100" in mock_run.call_args.args[0]

    @pytest.mark.asyncio
    async def test_failure_returns_error_text(self, lifecycle):
        result = CommandResult(1, "", "No such container: abc")

        with patch(RUN_COMMAND_PATCH, new=AsyncMock(return_value=result)):
            logs = await lifecycle.get_logs("abc")

        assert logs.startswith("Error getting logs:")


class TestListManagedContainers:

    @pytest.mark.asyncio
    async def test_parses_rows(self, lifecycle):
        stdout = "abc\tmy-app-abc123\trunning\ndef\t\texited\n"
        mock_run = AsyncMock(return_value=CommandResult(0, stdout, ""))

        with patch(RUN_COMMAND_PATCH, new=mock_run):
            containers = await lifecycle.list_managed_containers()

        assert [(c.container_id, c.subdomain, c.state) for c in containers] == [
            ("abc", "my-app-abc123", "running"),
            ("def", None, "exited"),
        ]
        assert "label=catalyst.managed=true" in mock_run.call_args.args[0]

    @pytest.mark.asyncio
    async def test_failure_raises(self, lifecycle):
        with patch(RUN_COMMAND_PATCH, new=AsyncMock(return_value=CommandResult(1, "", "daemon down"))):
            with pytest.raises(ContainerRuntimeError):
                await lifecycle.list_managed_containers()
