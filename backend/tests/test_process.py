"""
Tests for external command execution.

Run with: pytest backend/tests/test_process.py -v
"""
from unittest.mock import AsyncMock, patch

import pytest

from app.core.exceptions import CommandTimeoutError, OperationCancelledError
from app.core.process import CancellationToken, CommandResult, run_command

EXEC_PATCH = "asyncio.create_subprocess_exec"


class TestCommandResult:

    def test_ok(self):
        assert CommandResult(0, "", "").ok
        assert not CommandResult(1, "", "").ok

    def test_output_combines_streams(self):
        assert CommandResult(0, "out", "err").output == "out\nerr"
        assert CommandResult(0, "", "err").output == "err"
        assert CommandResult(0, "out", "").output == "out"


class TestRunCommand:

    @pytest.mark.asyncio
    async def test_success_collects_output(self, make_process):
        process = make_process(returncode=0, stdout=b"hello\n", stderr=b"")

        with patch(EXEC_PATCH, new=AsyncMock(return_value=process)) as mock_exec:
            result = await run_command(["echo", "hello"], timeout=5)

        assert result.ok
        assert result.stdout == "hello"
        # argv is passed through as separate arguments
        assert mock_exec.call_args.args == ("echo", "hello")

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_returned(self, make_process):
        process = make_process(returncode=2, stderr=b"boom")

        with patch(EXEC_PATCH, new=AsyncMock(return_value=process)):
            result = await run_command(["false"], timeout=5)

        assert result.return_code == 2
        assert result.stderr == "boom"

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, make_process):
        process = make_process(hang=True)

        with patch(EXEC_PATCH, new=AsyncMock(return_value=process)):
            with pytest.raises(CommandTimeoutError) as exc_info:
                await run_command(["sleep", "100"], timeout=0.05)

        process.kill.assert_called_once()
        process.wait.assert_awaited_once()
        assert "sleep 100" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_cancel_kills_process(self, make_process):
        process = make_process(hang=True)
        token = CancellationToken()
        token.cancel()

        with patch(EXEC_PATCH, new=AsyncMock(return_value=process)):
            with pytest.raises(OperationCancelledError):
                await run_command(["sleep", "100"], timeout=5, cancel=token)

        process.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_polling_token_cancels(self, make_process):
        process = make_process(hang=True)
        poll = AsyncMock(side_effect=[False, True])
        token = CancellationToken(poll=poll, poll_interval=0.01)

        with patch(EXEC_PATCH, new=AsyncMock(return_value=process)):
            with pytest.raises(OperationCancelledError):
                await run_command(["sleep", "100"], timeout=5, cancel=token)

        assert token.cancelled
        assert poll.await_count == 2

    @pytest.mark.asyncio
    async def test_missing_executable_raises_os_error(self):
        with patch(EXEC_PATCH, new=AsyncMock(side_effect=FileNotFoundError("docker"))):
            with pytest.raises(OSError):
                await run_command(["docker", "ps"], timeout=5)


class TestCancellationToken:

    @pytest.mark.asyncio
    async def test_poll_errors_do_not_fire(self):
        poll = AsyncMock(side_effect=[RuntimeError("db down"), True])
        token = CancellationToken(poll=poll, poll_interval=0.01)

        await token.wait()

        assert token.cancelled
        assert poll.await_count == 2
