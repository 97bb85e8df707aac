"""
External command execution with deadlines and cancellation.

Every call into the container runtime or build tooling goes through
run_command(). Commands are always passed as an argument vector to
asyncio.create_subprocess_exec; nothing is ever interpreted by a shell.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from app.core.exceptions import CommandTimeoutError, OperationCancelledError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of an external command."""

    return_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.return_code == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr."""
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


class CancellationToken:
    """
    Cooperative cancellation signal for long-running external commands.

    The token fires when cancel() is called in-process, or when the optional
    poll callback returns True. Workers use the poll callback to watch the
    cancellation flag written to the database by the API.
    """

    def __init__(
        self,
        poll: Optional[Callable[[], Awaitable[bool]]] = None,
        poll_interval: float = 2.0,
    ):
        self._event = asyncio.Event()
        self._poll = poll
        self._poll_interval = poll_interval

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        """Block until the token fires."""
        while not self._event.is_set():
            if self._poll is not None:
                try:
                    if await self._poll():
                        self._event.set()
                        break
                except Exception as e:
                    logger.warning(f"Cancellation poll failed: {e}")
            try:
                await asyncio.wait_for(self._event.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                continue


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


def _decode(data: Optional[bytes]) -> str:
    return data.decode(errors="replace").strip() if data else ""


async def run_command(
    cmd: List[str],
    timeout: Optional[float] = None,
    cancel: Optional[CancellationToken] = None,
    merge_stderr: bool = False,
) -> CommandResult:
    """
    Run an external command and collect its output.

    Args:
        cmd: Command arguments (argv[0] is the executable)
        timeout: Deadline in seconds; None waits indefinitely
        cancel: Optional token; when it fires the process is killed
        merge_stderr: Send stderr into stdout (build logs keep ordering)

    Returns:
        CommandResult with return code and decoded output

    Raises:
        CommandTimeoutError: The deadline passed; the process was killed
        OperationCancelledError: The token fired; the process was killed
        OSError: The executable could not be started
    """
    command_str = " ".join(cmd)
    logger.debug(f"Running command: {command_str}")

    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.PIPE,
    )

    communicate = asyncio.ensure_future(process.communicate())
    waiters = {communicate}
    cancel_waiter = None
    if cancel is not None:
        cancel_waiter = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

        if communicate not in done:
            communicate.cancel()
            await _kill(process)
            if cancel_waiter is not None and cancel_waiter in done:
                logger.warning(f"Command cancelled: {command_str}")
                raise OperationCancelledError(command_str)
            logger.error(f"Command timed out after {timeout}s: {command_str}")
            raise CommandTimeoutError(command_str, timeout)

        stdout, stderr = communicate.result()
    except asyncio.CancelledError:
        communicate.cancel()
        await _kill(process)
        raise
    finally:
        if cancel_waiter is not None and not cancel_waiter.done():
            cancel_waiter.cancel()

    return CommandResult(
        return_code=process.returncode,
        stdout=_decode(stdout),
        stderr=_decode(stderr),
    )
