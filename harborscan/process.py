"""
External Command Execution
==========================
Async subprocess wrapper shared by the image resolver and scanner runners.

Security Measures:
- exec-style argv (no shell), so image references cannot inject commands
- hard timeout; the process is terminated, then killed if it ignores SIGTERM
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass

from harborscan.exceptions import CommandTimeoutException

logger = logging.getLogger(__name__)

TERMINATE_GRACE_SECONDS = 5


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of one finished command."""

    command: list[str]
    returncode: int
    stdout: bytes
    stderr: bytes
    duration: float

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace").strip()

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace").strip()

    def describe_failure(self, limit: int = 500) -> str:
        """Short operator-facing summary: command, exit code and stderr tail."""
        detail = self.stderr_text or self.stdout_text or "no output"
        if len(detail) > limit:
            detail = "..." + detail[-limit:]
        return f"'{' '.join(self.command[:2])}' exited with code {self.returncode}: {detail}"


async def run_command(
    command: list[str],
    timeout: float,
    env: dict[str, str] | None = None,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> CommandResult:
    """
    Run a command to completion with a hard timeout.

    Args:
        command: argv list, first item is the binary
        timeout: seconds before the process is terminated
        env: extra environment variables merged over os.environ
        log: logger to use (defaults to the module logger)

    Raises:
        CommandTimeoutException: the command exceeded ``timeout``
        OSError: the binary could not be started
    """
    log = log or logger
    full_env = os.environ.copy()
    full_env["NO_COLOR"] = "1"
    if env:
        full_env.update(env)

    log.debug(f"Executing: {' '.join(command)}")
    started = time.monotonic()

    process = await asyncio.create_subprocess_exec(
        *command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=full_env,
    )

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        log.error(f"{command[0]} timed out after {timeout:g}s - terminating process")
        await _terminate(process, log)
        raise CommandTimeoutException(command, timeout)
    except asyncio.CancelledError:
        await _terminate(process, log)
        raise

    return CommandResult(
        command=list(command),
        returncode=process.returncode,
        stdout=stdout,
        stderr=stderr,
        duration=round(time.monotonic() - started, 3),
    )


async def _terminate(process: asyncio.subprocess.Process, log) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
    except asyncio.TimeoutError:
        log.warning("Process did not terminate gracefully, sending SIGKILL")
        process.kill()
        await process.wait()
