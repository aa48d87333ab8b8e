"""Process collaborator: run external commands to completion.

- run: execute a command (shell string or argv), capture output, raise
  ProcessFailedError on non-zero exit
- _Child.stop: SIGTERM → SIGKILL cleanup for a command that outlives its
  timeout or whose caller is cancelled

Load generators, mkfs/mount and dmsetup all go through run().
"""

from __future__ import annotations

import asyncio
import contextlib
import shlex
import signal
from collections.abc import Sequence
from pathlib import Path

import psutil
from pydantic import BaseModel

from dmstack import constants
from dmstack._logging import get_logger
from dmstack.exceptions import ProcessFailedError, TimeoutExceededError

logger = get_logger(__name__)


class ProcessResult(BaseModel):
    """Outcome of a finished command."""

    command: str
    exit_status: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


def _render(command: str | Sequence[str]) -> str:
    if isinstance(command, str):
        return command
    return shlex.join(command)


class _Child:
    """A running command, pinned to the psutil.Process seen at spawn.

    Signals go through psutil only while that exact process is still alive,
    so a reaped child's PID being reused is never signalled.
    """

    def __init__(self, proc: asyncio.subprocess.Process, command: str) -> None:
        self.proc = proc
        self.command = command
        self._ps: psutil.Process | None = None
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            self._ps = psutil.Process(proc.pid)

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def returncode(self) -> int | None:
        return self.proc.returncode

    async def _signal(self, sig: signal.Signals) -> None:
        if self.proc.returncode is not None:
            return
        if self._ps is not None:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                if await asyncio.to_thread(self._ps.is_running):
                    await asyncio.to_thread(self._ps.send_signal, sig)
            return
        with contextlib.suppress(ProcessLookupError):
            self.proc.send_signal(sig)

    async def _reaped_within(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self.proc.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    async def stop(
        self,
        term_timeout: float = constants.TERM_TIMEOUT_SECONDS,
        kill_timeout: float = constants.KILL_TIMEOUT_SECONDS,
    ) -> bool:
        """SIGTERM, then SIGKILL if it lingers. False if it could not be reaped.

        Never raises: this runs while another error is already unwinding.
        """
        if self.returncode is not None:
            return True
        try:
            logger.debug("Sending SIGTERM", extra={"command": self.command, "pid": self.pid})
            await self._signal(signal.SIGTERM)
            if await self._reaped_within(term_timeout):
                return True
            logger.warning("Command ignored SIGTERM, killing", extra={"command": self.command, "pid": self.pid})
            await self._signal(signal.SIGKILL)
            if await self._reaped_within(kill_timeout):
                return True
            logger.error("Command survived SIGKILL", extra={"command": self.command, "pid": self.pid})
            return False
        except Exception as e:
            logger.error(
                "Command cleanup error",
                extra={"command": self.command, "pid": self.pid, "error": str(e), "error_type": type(e).__name__},
                exc_info=True,
            )
            return False


async def run(
    command: str | Sequence[str],
    *,
    check: bool = True,
    timeout: float | None = None,
    cwd: Path | str | None = None,
    input: bytes | None = None,
) -> ProcessResult:
    """Run a command to completion.

    A string is run through the shell (redirections like
    ``echo 3 > /proc/sys/vm/drop_caches`` work); a sequence is exec'd
    directly. If the command times out, or the awaiting task is cancelled,
    the child is stopped before the error propagates.

    Args:
        command: Shell string or argv sequence
        check: Raise ProcessFailedError on non-zero exit
        timeout: Seconds before the child is terminated (None = no limit)
        cwd: Working directory for the child
        input: Bytes written to the child's stdin

    Returns:
        ProcessResult with decoded stdout/stderr

    Raises:
        ProcessFailedError: Non-zero exit and check=True
        TimeoutExceededError: Command did not finish within timeout
    """
    rendered = _render(command)
    logger.debug("Running command", extra={"command": rendered, "cwd": str(cwd) if cwd else None})

    stdin = asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL
    if isinstance(command, str):
        raw = await asyncio.create_subprocess_shell(
            command,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
    else:
        raw = await asyncio.create_subprocess_exec(
            *command,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
    child = _Child(raw, rendered)

    try:
        async with asyncio.timeout(timeout):
            stdout_b, stderr_b = await raw.communicate(input)
    except TimeoutError as e:
        await child.stop()
        raise TimeoutExceededError(
            f"Command timed out after {timeout}s: {rendered}",
            context={"command": rendered, "timeout": timeout},
        ) from e
    except BaseException:
        await child.stop()
        raise

    result = ProcessResult(
        command=rendered,
        exit_status=raw.returncode if raw.returncode is not None else -1,
        stdout=stdout_b.decode(errors="replace"),
        stderr=stderr_b.decode(errors="replace"),
    )

    if result.ok:
        logger.debug("Command finished", extra={"command": rendered})
    elif check:
        logger.warning(
            "Command failed",
            extra={"command": rendered, "exit_status": result.exit_status, "stderr": result.stderr.strip()},
        )
        raise ProcessFailedError(
            f"Command failed with exit status {result.exit_status}: {rendered}",
            exit_status=result.exit_status,
            stdout=result.stdout,
            stderr=result.stderr,
            context={"command": rendered},
        )
    return result


async def dev_size(path: str) -> int:
    """Size of a block device in sectors (blockdev --getsz)."""
    result = await run(["blockdev", "--getsz", path])
    return int(result.stdout.strip())
