"""Tests for the process collaborator. Runs real (harmless) commands."""

import asyncio
import time
from unittest.mock import AsyncMock, patch

import psutil
import pytest

from dmstack.exceptions import ProcessFailedError, TimeoutExceededError
from dmstack.process import ProcessResult, dev_size, run


class TestRun:
    async def test_captures_output(self) -> None:
        result = await run(["echo", "hello"])
        assert result.ok
        assert result.stdout == "hello\n"
        assert result.command == "echo hello"

    async def test_shell_string(self) -> None:
        result = await run("echo one && echo two >&2")
        assert result.stdout == "one\n"
        assert result.stderr == "two\n"

    async def test_stdin(self) -> None:
        result = await run(["cat"], input=b"0 8 zero\n")
        assert result.stdout == "0 8 zero\n"

    async def test_cwd(self, tmp_path) -> None:
        result = await run(["pwd"], cwd=tmp_path)
        assert result.stdout.strip() == str(tmp_path)

    async def test_failure_raises(self) -> None:
        with pytest.raises(ProcessFailedError) as exc_info:
            await run("echo oops >&2; exit 3")
        assert exc_info.value.exit_status == 3
        assert exc_info.value.stderr == "oops\n"

    async def test_failure_unchecked(self) -> None:
        result = await run("exit 4", check=False)
        assert not result.ok
        assert result.exit_status == 4

    async def test_timeout_kills_child(self) -> None:
        start = time.monotonic()
        with pytest.raises(TimeoutExceededError):
            await run(["sleep", "30"], timeout=0.2)
        assert time.monotonic() - start < 10

    async def test_cancel_stops_child(self, tmp_path) -> None:
        pid_file = tmp_path / "pid"
        task = asyncio.create_task(run(f"echo $$ > {pid_file}; exec sleep 30"))
        async with asyncio.timeout(5):
            while not pid_file.exists() or not pid_file.read_text().strip():
                await asyncio.sleep(0.01)
        pid = int(pid_file.read_text())

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        # Reaped before the cancellation reached the caller
        assert not psutil.pid_exists(pid)


class TestDevSize:
    async def test_parses_blockdev_output(self) -> None:
        ok = ProcessResult(command="blockdev", exit_status=0, stdout="8388608\n")
        with patch("dmstack.process.run", new=AsyncMock(return_value=ok)) as m:
            assert await dev_size("/dev/sdb") == 8388608
        assert m.call_args.args[0] == ["blockdev", "--getsz", "/dev/sdb"]
