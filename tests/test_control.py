"""Tests for DmsetupControlPlane command construction and error mapping.

dmsetup itself is never run: dmstack.control.run is patched.
"""

from unittest.mock import AsyncMock, patch

import pytest

from dmstack.control import DmsetupControlPlane
from dmstack.exceptions import ControlError, DeviceBusyError, MapError
from dmstack.process import ProcessResult
from dmstack.settings import Settings
from dmstack.targets import linear_target, table

LINEAR = table(linear_target(2048, "/dev/sdb", 0))


def _result(exit_status: int = 0, stdout: str = "", stderr: str = "") -> ProcessResult:
    return ProcessResult(command="dmsetup", exit_status=exit_status, stdout=stdout, stderr=stderr)


@pytest.fixture
def cp() -> DmsetupControlPlane:
    return DmsetupControlPlane("dmsetup", timeout=5, remove_retries=3)


class TestCommands:
    async def test_create_passes_table_on_stdin(self, cp: DmsetupControlPlane) -> None:
        with patch("dmstack.control.run", new=AsyncMock(return_value=_result())) as run:
            await cp.create("dev1", LINEAR)
        args, kwargs = run.call_args
        assert args[0] == ["dmsetup", "create", "dev1"]
        assert kwargs["input"] == b"0 2048 linear /dev/sdb 0\n"
        assert kwargs["check"] is False
        assert kwargs["timeout"] == 5

    async def test_message_splits_words(self, cp: DmsetupControlPlane) -> None:
        with patch("dmstack.control.run", new=AsyncMock(return_value=_result(stdout="ok\n"))) as run:
            response = await cp.message("wb", 0, "sync_data_interval 1")
        assert run.call_args.args[0] == ["dmsetup", "message", "wb", "0", "sync_data_interval", "1"]
        assert response == "ok"

    async def test_open_count(self, cp: DmsetupControlPlane) -> None:
        with patch("dmstack.control.run", new=AsyncMock(return_value=_result(stdout="  2\n"))) as run:
            assert await cp.open_count("dev1") == 2
        assert run.call_args.args[0] == ["dmsetup", "info", "-c", "--noheadings", "-o", "open", "dev1"]

    def test_from_settings(self) -> None:
        settings = Settings(dmsetup_bin="/sbin/dmsetup", command_timeout_seconds=9, unmap_retries=2)
        cp = DmsetupControlPlane.from_settings(settings)
        assert (cp.dmsetup_bin, cp.timeout, cp.remove_retries) == ("/sbin/dmsetup", 9, 2)


class TestErrors:
    async def test_create_failure_is_map_error(self, cp: DmsetupControlPlane) -> None:
        failed = _result(1, stderr="device-mapper: reload ioctl failed: Invalid argument")
        with patch("dmstack.control.run", new=AsyncMock(return_value=failed)):
            with pytest.raises(MapError) as exc_info:
                await cp.create("dev1", LINEAR)
        assert "Invalid argument" in exc_info.value.stderr

    async def test_rejected_message_is_control_error(self, cp: DmsetupControlPlane) -> None:
        failed = _result(1, stderr="message failed")
        with patch("dmstack.control.run", new=AsyncMock(return_value=failed)):
            with pytest.raises(ControlError) as exc_info:
                await cp.message("wb", 0, "bogus")
        assert exc_info.value.response == "message failed"

    async def test_remove_retries_while_busy(self, cp: DmsetupControlPlane) -> None:
        busy = _result(1, stderr="device-mapper: remove ioctl failed: Device or resource busy")
        run = AsyncMock(side_effect=[busy, busy, _result()])
        with patch("dmstack.control.run", new=run), patch("asyncio.sleep", new=AsyncMock()):
            await cp.remove("dev1")
        assert run.await_count == 3

    async def test_remove_gives_up_with_device_busy(self, cp: DmsetupControlPlane) -> None:
        busy = _result(1, stderr="Device or resource busy")
        run = AsyncMock(return_value=busy)
        with patch("dmstack.control.run", new=run), patch("asyncio.sleep", new=AsyncMock()):
            with pytest.raises(DeviceBusyError):
                await cp.remove("dev1")
        assert run.await_count == 3

    async def test_remove_other_failure_not_retried(self, cp: DmsetupControlPlane) -> None:
        run = AsyncMock(return_value=_result(1, stderr="No such device or address"))
        with patch("dmstack.control.run", new=run):
            with pytest.raises(ControlError):
                await cp.remove("dev1")
        assert run.await_count == 1
