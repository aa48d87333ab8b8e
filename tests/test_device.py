"""Tests for DeviceHandle pause/reload/resume semantics and scoped mapping."""

import pytest

from dmstack.device import DeviceHandle, map_device, with_dev, with_devs
from dmstack.exceptions import ControlError, DeviceBusyError, InvalidStateError, MapError
from dmstack.targets import linear_target, table, zero_target
from tests.fakes import FakeControlPlane

LINEAR = table(linear_target(2048, "/dev/sdb", 0))
ZERO = table(zero_target(2048))


@pytest.fixture
async def dev(control: FakeControlPlane) -> DeviceHandle:
    return await map_device(control, LINEAR, "test-dev")


class TestMapping:
    async def test_map_creates_device(self, control: FakeControlPlane) -> None:
        dev = await map_device(control, LINEAR)
        assert dev.name in control.live()
        assert dev.path == f"/dev/mapper/{dev.name}"
        assert dev.table == LINEAR
        assert dev.size == 2048

    async def test_handle_is_path_like(self, dev: DeviceHandle) -> None:
        assert str(dev) == "/dev/mapper/test-dev"
        assert f"{dev}" == dev.path

    async def test_map_error_propagates(self, control: FakeControlPlane) -> None:
        control.fail_create.add("linear")
        with pytest.raises(MapError):
            await map_device(control, LINEAR)
        assert control.live() == []

    async def test_with_dev_unmaps_on_failure(self, control: FakeControlPlane) -> None:
        with pytest.raises(RuntimeError):
            async with with_dev(control, LINEAR) as d:
                assert d.mapped
                raise RuntimeError
        assert control.live() == []
        assert not d.mapped

    async def test_with_devs_reverse_teardown(self, control: FakeControlPlane) -> None:
        async with with_devs(control, LINEAR, ZERO) as (a, b):
            assert control.ops_for("create") == [a.name, b.name]
        assert control.ops_for("remove") == [b.name, a.name]
        assert control.live() == []

    async def test_with_devs_partial_failure_unmaps_earlier(self, control: FakeControlPlane) -> None:
        control.fail_create.add("zero")
        with pytest.raises(MapError):
            async with with_devs(control, LINEAR, ZERO):
                pytest.fail("body must not run")
        assert control.live() == []
        assert len(control.ops_for("remove")) == 1


class TestPauseResume:
    async def test_pause_resume(self, dev: DeviceHandle, control: FakeControlPlane) -> None:
        await dev.pause()
        assert dev.suspended
        await dev.resume()
        assert not dev.suspended
        assert control.ops_for("suspend") == ["test-dev"]
        assert control.ops_for("resume") == ["test-dev"]

    async def test_double_pause_rejected(self, dev: DeviceHandle) -> None:
        await dev.pause()
        with pytest.raises(InvalidStateError):
            await dev.pause()

    async def test_resume_without_pause_rejected(self, dev: DeviceHandle) -> None:
        with pytest.raises(InvalidStateError):
            await dev.resume()

    async def test_paused_context_resumes_on_failure(self, dev: DeviceHandle) -> None:
        with pytest.raises(RuntimeError):
            async with dev.paused():
                raise RuntimeError
        assert not dev.suspended


class TestReload:
    async def test_reload_live_device_rejected(self, dev: DeviceHandle, control: FakeControlPlane) -> None:
        with pytest.raises(InvalidStateError):
            await dev.reload(ZERO)
        assert control.ops_for("load") == []

    async def test_reload_staged_until_resume(self, dev: DeviceHandle) -> None:
        await dev.pause()
        await dev.reload(ZERO)
        assert dev.table == LINEAR
        assert dev.staged_table == ZERO
        await dev.resume()
        assert dev.table == ZERO
        assert dev.staged_table is None

    async def test_reload_keeps_identity(self, dev: DeviceHandle) -> None:
        path = dev.path
        async with dev.paused():
            await dev.reload(ZERO)
        assert dev.path == path
        assert await dev.loaded_table() == ZERO


class TestMessagesAndStatus:
    async def test_message_rejected(self, dev: DeviceHandle) -> None:
        with pytest.raises(ControlError):
            await dev.message(0, "drop_caches")

    async def test_status_is_raw_text(self, dev: DeviceHandle) -> None:
        assert (await dev.status()).startswith("0 2048 linear")

    async def test_operations_after_unmap_rejected(self, dev: DeviceHandle) -> None:
        await dev.unmap()
        for op in (dev.status(), dev.message(0, "x"), dev.pause(), dev.unmap()):
            with pytest.raises(InvalidStateError):
                await op


class TestUnmap:
    async def test_busy_device_stays_mapped(self, dev: DeviceHandle, control: FakeControlPlane) -> None:
        control.devices["test-dev"].open_count = 1
        with pytest.raises(DeviceBusyError):
            await dev.unmap()
        assert dev.mapped
        assert "test-dev" in control.live()

        control.devices["test-dev"].open_count = 0
        await dev.unmap()
        assert not dev.mapped
