"""Tests for the stack activation protocol over the fake control plane."""

import time
from collections.abc import Callable
from unittest.mock import AsyncMock, patch

import pytest

from dmstack.config import StackConfig
from dmstack.exceptions import ControlError, InsufficientSpaceError, InvalidStateError, MapError
from dmstack.settings import Settings
from dmstack.stack import (
    StackState,
    WriteboostStack,
    WriteboostStackBackingDevice,
    WriteboostStackCaching,
    get_stack_maker,
    make_stack,
)
from dmstack.targets import linear_target, table
from dmstack.units import gig, meg
from tests.conftest import FAST_DEV, SLOW_DEV, SLOW_DEV_SIZE
from tests.fakes import FakeControlPlane

pytestmark = pytest.mark.usefixtures("wipe_cache_mock")


class Boom(Exception):
    pass


# ============================================================================
# Support devices
# ============================================================================


class TestSupportDevices:
    async def test_backing_then_cache(self, stack: WriteboostStack, control: FakeControlPlane) -> None:
        async with stack.activate_support_devs() as s:
            assert s.state is StackState.SUPPORT_UP
            assert control.ops_for("create") == [s.backing_dev.name, s.cache_dev.name]
            backing, cache = s.backing_dev, s.cache_dev
        assert control.ops_for("remove") == [cache.name, backing.name]
        assert stack.state is StackState.IDLE
        assert control.live() == []

    async def test_support_tables_are_linear_extents(self, stack: WriteboostStack) -> None:
        async with stack.activate_support_devs() as s:
            assert s.backing_dev.table == table(linear_target(SLOW_DEV_SIZE, SLOW_DEV, 0))
            assert s.cache_dev.table == table(linear_target(gig(1), FAST_DEV, 0))

    async def test_no_handles_when_idle(self, stack: WriteboostStack) -> None:
        with pytest.raises(InvalidStateError):
            _ = stack.backing_dev

    async def test_double_activation_rejected(self, stack: WriteboostStack) -> None:
        async with stack.activate_support_devs():
            with pytest.raises(InvalidStateError):
                async with stack.activate_support_devs():
                    pass

    async def test_oversized_backing_maps_nothing(
        self, make_test_stack: Callable[..., WriteboostStack], control: FakeControlPlane
    ) -> None:
        stack = make_test_stack(config=StackConfig(backing_size=SLOW_DEV_SIZE + 1))
        with pytest.raises(InsufficientSpaceError):
            async with stack.activate_support_devs():
                pass
        assert control.ops == []
        assert stack.state is StackState.IDLE

    async def test_cleanup_cache_wipes_head(self, stack: WriteboostStack, wipe_cache_mock: AsyncMock) -> None:
        async with stack.activate_support_devs() as s:
            await s.cleanup_cache()
            cache_path = s.cache_dev.path
        cmd = wipe_cache_mock.call_args.args[0]
        assert cmd[0] == "dd"
        assert f"of={cache_path}" in cmd
        assert "count=2048" in cmd
        assert "oflag=direct" in cmd


# ============================================================================
# Top level
# ============================================================================


class TestTopLevel:
    async def test_requires_support_devices(self, stack: WriteboostStack) -> None:
        with pytest.raises(InvalidStateError):
            async with stack.activate_top_level():
                pass

    async def test_full_order(self, stack: WriteboostStack, control: FakeControlPlane) -> None:
        async with stack.activate() as s:
            assert s.state is StackState.TOP_UP
            names = [s.backing_dev.name, s.cache_dev.name, s.wb.name]
        assert control.ops_for("create") == names
        assert control.ops_for("remove") == list(reversed(names))
        assert stack.state is StackState.IDLE

    async def test_writeboost_table(self, make_test_stack: Callable[..., WriteboostStack]) -> None:
        stack = make_test_stack(config=StackConfig(cache_size=meg(16), tunables={"writeback_threshold": 70}))
        async with stack.activate() as s:
            layer = s.wb.table.layers[0]
            assert layer.kind == "writeboost"
            assert layer.sector_count == SLOW_DEV_SIZE
            assert layer.args == (s.backing_dev.path, s.cache_dev.path, 2, "writeback_threshold", 70)

    async def test_failed_top_level_unwinds_support(
        self, stack: WriteboostStack, control: FakeControlPlane
    ) -> None:
        control.fail_create.add("writeboost")
        with pytest.raises(MapError):
            async with stack.activate():
                pytest.fail("body must not run")
        assert control.live() == []
        assert stack.state is StackState.IDLE

    async def test_body_failure_unmaps_everything(self, stack: WriteboostStack, control: FakeControlPlane) -> None:
        with pytest.raises(Boom):
            async with stack.activate():
                raise Boom
        assert control.live() == []
        assert len(control.ops_for("remove")) == 3

    async def test_release_failure_keeps_original_error(
        self, stack: WriteboostStack, control: FakeControlPlane
    ) -> None:
        with pytest.raises(Boom) as exc_info:
            async with stack.activate() as s:
                control.fail_remove.add(s.cache_dev.name)
                backing = s.backing_dev.name
                raise Boom
        assert any("ControlError" in n for n in getattr(exc_info.value, "__notes__", []))
        # The backing device was still removed after the cache removal failed
        assert backing not in control.live()

    async def test_failed_unmap_keeps_device_tracked(
        self, stack: WriteboostStack, control: FakeControlPlane
    ) -> None:
        with pytest.raises(ControlError):
            async with stack.activate() as s:
                wb = s.wb.name
                control.fail_remove.add(wb)
        assert control.live() == [wb]
        assert stack.state is StackState.TOP_DOWN
        assert stack.wb.name == wb
        # Still mapped, so the same extents cannot be handed out again
        with pytest.raises(InvalidStateError):
            async with stack.activate():
                pass

        control.fail_remove.clear()
        await stack.retry_teardown()
        assert control.live() == []
        assert stack.state is StackState.IDLE
        async with stack.activate():
            pass

    async def test_failed_support_unmap_leaves_support_down(
        self, stack: WriteboostStack, control: FakeControlPlane
    ) -> None:
        with pytest.raises(ControlError):
            async with stack.activate_support_devs() as s:
                control.fail_remove.add(s.backing_dev.name)
        assert stack.state is StackState.SUPPORT_DOWN
        assert [d.name for d in stack.handles()] == control.live()

        control.fail_remove.clear()
        await stack.retry_teardown()
        assert stack.state is StackState.IDLE
        assert stack.handles() == []

    async def test_retry_teardown_needs_stuck_stack(self, stack: WriteboostStack) -> None:
        with pytest.raises(InvalidStateError):
            await stack.retry_teardown()

    async def test_top_level_cycles_over_same_support(
        self, stack: WriteboostStack, control: FakeControlPlane
    ) -> None:
        async with stack.activate_support_devs() as s:
            for _ in range(3):
                async with s.activate_top_level():
                    assert s.state is StackState.TOP_UP
                assert s.state is StackState.SUPPORT_UP
        assert len(control.ops_for("create")) == 2 + 3


# ============================================================================
# Flush / tunables
# ============================================================================


class TestForceAndTunables:
    async def test_force_quiesces_before_body(self, stack: WriteboostStack, control: FakeControlPlane) -> None:
        async with stack.activate(force=True) as s:
            dev = control.devices[s.wb.name]
            assert dev.messages == ["sync_data_interval 1", "drop_caches"]
            assert control.ops_for("suspend") == [s.wb.name]

    async def test_no_force_no_messages(self, stack: WriteboostStack, control: FakeControlPlane) -> None:
        async with stack.activate() as s:
            assert control.devices[s.wb.name].messages == []

    async def test_flush_on_teardown(self, stack: WriteboostStack, control: FakeControlPlane) -> None:
        async with stack.activate_support_devs() as s:
            async with s.activate_top_level(flush_on_teardown=True):
                dev = control.devices[s.wb.name]
                control.make_dirty(s.wb.name, 10)
                assert dev.messages == []
            assert dev.messages == ["sync_data_interval 1", "drop_caches"]
            assert dev.dirty == 0

    async def test_reconfigure_between_activations(self, stack: WriteboostStack) -> None:
        async with stack.activate_support_devs() as s:
            s.with_tunables(segment_size_order=9, allow_migrate=0)
            async with s.activate_top_level():
                first = s.wb.table.layers[0].args
                with pytest.raises(InvalidStateError):
                    s.with_tunables(allow_migrate=1)
            s.with_tunables(allow_migrate=1)
            async with s.activate_top_level():
                second = s.wb.table.layers[0].args
        assert first[2:] == (4, "segment_size_order", 9, "allow_migrate", 0)
        assert second[2:] == (4, "segment_size_order", 9, "allow_migrate", 1)

    async def test_update_tunable(self, stack: WriteboostStack, control: FakeControlPlane) -> None:
        async with stack.activate() as s:
            await s.update_tunable("writeback_threshold", 50)
            assert control.devices[s.wb.name].messages == ["writeback_threshold 50"]
            with pytest.raises(ValueError):
                await s.update_tunable("segment_size_order", 9)


# ============================================================================
# Variants / pacing / construction
# ============================================================================


class TestVariants:
    async def test_backing_variant_is_plain_linear(
        self, make_test_stack: Callable[..., WriteboostStack], control: FakeControlPlane
    ) -> None:
        stack = make_test_stack(maker=WriteboostStackBackingDevice)
        async with stack.activate(force=True) as s:
            assert s.wb.table == table(linear_target(SLOW_DEV_SIZE, SLOW_DEV, 0))
            assert control.ops_for("message") == []

    def test_stack_makers(self) -> None:
        assert get_stack_maker("caching") is WriteboostStackCaching
        assert get_stack_maker("backing") is WriteboostStackBackingDevice
        with pytest.raises(ValueError, match="Unknown stack type"):
            get_stack_maker("thin")

    async def test_pacing_holds_each_up_transition(
        self, make_test_stack: Callable[..., WriteboostStack]
    ) -> None:
        stack = make_test_stack(pace_seconds=0.1)
        async with stack.activate_support_devs() as s:
            start = time.monotonic()
            async with s.activate_top_level():
                pass
            async with s.activate_top_level():
                pass
            # Each top-level activation was held open for the pace interval
            assert time.monotonic() - start >= 0.19

        start = time.monotonic()
        async with stack.activate_support_devs():
            pass
        assert time.monotonic() - start >= 0.09

    async def test_make_stack(self, unit_settings: Settings, control: FakeControlPlane) -> None:
        sizes = {SLOW_DEV: gig(8), FAST_DEV: gig(2)}
        with patch("dmstack.stack.dev_size", new=AsyncMock(side_effect=lambda p: sizes[p])):
            stack = await make_stack(unit_settings, control)
        assert isinstance(stack, WriteboostStackCaching)
        assert (stack.slow_dev_size, stack.fast_dev_size) == (gig(8), gig(2))
        assert stack.pace_seconds == 0

    async def test_make_stack_needs_devices(self, control: FakeControlPlane) -> None:
        with pytest.raises(ValueError, match="DMSTACK_DATA_DEV"):
            await make_stack(Settings(data_dev=None, metadata_dev=None), control)
