"""End-to-end scenarios run against real devices.

Each scenario builds a stack through the configured StackMaker, drives it
through activation, runs a workload and checks the result. Scenarios are
registered by name; the CLI and the integration tests look them up in
SCENARIOS.

    fio_cache               fio over ext4 on the top-level device
    rambuf_read_fullsize    reads of freshly stamped blocks hit the RAM buffer
    smallfile_dirty_drain   10 000 small files, then a flush leaves nothing dirty
    migration_replay        dirty data left on the cache is replayed on reactivation
    device_failure          flakey backing device mid-session, clean teardown
    device_failure_cycles   alternate flakey backing/cache devices over several sessions
    flush_advances_writeback   a flush moves the last written-back segment id forward
"""

from __future__ import annotations

import contextlib
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from dmstack import constants
from dmstack._logging import get_logger
from dmstack.config import StackConfig
from dmstack.control import DmsetupControlPlane
from dmstack.exceptions import AssertionFailedError, ProcessFailedError
from dmstack.fault import inject, restore
from dmstack.fs import FileSystem, FsKind
from dmstack.process import run
from dmstack.quiesce import force_flush, measure_stat, read_status
from dmstack.stack import get_stack_maker, make_stack
from dmstack.units import gig, kilo, meg
from dmstack.workloads import (
    PatternStomper,
    drop_page_caches,
    run_fio,
    run_smallfile,
    verify_file_tree,
    write_file_tree,
)

if TYPE_CHECKING:
    from dmstack.control import ControlPlane
    from dmstack.device import DeviceHandle
    from dmstack.settings import Settings
    from dmstack.stack import StackMaker, WriteboostStack

logger = get_logger(__name__)


@dataclass
class ScenarioContext:
    """What a scenario needs to build stacks: settings, a control plane and
    the StackMaker selected for this run."""

    settings: Settings
    control: ControlPlane
    maker: StackMaker

    @classmethod
    def from_settings(cls, settings: Settings, control: ControlPlane | None = None) -> ScenarioContext:
        return cls(
            settings=settings,
            control=control or DmsetupControlPlane.from_settings(settings),
            maker=get_stack_maker(settings.stack_type),
        )

    async def new_stack(self, config: StackConfig | None = None) -> WriteboostStack:
        return await make_stack(self.settings, self.control, config, maker=self.maker)

    def file_system(self, device: DeviceHandle, kind: FsKind | None = None) -> FileSystem:
        return FileSystem(kind or self.settings.filesystem, device)


ScenarioFunc = Callable[[ScenarioContext], Awaitable[None]]


@dataclass(frozen=True)
class Scenario:
    name: str
    func: ScenarioFunc
    description: str = ""
    needs_writeboost: bool = True
    tags: frozenset[str] = field(default_factory=frozenset)


SCENARIOS: dict[str, Scenario] = {}


def scenario(
    name: str, *, needs_writeboost: bool = True, tags: tuple[str, ...] = ()
) -> Callable[[ScenarioFunc], ScenarioFunc]:
    """Register a scenario function under `name`."""

    def decorator(func: ScenarioFunc) -> ScenarioFunc:
        if name in SCENARIOS:
            raise ValueError(f"Scenario {name!r} registered twice")
        doc = (func.__doc__ or "").strip().splitlines()
        SCENARIOS[name] = Scenario(
            name=name,
            func=func,
            description=doc[0] if doc else "",
            needs_writeboost=needs_writeboost,
            tags=frozenset(tags),
        )
        return func

    return decorator


async def run_scenario(name: str, ctx: ScenarioContext) -> None:
    """Run one registered scenario.

    Raises:
        KeyError: no scenario with that name
        ValueError: scenario needs a writeboost stack and the selected
            StackMaker does not build one
    """
    sc = SCENARIOS[name]
    if sc.needs_writeboost and not getattr(ctx.maker, "is_writeboost", True):
        raise ValueError(f"Scenario {name!r} needs a caching stack")
    logger.info("Scenario starting", extra={"scenario": name})
    await sc.func(ctx)
    logger.info("Scenario passed", extra={"scenario": name})


def expect(condition: bool, message: str, **context: Any) -> None:
    if not condition:
        raise AssertionFailedError(message, context=context)


# =============================================================================
# Scenarios
# =============================================================================


@scenario("fio_cache", needs_writeboost=False, tags=("fio",))
async def fio_cache(ctx: ScenarioContext) -> None:
    """fio random read/write on ext4 over the top-level device."""
    stack = await ctx.new_stack()
    async with stack.activate(force=True) as s:
        fs = ctx.file_system(s.wb, "ext4")
        await fs.format()
        async with fs.with_mount(ctx.settings.mount_dir) as mp:
            await run_fio(mp, fio_bin=ctx.settings.fio_bin)


@scenario("rambuf_read_fullsize")
async def rambuf_read_fullsize(ctx: ScenarioContext) -> None:
    """Reading blocks still in the RAM buffer counts as fullsize on-buffer hits."""
    stack = await ctx.new_stack(StackConfig(backing_size=meg(16), cache_size=meg(32)))
    async with stack.activate_support_devs() as s:
        await s.cleanup_cache()
        s.with_tunables(segment_size_order=10, enable_migration_modulator=0, allow_migrate=0)
        async with s.activate_top_level(force=True):
            before = await read_status(s.wb)
            ps = PatternStomper(s.wb, kilo(31), needs_zero=True, device_size=s.wb.size)
            await ps.stamp(20)
            await ps.verify(0, 1)
            after = await read_status(s.wb)

            hits_before = before.stat(write=0, hit=1, on_buffer=1, fullsize=1)
            hits_after = after.stat(write=0, hit=1, on_buffer=1, fullsize=1)
            expect(
                hits_after > hits_before,
                "Read hits on the RAM buffer did not increase",
                before=hits_before,
                after=hits_after,
            )


@scenario("smallfile_dirty_drain", tags=("smallfile",))
async def smallfile_dirty_drain(ctx: ScenarioContext) -> None:
    """10 000 small files on a 4 GiB + 1 GiB stack, then a flush drains every dirty block."""
    stack = await ctx.new_stack(StackConfig(backing_size=gig(4), cache_size=gig(1)))
    async with stack.activate(force=True) as s:
        fs = ctx.file_system(s.wb)
        await fs.format()
        async with fs.with_mount(ctx.settings.mount_dir) as mp:
            await run_smallfile(mp, cli=ctx.settings.smallfile_cli, nr_files=10000)

        await force_flush(s.wb)
        dirty = await measure_stat(s.wb, "nr_dirty_cache_blocks")
        expect(dirty == 0, f"{dirty} cache blocks still dirty after flush", dirty=dirty)


@scenario("migration_replay")
async def migration_replay(ctx: ScenarioContext, nr_files: int = 2000) -> None:
    """Data left dirty on the cache device is replayed when the stack comes back."""
    stack = await ctx.new_stack()
    async with stack.activate_support_devs() as s:
        await s.cleanup_cache()

        # Nothing is written back: every byte stays on the cache device
        s.with_tunables(enable_migration_modulator=0, allow_migrate=0)
        async with s.activate_top_level(force=True):
            fs = ctx.file_system(s.wb)
            await fs.format()
            async with fs.with_mount(ctx.settings.mount_dir) as mp:
                digests = await write_file_tree(mp, nr_files)

        s.with_tunables(enable_migration_modulator=1)
        async with s.activate_top_level():
            await s.wb.message(0, constants.MSG_DROP_CACHES)
            fs = ctx.file_system(s.wb)
            async with fs.with_mount(ctx.settings.mount_dir) as mp:
                await drop_page_caches()
                bad = await verify_file_tree(mp, digests)

    expect(not bad, f"{len(bad)} of {len(digests)} files differ after replay", bad=bad[:10])


async def _failure_round(
    ctx: ScenarioContext,
    s: WriteboostStack,
    target: DeviceHandle,
    up: int,
    down: int,
    *,
    format_fs: bool,
) -> None:
    """One mounted session with `target` flakey, restored before unmount."""
    originals = {s.backing_dev.name: s.backing_dev.table, s.cache_dev.name: s.cache_dev.table}

    # Runs before unmount, so xfs_repair reads through the original tables
    async def unwrap() -> None:
        for dev in (s.backing_dev, s.cache_dev):
            if dev.table != originals[dev.name]:
                await restore(dev, originals[dev.name])

    fs = ctx.file_system(s.wb, "xfs")
    if format_fs:
        await fs.format()
    async with fs.with_mount(ctx.settings.mount_dir, pre_unmount=unwrap) as mp:
        await inject(target, up, down)
        # I/O errors are the point of the exercise
        with contextlib.suppress(ProcessFailedError):
            await run_fio(mp, fio_bin=ctx.settings.fio_bin)

    for dev in (s.backing_dev, s.cache_dev):
        expect(dev.table == originals[dev.name], f"{dev.name} still has a faulty table", device=dev.name)


@scenario("device_failure", tags=("fault",))
async def device_failure(ctx: ScenarioContext) -> None:
    """Backing device goes flakey (up 3s, down 1s) mid-session; teardown stays clean."""
    stack = await ctx.new_stack(StackConfig(cache_size=meg(16)))
    async with stack.activate_support_devs() as s:
        await s.cleanup_cache()
        await run(["dmesg", "-C"], check=False)
        async with s.activate_top_level(force=True):
            await _failure_round(ctx, s, s.backing_dev, up=3, down=1, format_fs=True)


@scenario("device_failure_cycles", tags=("fault", "slow"))
async def device_failure_cycles(ctx: ScenarioContext, cycles: int = 5, seed: int | None = None) -> None:
    """Alternate flakey backing and cache devices over several sessions."""
    rng = random.Random(seed)
    stack = await ctx.new_stack(StackConfig(cache_size=meg(16)))
    async with stack.activate_support_devs() as s:
        await s.cleanup_cache()
        await run(["dmesg", "-C"], check=False)
        for i in range(cycles):
            async with s.activate_top_level(force=True):
                if i % 2 == 0:
                    target, up = s.backing_dev, rng.randint(1, 3)
                else:
                    target, up = s.cache_dev, rng.randint(3, 10)
                logger.info("Failure cycle", extra={"cycle": i, "device": target.name, "up": up})
                await _failure_round(ctx, s, target, up=up, down=1, format_fs=i == 0)


@scenario("flush_advances_writeback")
async def flush_advances_writeback(ctx: ScenarioContext) -> None:
    """A forced flush moves the last written-back segment id forward."""
    stack = await ctx.new_stack(StackConfig(cache_size=meg(64)))
    async with stack.activate(force=True) as s:
        before = await measure_stat(s.wb, "last_writeback_id")
        await run(["dd", "if=/dev/urandom", f"of={s.wb.path}", "bs=1M", "count=8", "oflag=direct"])
        await force_flush(s.wb)
        after = await measure_stat(s.wb, "last_writeback_id")
        expect(after > before, "Flush did not advance write-back", before=before, after=after)
