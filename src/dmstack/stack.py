"""Stack activation protocol.

A stack is a writeboost device (top level) over two support devices: a
linear extent of the slow device (backing) and one of the fast device
(cache). Activation runs bottom-up and teardown runs in exact reverse,
whatever the body does:

    IDLE ──activate_support_devs()──► SUPPORT_UP ──activate_top_level()──► TOP_UP
      ▲                                  │   ▲                               │
      └──────────── SUPPORT_DOWN ◄───────┘   └────────── TOP_DOWN ◄──────────┘

Each "up" transition is paced: the block that follows it is held open until
at least `pace_seconds` have passed, so the next mutation (usually its own
teardown) never races the target's asynchronous startup.

Stack variants are built by a StackMaker chosen from configuration:
    "caching": writeboost over backing + cache (WriteboostStackCaching)
    "backing": the slow device alone, as a plain linear device
               (WriteboostStackBackingDevice), the baseline for comparisons

Example:
    ```python
    stack = await make_stack(settings, control)
    async with stack.activate(force=True) as s:
        await run_fio(s.wb)
    ```
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import asynccontextmanager
from enum import Enum
from typing import TYPE_CHECKING, ClassVar

from dmstack import constants
from dmstack._logging import get_logger
from dmstack.config import StackConfig
from dmstack.control import DmsetupControlPlane
from dmstack.device import DeviceHandle, with_dev, with_devs
from dmstack.exceptions import InvalidStateError
from dmstack.guards import bracket_, ensure_elapsed
from dmstack.process import dev_size, run
from dmstack.quiesce import cleanup_forcibly, force_flush
from dmstack.targets import Table, linear_target, table, writeboost_target
from dmstack.volumes import VolumeAllocator

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from dmstack.control import ControlPlane
    from dmstack.settings import Settings

logger = get_logger(__name__)

BACKING_VOLUME = "backing_dev"
CACHE_VOLUME = "cache_dev"
TOP_LEVEL = "wb"


class StackState(str, Enum):
    """Where a stack is in its activation lifecycle."""

    IDLE = "idle"
    SUPPORT_UP = "support_up"
    TOP_UP = "top_up"
    TOP_DOWN = "top_down"
    SUPPORT_DOWN = "support_down"


class WriteboostStack:
    """Template for writeboost stacks; subclasses provide table().

    Attributes:
        control: Control plane every device of this stack is mapped through
        slow_dev: Path of the slow physical device (backing store)
        fast_dev: Path of the fast physical device (cache store)
        pace_seconds: Minimum time between an "up" transition and the next
            mutation
        state: Current StackState
    """

    is_writeboost: ClassVar[bool] = True

    def __init__(
        self,
        control: ControlPlane,
        slow_dev: str,
        fast_dev: str,
        *,
        slow_dev_size: int,
        fast_dev_size: int,
        config: StackConfig | None = None,
        pace_seconds: float = constants.DEFAULT_PACE_SECONDS,
    ) -> None:
        self.control = control
        self.slow_dev = slow_dev
        self.fast_dev = fast_dev
        self.slow_dev_size = slow_dev_size
        self.fast_dev_size = fast_dev_size
        self.pace_seconds = pace_seconds
        self._config = config or StackConfig()
        self._state = StackState.IDLE
        # Devices this stack mapped, by role. Upper layers hold paths, never handles.
        self._devices: dict[str, DeviceHandle] = {}
        self._allocators: dict[str, VolumeAllocator] = {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(slow_dev={self.slow_dev!r}, fast_dev={self.fast_dev!r}, state={self._state.value})"

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> StackState:
        return self._state

    @property
    def config(self) -> StackConfig:
        return self._config

    @property
    def backing_sz(self) -> int:
        return self._config.backing_size or self.slow_dev_size

    @property
    def cache_sz(self) -> int:
        return self._config.cache_size

    def device(self, role: str) -> DeviceHandle:
        """Look up a mapped device by role (backing_dev, cache_dev, wb)."""
        try:
            return self._devices[role]
        except KeyError:
            raise InvalidStateError(
                f"No {role} device is mapped (stack is {self._state.value})",
                context={"role": role, "state": self._state.value},
            ) from None

    @property
    def backing_dev(self) -> DeviceHandle:
        return self.device(BACKING_VOLUME)

    @property
    def cache_dev(self) -> DeviceHandle:
        return self.device(CACHE_VOLUME)

    @property
    def wb(self) -> DeviceHandle:
        return self.device(TOP_LEVEL)

    def handles(self) -> list[DeviceHandle]:
        """Mapped devices in mapping order."""
        return list(self._devices.values())

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def configure(self, config: StackConfig) -> None:
        """Replace the configuration used by the next top-level activation."""
        if self._state is StackState.TOP_UP:
            raise InvalidStateError("Cannot reconfigure while the top-level device is up")
        self._config = config

    def with_tunables(self, **tunables: int) -> StackConfig:
        """Merge tunables into a new config and apply it to this stack."""
        self.configure(self._config.with_tunables(**tunables))
        return self._config

    async def update_tunable(self, name: str, value: int) -> str:
        """Change a tunable on the live top-level device with a message."""
        if name not in constants.WRITEBOOST_TUNABLES:
            raise ValueError(f"{name} cannot be changed at runtime")
        return await self.wb.message(0, name, value)

    # -------------------------------------------------------------------------
    # Tables
    # -------------------------------------------------------------------------

    def _plan_volumes(self) -> tuple[VolumeAllocator, VolumeAllocator]:
        slow = VolumeAllocator(self.slow_dev, self.slow_dev_size)
        slow.add_volume(BACKING_VOLUME, self.backing_sz)
        fast = VolumeAllocator(self.fast_dev, self.fast_dev_size)
        fast.add_volume(CACHE_VOLUME, self.cache_sz)
        return slow, fast

    def table(self) -> Table:
        raise NotImplementedError

    # -------------------------------------------------------------------------
    # State bookkeeping
    # -------------------------------------------------------------------------

    def _transition(self, expected: StackState, new: StackState) -> None:
        if self._state is not expected:
            raise InvalidStateError(
                f"Stack must be {expected.value} to become {new.value}, it is {self._state.value}",
                context={"state": self._state.value, "expected": expected.value, "new": new.value},
            )
        logger.debug("Stack transition", extra={"from": self._state.value, "to": new.value})
        self._state = new

    def _forget_unmapped(self, *roles: str) -> list[str]:
        """Drop handles whose unmap went through; return roles still mapped."""
        leftover = []
        for role in roles:
            dev = self._devices.get(role)
            if dev is None:
                continue
            if dev.mapped:
                leftover.append(role)
            else:
                del self._devices[role]
        if leftover:
            logger.warning(
                "Devices still mapped after teardown",
                extra={"devices": [self._devices[r].name for r in leftover], "state": self._state.value},
            )
        return leftover

    def _support_released(self) -> None:
        if self._forget_unmapped(TOP_LEVEL, CACHE_VOLUME, BACKING_VOLUME):
            return
        self._allocators.clear()
        self._state = StackState.IDLE

    def _top_level_released(self) -> None:
        if self._forget_unmapped(TOP_LEVEL):
            return
        self._state = StackState.SUPPORT_UP

    # -------------------------------------------------------------------------
    # Activation
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def activate_support_devs(self) -> AsyncIterator[WriteboostStack]:
        """Map backing (slow) then cache (fast) for the duration of the block."""
        if self._state is not StackState.IDLE:
            raise InvalidStateError(f"Support devices already up (stack is {self._state.value})")
        slow, fast = self._plan_volumes()
        self._allocators = {BACKING_VOLUME: slow, CACHE_VOLUME: fast}

        async with bracket_(self._support_released):
            async with with_devs(self.control, slow.table(BACKING_VOLUME), fast.table(CACHE_VOLUME)) as devs:
                self._devices[BACKING_VOLUME], self._devices[CACHE_VOLUME] = devs
                self._transition(StackState.IDLE, StackState.SUPPORT_UP)
                logger.info(
                    "Support devices up",
                    extra={"backing": devs[0].name, "cache": devs[1].name},
                )
                try:
                    async with ensure_elapsed(self.pace_seconds):
                        yield self
                finally:
                    # A top level that failed to unmap keeps the stack in TOP_DOWN
                    if self._state is StackState.SUPPORT_UP:
                        self._state = StackState.SUPPORT_DOWN

    @asynccontextmanager
    async def activate_top_level(
        self,
        force: bool = False,
        *,
        flush_on_teardown: bool = False,
    ) -> AsyncIterator[WriteboostStack]:
        """Map the top-level device over the support devices.

        Args:
            force: Quiesce the cache before the body runs, so every body
                starts from a drained state
            flush_on_teardown: Quiesce again before the device is unmapped
        """
        if self._state is not StackState.SUPPORT_UP:
            raise InvalidStateError(
                f"Support devices must be up to activate the top level (stack is {self._state.value})"
            )
        top_table = self.table()

        async with bracket_(self._top_level_released):
            async with with_dev(self.control, top_table) as wb:
                self._devices[TOP_LEVEL] = wb
                self._transition(StackState.SUPPORT_UP, StackState.TOP_UP)
                logger.info("Top-level device up", extra={"device": wb.name, "tunables": self._config.tunables})
                try:
                    async with bracket_(self._teardown_flush if flush_on_teardown else _noop):
                        async with ensure_elapsed(self.pace_seconds):
                            if force:
                                await self.drop_caches()
                            yield self
                finally:
                    self._state = StackState.TOP_DOWN

    @asynccontextmanager
    async def activate(self, force: bool = False) -> AsyncIterator[WriteboostStack]:
        """Support devices, a clean cache, then the top level."""
        async with self.activate_support_devs():
            await self.cleanup_cache()
            async with self.activate_top_level(force) as s:
                yield s

    async def retry_teardown(self) -> None:
        """Unmap whatever a failed teardown left mapped, top level first.

        Only valid once the activation blocks have exited with the stack stuck
        in TOP_DOWN or SUPPORT_DOWN. Returns the stack to IDLE.
        """
        if self._state not in (StackState.TOP_DOWN, StackState.SUPPORT_DOWN):
            raise InvalidStateError(f"Nothing to tear down (stack is {self._state.value})")
        for role in (TOP_LEVEL, CACHE_VOLUME, BACKING_VOLUME):
            dev = self._devices.get(role)
            if dev is not None and dev.mapped:
                await dev.unmap()
        self._support_released()

    # -------------------------------------------------------------------------
    # Cache maintenance
    # -------------------------------------------------------------------------

    async def cleanup_cache(self) -> None:
        """Zero the head of the cache device so no stale log is replayed."""
        cache = self.cache_dev
        count = min(constants.CACHE_WIPE_SECTORS, cache.size)
        await run(
            [
                "dd",
                "if=/dev/zero",
                f"of={cache.path}",
                f"bs={constants.SECTOR_SIZE}",
                f"count={count}",
                "oflag=direct",
            ]
        )
        logger.debug("Cache device wiped", extra={"device": cache.name, "sectors": count})

    async def cleanup_forcibly(self) -> None:
        """Flush the current RAM buffer (suspend/resume the top level)."""
        await cleanup_forcibly(self.wb)

    async def drop_caches(self) -> None:
        """Flush the RAM buffer, then write back every dirty block."""
        if not self.is_writeboost:
            return
        await self.cleanup_forcibly()
        await force_flush(self.wb)

    async def _teardown_flush(self) -> None:
        await self.drop_caches()


def _noop() -> None:
    return None


class WriteboostStackCaching(WriteboostStack):
    """writeboost <backing_dev> <cache_dev> [tunables]."""

    def table(self) -> Table:
        return table(
            writeboost_target(
                self.backing_sz,
                self.backing_dev,
                self.cache_dev,
                self._config.tunables,
            )
        )


class WriteboostStackBackingDevice(WriteboostStack):
    """The slow device on its own, mapped once as a plain linear device."""

    is_writeboost: ClassVar[bool] = False

    def table(self) -> Table:
        return table(linear_target(self.backing_sz, self.slow_dev, 0))


StackMaker = Callable[..., WriteboostStack]

STACK_MAKERS: dict[str, StackMaker] = {
    "caching": WriteboostStackCaching,
    "backing": WriteboostStackBackingDevice,
}


def get_stack_maker(name: str) -> StackMaker:
    try:
        return STACK_MAKERS[name]
    except KeyError:
        raise ValueError(f"Unknown stack type {name!r}; choose from {', '.join(sorted(STACK_MAKERS))}") from None


async def make_stack(
    settings: Settings,
    control: ControlPlane | None = None,
    config: StackConfig | None = None,
    *,
    maker: StackMaker | None = None,
) -> WriteboostStack:
    """Build the stack variant selected by settings for the configured devices."""
    if not settings.data_dev or not settings.metadata_dev:
        raise ValueError("Both DMSTACK_DATA_DEV and DMSTACK_METADATA_DEV must be set")
    maker = maker or get_stack_maker(settings.stack_type)
    control = control or DmsetupControlPlane.from_settings(settings)
    return maker(
        control,
        settings.data_dev,
        settings.metadata_dev,
        slow_dev_size=await dev_size(settings.data_dev),
        fast_dev_size=await dev_size(settings.metadata_dev),
        config=config,
        pace_seconds=settings.pace_seconds,
    )
