"""Device handles: live, addressable mapped devices.

A DeviceHandle tracks the table currently in effect, a table staged by
reload() and not yet active, and the mapped/suspended flags. Tables are only
ever loaded into a paused device; the staged table becomes effective on the
next resume(). Other handles refer to this one through its device path, so
swapping the table never changes the identity seen by upper layers.

Lifecycle:
    map_device() ──► live ──pause()──► suspended ──resume()──► live
                                  │
                                  └─reload(t)─► staged t (effective on resume)
    live/suspended ──unmap()──► unmapped
"""

from __future__ import annotations

import uuid
from contextlib import AsyncExitStack, asynccontextmanager
from typing import TYPE_CHECKING

from dmstack import constants
from dmstack._logging import get_logger
from dmstack.exceptions import InvalidStateError
from dmstack.guards import bracket, bracket_
from dmstack.targets import Table

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from dmstack.control import ControlPlane

logger = get_logger(__name__)


def generate_name(prefix: str = "dmstack") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class DeviceHandle:
    """A mapped device owned by whoever called map_device().

    Attributes:
        name: Control-plane name of the device
        path: Block device path (/dev/mapper/<name>)
        table: Table currently in effect
        staged_table: Table loaded while paused, effective on resume
        mapped: False once unmap() succeeded
        suspended: True between pause() and resume()
    """

    def __init__(self, control: ControlPlane, name: str, table: Table) -> None:
        self._control = control
        self.name = name
        self._table = table
        self._staged: Table | None = None
        self._mapped = True
        self._suspended = False

    def __repr__(self) -> str:
        return f"DeviceHandle(name={self.name!r}, mapped={self._mapped}, suspended={self._suspended})"

    def __str__(self) -> str:
        return self.path

    def __fspath__(self) -> str:
        return self.path

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def path(self) -> str:
        return f"{constants.DM_DIR}/{self.name}"

    @property
    def table(self) -> Table:
        return self._table

    @property
    def staged_table(self) -> Table | None:
        return self._staged

    @property
    def size(self) -> int:
        """Length of the effective table in sectors."""
        return self._table.size

    @property
    def mapped(self) -> bool:
        return self._mapped

    @property
    def suspended(self) -> bool:
        return self._suspended

    @property
    def control(self) -> ControlPlane:
        return self._control

    def _require_mapped(self, op: str) -> None:
        if not self._mapped:
            raise InvalidStateError(f"{op} on unmapped device {self.name}", context={"device": self.name})

    # -------------------------------------------------------------------------
    # Suspend / reload / resume
    # -------------------------------------------------------------------------

    async def pause(self) -> None:
        """Stop serving I/O; new I/O is queued by the control plane."""
        self._require_mapped("pause")
        if self._suspended:
            raise InvalidStateError(f"Device {self.name} is already paused", context={"device": self.name})
        await self._control.suspend(self.name)
        self._suspended = True
        logger.debug("Device paused", extra={"device": self.name})

    async def resume(self) -> None:
        """Resume I/O, activating any staged table."""
        self._require_mapped("resume")
        if not self._suspended:
            raise InvalidStateError(f"Device {self.name} is not paused", context={"device": self.name})
        await self._control.resume(self.name)
        self._suspended = False
        if self._staged is not None:
            self._table = self._staged
            self._staged = None
            logger.debug("Staged table now effective", extra={"device": self.name})
        logger.debug("Device resumed", extra={"device": self.name})

    async def reload(self, table: Table) -> None:
        """Stage `table`; only valid while paused."""
        self._require_mapped("reload")
        if not self._suspended:
            raise InvalidStateError(
                f"Refusing to reload live device {self.name}; pause it first",
                context={"device": self.name},
            )
        await self._control.load(self.name, table)
        self._staged = table
        logger.debug("Table staged", extra={"device": self.name, "table": table.to_dmsetup().strip()})

    @asynccontextmanager
    async def paused(self) -> AsyncIterator[DeviceHandle]:
        """Pause for the duration of the block; resume on every exit path."""
        await self.pause()
        async with bracket_(self.resume):
            yield self

    # -------------------------------------------------------------------------
    # Messages / status
    # -------------------------------------------------------------------------

    async def message(self, target_index: int, *words: object) -> str:
        """Send a control string to the target at `target_index`."""
        self._require_mapped("message")
        text = " ".join(str(w) for w in words)
        logger.debug("Sending message", extra={"device": self.name, "target_index": target_index, "text": text})
        return await self._control.message(self.name, target_index, text)

    async def status(self) -> str:
        """Raw status text; interpretation is left to the caller."""
        self._require_mapped("status")
        return await self._control.status(self.name)

    async def loaded_table(self) -> Table:
        """Table as reported back by the control plane.

        dmsetup reports devices as `major:minor`; compare with
        `table.by_device_number()`.
        """
        self._require_mapped("table")
        return Table.parse(await self._control.table(self.name))

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def unmap(self) -> None:
        """Remove the device. DeviceBusyError if it is still held open."""
        self._require_mapped("unmap")
        await self._control.remove(self.name)
        self._mapped = False
        logger.debug("Device unmapped", extra={"device": self.name})


async def map_device(control: ControlPlane, table: Table, name: str | None = None) -> DeviceHandle:
    """Create a mapped device for `table`. MapError if the control plane refuses."""
    name = name or generate_name()
    await control.create(name, table)
    logger.info("Device mapped", extra={"device": name, "size": table.size})
    return DeviceHandle(control, name, table)


@asynccontextmanager
async def with_dev(control: ControlPlane, table: Table, name: str | None = None) -> AsyncIterator[DeviceHandle]:
    """Map `table` for the duration of the block."""
    dev = await map_device(control, table, name)
    async with bracket(dev, DeviceHandle.unmap):
        yield dev


@asynccontextmanager
async def with_devs(control: ControlPlane, *tables: Table) -> AsyncIterator[list[DeviceHandle]]:
    """Map tables in order; unmap in reverse order on every exit path."""
    async with AsyncExitStack() as stack:
        devs = [await stack.enter_async_context(with_dev(control, t)) for t in tables]
        yield devs
