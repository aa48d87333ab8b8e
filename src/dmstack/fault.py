"""Fault injection by swapping a support device's table for a flakey one.

The device keeps its name and path; only the table loaded under it changes,
so the writeboost table above it keeps pointing at the same device. While
paused the control plane queues incoming I/O, so nothing in flight is lost
across the swap.

dm-flakey alternates an "up" window (I/O passes) with a "down" window
(I/O fails) and then starts over; the kernel target measures both windows in
seconds.

Callers must restore the original table before unmapping the device or
running a filesystem check on anything stacked above it.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from dmstack import constants
from dmstack._logging import get_logger
from dmstack.guards import bracket
from dmstack.targets import Table, flakey_target, table

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from dmstack.device import DeviceHandle

logger = get_logger(__name__)


class FaultWindow(BaseModel):
    """up/down schedule for a flakey layer."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    up: int = Field(ge=0)
    down: int = Field(ge=0)

    @model_validator(mode="after")
    def _nonzero_period(self) -> Self:
        # dm-flakey refuses a zero up+down interval
        if self.up + self.down == 0:
            raise ValueError("up + down must be at least 1 second")
        return self


def flakey_table(original: Table, window: FaultWindow) -> Table:
    """Flakey layer over the same extent the original linear layer maps.

    Raises:
        ValueError: original is not a single linear layer
    """
    if len(original.layers) != 1 or original.layers[0].kind != constants.LINEAR_TARGET:
        msg = "Fault injection needs a single linear layer to wrap"
        raise ValueError(msg)
    base = original.layers[0]
    dev, offset = base.args[0], base.args[1]
    return table(flakey_target(base.sector_count, str(dev), int(offset), window.up, window.down))


async def inject(handle: DeviceHandle, up: int, down: int) -> Table:
    """Swap in a flakey table; returns the table to hand back to restore()."""
    original = handle.table
    faulty = flakey_table(original, FaultWindow(up=up, down=down))
    async with handle.paused():
        await handle.reload(faulty)
    logger.info("Fault window injected", extra={"device": handle.name, "up": up, "down": down})
    return original


async def restore(handle: DeviceHandle, original: Table) -> None:
    async with handle.paused():
        await handle.reload(original)
    logger.info("Original table restored", extra={"device": handle.name})


@asynccontextmanager
async def fault_window(handle: DeviceHandle, up: int, down: int) -> AsyncIterator[DeviceHandle]:
    """Run the block with `handle` flakey; restore on every exit path."""
    original = await inject(handle, up, down)

    async def _restore(t: Table) -> None:
        await restore(handle, t)

    async with bracket(original, _restore):
        yield handle
