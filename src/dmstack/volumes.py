"""Volume allocation: carve named linear extents out of a physical device.

Allocation is a planning step only. Extents are handed out in request order
starting at sector 0; nothing is mapped until a table built from a volume is
given to the control plane. The allocator does not lock the physical device
across processes, so two stacks must never share one.
"""

from __future__ import annotations

from collections.abc import Iterable

from pydantic import BaseModel, ConfigDict, Field

from dmstack._logging import get_logger
from dmstack.exceptions import AllocationError, InsufficientSpaceError
from dmstack.targets import Table, linear_target, table

logger = get_logger(__name__)


class Volume(BaseModel):
    """A named extent on a physical device (all values in sectors)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    device: str = Field(min_length=1)
    offset: int = Field(ge=0)
    length: int = Field(gt=0)

    @property
    def end(self) -> int:
        return self.offset + self.length

    def overlaps(self, other: Volume) -> bool:
        return self.device == other.device and self.offset < other.end and other.offset < self.end


class VolumeAllocator:
    """Plans non-overlapping extents on one physical device.

    Usage:
        vm = VolumeAllocator("/dev/sdb", dev_size("/dev/sdb"))
        vm.add_volume("backing_dev", gig(4))
        vm.table("backing_dev")  # linear table over the extent
    """

    def __init__(self, device: str, device_size: int):
        if device_size <= 0:
            raise AllocationError(
                f"Physical device {device} has no usable space",
                context={"device": device, "device_size": device_size},
            )
        self.device = device
        self.device_size = device_size
        self._volumes: dict[str, Volume] = {}
        self._cursor = 0

    @property
    def allocated(self) -> int:
        return self._cursor

    @property
    def free(self) -> int:
        return self.device_size - self._cursor

    def add_volume(self, name: str, size: int) -> Volume:
        """Allocate the next `size` sectors under `name`.

        Raises:
            AllocationError: duplicate name or non-positive size
            InsufficientSpaceError: request does not fit in what is left
        """
        if name in self._volumes:
            raise AllocationError(f"Volume {name!r} already allocated", context={"device": self.device})
        if size <= 0:
            raise AllocationError(
                f"Volume {name!r} must have a positive size", context={"device": self.device, "size": size}
            )
        requested = self._cursor + size
        if requested > self.device_size:
            raise InsufficientSpaceError(
                f"Volume {name!r} ({size} sectors) does not fit on {self.device}",
                requested=requested,
                available=self.device_size,
                context={"device": self.device, "volume": name},
            )

        vol = Volume(name=name, device=self.device, offset=self._cursor, length=size)
        self._volumes[name] = vol
        self._cursor = vol.end
        logger.debug(
            "Volume planned",
            extra={"volume": name, "device": self.device, "offset": vol.offset, "length": vol.length},
        )
        return vol

    def volume(self, name: str) -> Volume:
        try:
            return self._volumes[name]
        except KeyError:
            raise AllocationError(f"Unknown volume {name!r}", context={"device": self.device}) from None

    def volumes(self) -> list[Volume]:
        """All volumes in allocation order."""
        return list(self._volumes.values())

    def table(self, name: str) -> Table:
        vol = self.volume(name)
        return table(linear_target(vol.length, vol.device, vol.offset))


def allocate(device: str, device_size: int, requests: Iterable[tuple[str, int]]) -> VolumeAllocator:
    """Plan every (name, size) request on `device`, failing atomically."""
    allocator = VolumeAllocator(device, device_size)
    for name, size in requests:
        allocator.add_volume(name, size)
    return allocator
