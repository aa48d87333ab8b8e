"""Filesystem collaborator: format, mount, check.

with_mount() bounds everything that runs against a mounted filesystem:
the mount is released on every exit path, and an optional pre-unmount hook
gets a last chance to put the device stack back in order (flush the cache,
unwrap injected faults) before the unmount happens.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Literal

import aiofiles.os

from dmstack._logging import get_logger
from dmstack.exceptions import InvalidStateError
from dmstack.guards import bracket_
from dmstack.process import run

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Sequence

    from dmstack.targets import DeviceRef

logger = get_logger(__name__)

FsKind = Literal["xfs", "ext4"]

_MKFS: dict[str, list[str]] = {
    "xfs": ["mkfs.xfs", "-f"],
    "ext4": ["mkfs.ext4", "-F", "-q"],
}

_CHECK: dict[str, list[str]] = {
    "xfs": ["xfs_repair", "-n"],
    "ext4": ["fsck.ext4", "-fn"],
}


def _noop() -> None:
    return None


class FileSystem:
    """A filesystem of `kind` on `device`.

    Attributes:
        kind: "xfs" or "ext4"
        device: Block device path the filesystem lives on
        mount_point: Where it is mounted, None when unmounted
    """

    def __init__(self, kind: FsKind, device: DeviceRef) -> None:
        if kind not in _MKFS:
            raise ValueError(f"Unsupported filesystem {kind!r}")
        self.kind = kind
        self.device = os.fspath(device)
        self.mount_point: Path | None = None

    def __repr__(self) -> str:
        return f"FileSystem(kind={self.kind!r}, device={self.device!r}, mount_point={self.mount_point})"

    async def format(self) -> None:
        await run([*_MKFS[self.kind], self.device])
        logger.info("Filesystem created", extra={"kind": self.kind, "device": self.device})

    async def mount(self, mount_point: Path | str, options: Sequence[str] = ()) -> Path:
        if self.mount_point is not None:
            raise InvalidStateError(f"{self.device} already mounted on {self.mount_point}")
        mp = Path(mount_point)
        await aiofiles.os.makedirs(mp, exist_ok=True)
        cmd = ["mount"]
        if options:
            cmd += ["-o", ",".join(options)]
        await run([*cmd, self.device, str(mp)])
        self.mount_point = mp
        logger.debug("Filesystem mounted", extra={"device": self.device, "mount_point": str(mp)})
        return mp

    async def umount(self) -> None:
        if self.mount_point is None:
            return
        await run(["umount", str(self.mount_point)])
        logger.debug("Filesystem unmounted", extra={"device": self.device, "mount_point": str(self.mount_point)})
        self.mount_point = None

    async def check(self) -> None:
        """Read-only consistency check. ProcessFailedError if it finds damage."""
        await run([*_CHECK[self.kind], self.device])

    @asynccontextmanager
    async def with_mount(
        self,
        mount_point: Path | str,
        options: Sequence[str] = (),
        pre_unmount: Callable[[], Awaitable[None] | None] | None = None,
        *,
        check: bool = True,
    ) -> AsyncIterator[Path]:
        """Mount for the duration of the block.

        Args:
            mount_point: Directory to mount on (created if missing)
            options: mount -o options
            pre_unmount: Runs before the unmount on every exit path; the
                unmount still happens if it fails
            check: Run the consistency check after a successful body
        """
        mp = await self.mount(mount_point, options)
        async with bracket_(self.umount):
            async with bracket_(pre_unmount or _noop):
                yield mp
        if check:
            await self.check()
