"""Workloads and data patterns run against a stack.

- run_fio / run_smallfile: external load generators, run to completion
- drop_page_caches: empty the kernel page cache so reads hit the device
- write_file_tree / verify_file_tree: seeded files with recorded sha256
  digests, for checking data survives a deactivate/reactivate cycle
- PatternStomper: stamps seeded patterns over random blocks of a device
  and verifies them later
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import random
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles
import aiofiles.os

from dmstack import units
from dmstack._logging import get_logger
from dmstack.exceptions import AssertionFailedError
from dmstack.process import dev_size, run

if TYPE_CHECKING:
    from dmstack.process import ProcessResult
    from dmstack.targets import DeviceRef

logger = get_logger(__name__)

_ZERO_CHUNK_BYTES = 1024 * 1024


# =============================================================================
# Load generators
# =============================================================================


async def run_fio(
    directory: Path | str,
    *,
    fio_bin: str = "fio",
    name: str = "test",
    size: str = "128MB",
    rw: str = "randrw",
    runtime: int = 30,
    numjobs: int = 4,
    bs: str = "4k",
    direct: bool = True,
    timeout: float | None = None,
) -> ProcessResult:
    """Run fio with its job files in `directory`."""
    cmd = [
        fio_bin,
        f"--name={name}",
        f"--size={size}",
        f"--direct={int(direct)}",
        f"--rw={rw}",
        f"--runtime={runtime}",
        f"--numjobs={numjobs}",
        f"--bs={bs}",
    ]
    return await run(cmd, cwd=directory, timeout=timeout)


async def run_smallfile(
    top: Path | str,
    *,
    cli: Path | str,
    nr_files: int = 10000,
    threads: int = 4,
    file_size_kb: int = 64,
    operation: str = "create",
    timeout: float | None = None,
) -> ProcessResult:
    """Run smallfile_cli.py with fsync on, files hashed into directories."""
    cmd = [
        "python3",
        str(cli),
        "--top",
        str(top),
        "--fsync",
        "Y",
        "--file-size-distribution",
        "exponential",
        "--hash-into-dirs",
        "Y",
        "--files-per-dir",
        "30",
        "--dirs-per-dir",
        "5",
        "--threads",
        str(threads),
        "--file-size",
        str(file_size_kb),
        "--operation",
        operation,
        "--files",
        str(nr_files // threads),
    ]
    return await run(cmd, timeout=timeout)


async def drop_page_caches() -> None:
    await run("sync && echo 3 > /proc/sys/vm/drop_caches")


# =============================================================================
# Checksummed file trees
# =============================================================================


def _payload(seed: int, index: int, nbytes: int) -> bytes:
    return random.Random(f"{seed}:{index}").randbytes(nbytes)


def _tree_path(index: int, files_per_dir: int) -> str:
    return f"d{index // files_per_dir:04d}/f{index:06d}"


async def write_file_tree(
    root: Path | str,
    nr_files: int,
    file_size: int = 4096,
    *,
    seed: int = 0,
    files_per_dir: int = 100,
) -> dict[str, str]:
    """Write nr_files seeded files under root.

    Returns:
        Relative path -> sha256 hex digest of what was written
    """
    root = Path(root)
    digests: dict[str, str] = {}
    for i in range(nr_files):
        rel = _tree_path(i, files_per_dir)
        path = root / rel
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        data = _payload(seed, i, file_size)
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)
        digests[rel] = hashlib.sha256(data).hexdigest()
    logger.info("File tree written", extra={"root": str(root), "files": nr_files, "file_size": file_size})
    return digests


async def verify_file_tree(root: Path | str, digests: dict[str, str]) -> list[str]:
    """Relative paths that are missing or whose content changed."""
    root = Path(root)
    bad: list[str] = []
    for rel, expected in digests.items():
        path = root / rel
        if not await aiofiles.os.path.exists(path):
            bad.append(rel)
            continue
        async with aiofiles.open(path, "rb") as f:
            data = await f.read()
        if hashlib.sha256(data).hexdigest() != expected:
            bad.append(rel)
    if bad:
        logger.warning("File tree mismatch", extra={"root": str(root), "bad": len(bad), "total": len(digests)})
    return bad


# =============================================================================
# PatternStomper
# =============================================================================


class PatternStomper:
    """Stamp seeded patterns over random blocks of a device, verify later.

    Every stamp() is a new generation. Generation 0 is the device as found;
    with needs_zero the device is zeroed first so unstamped blocks have a
    known value too.

    Example:
        ```python
        ps = PatternStomper(wb.path, kilo(31), needs_zero=True)
        await ps.stamp(20)
        await ps.verify(0, 1)
        ```

    Attributes:
        path: Device (or file) being stamped
        block_size: Block size in sectors
        needs_zero: Zero the device before the first stamp
    """

    def __init__(
        self,
        path: DeviceRef,
        block_size: int,
        *,
        needs_zero: bool = False,
        seed: int = 0,
        device_size: int | None = None,
    ) -> None:
        if block_size <= 0:
            raise ValueError("block_size must be positive")
        self.path = os.fspath(path)
        self.block_size = block_size
        self.needs_zero = needs_zero
        self._rng = random.Random(seed)
        self._seed = seed
        self._device_size = device_size
        self._nr_blocks: int | None = None
        # Blocks stamped by each generation; index 0 is the device as found
        self._deltas: list[set[int]] = [set()]

    @property
    def generation(self) -> int:
        return len(self._deltas) - 1

    @property
    def block_bytes(self) -> int:
        return units.to_bytes(self.block_size)

    async def _ready(self) -> int:
        if self._nr_blocks is None:
            size = self._device_size if self._device_size is not None else await dev_size(self.path)
            if self.needs_zero:
                await self._zero(units.to_bytes(size))
            self._nr_blocks = size // self.block_size
        return self._nr_blocks

    async def _zero(self, nbytes: int) -> None:
        chunk = bytes(_ZERO_CHUNK_BYTES)
        async with aiofiles.open(self.path, "r+b") as f:
            remaining = nbytes
            while remaining > 0:
                n = min(remaining, len(chunk))
                await f.write(chunk[:n])
                remaining -= n
            await f.flush()
            await asyncio.to_thread(os.fsync, f.fileno())
        logger.debug("Device zeroed", extra={"path": self.path, "bytes": nbytes})

    def _pattern(self, generation: int, block: int) -> bytes:
        return random.Random(f"{self._seed}:{generation}:{block}").randbytes(self.block_bytes)

    def _owner(self, block: int, upto: int) -> int:
        """Latest generation <= upto that stamped block (0 if none)."""
        for g in range(upto, 0, -1):
            if block in self._deltas[g]:
                return g
        return 0

    async def stamp(self, percent: float) -> int:
        """Stamp `percent` of the blocks with a new generation's pattern.

        Returns:
            The new generation number
        """
        if not 0 < percent <= 100:  # noqa: PLR2004
            raise ValueError("percent must be in (0, 100]")
        nr_blocks = await self._ready()
        count = max(1, int(nr_blocks * percent / 100))
        blocks = self._rng.sample(range(nr_blocks), min(count, nr_blocks))
        generation = len(self._deltas)

        async with aiofiles.open(self.path, "r+b") as f:
            for block in sorted(blocks):
                await f.seek(block * self.block_bytes)
                await f.write(self._pattern(generation, block))
            await f.flush()
            await asyncio.to_thread(os.fsync, f.fileno())

        self._deltas.append(set(blocks))
        logger.info(
            "Pattern stamped",
            extra={"path": self.path, "generation": generation, "blocks": len(blocks)},
        )
        return generation

    async def verify(self, from_generation: int = 0, to_generation: int | None = None) -> None:
        """Check the blocks changed after from_generation up to to_generation.

        From generation 0 on a zeroed device every block is checked:
        unstamped ones must still read as zeros.

        Raises:
            AssertionFailedError: a block does not hold the expected data
        """
        to_generation = self.generation if to_generation is None else to_generation
        if not 0 <= from_generation <= to_generation <= self.generation:
            raise ValueError(f"Bad generation range {from_generation}..{to_generation}")
        nr_blocks = await self._ready()

        if from_generation == 0 and self.needs_zero:
            blocks = list(range(nr_blocks))
        else:
            changed: set[int] = set()
            for g in range(from_generation + 1, to_generation + 1):
                changed |= self._deltas[g]
            blocks = sorted(changed)

        zero_block = bytes(self.block_bytes)
        async with aiofiles.open(self.path, "rb") as f:
            # Stamps were fsync'd; drop the clean pages so reads reach the device
            os.posix_fadvise(f.fileno(), 0, 0, os.POSIX_FADV_DONTNEED)
            for block in blocks:
                await f.seek(block * self.block_bytes)
                data = await f.read(self.block_bytes)
                owner = self._owner(block, to_generation)
                expected = self._pattern(owner, block) if owner else zero_block
                if data != expected:
                    raise AssertionFailedError(
                        f"Block {block} of {self.path} does not match generation {owner}",
                        context={"path": self.path, "block": block, "generation": owner},
                    )
        logger.info(
            "Pattern verified",
            extra={"path": self.path, "from": from_generation, "to": to_generation, "blocks": len(blocks)},
        )
