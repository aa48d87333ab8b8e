"""Host capability probes: which dm targets the kernel offers, root access.

Probes run once and cache their result. Async probes share a cache
container with lazily created locks so concurrent callers run the probe
subprocess only once.
"""

import asyncio
import os

from dmstack._logging import get_logger

logger = get_logger(__name__)

_PROBE_TIMEOUT_SECONDS = 5


class _ProbeCache:
    """Container for cached probe results.

    Locks are created lazily because asyncio.Lock needs a running loop,
    which may not exist at import time.
    """

    __slots__ = ("_locks", "dm_targets")

    def __init__(self) -> None:
        self.dm_targets: set[str] | None = None
        self._locks: dict[str, asyncio.Lock] = {}

    def get_lock(self, name: str) -> asyncio.Lock:
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]


_probe_cache = _ProbeCache()


async def _probe_dm_targets(dmsetup_bin: str = "dmsetup") -> set[str]:
    """Target types registered with device-mapper (cached).

    Parses `dmsetup targets`, one "<name> v<version>" per line. Modules
    that are not loaded yet do not show up.
    """
    if _probe_cache.dm_targets is not None:
        return _probe_cache.dm_targets

    async with _probe_cache.get_lock("dm_targets"):
        if _probe_cache.dm_targets is not None:
            return _probe_cache.dm_targets

        try:
            proc = await asyncio.create_subprocess_exec(
                dmsetup_bin,
                "targets",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=_PROBE_TIMEOUT_SECONDS)

            if proc.returncode != 0:
                logger.warning(
                    "dm target probe failed",
                    extra={"dmsetup_bin": dmsetup_bin, "returncode": proc.returncode},
                )
                _probe_cache.dm_targets = set()
                return _probe_cache.dm_targets

            targets = {line.split()[0] for line in stdout.decode().splitlines() if line.strip()}
            _probe_cache.dm_targets = targets
            logger.debug("dm target probe complete", extra={"targets": sorted(targets)})

        except FileNotFoundError:
            logger.warning("dmsetup not found for target probe", extra={"dmsetup_bin": dmsetup_bin})
            _probe_cache.dm_targets = set()
        except (OSError, TimeoutError) as e:
            logger.warning("dm target probe failed", extra={"dmsetup_bin": dmsetup_bin, "error": str(e)})
            _probe_cache.dm_targets = set()

        return _probe_cache.dm_targets


async def check_target_available(kind: str, dmsetup_bin: str = "dmsetup") -> bool:
    """True if device-mapper currently offers target `kind`."""
    return kind in await _probe_dm_targets(dmsetup_bin)


def check_root() -> bool:
    return os.geteuid() == 0
