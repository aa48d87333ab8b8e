"""Flush/quiesce control for the writeboost layer.

Before a test asserts on device state it drives the cache to a known
condition:

- force_flush: shortest background sync interval, then drop_caches, so all
  dirty data is written back and metadata is on disk
- cleanup_forcibly: suspend/resume, which flushes the RAM buffer
- measure_stat: read status and pull out a single counter
- wait_for_clean: poll until the dirty block counter reaches zero
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_delay, wait_fixed

from dmstack import constants
from dmstack._logging import get_logger
from dmstack.exceptions import ControlError, QuiesceError, TimeoutExceededError
from dmstack.status import WriteboostStatus

if TYPE_CHECKING:
    from dmstack.device import DeviceHandle

logger = get_logger(__name__)

StatExtractor = str | Callable[[WriteboostStatus], int]


async def force_flush(handle: DeviceHandle, target_index: int = 0) -> None:
    """Write back everything and sync metadata.

    The sync daemon has to keep running while drop_caches waits: data that
    lands in the RAM buffer after drop_caches started is only written out by
    the next sync, so the interval is dropped to its minimum first.

    Raises:
        QuiesceError: either message was rejected
    """
    try:
        await handle.message(target_index, constants.MSG_SYNC_DATA_INTERVAL, constants.MIN_SYNC_DATA_INTERVAL)
        await handle.message(target_index, constants.MSG_DROP_CACHES)
    except ControlError as e:
        raise QuiesceError(
            f"Could not quiesce {handle.name}: {e.message}",
            context={"device": handle.name, "response": e.response},
        ) from e
    logger.info("Cache quiesced", extra={"device": handle.name})


async def cleanup_forcibly(handle: DeviceHandle) -> None:
    """Flush the RAM buffer by suspending and resuming the device."""
    async with handle.paused():
        pass


async def read_status(handle: DeviceHandle) -> WriteboostStatus:
    return WriteboostStatus.from_raw_status(await handle.status())


async def measure_stat(handle: DeviceHandle, extract: StatExtractor) -> int:
    """Read one counter from the device's status.

    Args:
        handle: Writeboost device
        extract: Status field name (e.g. "nr_dirty_cache_blocks") or a
            callable taking the parsed WriteboostStatus
    """
    status = await read_status(handle)
    if callable(extract):
        return extract(status)
    return int(getattr(status, extract))


async def wait_for_clean(
    handle: DeviceHandle,
    timeout: float = constants.DEFAULT_DRAIN_TIMEOUT_SECONDS,
    poll_interval: float = constants.DRAIN_POLL_INTERVAL_SECONDS,
) -> None:
    """Poll until no dirty cache blocks remain.

    Raises:
        TimeoutExceededError: still dirty after `timeout` seconds
    """
    dirty = -1
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_delay(timeout),
            wait=wait_fixed(poll_interval),
            retry=retry_if_result(lambda n: n > 0),
        ):
            with attempt:
                dirty = await measure_stat(handle, "nr_dirty_cache_blocks")
            if attempt.retry_state.outcome is not None and not attempt.retry_state.outcome.failed:
                attempt.retry_state.set_result(dirty)
    except RetryError as e:
        raise TimeoutExceededError(
            f"{handle.name} still has {dirty} dirty blocks after {timeout}s",
            context={"device": handle.name, "dirty": dirty, "timeout": timeout},
        ) from e
