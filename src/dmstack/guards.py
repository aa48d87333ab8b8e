"""Guaranteed-release primitives.

Every acquisition in the harness (mapping a device, pausing it, swapping in
a fault table, mounting a filesystem) is expressed with one of these:

- bracket(value, release): release runs exactly once on every exit path
- protect(value, release): release runs only when the body fails; on the
  success path the caller owns the resource
- bracket_ / protect_: the same without a resource value

Nesting them releases in strict reverse order. A release that fails while
another exception is already propagating is logged and attached to that
exception as a note; the original error is the one re-raised, and the
remaining outer releases still run because each level only ever re-raises
what it received. When the body succeeded, the first failing release
becomes the error seen by the outer levels.

Example:
    ```python
    async with bracket(await map_device(cp, t1), unmap) as dev1:
        async with bracket(await map_device(cp, t2), unmap) as dev2:
            ...  # dev2 released first, then dev1, whatever happens here
    ```
"""

from __future__ import annotations

import asyncio
import inspect
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, TypeVar

from dmstack._logging import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

logger = get_logger(__name__)

T = TypeVar("T")


async def _invoke(release: Callable[..., Awaitable[Any] | Any], *args: Any) -> None:
    """Call a sync or async release action."""
    result = release(*args)
    if inspect.isawaitable(result):
        await result


def _describe(release: Callable[..., Any]) -> str:
    return getattr(release, "__qualname__", None) or repr(release)


async def _release_while_unwinding(
    release: Callable[..., Awaitable[Any] | Any],
    args: tuple[Any, ...],
    original: BaseException,
) -> None:
    """Run release while `original` propagates; never replace `original`."""
    try:
        await _invoke(release, *args)
    except Exception as e:
        logger.error(
            "Release failed while unwinding",
            extra={
                "release": _describe(release),
                "error": str(e),
                "error_type": type(e).__name__,
                "original_error_type": type(original).__name__,
            },
            exc_info=e,
        )
        original.add_note(f"during release {_describe(release)}: {type(e).__name__}: {e}")


@asynccontextmanager
async def bracket(value: T, release: Callable[[T], Awaitable[Any] | Any]) -> AsyncIterator[T]:
    """Yield `value`, then always call `release(value)` exactly once."""
    try:
        yield value
    except BaseException as e:
        await _release_while_unwinding(release, (value,), e)
        raise
    await _invoke(release, value)


@asynccontextmanager
async def bracket_(release: Callable[[], Awaitable[Any] | Any]) -> AsyncIterator[None]:
    """bracket() without a resource value."""
    try:
        yield
    except BaseException as e:
        await _release_while_unwinding(release, (), e)
        raise
    await _invoke(release)


@asynccontextmanager
async def protect(value: T, release: Callable[[T], Awaitable[Any] | Any]) -> AsyncIterator[T]:
    """Yield `value`; call `release(value)` only if the body raises."""
    try:
        yield value
    except BaseException as e:
        await _release_while_unwinding(release, (value,), e)
        raise


@asynccontextmanager
async def protect_(release: Callable[[], Awaitable[Any] | Any]) -> AsyncIterator[None]:
    """protect() without a resource value."""
    try:
        yield
    except BaseException as e:
        await _release_while_unwinding(release, (), e)
        raise


@asynccontextmanager
async def ensure_elapsed(seconds: float) -> AsyncIterator[None]:
    """Hold the exit of the block until `seconds` have passed since entry.

    Wrapped around each "up" transition so the next mutation of the device
    (usually its teardown) never races the target's asynchronous startup.
    Applies on every exit path.
    """
    start = time.monotonic()
    try:
        yield
    finally:
        remaining = seconds - (time.monotonic() - start)
        if remaining > 0:
            logger.debug("Pacing before next mutation", extra={"remaining_seconds": round(remaining, 3)})
            await asyncio.sleep(remaining)
