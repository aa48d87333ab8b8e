"""Device-mapper control plane.

The control plane is the external collaborator that actually creates,
suspends, reloads and removes mapped devices. The harness only talks to it
through the ControlPlane protocol; DmsetupControlPlane drives the kernel
with the `dmsetup` binary.

Command mapping:
    create(name, table)      -> dmsetup create <name>       (table on stdin)
    suspend(name)            -> dmsetup suspend <name>
    resume(name)             -> dmsetup resume <name>
    load(name, table)        -> dmsetup load <name>         (table on stdin)
    message(name, i, text)   -> dmsetup message <name> <i> <text...>
    status(name)             -> dmsetup status <name>
    table(name)              -> dmsetup table <name>
    open_count(name)         -> dmsetup info -c --noheadings -o open <name>
    remove(name)             -> dmsetup remove <name>
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from dmstack import constants
from dmstack._logging import get_logger
from dmstack.exceptions import ControlError, DeviceBusyError, MapError
from dmstack.process import ProcessResult, run

if TYPE_CHECKING:
    from dmstack.settings import Settings
    from dmstack.targets import Table

logger = get_logger(__name__)

_BUSY_MARKERS = ("busy", "in use")


class ControlPlane(Protocol):
    """Operations the harness needs from the device-mapper control plane."""

    async def create(self, name: str, table: Table) -> None: ...

    async def suspend(self, name: str) -> None: ...

    async def resume(self, name: str) -> None: ...

    async def load(self, name: str, table: Table) -> None: ...

    async def message(self, name: str, target_index: int, text: str) -> str: ...

    async def status(self, name: str) -> str: ...

    async def table(self, name: str) -> str: ...

    async def open_count(self, name: str) -> int: ...

    async def remove(self, name: str) -> None: ...


class DmsetupControlPlane:
    """ControlPlane backed by the dmsetup binary.

    Attributes:
        dmsetup_bin: Path or name of the dmsetup executable
        timeout: Per-command timeout in seconds
        remove_retries: Attempts for remove() while the device reports busy
    """

    def __init__(
        self,
        dmsetup_bin: str = "dmsetup",
        *,
        timeout: float = constants.DEFAULT_COMMAND_TIMEOUT_SECONDS,
        remove_retries: int = constants.UNMAP_MAX_RETRIES,
    ):
        self.dmsetup_bin = dmsetup_bin
        self.timeout = timeout
        self.remove_retries = remove_retries

    @classmethod
    def from_settings(cls, settings: Settings) -> DmsetupControlPlane:
        return cls(
            str(settings.dmsetup_bin),
            timeout=settings.command_timeout_seconds,
            remove_retries=settings.unmap_retries,
        )

    async def _dmsetup(self, *args: str, table: Table | None = None) -> ProcessResult:
        stdin = table.to_dmsetup().encode() if table is not None else None
        return await run([self.dmsetup_bin, *args], check=False, timeout=self.timeout, input=stdin)

    async def create(self, name: str, table: Table) -> None:
        result = await self._dmsetup("create", name, table=table)
        if not result.ok:
            raise MapError(
                f"dmsetup create {name} failed: {result.stderr.strip()}",
                context={"device": name, "table": table.to_dmsetup()},
                stderr=result.stderr,
            )
        logger.debug("Device created", extra={"device": name})

    async def suspend(self, name: str) -> None:
        result = await self._dmsetup("suspend", name)
        if not result.ok:
            raise ControlError(f"dmsetup suspend {name} failed", response=result.stderr.strip())

    async def resume(self, name: str) -> None:
        result = await self._dmsetup("resume", name)
        if not result.ok:
            raise ControlError(f"dmsetup resume {name} failed", response=result.stderr.strip())

    async def load(self, name: str, table: Table) -> None:
        result = await self._dmsetup("load", name, table=table)
        if not result.ok:
            raise MapError(
                f"dmsetup load {name} failed: {result.stderr.strip()}",
                context={"device": name, "table": table.to_dmsetup()},
                stderr=result.stderr,
            )

    async def message(self, name: str, target_index: int, text: str) -> str:
        result = await self._dmsetup("message", name, str(target_index), *text.split())
        if not result.ok:
            raise ControlError(
                f"dmsetup message {name} {target_index} {text!r} rejected",
                response=result.stderr.strip(),
                context={"device": name, "target_index": target_index},
            )
        return result.stdout.strip()

    async def status(self, name: str) -> str:
        result = await self._dmsetup("status", name)
        if not result.ok:
            raise ControlError(f"dmsetup status {name} failed", response=result.stderr.strip())
        return result.stdout

    async def table(self, name: str) -> str:
        result = await self._dmsetup("table", name)
        if not result.ok:
            raise ControlError(f"dmsetup table {name} failed", response=result.stderr.strip())
        return result.stdout

    async def open_count(self, name: str) -> int:
        result = await self._dmsetup("info", "-c", "--noheadings", "-o", "open", name)
        if not result.ok:
            raise ControlError(f"dmsetup info {name} failed", response=result.stderr.strip())
        return int(result.stdout.strip() or 0)

    async def _remove_once(self, name: str) -> None:
        result = await self._dmsetup("remove", name)
        if result.ok:
            return
        err = result.stderr.strip()
        if any(marker in err.lower() for marker in _BUSY_MARKERS):
            raise DeviceBusyError(f"Device {name} is busy", context={"device": name, "stderr": err})
        raise ControlError(f"dmsetup remove {name} failed", response=err, context={"device": name})

    async def remove(self, name: str) -> None:
        """Remove a device, retrying while udev or a late close holds it open."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.remove_retries),
            wait=wait_random_exponential(
                min=constants.UNMAP_RETRY_MIN_SECONDS,
                max=constants.UNMAP_RETRY_MAX_SECONDS,
            ),
            retry=retry_if_exception_type(DeviceBusyError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                await self._remove_once(name)
        logger.debug("Device removed", extra={"device": name})
