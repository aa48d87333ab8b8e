"""dmstack: drive layered dm-writeboost device stacks through test scenarios.

A writeboost device caches a slow backing device on a fast cache device.
dmstack builds that stack out of device-mapper targets, brings it up and
down in a strict order, injects faults into the support layers and checks
what survives.

Quick Start:
    ```python
    from dmstack import Settings, make_stack

    settings = Settings(data_dev="/dev/sdb", metadata_dev="/dev/nvme0n1p1")
    stack = await make_stack(settings)
    async with stack.activate(force=True) as s:
        print(s.wb.path)  # /dev/mapper/dmstack-...
    ```

Fault injection:
    ```python
    async with stack.activate_support_devs() as s:
        async with s.activate_top_level():
            async with fault_window(s.backing_dev, up=3, down=1):
                ...  # backing device fails for 1s out of every 4s
    ```

Requirements:
    - Linux with device-mapper (dmsetup) and the dm-writeboost module
    - Root privileges for the end-to-end scenarios
    - Python 3.12+
"""

from dmstack.config import StackConfig
from dmstack.control import ControlPlane, DmsetupControlPlane
from dmstack.device import DeviceHandle, map_device, with_dev, with_devs
from dmstack.exceptions import (
    AllocationError,
    AssertionFailedError,
    ControlError,
    DeviceBusyError,
    DmStackError,
    InsufficientSpaceError,
    InvalidStateError,
    MapError,
    ProcessFailedError,
    QuiesceError,
    StatusParseError,
    TimeoutExceededError,
)
from dmstack.fault import fault_window, inject, restore
from dmstack.guards import bracket, bracket_, ensure_elapsed, protect, protect_
from dmstack.settings import Settings
from dmstack.stack import (
    StackState,
    WriteboostStack,
    WriteboostStackBackingDevice,
    WriteboostStackCaching,
    make_stack,
)
from dmstack.status import WriteboostStatus
from dmstack.targets import Layer, Table, layer, table
from dmstack.volumes import Volume, VolumeAllocator

__all__ = [
    "AllocationError",
    "AssertionFailedError",
    "ControlError",
    "ControlPlane",
    "DeviceBusyError",
    "DeviceHandle",
    "DmStackError",
    "DmsetupControlPlane",
    "InsufficientSpaceError",
    "InvalidStateError",
    "Layer",
    "MapError",
    "ProcessFailedError",
    "QuiesceError",
    "Settings",
    "StackConfig",
    "StackState",
    "StatusParseError",
    "Table",
    "TimeoutExceededError",
    "Volume",
    "VolumeAllocator",
    "WriteboostStack",
    "WriteboostStackBackingDevice",
    "WriteboostStackCaching",
    "WriteboostStatus",
    "bracket",
    "bracket_",
    "ensure_elapsed",
    "fault_window",
    "inject",
    "layer",
    "make_stack",
    "map_device",
    "protect",
    "protect_",
    "restore",
    "table",
    "with_dev",
    "with_devs",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("dmstack")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
