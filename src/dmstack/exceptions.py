"""Exception hierarchy for dmstack.

All exceptions inherit from DmStackError base class.

Hierarchy:
    DmStackError (base)
    ├── MapError                   ← control plane rejected a table on create
    ├── InvalidStateError          ← pause/resume/reload used out of order
    ├── ControlError               ← target rejected a message
    ├── DeviceBusyError            ← unmap with open references
    ├── AllocationError            ← volume planning failed
    │   └── InsufficientSpaceError ← requests exceed the physical device
    ├── QuiesceError               ← flush/drop_caches sequence failed
    ├── ProcessFailedError         ← external command exited non-zero
    ├── TimeoutExceededError       ← explicit wait ran out of time
    ├── StatusParseError           ← status line not in the expected shape
    └── AssertionFailedError       ← a scenario check did not hold

Backward Compatibility:
    InvalidState = InvalidStateError
    DeviceBusy = DeviceBusyError
    InsufficientSpace = InsufficientSpaceError
    ProcessFailed = ProcessFailedError
    TimeoutExceeded = TimeoutExceededError
    AssertionFailed = AssertionFailedError
"""

from __future__ import annotations

from typing import Any


class DmStackError(Exception):
    """Base exception for all harness errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Device / control plane errors
# =============================================================================


class MapError(DmStackError):
    """Control plane refused to create a mapped device.

    Raised on bad table parameters, a missing kernel module or a name
    collision.

    Attributes:
        stderr: Raw error output from the control plane (if available)
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, stderr: str = ""):
        super().__init__(message, context)
        self.stderr = stderr


class InvalidStateError(DmStackError):
    """Device handle operation issued in the wrong state.

    pause/resume must strictly alternate, reload is only valid while paused,
    and message/status are only valid while mapped.
    """


class ControlError(DmStackError):
    """Target rejected a control message.

    Attributes:
        response: Raw response text returned by the control plane
    """

    def __init__(self, message: str, response: str, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.update({"response": response})
        super().__init__(message, ctx)
        self.response = response


class DeviceBusyError(DmStackError):
    """Device still has open references and cannot be unmapped."""


# =============================================================================
# Allocation errors
# =============================================================================


class AllocationError(DmStackError):
    """Volume planning rejected a request (duplicate name, bad size)."""


class InsufficientSpaceError(AllocationError):
    """Requested volumes do not fit on the physical device.

    Attributes:
        requested: Total sectors requested including the failing request
        available: Size of the physical device in sectors
    """

    def __init__(self, message: str, requested: int, available: int, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.update({"requested": requested, "available": available})
        super().__init__(message, ctx)
        self.requested = requested
        self.available = available


# =============================================================================
# Quiesce / process / wait errors
# =============================================================================


class QuiesceError(DmStackError):
    """Cache layer could not be driven to a quiescent state."""


class ProcessFailedError(DmStackError):
    """External command exited with a non-zero status.

    Attributes:
        exit_status: Process return code
        stdout: Captured standard output
        stderr: Captured standard error
    """

    def __init__(
        self,
        message: str,
        exit_status: int,
        stdout: str = "",
        stderr: str = "",
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.update({"exit_status": exit_status})
        super().__init__(message, ctx)
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr


class TimeoutExceededError(DmStackError):
    """An explicit wait (command, drain, pacing) did not finish in time."""


class StatusParseError(DmStackError):
    """Raw status text could not be parsed into a status record."""


class AssertionFailedError(DmStackError, AssertionError):
    """A scenario check failed: data mismatch, leftover dirty blocks, a
    counter that did not move.

    Subclasses AssertionError so test runners report it as a failure rather
    than an error.
    """


# =============================================================================
# Aliases
# =============================================================================

InvalidState = InvalidStateError
DeviceBusy = DeviceBusyError
InsufficientSpace = InsufficientSpaceError
ProcessFailed = ProcessFailedError
TimeoutExceeded = TimeoutExceededError
AssertionFailed = AssertionFailedError
