"""Centralized logging for dmstack.

- Attach NullHandler to library root logger
- Never add other handlers -- that's the application's job
- Support DMSTACK_LOG_LEVEL env var for level control
- Provide configure_logging() for CLI entry points

CLI output format:
    WARNING [2026-02-25 10:02:54] dmstack.stack - message

Non-blocking logging:
    Uses QueueHandler + QueueListener (stdlib) to decouple log emission
    from stderr I/O.  A bounded FIFO queue absorbs bursts; a daemon
    thread drains records to click.echo(err=True).  When the queue is
    full, records are dropped instead of stalling the control loop while
    it is pacing device mutations.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "dmstack"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

# Honor DMSTACK_LOG_LEVEL env var (e.g. "DEBUG", "WARNING", "ERROR")
_env_level = os.environ.get("DMSTACK_LOG_LEVEL", "").strip().upper()
_env_level_value = logging.getLevelNamesMapping().get(_env_level)
if _env_level_value:  # excludes NOTSET (0) and missing keys (None)
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

_QUEUE_CAPACITY = 4096

# Attributes every LogRecord carries; anything else came in through extra={...}
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

_LEVEL_COLORS = {
    logging.WARNING: "yellow",
    logging.ERROR: "red",
    logging.CRITICAL: "red",
}


class _ContextFormatter(logging.Formatter):
    """Appends the structured extra={...} context as key=value pairs.

    Example:
        INFO [2026-02-25 10:02:54] dmstack.device - Device mapped [device=wb-3f2a sectors=16777216]
    """

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}
        if context:
            line += " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]"
        return line


class _ClickHandler(logging.Handler):
    """Target handler: writes to stderr via click.echo.

    Debug and info lines are dimmed, warnings and errors colored. Runs on the
    QueueListener's daemon thread, never on the event loop.
    """

    def __init__(self) -> None:
        super().__init__()
        self.formatter = _ContextFormatter(fmt=_FMT, datefmt=_DATEFMT)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            color = _LEVEL_COLORS.get(record.levelno)
            styled = click.style(msg, fg=color) if color else click.style(msg, dim=True)
            click.echo(styled, err=True)
        except BlockingIOError:
            pass  # Stderr buffer full -- drop
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    """Queue-backed handler that never blocks the caller."""

    def __init__(self) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _ClickHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        """Skip serialization -- same-process queue, no pickle needed."""
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module name.

    All dmstack modules use this instead of logging.getLogger()
    directly for consistent logger hierarchy.
    """
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Configure library logging for CLI / application entry points.

    Adds a _NonBlockingHandler if none exists (idempotent), then sets the
    log level.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides env var.
        quiet: If True, set level to ERROR. Takes precedence over level.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _NonBlockingHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_NonBlockingHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
