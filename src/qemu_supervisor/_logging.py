"""Centralized logging for qemu-supervisor.

Library logging conventions (Python docs, PEP 282):
- Attach NullHandler to library root logger
- Never add other handlers -- that's the application's job
- Support QEMU_SUPERVISOR_LOG_LEVEL env var for level control
- Provide configure_logging() for CLI entry points

Records about one machine carry ``extra={"vm_name": ...}``. The CLI
formatter shows that name in brackets so interleaved output from the
monitors, the liveness task and shutdown can be told apart:

    WARNING [2026-02-25 10:02:54] qemu_supervisor.monitors [qemu-x86_64-1] - Kernel panic detected
    DEBUG [2026-02-25 10:02:54] qemu_supervisor.qemu_cmd - Built emulator command

Non-blocking logging:
    Uses QueueHandler + QueueListener (stdlib) to decouple log emission
    from stderr I/O.  A bounded FIFO queue absorbs bursts of console
    output logging; a daemon thread drains records to click.echo(err=True).
    When the queue is full, records are dropped instead of stalling the
    event loop that supervises the emulator.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "qemu_supervisor"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

# Honor QEMU_SUPERVISOR_LOG_LEVEL env var (e.g. "DEBUG", "WARNING", "ERROR")
_env_level = os.environ.get("QEMU_SUPERVISOR_LOG_LEVEL", "").strip().upper()
_env_level_value = logging.getLevelNamesMapping().get(_env_level)
if _env_level_value:  # excludes NOTSET (0) and missing keys (None)
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_FMT = "%(levelname)s [%(asctime)s] %(name)s%(machine)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

_QUEUE_CAPACITY = 4096


class MachineFormatter(logging.Formatter):
    """Formatter that tags records with the machine they concern.

    ``%(machine)s`` renders as `` [<vm_name>]`` when the record was logged
    with ``extra={"vm_name": ...}`` and as an empty string otherwise.
    """

    def __init__(self, fmt: str = _FMT, datefmt: str = _DATEFMT) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)

    def format(self, record: logging.LogRecord) -> str:
        vm_name = getattr(record, "vm_name", None)
        record.machine = f" [{vm_name}]" if vm_name else ""
        return super().format(record)


class _ClickHandler(logging.Handler):
    """Target handler: writes to stderr via click.echo, styled by level.

    Runs on the QueueListener's daemon thread, never on the event loop.
    Warnings and errors are not dimmed.
    """

    def __init__(self) -> None:
        super().__init__()
        self.formatter = MachineFormatter()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            if record.levelno >= logging.ERROR:
                msg = click.style(msg, fg="red")
            elif record.levelno >= logging.WARNING:
                msg = click.style(msg, fg="yellow")
            else:
                msg = click.style(msg, dim=True)
            click.echo(msg, err=True)
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

    All qemu_supervisor modules should use this instead of logging.getLogger()
    directly for a consistent logger hierarchy.
    """
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Configure library logging for CLI / application entry points.

    Adds a _NonBlockingHandler if none exists (idempotent), then sets the
    log level.  Consumers who configure their own handlers are unaffected.

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
