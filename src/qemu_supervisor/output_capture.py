"""Concurrent capture of the emulator's stdout/stderr.

- OutputBuffer: growth-only byte accumulator, readable while it grows
- capture_stream: drains one pipe into one buffer until EOF (one task per pipe,
  so a full stderr pipe can never stall the guest console on stdout)
- log_task_exception: done-callback that logs failures of background tasks
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from qemu_supervisor import constants
from qemu_supervisor._logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

logger = get_logger(__name__)


class OutputBuffer:
    """Growable byte accumulator written by exactly one capture task.

    Readers (panic watcher, caller) may look at it at any time and must
    tolerate it growing between reads. Appends happen on the event loop
    between awaits, so a reader never observes a partial chunk.
    """

    __slots__ = ("_data",)

    def __init__(self) -> None:
        self._data = bytearray()

    def append(self, chunk: bytes) -> None:
        self._data += chunk

    def getvalue(self) -> bytes:
        """Snapshot of everything captured so far."""
        return bytes(self._data)

    def text(self, errors: str = "replace") -> str:
        return self._data.decode(errors=errors)

    def __contains__(self, needle: bytes | str) -> bool:
        if isinstance(needle, str):
            needle = needle.encode()
        return needle in self._data

    def __len__(self) -> int:
        return len(self._data)

    def __bool__(self) -> bool:
        return bool(self._data)

    def __repr__(self) -> str:
        return f"OutputBuffer({len(self._data)} bytes)"


async def capture_stream(
    stream: asyncio.StreamReader,
    buffer: OutputBuffer,
    *,
    chunk_size: int = constants.OUTPUT_READ_CHUNK_SIZE,
    on_output: Callable[[bytes], None] | None = None,
) -> None:
    """Append everything read from stream to buffer until EOF.

    Reads whatever is available (up to chunk_size) rather than whole lines:
    the guest console does not always terminate its last line, and a panic
    message must be visible before the next newline arrives.

    Args:
        stream: Pipe reader (emulator stdout or stderr)
        buffer: Accumulator owned by this capture
        chunk_size: Maximum bytes per read
        on_output: Optional callback per chunk. If it raises it is disabled
            for the rest of the capture; capture itself continues.

    Raises:
        OSError: Read errors other than EOF end this capture only; the caller
            observes them through the task result.
    """
    while True:
        chunk = await stream.read(chunk_size)
        if not chunk:
            return
        buffer.append(chunk)
        if on_output is not None:
            try:
                on_output(chunk)
            except Exception:  # noqa: BLE001 - user-provided callback, must not kill the capture
                logger.warning("Output callback raised, disabling", exc_info=True)
                on_output = None


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Log exceptions from background tasks.

    Callback for asyncio.Task.add_done_callback(); a capture or monitor that
    fails ends on its own without touching its siblings, and this is where
    that failure becomes visible.

    Args:
        task: The completed asyncio task to check for exceptions
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )
