"""Background monitors that decide when a running machine must be stopped.

Both monitors run as asyncio tasks owned by QemuSystem. They attribute a
termination cause (first one wins) and then trigger the shutdown protocol;
they never touch the process directly.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from qemu_supervisor import constants
from qemu_supervisor._logging import get_logger
from qemu_supervisor.machine_state import TerminationCause

if TYPE_CHECKING:
    from qemu_supervisor.qemu_system import QemuSystem

logger = get_logger(__name__)


async def watch_for_panic(
    system: QemuSystem,
    *,
    signature: bytes = constants.PANIC_SIGNATURE,
    poll_interval: float = constants.PANIC_POLL_INTERVAL_SECONDS,
    settle: float = constants.PANIC_SETTLE_SECONDS,
) -> None:
    """Poll console output for a kernel panic and stop the machine on one.

    The signature is a plain substring search over everything captured so
    far. After a match the watcher waits `settle` seconds so the backtrace
    that follows the panic line reaches the buffer before shutdown.

    When the emulator has already exited, its last chunk may still be in
    the pipe, so output is drained and searched once more before giving up.
    """
    while True:
        await asyncio.sleep(poll_interval)
        if system.stop_requested:
            return

        if signature not in system.stdout_buffer:
            if not system.died:
                continue
            await system.drain_output(constants.CAPTURE_DRAIN_TIMEOUT_SECONDS)
            if signature not in system.stdout_buffer:
                return

        logger.warning("Kernel panic detected", extra={"vm_name": system.name, "pid": system.pid})
        await asyncio.sleep(settle)
        if system.stop_requested:
            return
        if await system.mark_terminated(TerminationCause.KERNEL_PANIC):
            await system.shutdown()
        return


async def enforce_timeout(system: QemuSystem, timeout: float) -> None:
    """Stop the machine once `timeout` seconds have passed since launch.

    One-shot; there is no extension or reset.
    """
    await asyncio.sleep(timeout)
    if system.stop_requested or system.died:
        return
    if await system.mark_terminated(TerminationCause.TIMEOUT):
        logger.warning(
            "Machine timed out, stopping",
            extra={"vm_name": system.name, "pid": system.pid, "timeout_seconds": timeout},
        )
        await system.shutdown()
