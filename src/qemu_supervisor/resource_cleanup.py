"""Emulator shutdown escalation.

Quit request on the monitor multiplexer, then SIGTERM, then SIGKILL.
Logs at every step and never raises for an already-dead process.
"""

import asyncio
import contextlib

from qemu_supervisor import constants
from qemu_supervisor._logging import get_logger
from qemu_supervisor.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def _exited_within(exited: asyncio.Event, timeout: float) -> bool:
    with contextlib.suppress(TimeoutError):
        async with asyncio.timeout(timeout):
            await exited.wait()
    return exited.is_set()


async def shutdown_process(
    proc: ProcessWrapper | None,
    exited: asyncio.Event,
    *,
    context_id: str,
    step: float = constants.STOP_STEP_SECONDS,
    reap_timeout: float = constants.KILL_REAP_TIMEOUT_SECONDS,
    quit_sequence: bytes = constants.QEMU_QUIT_SEQUENCE,
) -> bool:
    """Stop the emulator (quit sequence → SIGTERM → SIGKILL).

    Exit is observed through `exited`, which the liveness task sets once it
    has reaped the process; this function never calls wait() itself so the
    exit status stays owned by a single observer.

    Args:
        proc: Emulator process (None safe - returns immediately)
        exited: Event set when the process has been reaped
        context_id: Machine name for logging
        step: Seconds to wait after the quit sequence and after SIGTERM
        reap_timeout: Seconds to wait after SIGKILL before giving up
        quit_sequence: Bytes written to stdin asking the emulator to quit

    Returns:
        True if the process is gone, False if it survived SIGKILL for reap_timeout
    """
    if proc is None or exited.is_set():
        return True

    # Phase 1: ask politely through the stdio multiplexer (Ctrl-A x)
    if await proc.write_stdin(quit_sequence):
        logger.debug("Sent quit sequence", extra={"context_id": context_id})
    if await _exited_within(exited, step):
        logger.debug("Emulator quit on request", extra={"context_id": context_id})
        return True

    try:
        # Phase 2: SIGTERM
        logger.debug("Sending SIGTERM to emulator", extra={"context_id": context_id, "pid": proc.pid})
        await proc.terminate()
        if await _exited_within(exited, step):
            logger.debug("Emulator stopped on SIGTERM", extra={"context_id": context_id})
            return True

        # Phase 3: SIGKILL
        logger.warning(
            "Emulator didn't respond to SIGTERM, force killing",
            extra={"context_id": context_id, "pid": proc.pid},
        )
        await proc.kill()
    except ProcessLookupError:
        # Exited between check and signal
        logger.debug("Emulator already dead (ProcessLookupError)", extra={"context_id": context_id})

    if await _exited_within(exited, reap_timeout):
        return True

    logger.error(
        "Emulator didn't exit within timeout after SIGKILL",
        extra={"context_id": context_id, "reap_timeout": reap_timeout, "pid": proc.pid},
    )
    return False
