"""Unit tests for shutdown_process() escalation.

The process is a mock; only the order and count of escalation steps matter
here. Real signal delivery is covered in test_qemu_system.py.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

from qemu_supervisor.resource_cleanup import shutdown_process


def _proc(*, on_quit: bool = False, on_term: bool = False, on_kill: bool = True, exited: asyncio.Event) -> MagicMock:
    """Mock ProcessWrapper that sets `exited` at the chosen step."""
    proc = MagicMock()
    proc.pid = 1234

    async def write_stdin(_data: bytes) -> bool:
        if on_quit:
            exited.set()
        return True

    async def terminate() -> None:
        if on_term:
            exited.set()

    async def kill() -> None:
        if on_kill:
            exited.set()

    proc.write_stdin = AsyncMock(side_effect=write_stdin)
    proc.terminate = AsyncMock(side_effect=terminate)
    proc.kill = AsyncMock(side_effect=kill)
    return proc


class TestShutdownProcess:
    async def test_none_process(self) -> None:
        assert await shutdown_process(None, asyncio.Event(), context_id="vm") is True

    async def test_already_exited_sends_nothing(self) -> None:
        exited = asyncio.Event()
        exited.set()
        proc = _proc(exited=exited)

        assert await shutdown_process(proc, exited, context_id="vm") is True
        proc.write_stdin.assert_not_awaited()

    async def test_quit_sequence_suffices(self) -> None:
        exited = asyncio.Event()
        proc = _proc(on_quit=True, exited=exited)

        assert await shutdown_process(proc, exited, context_id="vm", step=0.01) is True

        proc.write_stdin.assert_awaited_once_with(b"\x01x")
        proc.terminate.assert_not_awaited()
        proc.kill.assert_not_awaited()

    async def test_sigterm_step(self) -> None:
        exited = asyncio.Event()
        proc = _proc(on_term=True, exited=exited)

        assert await shutdown_process(proc, exited, context_id="vm", step=0.01) is True

        proc.terminate.assert_awaited_once()
        proc.kill.assert_not_awaited()

    async def test_sigkill_step(self) -> None:
        exited = asyncio.Event()
        proc = _proc(exited=exited)

        assert await shutdown_process(proc, exited, context_id="vm", step=0.01) is True

        proc.terminate.assert_awaited_once()
        proc.kill.assert_awaited_once()

    async def test_broken_stdin_still_escalates(self) -> None:
        exited = asyncio.Event()
        proc = _proc(exited=exited)
        proc.write_stdin = AsyncMock(return_value=False)

        assert await shutdown_process(proc, exited, context_id="vm", step=0.01) is True
        proc.kill.assert_awaited_once()

    async def test_process_lookup_error_ignored(self) -> None:
        """Process vanishing between steps is not an error."""
        exited = asyncio.Event()
        proc = _proc(exited=exited)

        async def gone() -> None:
            exited.set()
            raise ProcessLookupError

        proc.terminate = AsyncMock(side_effect=gone)

        assert await shutdown_process(proc, exited, context_id="vm", step=0.01) is True
        proc.kill.assert_not_awaited()

    async def test_unkillable_reports_failure(self) -> None:
        exited = asyncio.Event()
        proc = _proc(on_kill=False, exited=exited)

        assert await shutdown_process(proc, exited, context_id="vm", step=0.01, reap_timeout=0.05) is False
