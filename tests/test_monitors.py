"""Unit tests for the panic watcher and timeout enforcer.

Uses a stub system object; the real lifecycle is covered in test_qemu_system.py.
"""

from unittest.mock import AsyncMock

import pytest

from qemu_supervisor import monitors
from qemu_supervisor.machine_state import TerminationCause
from qemu_supervisor.monitors import enforce_timeout, watch_for_panic
from qemu_supervisor.output_capture import OutputBuffer


class StubSystem:
    """Just the surface the monitors read and call."""

    def __init__(self, console: bytes = b"", *, died: bool = False, first_cause: bool = True) -> None:
        self.name = "stub"
        self.pid = 4242
        self.stop_requested = False
        self.died = died
        self.stdout_buffer = OutputBuffer()
        self.stdout_buffer.append(console)
        self.mark_terminated = AsyncMock(return_value=first_cause)
        self.shutdown = AsyncMock()
        self.drain_output = AsyncMock()


# ============================================================================
# Panic Watcher
# ============================================================================


class TestWatchForPanic:
    """watch_for_panic() polling behaviour."""

    async def test_panic_attributed_then_shutdown(self) -> None:
        system = StubSystem(b"[    1.0] Kernel panic - not syncing: Attempted to kill init!\n")

        await watch_for_panic(system, poll_interval=0.01, settle=0.01)

        system.mark_terminated.assert_awaited_once_with(TerminationCause.KERNEL_PANIC)
        system.shutdown.assert_awaited_once()

    async def test_unanchored_match(self) -> None:
        """The signature matches anywhere, even mid-line from a guest program."""
        system = StubSystem(b"echo says: Kernel panic is just text here")

        await watch_for_panic(system, poll_interval=0.01, settle=0.0)

        system.mark_terminated.assert_awaited_once_with(TerminationCause.KERNEL_PANIC)

    async def test_stop_requested_exits_quietly(self) -> None:
        system = StubSystem(b"Kernel panic")
        system.stop_requested = True

        await watch_for_panic(system, poll_interval=0.01, settle=0.01)

        system.mark_terminated.assert_not_awaited()
        system.shutdown.assert_not_awaited()

    async def test_stop_during_settle_skips_attribution(self, monkeypatch: pytest.MonkeyPatch) -> None:
        system = StubSystem(b"Kernel panic")
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            # First sleep is the poll, second the settle delay
            if len(sleeps) == 2:
                system.stop_requested = True

        monkeypatch.setattr(monitors.asyncio, "sleep", fake_sleep)

        await watch_for_panic(system, poll_interval=0.01, settle=0.5)

        assert sleeps == [0.01, 0.5]
        system.mark_terminated.assert_not_awaited()
        system.shutdown.assert_not_awaited()

    async def test_death_without_signature_ends_watch(self) -> None:
        system = StubSystem(b"Linux version 6.6.0\nreboot: Power down\n", died=True)

        await watch_for_panic(system, poll_interval=0.01, settle=0.01)

        system.mark_terminated.assert_not_awaited()
        system.drain_output.assert_awaited_once()

    async def test_panic_in_final_chunk_after_death(self) -> None:
        """Emulator exits right after printing the panic; the last chunk lands during the drain."""
        system = StubSystem(b"Linux version 6.6.0\n", died=True)

        async def late_chunk(timeout: float) -> None:
            system.stdout_buffer.append(b"Kernel panic - not syncing: Attempted to kill init!\n")

        system.drain_output.side_effect = late_chunk

        await watch_for_panic(system, poll_interval=0.01, settle=0.0)

        system.drain_output.assert_awaited_once()
        system.mark_terminated.assert_awaited_once_with(TerminationCause.KERNEL_PANIC)

    async def test_live_machine_is_not_drained(self, monkeypatch: pytest.MonkeyPatch) -> None:
        system = StubSystem(b"Linux version 6.6.0\n")
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            if len(sleeps) == 3:
                system.stop_requested = True

        monkeypatch.setattr(monitors.asyncio, "sleep", fake_sleep)

        await watch_for_panic(system, poll_interval=0.01, settle=0.0)

        assert sleeps == [0.01, 0.01, 0.01]
        system.drain_output.assert_not_awaited()
        system.mark_terminated.assert_not_awaited()

    async def test_panic_after_death_still_attributed(self) -> None:
        """A guest that panicked and exited on its own is still reported as a panic."""
        system = StubSystem(b"Kernel panic - not syncing", died=True)

        await watch_for_panic(system, poll_interval=0.01, settle=0.0)

        system.mark_terminated.assert_awaited_once_with(TerminationCause.KERNEL_PANIC)

    async def test_no_shutdown_when_cause_already_recorded(self) -> None:
        system = StubSystem(b"Kernel panic", first_cause=False)

        await watch_for_panic(system, poll_interval=0.01, settle=0.0)

        system.mark_terminated.assert_awaited_once()
        system.shutdown.assert_not_awaited()


# ============================================================================
# Timeout Enforcer
# ============================================================================


class TestEnforceTimeout:
    """enforce_timeout() one-shot behaviour."""

    async def test_timeout_attributed_then_shutdown(self) -> None:
        system = StubSystem()

        await enforce_timeout(system, 0.01)

        system.mark_terminated.assert_awaited_once_with(TerminationCause.TIMEOUT)
        system.shutdown.assert_awaited_once()

    async def test_stop_requested_skips(self) -> None:
        system = StubSystem()
        system.stop_requested = True

        await enforce_timeout(system, 0.01)

        system.mark_terminated.assert_not_awaited()
        system.shutdown.assert_not_awaited()

    async def test_already_dead_skips(self) -> None:
        system = StubSystem(died=True)

        await enforce_timeout(system, 0.01)

        system.mark_terminated.assert_not_awaited()

    async def test_panic_already_recorded_skips_shutdown(self) -> None:
        system = StubSystem(first_cause=False)

        await enforce_timeout(system, 0.01)

        system.shutdown.assert_not_awaited()
