"""Cross-platform OS detection and process handle utilities.

Uses psutil's built-in OS detection constants for robust platform identification.
Provides a PID-reuse safe wrapper around the emulator's asyncio subprocess.
"""

import asyncio
import contextlib
import platform
from enum import Enum, auto
from functools import cache

import psutil


class HostOS(Enum):
    """Supported host operating systems."""

    LINUX = auto()
    """Linux (KVM, any 127/8 address is bindable)."""

    MACOS = auto()
    """macOS (HVF, only 127.0.0.1 is bindable by default)."""

    UNKNOWN = auto()
    """Unsupported or unrecognized OS."""


class HostArch(Enum):
    """Host CPU architectures."""

    X86_64 = auto()
    AARCH64 = auto()
    UNKNOWN = auto()


@cache
def detect_host_os() -> HostOS:
    """Detect current host operating system using psutil constants."""
    if psutil.LINUX:
        return HostOS.LINUX
    if psutil.MACOS:
        return HostOS.MACOS
    return HostOS.UNKNOWN


@cache
def detect_host_arch() -> HostArch:
    """Detect current host CPU architecture."""
    machine = platform.machine().lower()
    if machine in ("x86_64", "amd64"):
        return HostArch.X86_64
    if machine in ("arm64", "aarch64"):
        return HostArch.AARCH64
    return HostArch.UNKNOWN


def supports_loopback_aliases() -> bool:
    """Whether any address in 127.0.0.0/8 can be bound without configuring an alias.

    True on Linux, where the whole loopback /8 is routed to lo.
    """
    return detect_host_os() == HostOS.LINUX


class ProcessWrapper:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process for safer signalling.
    Protects against PID reuse edge cases where the OS recycles the emulator's PID
    after it has been reaped.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        """Wrap asyncio process with psutil for PID-safe monitoring.

        Args:
            async_proc: asyncio subprocess.Process instance
        """
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                # Process already died or inaccessible
                self.psutil_proc = psutil.Process(async_proc.pid)

    async def is_running(self) -> bool:
        """Check if process is still running (PID-reuse safe).

        Uses asyncio.to_thread() so a hung /proc read never blocks the event loop.
        """
        if self.async_proc.returncode is not None:
            return False
        if not self.psutil_proc:
            return True

        try:
            return await asyncio.to_thread(self.psutil_proc.is_running)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    @property
    def pid(self) -> int | None:
        """Process ID."""
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None if still running)."""
        return self.async_proc.returncode

    async def wait(self) -> int:
        """Wait for process to complete.

        Returns:
            Process exit code
        """
        return await self.async_proc.wait()

    async def write_stdin(self, data: bytes) -> bool:
        """Write data to the process's stdin and flush it.

        Returns:
            True if the data was handed to the pipe, False if stdin is gone
            (process exited, pipe closed).
        """
        writer = self.async_proc.stdin
        if writer is None or writer.is_closing():
            return False
        try:
            writer.write(data)
            await writer.drain()
        except (BrokenPipeError, ConnectionResetError):
            return False
        return True

    async def terminate(self) -> None:
        """Terminate process (SIGTERM) - async, non-blocking."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.terminate)
        else:
            self.async_proc.terminate()

    async def kill(self) -> None:
        """Kill process (SIGKILL) - async, non-blocking."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.kill)
        else:
            self.async_proc.kill()
