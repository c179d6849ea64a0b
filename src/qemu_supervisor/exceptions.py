"""Exception hierarchy for qemu-supervisor.

All exceptions inherit from SupervisorError base class.

Hierarchy:
    SupervisorError (base)
    ├── TransientError (retryable marker base)
    │   ├── AllocationError            ← no free address:port within budget
    │   ├── ImmediateExitError         ← emulator died inside the startup grace window
    │   ├── BootTimeoutError           ← guest never became reachable over SSH
    │   └── MachineDiedError           ← emulator exited while waiting for the guest
    ├── PermanentError (non-retryable marker base)
    │   ├── ConfigurationError
    │   │   ├── EmulatorNotFoundError
    │   │   ├── KernelImageNotFoundError
    │   │   ├── InitrdNotFoundError
    │   │   └── DiskImageNotFoundError
    │   ├── LaunchError                ← pipe setup or spawn failed
    │   └── InvalidStateError          ← operation not valid in current machine state
    ├── RemoteExecutionError           ← SSH / scp failure or non-zero remote exit
    └── ProcessExitError               ← recorded exit of the emulator (never raised)
"""

from __future__ import annotations

from typing import Any


class SupervisorError(Exception):
    """Base exception for all supervisor errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(SupervisorError):
    """Base for transient errors that may succeed on retry.

    Port contention, an emulator that crashes under host load, or a guest that
    boots slower than expected all fall in this bucket.
    """


class PermanentError(SupervisorError):
    """Base for permanent errors that won't succeed on retry.

    Missing binaries, missing images and misuse of the API fall in this bucket.
    """


# =============================================================================
# Transient Errors (retryable)
# =============================================================================


class AllocationError(TransientError):
    """No free loopback address:port was found within the allocation budget."""


class ImmediateExitError(TransientError):
    """The emulator exited within the startup grace interval.

    Background monitors are still started (they are no-ops against a dead
    process); the caller is expected to stop() the machine.

    Attributes:
        stderr: Emulator stderr captured before it exited
        returncode: Exit status of the emulator, if known
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        stderr: str = "",
        returncode: int | None = None,
    ):
        super().__init__(message, context)
        self.stderr = stderr
        self.returncode = returncode


class BootTimeoutError(TransientError):
    """Guest did not accept an SSH command before the boot timeout."""


class MachineDiedError(TransientError):
    """Emulator exited while the caller was waiting for the guest."""


# =============================================================================
# Permanent Errors (non-retryable)
# =============================================================================


class ConfigurationError(PermanentError):
    """Invalid machine configuration, detected before anything is spawned."""


class EmulatorNotFoundError(ConfigurationError):
    """qemu-system-<arch> is not on the search path."""


class KernelImageNotFoundError(ConfigurationError):
    """Kernel image does not exist or is not readable."""


class InitrdNotFoundError(ConfigurationError):
    """Initial ramdisk does not exist or is not readable."""


class DiskImageNotFoundError(ConfigurationError):
    """Backing disk image does not exist."""


class LaunchError(PermanentError):
    """Opening the standard stream pipes or spawning the emulator failed.

    No monitors are started when this is raised.
    """


class InvalidStateError(PermanentError):
    """Operation is not valid in the machine's current lifecycle state."""


# =============================================================================
# Remote execution
# =============================================================================


class RemoteExecutionError(SupervisorError):
    """Remote command or file transfer failed.

    Independent of the machine lifecycle: a failed command does not stop the
    machine.

    Attributes:
        output: Combined remote output (or scp output), if any
        exit_status: Remote exit status, None for transport/auth failures
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        output: str = "",
        exit_status: int | None = None,
    ):
        super().__init__(message, context)
        self.output = output
        self.exit_status = exit_status


class ProcessExitError(SupervisorError):
    """Emulator exited with a non-zero status or was killed by a signal.

    Recorded on QemuSystem.exit_error by the liveness monitor; never raised
    across task boundaries.

    Attributes:
        returncode: asyncio returncode (negative for signals)
        signal_name: e.g. "SIGKILL", "" when the process exited normally
    """

    def __init__(
        self,
        message: str,
        returncode: int | None,
        signal_name: str = "",
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.update({"returncode": returncode, "signal_name": signal_name})
        super().__init__(message, ctx)
        self.returncode = returncode
        self.signal_name = signal_name
