"""Supervision of a single QEMU process.

QemuSystem owns the emulator for its whole lifetime:

- validates the machine description before anything is spawned
- reserves a forward address:port and launches the emulator with three pipes
- captures stdout/stderr, watches for exit, kernel panics and timeouts
- funnels every shutdown attempt through one serialized entry point
- offers thin SSH/scp delegations for driving the booted guest

Example:
    ```python
    async with QemuSystem(config) as system:
        await system.wait_until_reachable(timeout=120)
        print(await system.command("uname -a"))
    assert system.died
    ```
"""

from __future__ import annotations

import asyncio
import os
import secrets
import signal
from typing import TYPE_CHECKING

from tenacity import AsyncRetrying, retry_if_exception_type, wait_random_exponential

from qemu_supervisor import constants, remote
from qemu_supervisor._logging import get_logger
from qemu_supervisor.exceptions import (
    BootTimeoutError,
    DiskImageNotFoundError,
    ImmediateExitError,
    InitrdNotFoundError,
    InvalidStateError,
    KernelImageNotFoundError,
    LaunchError,
    MachineDiedError,
    ProcessExitError,
    RemoteExecutionError,
)
from qemu_supervisor.machine_state import (
    CAUSE_STATES,
    TERMINAL_STATES,
    VALID_STATE_TRANSITIONS,
    MachineState,
    TerminationCause,
)
from qemu_supervisor.monitors import enforce_timeout, watch_for_panic
from qemu_supervisor.output_capture import OutputBuffer, capture_stream, log_task_exception
from qemu_supervisor.platform_utils import ProcessWrapper
from qemu_supervisor.port_allocator import PortAllocator
from qemu_supervisor.qemu_cmd import build_qemu_cmd
from qemu_supervisor.resource_cleanup import shutdown_process
from qemu_supervisor.settings import Settings
from qemu_supervisor.system_probes import resolve_emulator

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine
    from pathlib import Path
    from typing import Any

    from qemu_supervisor.models import AddrPort, MachineConfig

logger = get_logger(__name__)


def _readable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.R_OK)


def _signal_name(returncode: int) -> str:
    if returncode >= 0:
        return ""
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"signal {-returncode}"


class QemuSystem:
    """One supervised emulator process.

    Construction validates the configuration (binary, kernel, initrd, disk, in
    that order) and raises a ConfigurationError subclass for the first problem
    found; nothing is spawned until start().

    The caller owns the machine: background monitors only hold a reference
    and may trigger shutdown(), but stop() (or leaving the async context) is
    the definitive teardown.

    Args:
        config: Machine description
        settings: Runtime settings. Defaults to Settings() (environment).
        allocator: Address:port allocator. Defaults to a fresh PortAllocator.
        on_stdout: Optional callback for each stdout chunk (e.g. live console echo)
        on_stderr: Optional callback for each stderr chunk
    """

    def __init__(
        self,
        config: MachineConfig,
        *,
        settings: Settings | None = None,
        allocator: PortAllocator | None = None,
        on_stdout: Callable[[bytes], None] | None = None,
        on_stderr: Callable[[bytes], None] | None = None,
    ) -> None:
        self.config = config
        self._settings = settings if settings is not None else Settings()
        self._emulator = self._validate()
        self._allocator = (
            allocator
            if allocator is not None
            else PortAllocator(budget_seconds=self._settings.port_allocation_budget_seconds)
        )
        self._on_stdout = on_stdout
        self._on_stderr = on_stderr

        self._state = MachineState.CONFIGURED
        self._state_lock = asyncio.Lock()
        self._shutdown_lock = asyncio.Lock()
        self._exited = asyncio.Event()
        self._stop_requested = False

        self._process: ProcessWrapper | None = None
        self._addr_port: AddrPort | None = None
        self._stdout = OutputBuffer()
        self._stderr = OutputBuffer()
        self._cause: TerminationCause | None = None
        self._exit_error: ProcessExitError | None = None

        # Strong references so pending tasks are never garbage-collected
        self._tasks: set[asyncio.Task[None]] = set()
        self._capture_tasks: list[asyncio.Task[None]] = []
        self._monitor_tasks: list[asyncio.Task[None]] = []

    def _validate(self) -> Path:
        emulator = resolve_emulator(self.config.arch, self._settings.qemu_bin_dir)
        image = self.config.image

        if not _readable_file(image.kernel_path):
            raise KernelImageNotFoundError(
                f"Kernel image not found or not readable: {image.kernel_path}",
                context={"vm_name": self.name, "kernel_path": str(image.kernel_path)},
            )
        if image.initrd_path is not None and not _readable_file(image.initrd_path):
            raise InitrdNotFoundError(
                f"Initrd not found or not readable: {image.initrd_path}",
                context={"vm_name": self.name, "initrd_path": str(image.initrd_path)},
            )
        if not self.config.drive_path.exists():
            raise DiskImageNotFoundError(
                f"Disk image not found: {self.config.drive_path}",
                context={"vm_name": self.name, "drive_path": str(self.config.drive_path)},
            )
        return emulator

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _set_state_locked(self, new_state: MachineState) -> None:
        allowed = VALID_STATE_TRANSITIONS.get(self._state, set())
        if new_state not in allowed:
            raise InvalidStateError(
                f"Invalid state transition: {self._state.value} -> {new_state.value}",
                context={
                    "vm_name": self.name,
                    "current_state": self._state.value,
                    "target_state": new_state.value,
                    "allowed_transitions": sorted(s.value for s in allowed),
                },
            )
        old_state = self._state
        self._state = new_state
        logger.debug(
            "Machine state transition",
            extra={"vm_name": self.name, "old_state": old_state.value, "new_state": new_state.value},
        )

    async def transition_state(self, new_state: MachineState) -> None:
        """Transition to new_state, validated against VALID_STATE_TRANSITIONS.

        Raises:
            InvalidStateError: Transition not allowed from the current state
        """
        async with self._state_lock:
            self._set_state_locked(new_state)

    async def mark_terminated(self, cause: TerminationCause) -> bool:
        """Attribute the cause of death. The first attribution wins.

        Returns:
            True if this call recorded the cause (the caller should then
            shut the machine down), False if a cause was already recorded or
            the machine is past the point where attribution makes sense.
        """
        async with self._state_lock:
            target = CAUSE_STATES[cause]
            if self._cause is not None or target not in VALID_STATE_TRANSITIONS[self._state]:
                return False
            self._cause = cause
            self._set_state_locked(target)
        logger.info("Termination cause recorded", extra={"vm_name": self.name, "cause": cause.value})
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _spawn(
        self,
        coro: Coroutine[Any, Any, None],
        name: str,
        group: list[asyncio.Task[None]] | None = None,
    ) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=f"{name}:{self.name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(log_task_exception)
        if group is not None:
            group.append(task)
        return task

    async def start(self) -> None:
        """Launch the emulator and its monitors.

        Returns once the process is running and the startup grace interval has
        passed; does not wait for the guest to boot (see wait_until_reachable()).

        Raises:
            InvalidStateError: Already started
            AllocationError: No free forward address:port (state reverts to configured)
            LaunchError: Spawning the emulator failed (state reverts to configured)
            ImmediateExitError: Emulator exited within the grace interval
        """
        await self.transition_state(MachineState.STARTING)
        try:
            addr_port = await asyncio.to_thread(self._allocator.allocate)
            cmd = await build_qemu_cmd(self.config, addr_port, self._settings, emulator=self._emulator)
            try:
                proc = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    # Own process group: terminal signals aimed at the caller don't hit the emulator
                    start_new_session=True,
                )
            except OSError as e:
                raise LaunchError(
                    f"Failed to launch emulator: {e}",
                    context={"vm_name": self.name, "cmd": cmd, "error": str(e)},
                ) from e
        except BaseException:
            await self.transition_state(MachineState.CONFIGURED)
            raise

        self._addr_port = addr_port
        self._process = ProcessWrapper(proc)
        logger.info(
            "Emulator started",
            extra={"vm_name": self.name, "pid": proc.pid, "addr_port": str(addr_port)},
        )

        if proc.stdout is not None:
            self._spawn(
                capture_stream(proc.stdout, self._stdout, on_output=self._on_stdout),
                "capture-stdout",
                self._capture_tasks,
            )
        if proc.stderr is not None:
            self._spawn(
                capture_stream(proc.stderr, self._stderr, on_output=self._on_stderr),
                "capture-stderr",
                self._capture_tasks,
            )
        self._spawn(self._watch_liveness(self._process), "liveness")
        await self.transition_state(MachineState.LIVE)

        await asyncio.sleep(self._settings.startup_grace_seconds)

        # Monitors start even after an instant death; against a dead process they are no-ops
        self._spawn(
            watch_for_panic(
                self,
                poll_interval=self._settings.panic_poll_interval_seconds,
                settle=self._settings.panic_settle_seconds,
            ),
            "panic-watcher",
            self._monitor_tasks,
        )
        if self.config.has_timeout:
            self._spawn(
                enforce_timeout(self, float(self.config.timeout_seconds or 0)),
                "timeout-enforcer",
                self._monitor_tasks,
            )

        if self._exited.is_set():
            await self.drain_output(constants.STARTUP_STDERR_DRAIN_SECONDS)
            stderr = self._stderr.text()
            raise ImmediateExitError(
                f"Emulator exited immediately (exit code {self.returncode}): {stderr.strip()}",
                context={"vm_name": self.name, "returncode": self.returncode},
                stderr=stderr,
                returncode=self.returncode,
            )

    async def _watch_liveness(self, proc: ProcessWrapper) -> None:
        """Wait for the emulator to exit, then record how it went."""
        try:
            returncode = await proc.wait()
            if returncode != 0:
                signal_name = _signal_name(returncode)
                self._exit_error = ProcessExitError(
                    f"Emulator exited with {signal_name or f'code {returncode}'}",
                    returncode=returncode,
                    signal_name=signal_name,
                    context={"vm_name": self.name, "pid": proc.pid},
                )
        except Exception as e:  # noqa: BLE001 - recorded on exit_error, not propagated
            logger.error("Waiting for emulator failed", extra={"vm_name": self.name}, exc_info=True)
            self._exit_error = ProcessExitError(
                f"Waiting for emulator failed: {e}",
                returncode=proc.returncode,
                context={"vm_name": self.name, "pid": proc.pid},
            )
        finally:
            async with self._state_lock:
                if self._state == MachineState.LIVE:
                    self._set_state_locked(MachineState.DIED)
            self._exited.set()
            logger.info(
                "Emulator exited",
                extra={
                    "vm_name": self.name,
                    "pid": proc.pid,
                    "returncode": proc.returncode,
                    "cause": self._cause.value if self._cause else None,
                },
            )

    async def drain_output(self, timeout: float) -> None:
        """Wait up to `timeout` seconds for the capture tasks to reach EOF."""
        pending = [t for t in self._capture_tasks if not t.done()]
        if pending:
            await asyncio.wait(pending, timeout=timeout)

    async def shutdown(self) -> None:
        """Request emulator exit, escalating quit sequence → SIGTERM → SIGKILL.

        Serialized: concurrent callers (caller, panic watcher, timeout
        enforcer) queue on one lock and later ones find the process gone.
        """
        self._stop_requested = True
        async with self._shutdown_lock:
            if self._process is None or self._exited.is_set():
                return
            logger.debug("Shutting down emulator", extra={"vm_name": self.name, "pid": self._process.pid})
            await shutdown_process(
                self._process,
                self._exited,
                context_id=self.name,
                step=self._settings.stop_step_seconds,
                reap_timeout=self._settings.kill_reap_timeout_seconds,
            )

    async def stop(self) -> None:
        """Tear the machine down. Safe to call repeatedly and before start()."""
        await self.shutdown()

        current = asyncio.current_task()
        cancelled = [t for t in self._monitor_tasks if t is not current and not t.done()]
        for task in cancelled:
            task.cancel()
        if cancelled:
            await asyncio.gather(*cancelled, return_exceptions=True)

        await self.drain_output(constants.CAPTURE_DRAIN_TIMEOUT_SECONDS)

        async with self._state_lock:
            if self._exited.is_set() and self._state in TERMINAL_STATES and self._state != MachineState.REAPED:
                self._set_state_locked(MachineState.REAPED)

    async def wait(self) -> int | None:
        """Block until the emulator exits; returns its returncode.

        Raises:
            InvalidStateError: Machine not started
        """
        self._require_started()
        await self._exited.wait()
        return self.returncode

    async def __aenter__(self) -> QemuSystem:
        """Start the machine; stop it again if start() fails."""
        try:
            await self.start()
        except BaseException:
            await self.stop()
            raise
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: object,
    ) -> bool:
        """Always stop the machine. Exceptions propagate."""
        await self.stop()
        return False

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def state(self) -> MachineState:
        """Current lifecycle state."""
        return self._state

    @property
    def addr_port(self) -> AddrPort | None:
        """Host-side SSH forward, None before start()."""
        return self._addr_port

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    @property
    def stdout(self) -> bytes:
        """Snapshot of the guest console captured so far."""
        return self._stdout.getvalue()

    @property
    def stderr(self) -> bytes:
        return self._stderr.getvalue()

    @property
    def stdout_buffer(self) -> OutputBuffer:
        return self._stdout

    @property
    def stderr_buffer(self) -> OutputBuffer:
        return self._stderr

    @property
    def died(self) -> bool:
        """Emulator has exited (on its own or because it was stopped)."""
        return self._exited.is_set()

    @property
    def termination_cause(self) -> TerminationCause | None:
        return self._cause

    @property
    def killed_by_timeout(self) -> bool:
        return self._cause == TerminationCause.TIMEOUT

    @property
    def kernel_panic(self) -> bool:
        return self._cause == TerminationCause.KERNEL_PANIC

    @property
    def exit_error(self) -> ProcessExitError | None:
        """Recorded non-zero exit / signal, None while running or after a clean exit."""
        return self._exit_error

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    # ------------------------------------------------------------------
    # Remote execution
    # ------------------------------------------------------------------

    def _require_started(self) -> AddrPort:
        if self._addr_port is None:
            raise InvalidStateError(
                "Machine has not been started",
                context={"vm_name": self.name, "state": self._state.value},
            )
        return self._addr_port

    async def command(self, command: str, user: str = constants.DEFAULT_SSH_USER) -> str:
        """Run a command on the guest; returns combined stdout/stderr.

        Raises:
            InvalidStateError: Machine not started
            RemoteExecutionError: Transport/auth failure or non-zero exit
        """
        return await remote.run_command(
            self._require_started(),
            user,
            command,
            key_path=self._settings.ssh_key_path,
            timeout=self._settings.ssh_connect_timeout_seconds,
        )

    async def async_command(self, command: str, user: str = constants.DEFAULT_SSH_USER) -> None:
        """Start a command on the guest in the background and return immediately."""
        await remote.run_command_async(
            self._require_started(),
            user,
            command,
            key_path=self._settings.ssh_key_path,
            timeout=self._settings.ssh_connect_timeout_seconds,
        )

    async def copy_file(self, local_path: Path, remote_path: str, user: str = constants.DEFAULT_SSH_USER) -> None:
        await remote.copy_file(
            self._require_started(),
            user,
            local_path,
            remote_path,
            key_path=self._settings.ssh_key_path,
        )

    async def copy_and_insmod(self, local_ko: Path) -> str:
        """Copy a kernel module into the guest and load it as root."""
        remote_path = constants.REMOTE_MODULE_TEMPLATE.format(token=secrets.randbelow(2**31))
        await self.copy_file(local_ko, remote_path, user=constants.DEFAULT_SSH_USER)
        return await self.command(f"insmod {remote_path}", user=constants.DEFAULT_SSH_USER)

    async def copy_and_run(self, user: str, local_path: Path) -> str:
        """Copy an executable into the guest, run it as user, return its output."""
        remote_path = constants.REMOTE_EXECUTABLE_TEMPLATE.format(token=secrets.randbelow(2**31))
        await self.copy_file(local_path, remote_path, user=user)
        return await self.command(f"chmod +x {remote_path} && {remote_path}", user=user)

    def ssh_command(self, user: str = constants.DEFAULT_SSH_USER) -> str:
        """ssh invocation a human can paste to log into the guest."""
        return remote.ssh_command_line(self._require_started(), user)

    async def wait_until_reachable(self, user: str = constants.DEFAULT_SSH_USER, timeout: float = 60.0) -> None:
        """Poll the guest over SSH until a trivial command succeeds.

        Raises:
            InvalidStateError: Machine not started
            MachineDiedError: Emulator exited while waiting
            BootTimeoutError: Guest not reachable within timeout
        """
        self._require_started()
        try:
            async with asyncio.timeout(timeout):
                async for attempt in AsyncRetrying(
                    retry=retry_if_exception_type(RemoteExecutionError),
                    wait=wait_random_exponential(multiplier=0.2, max=self._settings.ssh_poll_interval_seconds),
                ):
                    with attempt:
                        self._raise_if_died()
                        await self.command("true", user=user)
        except TimeoutError as e:
            self._raise_if_died()
            raise BootTimeoutError(
                f"Guest not reachable over SSH within {timeout}s",
                context={"vm_name": self.name, "addr_port": str(self._addr_port), "timeout": timeout},
            ) from e
        logger.info("Guest reachable over SSH", extra={"vm_name": self.name, "addr_port": str(self._addr_port)})

    def _raise_if_died(self) -> None:
        if self.died:
            raise MachineDiedError(
                "Emulator exited while waiting for the guest",
                context={
                    "vm_name": self.name,
                    "returncode": self.returncode,
                    "cause": self._cause.value if self._cause else None,
                },
            )
