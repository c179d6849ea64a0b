"""qemu-supervisor: QEMU process supervision for automated kernel testing.

Boots a kernel and disk image under QEMU, captures the guest console, detects
kernel panics and timeouts, and always tears the emulator down. The guest's
SSH port is forwarded to a random loopback address:port for driving tests.

Quick Start:
    ```python
    from qemu_supervisor import MachineConfig, MachineImage, QemuSystem

    config = MachineConfig(
        image=MachineImage(name="linux-6.6", kernel_path="bzImage"),
        drive_path="rootfs.img",
        timeout_seconds=600,
    )
    async with QemuSystem(config) as system:
        await system.wait_until_reachable(timeout=120)
        print(await system.command("uname -r"))

    if system.kernel_panic:
        print(system.stdout.decode(errors="replace"))
    ```

Requirements:
    - qemu-system-<arch> on PATH (KVM on Linux or HVF on macOS used when available)
    - scp on PATH for file copies
    - Python 3.12+
"""

from qemu_supervisor.exceptions import (
    AllocationError,
    BootTimeoutError,
    ConfigurationError,
    DiskImageNotFoundError,
    EmulatorNotFoundError,
    ImmediateExitError,
    InitrdNotFoundError,
    InvalidStateError,
    KernelImageNotFoundError,
    LaunchError,
    MachineDiedError,
    PermanentError,
    ProcessExitError,
    RemoteExecutionError,
    SupervisorError,
    TransientError,
)
from qemu_supervisor.machine_state import MachineState, TerminationCause
from qemu_supervisor.models import AddrPort, Arch, MachineConfig, MachineImage
from qemu_supervisor.port_allocator import PortAllocator
from qemu_supervisor.qemu_system import QemuSystem
from qemu_supervisor.settings import Settings

__all__ = [
    "AddrPort",
    "AllocationError",
    "Arch",
    "BootTimeoutError",
    "ConfigurationError",
    "DiskImageNotFoundError",
    "EmulatorNotFoundError",
    "ImmediateExitError",
    "InitrdNotFoundError",
    "InvalidStateError",
    "KernelImageNotFoundError",
    "LaunchError",
    "MachineConfig",
    "MachineDiedError",
    "MachineImage",
    "MachineState",
    "PermanentError",
    "PortAllocator",
    "ProcessExitError",
    "QemuSystem",
    "RemoteExecutionError",
    "Settings",
    "SupervisorError",
    "TerminationCause",
    "TransientError",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("qemu-supervisor")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
