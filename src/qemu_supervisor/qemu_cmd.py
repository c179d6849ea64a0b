"""QEMU command line builder for supervised test machines.

Builds QEMU command arguments from a MachineConfig, the reserved SSH forward
address, and host acceleration capabilities.
"""

from pathlib import Path

from qemu_supervisor import constants
from qemu_supervisor._logging import get_logger
from qemu_supervisor.models import AddrPort, Arch, MachineConfig
from qemu_supervisor.platform_utils import HostArch, HostOS, detect_host_arch, detect_host_os
from qemu_supervisor.settings import Settings
from qemu_supervisor.system_probes import kvm_device_exists, resolve_emulator

logger = get_logger(__name__)

_HOST_ARCH_FOR: dict[Arch, HostArch] = {
    Arch.X86_64: HostArch.X86_64,
    Arch.AARCH64: HostArch.AARCH64,
}


def build_qemu_args(
    config: MachineConfig,
    addr_port: AddrPort,
    *,
    kvm_available: bool,
    host_os: HostOS,
    host_arch: HostArch,
) -> list[str]:
    """Build emulator arguments (without the binary).

    Pure function: all host facts are passed in.

    Args:
        config: Machine description
        addr_port: Host address:port forwarded to guest port 22
        kvm_available: Whether the KVM device node exists
        host_os: Host operating system
        host_arch: Host CPU architecture

    Returns:
        Argument list. -hda/-kernel/-append are each directly followed by
        their value; other flag order carries no meaning.
    """
    hostfwd = f"hostfwd=tcp:{addr_port}-:{constants.GUEST_SSH_PORT}"
    args = [
        # No writes reach the backing disk; no graphical window, console on stdio
        "-snapshot",
        "-nographic",
        "-hda",
        str(config.drive_path),
        "-kernel",
        str(config.image.kernel_path),
        "-append",
        constants.KERNEL_APPEND,
        "-smp",
        str(config.cpus),
        "-m",
        str(config.memory_mb),
        "-device",
        "e1000,netdev=n1",
        "-netdev",
        f"user,id=n1,{hostfwd}",
    ]

    if config.debug_endpoint:
        args += ["-gdb", config.debug_endpoint]

    if config.image.initrd_path is not None:
        args += ["-initrd", str(config.image.initrd_path)]

    if config.arch.is_x86 and kvm_available:
        args.append("-enable-kvm")
    elif config.arch.is_x86 and host_os == HostOS.MACOS and _HOST_ARCH_FOR.get(config.arch) == host_arch:
        # Hypervisor.framework only runs guests of the host's own architecture
        args += ["-accel", "hvf", "-cpu", "host"]

    return args


async def build_qemu_cmd(
    config: MachineConfig,
    addr_port: AddrPort,
    settings: Settings,
    emulator: Path | None = None,
) -> list[str]:
    """Build the full emulator command for a machine.

    Args:
        config: Machine description
        addr_port: Host address:port forwarded to guest port 22
        settings: Runtime settings (binary dir, KVM device, force_emulation)
        emulator: Already resolved emulator binary. Resolved from settings when None.

    Returns:
        Command as list of strings, binary first

    Raises:
        EmulatorNotFoundError: Binary not found
    """
    binary = emulator if emulator is not None else resolve_emulator(config.arch, settings.qemu_bin_dir)

    if settings.force_emulation:
        kvm_available = False
        host_os = HostOS.UNKNOWN
    else:
        kvm_available = await kvm_device_exists(settings.kvm_device)
        host_os = detect_host_os()

    args = build_qemu_args(
        config,
        addr_port,
        kvm_available=kvm_available,
        host_os=host_os,
        host_arch=detect_host_arch(),
    )
    logger.info(
        "Built emulator command",
        extra={
            "vm_name": config.name,
            "binary": str(binary),
            "kvm": kvm_available,
            "force_emulation": settings.force_emulation,
            "addr_port": str(addr_port),
        },
    )
    return [str(binary), *args]
