"""Data models for qemu-supervisor.

Example:
    ```python
    from qemu_supervisor import Arch, MachineConfig, MachineImage

    config = MachineConfig(
        arch=Arch.X86_64,
        image=MachineImage(name="linux-6.6", kernel_path="/images/bzImage"),
        drive_path="/images/rootfs.img",
        memory_mb=1024,
        timeout_seconds=300,
    )
    ```
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from qemu_supervisor import constants


class Arch(str, Enum):
    """Guest architectures; value must match the qemu-system-<value> suffix."""

    X86_64 = "x86_64"
    I386 = "i386"
    AARCH64 = "aarch64"

    @property
    def binary_name(self) -> str:
        """Emulator binary name for this architecture."""
        return f"{constants.QEMU_BINARY_PREFIX}{self.value}"

    @property
    def is_x86(self) -> bool:
        """True for architectures eligible for KVM/HVF acceleration."""
        return self in (Arch.X86_64, Arch.I386)


class MachineImage(BaseModel):
    """Bootable kernel (and optional initrd) supplied by the caller."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(description="Identifying name, used in logs")
    kernel_path: Path = Field(description="Path to the bootable kernel image")
    initrd_path: Path | None = Field(default=None, description="Optional initial ramdisk")


class MachineConfig(BaseModel):
    """Description of one supervised machine.

    Attributes:
        arch: Guest architecture (selects the emulator binary).
        image: Kernel / initrd to boot.
        drive_path: Backing disk image, attached as the first disk in snapshot mode.
        cpus: Number of vCPUs. Default: 1.
        memory_mb: Guest memory in MB. Default: 512.
        debug_endpoint: Passed verbatim to -gdb (e.g. "tcp::1234"). None disables.
        timeout_seconds: Kill the machine this long after start(). None or 0 disables.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    arch: Arch = Arch.X86_64
    image: MachineImage
    drive_path: Path

    cpus: int = Field(default=constants.DEFAULT_CPUS, ge=1)
    memory_mb: int = Field(default=constants.DEFAULT_MEMORY_MB, ge=1)

    debug_endpoint: str | None = Field(default=None, min_length=1)
    timeout_seconds: float | None = Field(default=None, ge=0)

    @property
    def name(self) -> str:
        """Machine name used for log correlation."""
        return self.image.name

    @property
    def has_timeout(self) -> bool:
        return bool(self.timeout_seconds)


@dataclass(frozen=True, slots=True)
class AddrPort:
    """Host-side address:port forwarded to the guest's SSH port."""

    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"
