"""Host capability probes used when building the emulator invocation."""

import os
import shutil
from pathlib import Path

import aiofiles.os

from qemu_supervisor import constants
from qemu_supervisor._logging import get_logger
from qemu_supervisor.exceptions import EmulatorNotFoundError
from qemu_supervisor.models import Arch

logger = get_logger(__name__)


async def kvm_device_exists(device: Path = constants.KVM_DEVICE) -> bool:
    """Check whether the KVM device node exists.

    Absence is not an error; it only disables -enable-kvm. Unlike a full KVM
    probe (ioctl + QEMU accelerator list) this mirrors what the emulator
    itself requires to accept the flag.
    """
    exists = await aiofiles.os.path.exists(device)
    if not exists:
        logger.debug("KVM not available: device does not exist", extra={"device": str(device)})
    return exists


def resolve_emulator(arch: Arch, qemu_bin_dir: Path | None = None) -> Path:
    """Locate qemu-system-<arch> on the search path.

    Args:
        arch: Guest architecture
        qemu_bin_dir: Directory searched instead of PATH when set

    Returns:
        Absolute path to the emulator binary

    Raises:
        EmulatorNotFoundError: Binary not found or not executable
    """
    search_path = os.fspath(qemu_bin_dir) if qemu_bin_dir is not None else None
    found = shutil.which(arch.binary_name, path=search_path)
    if found is None:
        raise EmulatorNotFoundError(
            f"{arch.binary_name} not found in {'PATH' if search_path is None else search_path}",
            context={"arch": arch.value, "binary": arch.binary_name, "search_path": search_path},
        )
    return Path(found)
