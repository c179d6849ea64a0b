"""Shared pytest fixtures for qemu-supervisor tests."""

import os
import stat
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from qemu_supervisor.models import Arch, MachineConfig, MachineImage
from qemu_supervisor.platform_utils import HostOS, detect_host_os
from qemu_supervisor.settings import Settings

FAKE_QEMU = Path(__file__).parent / "fake_qemu.py"

# ============================================================================
# Skip Markers
# ============================================================================

# Skip marker for Linux-only tests (binding arbitrary 127/8 addresses)
skip_unless_linux = pytest.mark.skipif(
    detect_host_os() != HostOS.LINUX,
    reason="This test requires Linux (whole 127.0.0.0/8 bindable)",
)

# Skip marker for hosts where the fake emulator's sh wrapper can't run
skip_on_windows = pytest.mark.skipif(
    sys.platform == "win32",
    reason="Fake emulator is an sh script",
)

# ============================================================================
# Fake Emulator
# ============================================================================


@pytest.fixture
def fake_qemu(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Install qemu-system-<arch> wrappers around fake_qemu.py on PATH.

    Returns:
        Directory holding the wrappers
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    for arch in Arch:
        wrapper = bin_dir / arch.binary_name
        wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_QEMU}" "$@"\n')
        wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    monkeypatch.setenv("FAKE_QEMU_MODE", "normal")
    return bin_dir


@pytest.fixture
def fake_qemu_mode(fake_qemu: Path, monkeypatch: pytest.MonkeyPatch) -> Callable[[str], None]:
    """Select the fake emulator's behaviour (normal, panic, die, stubborn, ignore-quit)."""

    def _set(mode: str) -> None:
        monkeypatch.setenv("FAKE_QEMU_MODE", mode)

    return _set


# ============================================================================
# Images and Config Fixtures
# ============================================================================


@pytest.fixture
def kernel_path(tmp_path: Path) -> Path:
    path = tmp_path / "bzImage"
    path.write_bytes(b"\x00" * 16)
    return path


@pytest.fixture
def disk_path(tmp_path: Path) -> Path:
    path = tmp_path / "rootfs.img"
    path.write_bytes(b"\x00" * 16)
    return path


@pytest.fixture
def make_config(kernel_path: Path, disk_path: Path) -> Callable[..., MachineConfig]:
    """Factory for MachineConfig pointing at the temporary kernel/disk."""

    def _make(**overrides: object) -> MachineConfig:
        fields: dict[str, object] = {
            "image": MachineImage(name="test-vm", kernel_path=kernel_path),
            "drive_path": disk_path,
        }
        fields.update(overrides)
        return MachineConfig(**fields)  # type: ignore[arg-type]

    return _make


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with short monitor intervals; acceleration probes disabled."""
    return Settings(
        force_emulation=True,
        startup_grace_seconds=0.1,
        panic_poll_interval_seconds=0.1,
        panic_settle_seconds=0.1,
        stop_step_seconds=0.1,
        kill_reap_timeout_seconds=2.0,
        ssh_poll_interval_seconds=0.05,
    )


# ============================================================================
# Test Utilities
# ============================================================================


@pytest.fixture(autouse=True)
def clean_supervisor_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer QEMU_SUPERVISOR_* variables out of Settings()."""
    for key in list(os.environ):
        if key.startswith("QEMU_SUPERVISOR_"):
            monkeypatch.delenv(key)
