"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from qemu_supervisor import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with QEMU_SUPERVISOR_ prefix.
    Example: QEMU_SUPERVISOR_FORCE_EMULATION=true
    """

    model_config = SettingsConfigDict(
        env_prefix="QEMU_SUPERVISOR_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # QEMU
    qemu_bin_dir: Path | None = None
    """Directory holding qemu-system-* binaries. None searches PATH."""
    kvm_device: Path = constants.KVM_DEVICE

    # Startup / monitors
    startup_grace_seconds: float = Field(default=constants.STARTUP_GRACE_SECONDS, ge=0)
    panic_poll_interval_seconds: float = Field(default=constants.PANIC_POLL_INTERVAL_SECONDS, gt=0)
    panic_settle_seconds: float = Field(default=constants.PANIC_SETTLE_SECONDS, ge=0)

    # Shutdown
    stop_step_seconds: float = Field(default=constants.STOP_STEP_SECONDS, gt=0)
    kill_reap_timeout_seconds: float = Field(default=constants.KILL_REAP_TIMEOUT_SECONDS, gt=0)

    # Port allocation
    port_allocation_budget_seconds: float = Field(default=constants.PORT_ALLOCATION_BUDGET_SECONDS, gt=0)

    # SSH
    ssh_key_path: Path | None = None
    """Private key for guest logins. None authenticates with the SSH "none" method."""
    ssh_connect_timeout_seconds: float = Field(default=constants.SSH_CONNECT_TIMEOUT_SECONDS, gt=0)
    ssh_poll_interval_seconds: float = Field(default=constants.SSH_POLL_INTERVAL_SECONDS, gt=0)

    # Testing/Debug
    force_emulation: bool = False
    """Never add -enable-kvm / -accel hvf, even when acceleration is available."""
