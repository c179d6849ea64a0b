"""Constants for qemu-supervisor configuration and limits."""

from pathlib import Path
from typing import Final

# ============================================================================
# Machine Defaults
# ============================================================================

DEFAULT_CPUS: Final[int] = 1
"""Default number of guest vCPUs (-smp)."""

DEFAULT_MEMORY_MB: Final[int] = 512
"""Default guest memory in megabytes (-m)."""

KERNEL_APPEND: Final[str] = "root=/dev/sda ignore_loglevel console=ttyS0 rw"
"""Kernel command line: root on the first disk, serial console, no log filtering."""

GUEST_SSH_PORT: Final[int] = 22
"""Guest-side port targeted by the user-mode network forward."""

QEMU_BINARY_PREFIX: Final[str] = "qemu-system-"
"""Emulator binary is resolved as qemu-system-<arch> on the search path."""

KVM_DEVICE: Final[Path] = Path("/dev/kvm")
"""Hardware acceleration device node checked before adding -enable-kvm."""

# ============================================================================
# Startup and Monitoring
# ============================================================================

STARTUP_GRACE_SECONDS: Final[float] = 0.1
"""Sleep after spawn used to distinguish a running emulator from an instant crash."""

STARTUP_STDERR_DRAIN_SECONDS: Final[float] = 0.5
"""Upper bound on waiting for capture tasks to drain after an instant crash."""

PANIC_SIGNATURE: Final[bytes] = b"Kernel panic"
"""Substring of guest console output that identifies a kernel panic.
Unanchored: a guest program printing it as ordinary text also matches."""

PANIC_POLL_INTERVAL_SECONDS: Final[float] = 1.0
"""How often the panic watcher scans captured stdout."""

PANIC_SETTLE_SECONDS: Final[float] = 1.0
"""Delay after the first panic match so the rest of the oops reaches stdout."""

OUTPUT_READ_CHUNK_SIZE: Final[int] = 1024
"""Bytes requested per read from the emulator's stdout/stderr pipes."""

# ============================================================================
# Shutdown
# ============================================================================

QEMU_QUIT_SEQUENCE: Final[bytes] = b"\x01x"
"""Ctrl-A x: the emulator's interactive quit escape on a -nographic console."""

STOP_STEP_SECONDS: Final[float] = 0.1
"""Wait between escalation steps (quit sequence -> SIGTERM -> SIGKILL)."""

KILL_REAP_TIMEOUT_SECONDS: Final[float] = 2.0
"""How long to wait for the liveness monitor to observe exit after SIGKILL."""

CAPTURE_DRAIN_TIMEOUT_SECONDS: Final[float] = 1.0
"""How long stop() and the panic watcher wait for capture tasks to reach EOF after exit."""

# ============================================================================
# Port Allocation
# ============================================================================

PORT_ALLOCATION_BUDGET_SECONDS: Final[float] = 1.0
"""Time budget for finding a free address:port before AllocationError."""

CANONICAL_LOOPBACK: Final[str] = "127.0.0.1"
"""Loopback address used on hosts that cannot bind arbitrary 127/8 addresses."""

LOOPBACK_ALIAS_PORT_MIN: Final[int] = 10000
"""Lowest port tried together with a random 127/8 address."""

LOOPBACK_ALIAS_PORT_MAX: Final[int] = 50000
"""Upper bound (exclusive) for ports tried with a random 127/8 address."""

CANONICAL_PORT_MIN: Final[int] = 1024
"""Lowest port tried on the canonical loopback address."""

CANONICAL_PORT_MAX: Final[int] = 65535
"""Highest port tried on the canonical loopback address."""

# ============================================================================
# Remote Execution
# ============================================================================

SSH_CONNECT_TIMEOUT_SECONDS: Final[float] = 10.0
"""TCP connect + SSH handshake timeout for remote commands."""

SSH_POLL_INTERVAL_SECONDS: Final[float] = 1.0
"""Delay between SSH reachability probes while waiting for boot."""

DEFAULT_SSH_USER: Final[str] = "root"
"""User for helpers that need root in the guest (e.g. insmod)."""

REMOTE_MODULE_TEMPLATE: Final[str] = "/tmp/module_{token}.ko"
"""Remote path for kernel modules copied by copy_and_insmod()."""

REMOTE_EXECUTABLE_TEMPLATE: Final[str] = "/tmp/executable_{token}"
"""Remote path for binaries copied by copy_and_run()."""
