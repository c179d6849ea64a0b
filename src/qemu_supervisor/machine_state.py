"""Lifecycle states of a supervised machine."""

from enum import Enum


class MachineState(str, Enum):
    """QemuSystem lifecycle.

    configured -> starting -> live -> {died, kernel_panic, timed_out} -> reaped
    """

    CONFIGURED = "configured"
    STARTING = "starting"
    LIVE = "live"
    DIED = "died"
    KERNEL_PANIC = "kernel_panic"
    TIMED_OUT = "timed_out"
    REAPED = "reaped"


class TerminationCause(str, Enum):
    """Attributed cause of death. At most one is recorded per machine."""

    KERNEL_PANIC = "kernel_panic"
    TIMEOUT = "timeout"


CAUSE_STATES: dict[TerminationCause, MachineState] = {
    TerminationCause.KERNEL_PANIC: MachineState.KERNEL_PANIC,
    TerminationCause.TIMEOUT: MachineState.TIMED_OUT,
}

TERMINAL_STATES: frozenset[MachineState] = frozenset(
    {MachineState.DIED, MachineState.KERNEL_PANIC, MachineState.TIMED_OUT, MachineState.REAPED}
)

VALID_STATE_TRANSITIONS: dict[MachineState, set[MachineState]] = {
    # starting -> configured: start() failed before a process existed
    MachineState.CONFIGURED: {MachineState.STARTING},
    MachineState.STARTING: {MachineState.LIVE, MachineState.CONFIGURED},
    MachineState.LIVE: {MachineState.DIED, MachineState.KERNEL_PANIC, MachineState.TIMED_OUT},
    # died -> kernel_panic: signature found after the emulator exited on its own
    MachineState.DIED: {MachineState.KERNEL_PANIC, MachineState.REAPED},
    MachineState.KERNEL_PANIC: {MachineState.REAPED},
    MachineState.TIMED_OUT: {MachineState.REAPED},
    MachineState.REAPED: set(),
}
