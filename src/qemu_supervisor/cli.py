"""Command-line interface for qemu-supervisor.

Usage:
    qemu-supervise --kernel bzImage --disk rootfs.img                 # Boot, print ssh line, wait
    qemu-supervise --kernel bzImage --disk rootfs.img -c 'uname -a'   # Boot, run, tear down
    qemu-supervise --kernel bzImage --disk rootfs.img --timeout 300 --console
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import NoReturn

import click
from pydantic import ValidationError

from qemu_supervisor import (
    Arch,
    BootTimeoutError,
    ConfigurationError,
    ImmediateExitError,
    MachineConfig,
    MachineImage,
    QemuSystem,
    RemoteExecutionError,
    SupervisorError,
    __version__,
)
from qemu_supervisor._logging import configure_logging

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_TIMEOUT = 124  # Matches `timeout` command
EXIT_SUPERVISOR_ERROR = 125
EXIT_INTERRUPTED = 130


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def _echo_console(chunk: bytes) -> None:
    click.echo(chunk.decode(errors="replace"), nl=False)


def _outcome(system: QemuSystem) -> int:
    """Map how the machine ended to an exit code (runtime terminations only)."""
    if system.kernel_panic:
        tail = system.stdout_buffer.text()[-2000:]
        click.echo(format_error("Kernel panic", tail.strip() or "(no console output)"), err=True)
        return EXIT_SUPERVISOR_ERROR
    if system.killed_by_timeout:
        click.echo(
            format_error(
                "Machine timed out",
                f"The machine was stopped after {system.config.timeout_seconds} seconds.",
                ["Increase the limit with --timeout, or pass --timeout 0 to disable it"],
            ),
            err=True,
        )
        return EXIT_TIMEOUT
    return EXIT_SUCCESS


async def run_machine(
    config: MachineConfig,
    commands: list[str],
    user: str,
    boot_timeout: float,
    console: bool,
) -> int:
    """Boot the machine, run commands over SSH (or wait for it to exit), tear down.

    Returns:
        Exit code to return from CLI
    """
    try:
        system = QemuSystem(config, on_stdout=_echo_console if console else None)
    except ConfigurationError as e:
        click.echo(
            format_error(
                "Invalid machine configuration",
                e.message,
                ["Check that QEMU is installed and on PATH", "Check the kernel and disk image paths"],
            ),
            err=True,
        )
        return EXIT_CLI_ERROR

    try:
        async with system:
            if not commands:
                click.echo(system.ssh_command(user), err=True)
                await system.wait()
                return _outcome(system)

            await system.wait_until_reachable(user=user, timeout=boot_timeout)
            for command in commands:
                output = await system.command(command, user=user)
                click.echo(output, nl=False)

    except RemoteExecutionError as e:
        if e.exit_status is not None:
            click.echo(e.output, nl=False)
            return e.exit_status
        click.echo(format_error("Remote execution failed", e.message), err=True)
        return EXIT_SUPERVISOR_ERROR

    except BootTimeoutError:
        click.echo(
            format_error(
                "Guest did not boot in time",
                f"No SSH login succeeded within {boot_timeout} seconds.",
                ["Increase the limit with --boot-timeout", "Run with --console to watch the boot log"],
            ),
            err=True,
        )
        return EXIT_TIMEOUT

    except SupervisorError as e:
        outcome = _outcome(system)
        if outcome != EXIT_SUCCESS:
            return outcome
        detail = e.stderr.strip() if isinstance(e, ImmediateExitError) else ""
        click.echo(format_error("Supervisor error", detail or e.message), err=True)
        return EXIT_SUPERVISOR_ERROR

    return _outcome(system)


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--arch",
    type=click.Choice([a.value for a in Arch]),
    default=Arch.X86_64.value,
    show_default=True,
    help="Guest architecture",
)
@click.option("--kernel", type=click.Path(path_type=Path), required=True, help="Kernel image to boot")
@click.option("--initrd", type=click.Path(path_type=Path), help="Initial ramdisk")
@click.option("--disk", type=click.Path(path_type=Path), required=True, help="Root disk image (used in snapshot mode)")
@click.option("--cpus", default=1, show_default=True, help="Number of vCPUs")
@click.option("-m", "--memory", default=512, show_default=True, help="Memory in MB")
@click.option("-t", "--timeout", type=float, default=0, show_default=True, help="Kill after N seconds (0 disables)")
@click.option("--gdb", "debug_endpoint", help="gdbstub endpoint, e.g. tcp::1234")
@click.option("-u", "--user", default="root", show_default=True, help="SSH user for commands")
@click.option("--boot-timeout", type=float, default=120, show_default=True, help="Seconds to wait for SSH")
@click.option("-c", "--command", "commands", multiple=True, help="Command to run over SSH (repeatable)")
@click.option("--console", is_flag=True, help="Echo the guest console to stdout")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.version_option(__version__, "-V", "--version", prog_name="qemu-supervise")
def main(
    arch: str,
    kernel: Path,
    initrd: Path | None,
    disk: Path,
    cpus: int,
    memory: int,
    timeout: float,
    debug_endpoint: str | None,
    user: str,
    boot_timeout: float,
    commands: tuple[str, ...],
    console: bool,
    quiet: bool,
) -> NoReturn:
    """Boot a kernel under QEMU and supervise it.

    Without -c, prints the ssh command for the guest and waits until the
    machine exits or is interrupted. With -c, waits for SSH, runs each command
    in order and tears the machine down.

    Examples:

    \b
      qemu-supervise --kernel bzImage --disk rootfs.img
      qemu-supervise --kernel bzImage --disk rootfs.img -c 'dmesg | tail'
      qemu-supervise --kernel bzImage --disk rootfs.img --gdb tcp::1234 --console
    """
    configure_logging(quiet=quiet)

    try:
        config = MachineConfig(
            arch=Arch(arch),
            image=MachineImage(name=kernel.name, kernel_path=kernel, initrd_path=initrd),
            drive_path=disk,
            cpus=cpus,
            memory_mb=memory,
            debug_endpoint=debug_endpoint,
            timeout_seconds=timeout,
        )
    except ValidationError as exc:
        raise click.UsageError(str(exc)) from exc

    try:
        exit_code = asyncio.run(
            run_machine(
                config=config,
                commands=list(commands),
                user=user,
                boot_timeout=boot_timeout,
                console=console,
            )
        )
    except KeyboardInterrupt:
        exit_code = EXIT_INTERRUPTED

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
