"""SSH and scp helpers for driving a running guest.

Commands go over paramiko (blocking, so every call runs via asyncio.to_thread).
File copies shell out to the scp binary. Host keys are never verified: every
guest boots from a throwaway snapshot and regenerates its keys.
"""

import asyncio
import os
import shlex
import socket
from pathlib import Path

import paramiko

from qemu_supervisor import constants
from qemu_supervisor._logging import get_logger
from qemu_supervisor.exceptions import RemoteExecutionError
from qemu_supervisor.models import AddrPort

logger = get_logger(__name__)


def _load_pkey(path: Path) -> paramiko.PKey:
    last_error: Exception | None = None
    for key_cls in (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey):
        try:
            return key_cls.from_private_key_file(os.fspath(path))
        except (paramiko.SSHException, ValueError) as e:
            last_error = e
    raise RemoteExecutionError(
        f"Could not load private key: {path}",
        context={"key_path": str(path), "error": str(last_error)},
    )


def _connect(addr_port: AddrPort, user: str, key_path: Path | None, timeout: float) -> paramiko.Transport:
    sock = socket.create_connection((addr_port.host, addr_port.port), timeout=timeout)
    transport = paramiko.Transport(sock)
    try:
        transport.start_client(timeout=timeout)
        if key_path is not None:
            transport.auth_publickey(user, _load_pkey(key_path))
        else:
            # Test images accept root without credentials
            transport.auth_none(user)
    except BaseException:
        transport.close()
        raise
    return transport


def _run_blocking(
    addr_port: AddrPort,
    user: str,
    command: str,
    key_path: Path | None,
    timeout: float,
) -> tuple[int, str]:
    transport = _connect(addr_port, user, key_path, timeout)
    try:
        channel = transport.open_session(timeout=timeout)
        channel.set_combine_stderr(True)
        channel.exec_command(command)
        with channel.makefile("rb") as stream:
            output = stream.read()
        exit_status = channel.recv_exit_status()
        channel.close()
    finally:
        transport.close()
    return exit_status, output.decode(errors="replace")


async def run_command(
    addr_port: AddrPort,
    user: str,
    command: str,
    *,
    key_path: Path | None = None,
    timeout: float = constants.SSH_CONNECT_TIMEOUT_SECONDS,
) -> str:
    """Run a command on the guest and return its combined stdout/stderr.

    Args:
        addr_port: Host-side forward of the guest's SSH port
        user: Login user
        command: Shell command line, executed by the guest's login shell
        key_path: Private key; None uses the SSH "none" auth method
        timeout: Connect / handshake timeout in seconds

    Raises:
        RemoteExecutionError: Connection or auth failed, or the command exited
            non-zero (output and exit_status attached)
    """
    context = {"addr_port": str(addr_port), "user": user, "command": command}
    try:
        exit_status, output = await asyncio.to_thread(_run_blocking, addr_port, user, command, key_path, timeout)
    except (paramiko.SSHException, OSError) as e:
        raise RemoteExecutionError(
            f"SSH to {user}@{addr_port} failed: {e}",
            context={**context, "error": str(e), "error_type": type(e).__name__},
        ) from e

    if exit_status != 0:
        raise RemoteExecutionError(
            f"Remote command exited with status {exit_status}: {command}",
            context={**context, "exit_status": exit_status},
            output=output,
            exit_status=exit_status,
        )
    logger.debug("Remote command finished", extra={**context, "output_bytes": len(output)})
    return output


def detached_command(command: str) -> str:
    """Wrap a command so it keeps running after the SSH session closes."""
    return f"nohup sh -c {shlex.quote(command)} > /dev/null 2> /dev/null < /dev/null &"


async def run_command_async(
    addr_port: AddrPort,
    user: str,
    command: str,
    *,
    key_path: Path | None = None,
    timeout: float = constants.SSH_CONNECT_TIMEOUT_SECONDS,
) -> None:
    """Start a command on the guest without waiting for it to finish."""
    await run_command(addr_port, user, detached_command(command), key_path=key_path, timeout=timeout)


def scp_args(addr_port: AddrPort, user: str, local_path: Path, remote_path: str) -> list[str]:
    return [
        "scp",
        "-P",
        str(addr_port.port),
        "-o",
        "StrictHostKeyChecking=no",
        "-o",
        "UserKnownHostsFile=/dev/null",
        "-o",
        "LogLevel=error",
        "-o",
        "BatchMode=yes",
        os.fspath(local_path),
        f"{user}@{addr_port.host}:{remote_path}",
    ]


async def copy_file(
    addr_port: AddrPort,
    user: str,
    local_path: Path,
    remote_path: str,
    *,
    key_path: Path | None = None,
) -> None:
    """Copy a local file into the guest with scp.

    Raises:
        RemoteExecutionError: scp missing or exited non-zero (its output attached)
    """
    args = scp_args(addr_port, user, local_path, remote_path)
    if key_path is not None:
        args[1:1] = ["-i", os.fspath(key_path)]
    context = {"addr_port": str(addr_port), "local_path": str(local_path), "remote_path": remote_path}

    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        raise RemoteExecutionError(f"Failed to run scp: {e}", context={**context, "error": str(e)}) from e

    stdout, _ = await proc.communicate()
    output = stdout.decode(errors="replace")
    if proc.returncode != 0:
        raise RemoteExecutionError(
            f"scp exited with status {proc.returncode}",
            context={**context, "exit_status": proc.returncode},
            output=output,
            exit_status=proc.returncode,
        )
    logger.debug("Copied file to guest", extra=context)


def ssh_command_line(addr_port: AddrPort, user: str = constants.DEFAULT_SSH_USER) -> str:
    """Human-runnable ssh invocation for logging into the guest."""
    return f"ssh -o StrictHostKeyChecking=no -p {addr_port.port} {user}@{addr_port.host}"
