"""Stand-in for qemu-system-* used by the lifecycle tests.

Installed on PATH (via a small sh wrapper) by the fake_qemu fixture. Behaviour
is selected with FAKE_QEMU_MODE:

    normal       print a boot banner, run until Ctrl-A x on stdin or a signal
    panic        like normal, then print a kernel panic line after ~0.3s
    die          print an error to stderr and exit 1 immediately
    stubborn     ignore Ctrl-A x and SIGTERM (only SIGKILL works)
    ignore-quit  ignore Ctrl-A x, exit on SIGTERM
"""

import os
import signal
import sys
import threading
import time

QUIT_SEQUENCE = b"\x01x"


def emit(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


def watch_stdin(mode: str) -> None:
    pending = b""
    while True:
        data = os.read(0, 64)
        if not data:
            return
        pending += data
        if QUIT_SEQUENCE in pending and mode not in ("stubborn", "ignore-quit"):
            emit("QEMU: Terminated")
            os._exit(0)


def main() -> None:
    mode = os.environ.get("FAKE_QEMU_MODE", "normal")

    if mode == "die":
        sys.stderr.write("qemu-system-x86_64: -hda rootfs.img: Could not open 'rootfs.img'\n")
        sys.stderr.flush()
        sys.exit(1)

    if mode == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    emit("FAKEQEMU ARGS " + " ".join(sys.argv[1:]))
    emit("Linux version 6.6.0 (fake) #1 SMP")
    threading.Thread(target=watch_stdin, args=(mode,), daemon=True).start()

    if mode == "panic":
        time.sleep(0.3)
        emit("Kernel panic - not syncing: VFS: Unable to mount root fs on unknown-block(0,0)")
        emit("CPU: 0 PID: 1 Comm: swapper/0 Not tainted 6.6.0 #1")

    while True:
        time.sleep(0.05)


if __name__ == "__main__":
    main()
