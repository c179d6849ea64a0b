"""Tests for the CLI log formatter and configure_logging()."""

import logging

import pytest

from qemu_supervisor._logging import LIBRARY_LOGGER_NAME, MachineFormatter, _NonBlockingHandler, configure_logging


def _record(msg: str, **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="qemu_supervisor.monitors",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=None,
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestMachineFormatter:
    def test_machine_name_in_brackets(self) -> None:
        line = MachineFormatter().format(_record("Kernel panic detected", vm_name="qemu-x86_64-1"))
        assert line.startswith("WARNING [")
        assert line.endswith("qemu_supervisor.monitors [qemu-x86_64-1] - Kernel panic detected")

    def test_without_machine(self) -> None:
        line = MachineFormatter().format(_record("Built emulator command"))
        assert line.endswith("qemu_supervisor.monitors - Built emulator command")

    def test_empty_machine_name_omitted(self) -> None:
        line = MachineFormatter().format(_record("msg", vm_name=""))
        assert "[]" not in line


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def restore_library_logger(self):
        lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
        handlers, level = list(lib_logger.handlers), lib_logger.level
        yield lib_logger
        for handler in lib_logger.handlers:
            if handler not in handlers:
                lib_logger.removeHandler(handler)
                handler.close()
        lib_logger.setLevel(level)

    def test_idempotent(self, restore_library_logger: logging.Logger) -> None:
        configure_logging()
        configure_logging()
        added = [h for h in restore_library_logger.handlers if isinstance(h, _NonBlockingHandler)]
        assert len(added) == 1

    def test_quiet_wins_over_level(self, restore_library_logger: logging.Logger) -> None:
        configure_logging(level=logging.DEBUG, quiet=True)
        assert restore_library_logger.level == logging.ERROR

    def test_level(self, restore_library_logger: logging.Logger) -> None:
        configure_logging(level="DEBUG")
        assert restore_library_logger.level == logging.DEBUG
