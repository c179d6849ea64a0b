"""Free loopback address:port allocation for the guest SSH forward.

On Linux every address in 127.0.0.0/8 is bindable, so each machine gets its own
random loopback address as well as a random port; collisions between parallel
test runs become very unlikely. Elsewhere only 127.0.0.1 is used.
"""

import random
import socket

from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_delay

from qemu_supervisor import constants
from qemu_supervisor._logging import get_logger
from qemu_supervisor.exceptions import AllocationError
from qemu_supervisor.models import AddrPort
from qemu_supervisor.platform_utils import supports_loopback_aliases

logger = get_logger(__name__)


class PortAllocator:
    """Find a provisionally free address:port by bind-then-release.

    There is a small race window between release here and the emulator binding
    the same pair; it is accepted (concurrent allocators are unlikely to pick the
    same random pair).

    Args:
        rng: Random source, seeded once. Defaults to a fresh random.Random().
        budget_seconds: Total time allowed before AllocationError.
        multi_loopback: Force random 127/8 addresses on or off. None detects
            from the host OS.
    """

    def __init__(
        self,
        rng: random.Random | None = None,
        budget_seconds: float = constants.PORT_ALLOCATION_BUDGET_SECONDS,
        multi_loopback: bool | None = None,
    ) -> None:
        self._rng = rng if rng is not None else random.Random()
        self._budget = budget_seconds
        self._multi_loopback = supports_loopback_aliases() if multi_loopback is None else multi_loopback

    @property
    def multi_loopback(self) -> bool:
        return self._multi_loopback

    def candidate(self) -> AddrPort:
        """Synthesize one random candidate (not checked)."""
        if self._multi_loopback:
            host = f"127.{self._rng.randint(1, 254)}.{self._rng.randint(0, 254)}.{self._rng.randint(1, 254)}"
            port = self._rng.randrange(constants.LOOPBACK_ALIAS_PORT_MIN, constants.LOOPBACK_ALIAS_PORT_MAX)
            return AddrPort(host, port)
        port = self._rng.randint(constants.CANONICAL_PORT_MIN, constants.CANONICAL_PORT_MAX)
        return AddrPort(constants.CANONICAL_LOOPBACK, port)

    def allocate(self) -> AddrPort:
        """Return an address:port that was bindable a moment ago.

        Blocking; call through asyncio.to_thread() from coroutines.

        Raises:
            AllocationError: Every candidate failed to bind within the budget
        """
        retrying = Retrying(
            stop=stop_after_delay(self._budget),
            retry=retry_if_exception_type(OSError),
        )
        try:
            addr_port = retrying(self._probe)
        except RetryError as e:
            last = e.last_attempt
            raise AllocationError(
                f"No free loopback address:port found within {self._budget}s",
                context={
                    "budget_seconds": self._budget,
                    "attempts": last.attempt_number,
                    "last_error": str(last.exception()),
                    "multi_loopback": self._multi_loopback,
                },
            ) from e

        logger.debug("Allocated forward address", extra={"addr_port": str(addr_port)})
        return addr_port

    def _probe(self) -> AddrPort:
        candidate = self.candidate()
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((candidate.host, candidate.port))
            sock.listen(1)
        return candidate
