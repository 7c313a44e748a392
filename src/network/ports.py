# =============================================================================
# Port Readiness
# =============================================================================
# Polls a TCP endpoint until it accepts a connection or the deadline passes.
# Used for the MQTT broker (directly or through the relay) and for the local
# SOCKS5 relay port itself.
# =============================================================================

import logging
import socket
import time
from typing import Any, Callable, Optional

from src.runtime.errors import PortTimeoutError, RelayUnavailableError

logger = logging.getLogger(__name__)

ATTEMPT_TIMEOUT_S = 1.0

# connect(host, port, timeout_s) -> socket-like object with close()
ConnectFunc = Callable[[str, int, float], Any]


def _tcp_connect(host: str, port: int, timeout: float) -> socket.socket:
    return socket.create_connection((host, port), timeout=timeout)


class PortReadinessWaiter:
    """Blocking, deadline-bounded port check."""

    def __init__(
        self,
        attempt_timeout_s: float = ATTEMPT_TIMEOUT_S,
        sleep: Callable[[float], Any] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.attempt_timeout_s = attempt_timeout_s
        self._sleep = sleep
        self._clock = clock

    def await_open(
        self,
        host: str,
        port: int,
        timeout_ms: int = 15000,
        interval_ms: int = 500,
        connect: Optional[ConnectFunc] = None,
    ) -> bool:
        """
        Wait until host:port accepts a connection.

        Individual attempt failures are logged and swallowed; only the overall
        deadline is reported, as PortTimeoutError. Each attempt's timeout is
        clamped to the time left, so the call returns no later than
        timeout_ms + interval_ms after it started.
        """
        connect = connect or _tcp_connect
        deadline = self._clock() + timeout_ms / 1000.0
        attempt = 1

        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break

            logger.info(f"Attempt {attempt}: connecting to {host}:{port}...")
            sock = None
            try:
                sock = connect(host, port, min(self.attempt_timeout_s, remaining))
                logger.info(f"Port {host}:{port} is open")
                return True
            except (OSError, RelayUnavailableError) as e:
                logger.warning(f"Connection attempt {attempt} to {host}:{port} failed: {e}")
            finally:
                if sock is not None:
                    sock.close()

            attempt += 1
            if deadline - self._clock() <= 0:
                break
            self._sleep(interval_ms / 1000.0)

        raise PortTimeoutError(host, port, timeout_ms)


def await_open(host: str, port: int, timeout_ms: int = 15000, interval_ms: int = 500,
               connect: Optional[ConnectFunc] = None) -> bool:
    """Module-level convenience wrapper."""
    return PortReadinessWaiter().await_open(host, port, timeout_ms, interval_ms, connect)
