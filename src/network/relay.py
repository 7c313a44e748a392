# =============================================================================
# Relay Connector - Direct or SOCKS5
# =============================================================================
# Yields a connected byte stream (socket) to the broker. With Tailscale in
# userspace-networking mode the overlay is only reachable through the
# tailscaled SOCKS5 server, so broker traffic goes through the relay.
# =============================================================================

import logging
import socket
from typing import Optional

import socks

from src.network.ports import PortReadinessWaiter
from src.runtime.config import BridgeConfig
from src.runtime.errors import PortTimeoutError, RelayUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_S = 5.0


class DirectConnector:
    """Plain TCP connection, no relay."""
    kind = "direct"

    def __init__(self, timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S):
        self.timeout_s = timeout_s

    def ensure_ready(self) -> None:
        """Nothing to prepare without a relay."""

    def connect(self, host: str, port: int, timeout: Optional[float] = None) -> socket.socket:
        return socket.create_connection((host, port), timeout=timeout or self.timeout_s)

    def describe(self) -> str:
        return "direct"


class Socks5Connector:
    """
    TCP connection through a SOCKS5 relay (tailscaled --socks5-server).

    The relay port must be accepting connections before first use; this is
    checked once per connector with PortReadinessWaiter. Each connect() is a
    single attempt.
    """
    kind = "socks5"

    def __init__(
        self,
        relay_host: str,
        relay_port: int,
        ready_timeout_ms: int = 10000,
        ready_interval_ms: int = 500,
        timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S,
        waiter: PortReadinessWaiter = None,
    ):
        self.relay_host = relay_host
        self.relay_port = relay_port
        self.ready_timeout_ms = ready_timeout_ms
        self.ready_interval_ms = ready_interval_ms
        self.timeout_s = timeout_s
        self._waiter = waiter or PortReadinessWaiter()
        self._ready = False

    def ensure_ready(self) -> None:
        if self._ready:
            return
        logger.info(f"Waiting for SOCKS5 relay on {self.relay_host}:{self.relay_port}...")
        try:
            self._waiter.await_open(
                self.relay_host, self.relay_port, self.ready_timeout_ms, self.ready_interval_ms,
            )
        except PortTimeoutError as e:
            raise RelayUnavailableError("relay-not-ready", str(e)) from e
        self._ready = True

    def connect(self, host: str, port: int, timeout: Optional[float] = None) -> socket.socket:
        self.ensure_ready()
        try:
            return socks.create_connection(
                (host, port),
                timeout=timeout or self.timeout_s,
                proxy_type=socks.SOCKS5,
                proxy_addr=self.relay_host,
                proxy_port=self.relay_port,
                proxy_rdns=True,
            )
        except socks.ProxyConnectionError as e:
            raise RelayUnavailableError(
                "relay-refused", f"{self.relay_host}:{self.relay_port}: {e}"
            ) from e

    def describe(self) -> str:
        return f"socks5://{self.relay_host}:{self.relay_port}"


def build_connector(config: BridgeConfig, waiter: PortReadinessWaiter = None):
    """Select the connector variant from configuration."""
    timeout_s = config.mqtt_connect_timeout_ms / 1000.0
    if config.use_relay:
        return Socks5Connector(
            config.relay_host,
            config.relay_port,
            ready_timeout_ms=config.relay_wait_timeout_ms,
            ready_interval_ms=config.port_wait_interval_ms,
            timeout_s=timeout_s,
            waiter=waiter,
        )
    return DirectConnector(timeout_s=timeout_s)
