# =============================================================================
# Overlay Tunnel Controller
# =============================================================================
# Brings the overlay network client online and confirms the broker host is
# reachable through it before any publish attempt.
#
#   NotStarted -> Starting -> SocketReady -> Authenticated -> RouteConfirmed
#                        \___________\______________\______-> Failed
#
# The daemon itself is behind the TunnelClient capability (Tailscale in
# production, in-memory doubles in tests).
# =============================================================================

import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol

from src.runtime.errors import RouteTimeoutError, TunnelError
from src.runtime.secrets import SecretResolver, is_placeholder

logger = logging.getLogger(__name__)

SOCKET_POLL_INTERVAL_S = 0.5
ROUTE_POLL_INTERVAL_S = 1.0


class TunnelState(str, Enum):
    NOT_STARTED = "NotStarted"
    STARTING = "Starting"
    SOCKET_READY = "SocketReady"
    AUTHENTICATED = "Authenticated"
    ROUTE_CONFIRMED = "RouteConfirmed"
    FAILED = "Failed"


_ORDER = [
    TunnelState.NOT_STARTED,
    TunnelState.STARTING,
    TunnelState.SOCKET_READY,
    TunnelState.AUTHENTICATED,
    TunnelState.ROUTE_CONFIRMED,
]


@dataclass
class PeerStatus:
    """One peer as reported by the tunnel's status view."""
    hostname: str
    addresses: List[str] = field(default_factory=list)
    routes: List[str] = field(default_factory=list)
    online: bool = False


class TunnelClient(Protocol):
    """Capability wrapping the overlay daemon."""

    def start(self) -> None: ...

    def is_socket_ready(self) -> bool: ...

    def authenticate(self, auth_key: str) -> None: ...

    def get_peer_status(self) -> List[PeerStatus]: ...

    def stop(self) -> None: ...


def _first_octet_group(address: str) -> str:
    return address.split("/")[0].split(".")[0]


def match_peer(peers: List[PeerStatus], broker_host: str) -> Optional[PeerStatus]:
    """
    Find an online peer plausibly associated with broker_host.

    Matching is a prefix match on the first octet group of the peer's overlay
    addresses and advertised routes. It is best-effort, not a subnet check.
    """
    prefix = _first_octet_group(broker_host)
    for peer in peers:
        if not peer.online:
            continue
        for candidate in list(peer.addresses) + list(peer.routes):
            if _first_octet_group(candidate) == prefix:
                return peer
    return None


def apply_dns_override(dns_server: str, resolv_conf_path: str = "/etc/resolv.conf") -> bool:
    """Point the resolver at dns_server. Returns False when already applied."""
    content = f"nameserver {dns_server}\n"
    try:
        if os.path.exists(resolv_conf_path):
            with open(resolv_conf_path) as f:
                if f.read() == content:
                    return False
        with open(resolv_conf_path, "w") as f:
            f.write(content)
    except OSError as e:
        raise TunnelError(TunnelError.DNS_OVERRIDE, f"{resolv_conf_path}: {e}") from e
    logger.info(f"Overrode {resolv_conf_path} with nameserver {dns_server}")
    return True


class TunnelController:
    """Owns the TunnelState for one invocation."""

    def __init__(
        self,
        client: TunnelClient,
        secrets: SecretResolver,
        auth_key_ref: Optional[str],
        broker_host: str,
        socket_timeout_ms: int = 10000,
        route_timeout_ms: int = 20000,
        dns_server: Optional[str] = None,
        resolv_conf_path: str = "/etc/resolv.conf",
        sleep: Callable[[float], Any] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.secrets = secrets
        self.auth_key_ref = auth_key_ref
        self.broker_host = broker_host
        self.socket_timeout_ms = socket_timeout_ms
        self.route_timeout_ms = route_timeout_ms
        self.dns_server = dns_server
        self.resolv_conf_path = resolv_conf_path
        self._sleep = sleep
        self._clock = clock
        self._state = TunnelState.NOT_STARTED
        self.failure_reason: Optional[str] = None
        self.confirmed_peer: Optional[PeerStatus] = None

    @property
    def state(self) -> TunnelState:
        return self._state

    @property
    def is_routed(self) -> bool:
        return self._state == TunnelState.ROUTE_CONFIRMED

    def _advance(self, new_state: TunnelState) -> None:
        if self._state == TunnelState.FAILED:
            raise RuntimeError("tunnel already failed")
        if new_state != TunnelState.FAILED and _ORDER.index(new_state) <= _ORDER.index(self._state):
            raise RuntimeError(f"illegal tunnel transition {self._state.value} -> {new_state.value}")
        logger.info(f"[tunnel] {self._state.value} -> {new_state.value}")
        self._state = new_state

    def _fail(self, error: BaseException) -> None:
        self.failure_reason = getattr(error, "reason", None) or type(error).__name__
        self._advance(TunnelState.FAILED)
        stage = getattr(error, "stage", "tunnel")
        logger.error(f"[tunnel] stage={stage} reason={error}")

    # ==========================================================================
    # Stages
    # ==========================================================================

    def _start(self) -> None:
        self._advance(TunnelState.STARTING)
        if self.client.is_socket_ready():
            logger.info("[tunnel] daemon already running, attaching")
            return
        self.client.start()

    def _wait_for_socket(self) -> None:
        deadline = self._clock() + self.socket_timeout_ms / 1000.0
        while not self.client.is_socket_ready():
            if self._clock() >= deadline:
                raise TunnelError(
                    TunnelError.SOCKET_TIMEOUT,
                    f"control socket not ready after {self.socket_timeout_ms}ms",
                )
            self._sleep(SOCKET_POLL_INTERVAL_S)
        self._advance(TunnelState.SOCKET_READY)

    def _authenticate(self) -> None:
        auth_key = self.secrets.resolve(self.auth_key_ref)
        if not auth_key or is_placeholder(auth_key):
            raise TunnelError(TunnelError.INVALID_AUTH_KEY, "auth key is empty or a placeholder")
        self.client.authenticate(auth_key)
        self._advance(TunnelState.AUTHENTICATED)

    def _confirm_route(self) -> None:
        deadline = self._clock() + self.route_timeout_ms / 1000.0
        while True:
            peers = self.client.get_peer_status()
            matched = match_peer(peers, self.broker_host)
            if matched:
                logger.info(f"[tunnel] route to {self.broker_host} via peer {matched.hostname}")
                self.confirmed_peer = matched
                break

            online = [p for p in peers if p.online]
            if online:
                logger.warning(
                    f"[tunnel] no peer address matches {self.broker_host}; "
                    f"accepting {len(online)} active peer(s) as readiness signal "
                    f"({', '.join(p.hostname for p in online)})"
                )
                self.confirmed_peer = online[0]
                break

            if self._clock() >= deadline:
                raise RouteTimeoutError(f"no active peers after {self.route_timeout_ms}ms")
            logger.info("[tunnel] waiting for peers...")
            self._sleep(ROUTE_POLL_INTERVAL_S)

        if self.dns_server:
            apply_dns_override(self.dns_server, self.resolv_conf_path)
        self._advance(TunnelState.ROUTE_CONFIRMED)

    def bring_up(self) -> TunnelState:
        """
        Run all stages. No internal retry.

        Any stage error moves the controller to Failed, records its reason
        and is re-raised unchanged (TunnelError, SecretFetchError, ...).
        """
        if self.is_routed:
            return self._state
        if self._state != TunnelState.NOT_STARTED:
            raise RuntimeError(f"bring_up called in state {self._state.value}")

        try:
            self._start()
            self._wait_for_socket()
            self._authenticate()
            self._confirm_route()
        except Exception as e:
            self._fail(e)
            raise
        return self._state
