# =============================================================================
# Error Taxonomy
# =============================================================================
# Every failure carries the stage that raised it and a short reason tag so
# the entry point can log "stage=... reason=..." before failing the invocation.
# =============================================================================

from typing import Optional


class BridgeError(Exception):
    """Base class for all notifier failures."""
    stage = "bridge"
    retryable = False

    def __init__(self, reason: str, detail: Optional[str] = None):
        self.reason = reason
        self.detail = detail
        message = f"{reason}: {detail}" if detail else reason
        super().__init__(message)


class ConfigError(BridgeError):
    """Missing or malformed configuration. Raised before any network action."""
    stage = "config"


class SecretFetchError(BridgeError):
    """Secrets Manager unreachable or secret reference invalid."""
    stage = "secrets"

    def __init__(self, ref: str, reason: str, detail: Optional[str] = None):
        self.ref = ref
        super().__init__(reason, detail or ref)


class TunnelError(BridgeError):
    """Overlay network bring-up failed (socket-timeout, invalid-auth-key, ...)."""
    stage = "tunnel"

    DAEMON_START = "daemon-start"
    SOCKET_TIMEOUT = "socket-timeout"
    INVALID_AUTH_KEY = "invalid-auth-key"
    AUTH_FAILED = "auth-failed"
    STATUS_FAILED = "status-failed"
    ROUTE_TIMEOUT = "route-timeout"
    DNS_OVERRIDE = "dns-override"


class RouteTimeoutError(TunnelError, TimeoutError):
    """No usable peer route appeared before the deadline."""

    def __init__(self, detail: Optional[str] = None):
        super().__init__(TunnelError.ROUTE_TIMEOUT, detail)


class PortTimeoutError(BridgeError, TimeoutError):
    """A TCP endpoint never accepted a connection before the deadline."""
    stage = "port-wait"

    def __init__(self, host: str, port: int, timeout_ms: int):
        self.host = host
        self.port = port
        self.timeout_ms = timeout_ms
        super().__init__(
            "port-timeout",
            f"unable to connect to {host}:{port} after {timeout_ms}ms",
        )


class RelayUnavailableError(BridgeError):
    """SOCKS5 relay refused the connection or never became ready."""
    stage = "relay"
    retryable = True


class PublishError(BridgeError):
    """MQTT session or publish failed."""
    stage = "publish"
    retryable = True

    HANDSHAKE_TIMEOUT = "handshake-timeout"
    AUTH_REJECTED = "auth-rejected"
    CONNECT_REFUSED = "connect-refused"
    TRANSPORT_CLOSED = "transport-closed"
    ACK_TIMEOUT = "ack-timeout"
