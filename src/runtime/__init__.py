# =============================================================================
# Runtime Package - Configuration, events, secrets and retry policy
# =============================================================================
# The dependency container lives in src.runtime.deps and is imported from
# there directly; it pulls in the network and broker packages.
# =============================================================================

from src.runtime.config import BridgeConfig
from src.runtime.errors import (
    BridgeError,
    ConfigError,
    PortTimeoutError,
    PublishError,
    RelayUnavailableError,
    RouteTimeoutError,
    SecretFetchError,
    TunnelError,
)
from src.runtime.event import InboundEvent, OutboundPayload, build_payload
from src.runtime.retry import PublishAttempt, RetryOrchestrator, calculate_retry_delay
from src.runtime.secrets import Secret, SecretResolver

__all__ = [
    "BridgeConfig",
    "BridgeError",
    "ConfigError",
    "PortTimeoutError",
    "PublishError",
    "RelayUnavailableError",
    "RouteTimeoutError",
    "SecretFetchError",
    "TunnelError",
    "InboundEvent",
    "OutboundPayload",
    "build_payload",
    "PublishAttempt",
    "RetryOrchestrator",
    "calculate_retry_delay",
    "Secret",
    "SecretResolver",
]
