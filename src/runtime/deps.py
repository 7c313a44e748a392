# =============================================================================
# Dependency Injection Container
# =============================================================================
# Provides lazy-loaded AWS clients and the notifier's collaborators.
# The invocation driver receives Deps instead of building its own; tests
# override any attribute with a double.
# =============================================================================

import logging
from dataclasses import dataclass, field
from functools import cached_property
from typing import Optional

import boto3
from botocore.config import Config

from src.broker.publisher import MqttPublisher
from src.network.ports import PortReadinessWaiter
from src.network.relay import build_connector
from src.network.tailscale import TailscaleClient
from src.runtime.config import BridgeConfig
from src.runtime.secrets import SecretResolver

logger = logging.getLogger(__name__)


@dataclass
class Deps:
    """
    Dependency injection container for one configuration.

    All clients are lazy-loaded on first access.

    Usage:
        deps = create_deps()
        deps.secrets.resolve(deps.config.username_secret_ref)
        deps.publisher.publish(host, port, topic, payload)
    """
    config: BridgeConfig = field(default_factory=BridgeConfig.from_env)

    # ==========================================================================
    # AWS Clients (lazy-loaded)
    # ==========================================================================

    @cached_property
    def secretsmanager(self):
        """Secrets Manager client."""
        return boto3.client(
            "secretsmanager",
            region_name=self.config.region,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )

    # ==========================================================================
    # Collaborators
    # ==========================================================================

    @cached_property
    def secrets(self) -> SecretResolver:
        return SecretResolver(self.secretsmanager)

    @cached_property
    def port_waiter(self) -> PortReadinessWaiter:
        return PortReadinessWaiter()

    @cached_property
    def tunnel_client(self) -> TailscaleClient:
        """Tailscale daemon wrapper; shared across warm invocations via get_deps()."""
        return TailscaleClient.from_config(self.config)

    @cached_property
    def connector(self):
        """Direct or SOCKS5 connector, chosen by config.use_relay."""
        return build_connector(self.config, waiter=self.port_waiter)

    @cached_property
    def publisher(self) -> MqttPublisher:
        return MqttPublisher(
            self.connector,
            connect_timeout_s=self.config.mqtt_connect_timeout_ms / 1000.0,
            ack_timeout_s=self.config.mqtt_ack_timeout_ms / 1000.0,
            client_id_prefix=self.config.client_id_prefix,
        )


def create_deps(config: BridgeConfig = None) -> Deps:
    """Create a new Deps instance."""
    return Deps(config=config or BridgeConfig.from_env())


# Global deps instance, kept across warm Lambda invocations
_global_deps: Optional[Deps] = None


def get_deps() -> Deps:
    """
    Get or create the global Deps instance.

    Rebuilt when the environment-derived configuration changes, so a warm
    container never publishes with stale settings.
    """
    global _global_deps
    config = BridgeConfig.from_env()
    if _global_deps is None or _global_deps.config != config:
        _global_deps = create_deps(config)
    return _global_deps
