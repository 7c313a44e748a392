# =============================================================================
# Bridge Configuration
# =============================================================================
# Immutable per-invocation configuration read from the Lambda environment.
# Constructed once by from_env(); validate() fails fast before any network
# action.
# =============================================================================

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from src.runtime.errors import ConfigError

DEFAULT_MQTT_PORT = 1883
DEFAULT_RELAY_HOST = "localhost"
DEFAULT_RELAY_PORT = 1055


# =============================================================================
# ENVIRONMENT HELPERS
# =============================================================================
def _get_env(env: Mapping[str, str], key: str, default: str = "") -> str:
    return (env.get(key) or default).strip()


def _get_env_bool(env: Mapping[str, str], key: str, default: bool = False) -> bool:
    return _get_env(env, key, str(default)).lower() == "true"


def _get_env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = _get_env(env, key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError("invalid-integer", f"{key}={raw!r}")


def _get_env_optional(env: Mapping[str, str], key: str) -> Optional[str]:
    return _get_env(env, key) or None


@dataclass(frozen=True)
class BridgeConfig:
    """
    Notifier configuration.

    Attributes:
        broker_host: MQTT broker host (required)
        topic: MQTT topic to publish on (required)
        broker_port: MQTT broker port
        dns_server: Optional resolver IP written after the tunnel is routed
        use_tailscale: Bring up the Tailscale overlay before publishing
        use_relay: Route broker traffic through the local SOCKS5 relay
        *_secret_ref: Secrets Manager ARNs/names, resolved lazily
        *_ms: Per-stage deadlines and intervals
        max_attempts / backoff_base_ms: Publish retry policy
        tunnel_bringup_attempts: How many times the whole tunnel bring-up runs
    """
    broker_host: str
    topic: str
    broker_port: int = DEFAULT_MQTT_PORT
    dns_server: Optional[str] = None
    use_tailscale: bool = False
    use_relay: bool = False
    relay_host: str = DEFAULT_RELAY_HOST
    relay_port: int = DEFAULT_RELAY_PORT
    username_secret_ref: Optional[str] = None
    password_secret_ref: Optional[str] = None
    tailscale_auth_key_secret_ref: Optional[str] = None
    port_wait_timeout_ms: int = 15000
    port_wait_interval_ms: int = 500
    relay_wait_timeout_ms: int = 10000
    socket_timeout_ms: int = 10000
    route_timeout_ms: int = 20000
    mqtt_connect_timeout_ms: int = 10000
    mqtt_ack_timeout_ms: int = 10000
    max_attempts: int = 3
    backoff_base_ms: int = 2000
    tunnel_bringup_attempts: int = 1
    tailscale_root: str = "/tmp/tailscale"
    tailscale_bin_dir: str = "/var/task"
    tailscale_hostname: str = "mqtt-lambda"
    resolv_conf_path: str = "/etc/resolv.conf"
    client_id_prefix: str = "mqtt-notifier"
    region: str = "us-east-1"

    @property
    def auth_enabled(self) -> bool:
        """True when broker credentials are configured."""
        return bool(self.username_secret_ref or self.password_secret_ref)

    @property
    def broker_uri(self) -> str:
        return f"mqtt://{self.broker_host}:{self.broker_port}"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = None) -> "BridgeConfig":
        """Build configuration from environment variables (os.environ by default)."""
        env = os.environ if environ is None else environ
        use_tailscale = _get_env_bool(env, "USE_TAILSCALE")
        return cls(
            broker_host=_get_env(env, "MQTT_BROKER_HOST"),
            topic=_get_env(env, "MQTT_TOPIC"),
            broker_port=_get_env_int(env, "MQTT_PORT", DEFAULT_MQTT_PORT),
            dns_server=_get_env_optional(env, "MQTT_DNS_SERVER"),
            use_tailscale=use_tailscale,
            use_relay=_get_env_bool(env, "USE_SOCKS_RELAY", use_tailscale),
            relay_host=_get_env(env, "SOCKS_RELAY_HOST", DEFAULT_RELAY_HOST),
            relay_port=_get_env_int(env, "SOCKS_RELAY_PORT", DEFAULT_RELAY_PORT),
            username_secret_ref=_get_env_optional(env, "MQTT_USERNAME_SECRET_ARN"),
            password_secret_ref=_get_env_optional(env, "MQTT_PASSWORD_SECRET_ARN"),
            tailscale_auth_key_secret_ref=_get_env_optional(env, "TAILSCALE_AUTH_KEY_SECRET_ARN"),
            port_wait_timeout_ms=_get_env_int(env, "PORT_WAIT_TIMEOUT_MS", 15000),
            port_wait_interval_ms=_get_env_int(env, "PORT_WAIT_INTERVAL_MS", 500),
            relay_wait_timeout_ms=_get_env_int(env, "RELAY_WAIT_TIMEOUT_MS", 10000),
            socket_timeout_ms=_get_env_int(env, "TAILSCALE_SOCKET_TIMEOUT_MS", 10000),
            route_timeout_ms=_get_env_int(env, "TAILSCALE_ROUTE_TIMEOUT_MS", 20000),
            mqtt_connect_timeout_ms=_get_env_int(env, "MQTT_CONNECT_TIMEOUT_MS", 10000),
            mqtt_ack_timeout_ms=_get_env_int(env, "MQTT_ACK_TIMEOUT_MS", 10000),
            max_attempts=_get_env_int(env, "PUBLISH_MAX_ATTEMPTS", 3),
            backoff_base_ms=_get_env_int(env, "PUBLISH_BACKOFF_BASE_MS", 2000),
            tunnel_bringup_attempts=_get_env_int(env, "TAILSCALE_BRINGUP_ATTEMPTS", 1),
            tailscale_root=_get_env(env, "TAILSCALE_ROOT", "/tmp/tailscale"),
            tailscale_bin_dir=_get_env(env, "TAILSCALE_BIN_DIR", "/var/task"),
            tailscale_hostname=_get_env(env, "TAILSCALE_HOSTNAME", "mqtt-lambda"),
            resolv_conf_path=_get_env(env, "RESOLV_CONF_PATH", "/etc/resolv.conf"),
            client_id_prefix=_get_env(env, "MQTT_CLIENT_ID_PREFIX", "mqtt-notifier"),
            region=_get_env(env, "AWS_REGION", "us-east-1"),
        )

    def validate(self) -> "BridgeConfig":
        """Raise ConfigError unless the configuration can drive a publish."""
        if not self.broker_host:
            raise ConfigError("missing-field", "MQTT_BROKER_HOST must be set")
        if not self.topic:
            raise ConfigError("missing-field", "MQTT_TOPIC must be set")
        if self.use_tailscale and not self.tailscale_auth_key_secret_ref:
            raise ConfigError(
                "missing-field",
                "TAILSCALE_AUTH_KEY_SECRET_ARN must be set when USE_TAILSCALE=true",
            )
        if not 0 < self.broker_port < 65536:
            raise ConfigError("invalid-port", f"MQTT_PORT={self.broker_port}")
        if self.max_attempts < 1:
            raise ConfigError("invalid-attempts", f"PUBLISH_MAX_ATTEMPTS={self.max_attempts}")
        if self.tunnel_bringup_attempts < 1:
            raise ConfigError(
                "invalid-attempts",
                f"TAILSCALE_BRINGUP_ATTEMPTS={self.tunnel_bringup_attempts}",
            )
        return self
