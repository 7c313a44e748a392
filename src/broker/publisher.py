# =============================================================================
# MQTT Publisher
# =============================================================================
# One session per call: connect (optionally with username/password), publish
# a single QoS 1 message, wait for PUBACK, disconnect. The socket is opened
# through the configured RelayConnector, so the same code path serves direct
# and SOCKS5-relayed brokers.
# =============================================================================

import logging
import socket
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import paho.mqtt.client as mqtt

from src.runtime.errors import PublishError

logger = logging.getLogger(__name__)

QOS_AT_LEAST_ONCE = 1
DEFAULT_KEEPALIVE_S = 30

# CONNACK reason codes that mean the credentials were refused
AUTH_REJECTED_CODES = (134, 135)  # Bad user name or password, Not authorized


@dataclass(frozen=True)
class Credentials:
    username: Optional[str] = None
    password: Optional[str] = None

    def __bool__(self) -> bool:
        return bool(self.username or self.password)

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password=***)"


@dataclass
class PublishReceipt:
    topic: str
    mid: int
    size: int
    client_id: str


class RelayedClient(mqtt.Client):
    """
    paho client whose TCP socket comes from a RelayConnector.

    Overrides paho's private _create_socket_connection hook (paho-mqtt 2.x);
    the dependency is pinned below 3 for that reason.
    """

    def __init__(self, connector: Any, client_id: str):
        super().__init__(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=mqtt.MQTTv311,
            clean_session=True,
        )
        self._connector = connector

    def _create_socket_connection(self):
        return self._connector.connect(self._host, self._port, self._connect_timeout)


def _reason_value(reason_code: Any) -> int:
    return getattr(reason_code, "value", reason_code)


class MqttPublisher:
    """
    Publish exactly one message per call.

    Raises PublishError with reason handshake-timeout, auth-rejected,
    connect-refused, transport-closed or ack-timeout. Never retries; the
    caller decides.
    """

    def __init__(
        self,
        connector: Any,
        connect_timeout_s: float = 10.0,
        ack_timeout_s: float = 10.0,
        keepalive_s: int = DEFAULT_KEEPALIVE_S,
        client_id_prefix: str = "mqtt-notifier",
        client_factory: Callable[[Any, str], Any] = None,
    ):
        self.connector = connector
        self.connect_timeout_s = connect_timeout_s
        self.ack_timeout_s = ack_timeout_s
        self.keepalive_s = keepalive_s
        self.client_id_prefix = client_id_prefix
        self._client_factory = client_factory or RelayedClient

    def publish(
        self,
        host: str,
        port: int,
        topic: str,
        payload: bytes,
        credentials: Optional[Credentials] = None,
    ) -> PublishReceipt:
        client_id = f"{self.client_id_prefix}-{uuid.uuid4().hex[:8]}"
        client = self._client_factory(self.connector, client_id)

        connected = threading.Event()
        session: Dict[str, Any] = {}

        def on_connect(client, userdata, flags, reason_code, properties=None):
            session["connack"] = reason_code
            connected.set()

        def on_disconnect(client, userdata, flags, reason_code, properties=None):
            session.setdefault("disconnect", reason_code)
            connected.set()

        client.on_connect = on_connect
        client.on_disconnect = on_disconnect
        client.connect_timeout = self.connect_timeout_s
        if credentials:
            client.username_pw_set(credentials.username, credentials.password)

        logger.info(f"Connecting to mqtt://{host}:{port} as {client_id}")
        try:
            try:
                client.connect(host, port, keepalive=self.keepalive_s)
            except (socket.timeout, TimeoutError) as e:
                raise PublishError(
                    PublishError.HANDSHAKE_TIMEOUT,
                    f"connect to {host}:{port} timed out after {self.connect_timeout_s}s: {e}",
                ) from e
            except OSError as e:
                raise PublishError(PublishError.TRANSPORT_CLOSED, f"connect to {host}:{port} failed: {e}") from e
            client.loop_start()

            if not connected.wait(self.connect_timeout_s):
                raise PublishError(
                    PublishError.HANDSHAKE_TIMEOUT,
                    f"no CONNACK from {host}:{port} within {self.connect_timeout_s}s",
                )

            connack = session.get("connack")
            if connack is None:
                raise PublishError(
                    PublishError.TRANSPORT_CLOSED,
                    f"connection closed before CONNACK ({session.get('disconnect')})",
                )
            code = _reason_value(connack)
            if code in AUTH_REJECTED_CODES:
                raise PublishError(PublishError.AUTH_REJECTED, str(connack))
            if code >= 128:
                raise PublishError(PublishError.CONNECT_REFUSED, str(connack))
            logger.info("Connected to MQTT broker")

            info = client.publish(topic, payload, qos=QOS_AT_LEAST_ONCE)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise PublishError(PublishError.TRANSPORT_CLOSED, mqtt.error_string(info.rc))
            try:
                info.wait_for_publish(timeout=self.ack_timeout_s)
            except (RuntimeError, ValueError) as e:
                raise PublishError(PublishError.TRANSPORT_CLOSED, str(e)) from e
            if not info.is_published():
                raise PublishError(
                    PublishError.ACK_TIMEOUT,
                    f"no PUBACK for mid={info.mid} within {self.ack_timeout_s}s",
                )

            logger.info(f"Published {len(payload)} bytes to topic {topic} (mid={info.mid})")
            return PublishReceipt(topic=topic, mid=info.mid, size=len(payload), client_id=client_id)
        finally:
            client.disconnect()
            client.loop_stop()
