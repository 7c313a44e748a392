# =============================================================================
# Broker Package - MQTT session & publish
# =============================================================================

from src.broker.publisher import Credentials, MqttPublisher, PublishReceipt, RelayedClient

__all__ = [
    "Credentials",
    "MqttPublisher",
    "PublishReceipt",
    "RelayedClient",
]
