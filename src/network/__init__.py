# =============================================================================
# Network Package - Overlay tunnel, relay and port readiness
# =============================================================================

from src.network.ports import PortReadinessWaiter, await_open
from src.network.relay import DirectConnector, Socks5Connector, build_connector
from src.network.tunnel import (
    PeerStatus,
    TunnelClient,
    TunnelController,
    TunnelState,
    apply_dns_override,
    match_peer,
)
from src.network.tailscale import TailscaleClient

__all__ = [
    "PortReadinessWaiter",
    "await_open",
    "DirectConnector",
    "Socks5Connector",
    "build_connector",
    "PeerStatus",
    "TunnelClient",
    "TunnelController",
    "TunnelState",
    "apply_dns_override",
    "match_peer",
    "TailscaleClient",
]
