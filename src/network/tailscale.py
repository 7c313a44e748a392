# =============================================================================
# Tailscale Client
# =============================================================================
# TunnelClient backed by the tailscaled / tailscale binaries shipped in the
# Lambda image. tailscaled runs in userspace-networking mode with a SOCKS5
# server on localhost:1055; state lives under /tmp so warm containers reuse it.
# =============================================================================

import json
import logging
import os
import stat
import subprocess
from typing import Any, Dict, List, Optional

from src.network.tunnel import PeerStatus
from src.runtime.config import BridgeConfig
from src.runtime.errors import TunnelError

logger = logging.getLogger(__name__)

UP_TIMEOUT_S = 30
STATUS_TIMEOUT_S = 5


def parse_status(status: Dict[str, Any]) -> List[PeerStatus]:
    """Convert `tailscale status --json` output into PeerStatus entries."""
    peers = []
    for peer in (status.get("Peer") or {}).values():
        peers.append(PeerStatus(
            hostname=peer.get("HostName") or peer.get("DNSName") or "unknown",
            addresses=list(peer.get("TailscaleIPs") or []),
            routes=list(peer.get("PrimaryRoutes") or []),
            online=bool(peer.get("Online")),
        ))
    return peers


class TailscaleClient:
    """Drives tailscaled through its CLI and control socket."""

    def __init__(
        self,
        root: str = "/tmp/tailscale",
        bin_dir: str = "/var/task",
        hostname: str = "mqtt-lambda",
        socks5_server: str = "localhost:1055",
    ):
        self.root = root
        self.bin_dir = bin_dir
        self.hostname = hostname
        self.socks5_server = socks5_server
        self._process: Optional[subprocess.Popen] = None

    @classmethod
    def from_config(cls, config: BridgeConfig) -> "TailscaleClient":
        return cls(
            root=config.tailscale_root,
            bin_dir=config.tailscale_bin_dir,
            hostname=config.tailscale_hostname,
            socks5_server=f"{config.relay_host}:{config.relay_port}",
        )

    @property
    def socket_path(self) -> str:
        return os.path.join(self.root, "tailscaled.sock")

    def _cli(self, *args: str) -> List[str]:
        return [os.path.join(self.bin_dir, "tailscale"), f"--socket={self.socket_path}", *args]

    def start(self) -> None:
        os.makedirs(self.root, exist_ok=True)
        cmd = [
            os.path.join(self.bin_dir, "tailscaled"),
            "--tun=userspace-networking",
            f"--socks5-server={self.socks5_server}",
            f"--state={os.path.join(self.root, 'tailscaled.state')}",
            f"--statedir={self.root}",
            f"--socket={self.socket_path}",
        ]
        logger.info(f"Starting tailscaled: {' '.join(cmd)}")
        try:
            self._process = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.STDOUT)
        except OSError as e:
            raise TunnelError(TunnelError.DAEMON_START, str(e)) from e

    def is_socket_ready(self) -> bool:
        try:
            return stat.S_ISSOCK(os.stat(self.socket_path).st_mode)
        except FileNotFoundError:
            return False

    def authenticate(self, auth_key: str) -> None:
        cmd = self._cli("up", f"--auth-key={auth_key}", f"--hostname={self.hostname}", "--accept-routes")
        logger.info("Running tailscale up...")
        try:
            subprocess.run(cmd, check=True, capture_output=True, text=True, timeout=UP_TIMEOUT_S)
        except subprocess.CalledProcessError as e:
            raise TunnelError(TunnelError.AUTH_FAILED, (e.stderr or "").strip() or f"exit {e.returncode}") from e
        except subprocess.TimeoutExpired as e:
            raise TunnelError(TunnelError.AUTH_FAILED, f"tailscale up timed out after {UP_TIMEOUT_S}s") from e
        except OSError as e:
            raise TunnelError(TunnelError.AUTH_FAILED, f"cannot run tailscale: {e}") from e

    def get_peer_status(self) -> List[PeerStatus]:
        try:
            result = subprocess.run(
                self._cli("status", "--json"),
                check=True, capture_output=True, text=True, timeout=STATUS_TIMEOUT_S,
            )
            return parse_status(json.loads(result.stdout))
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, json.JSONDecodeError) as e:
            # tailscaled answers with errors while it is still logging in
            logger.warning(f"tailscale status unavailable: {e}")
            return []
        except OSError as e:
            raise TunnelError(TunnelError.STATUS_FAILED, f"cannot run tailscale: {e}") from e

    def stop(self) -> None:
        if self._process is None or self._process.poll() is not None:
            return
        logger.info("Stopping tailscaled")
        self._process.terminate()
        try:
            self._process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            self._process.kill()
        self._process = None
