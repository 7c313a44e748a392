#!/usr/bin/env python3
"""
Test suite for the invocation driver.

Tests:
- End-to-end direct publish with the exact payload
- Tunnel failures short-circuit before any broker traffic
- Broker port never opening
- Publish retry, exhaustion and Lambda deadline
- Top-level error boundary

Run with: pytest tests/test_handler.py -v
"""
import os
import sys
import json
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ.setdefault("AWS_REGION", "us-east-1")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")

from fakes import FakeTunnelClient


EVENT = {
    "source": "aws.codepipeline",
    "detail-type": "CodePipeline Pipeline Execution State Change",
    "time": "2025-01-01T00:00:00Z",
    "detail": {"pipeline": "Demo", "state": "SUCCEEDED"},
}


class FakePublisher:
    """Publisher double failing with the scripted errors before succeeding."""

    def __init__(self, failures=None, calls=None, always_fail=None):
        self.failures = list(failures or [])
        self.always_fail = always_fail
        self.calls = calls if calls is not None else []
        self.published = []
        self.errors = []

    def publish(self, host, port, topic, payload, credentials=None):
        from src.broker.publisher import PublishReceipt

        self.calls.append("publish")
        self.published.append((host, port, topic, payload, credentials))
        if self.always_fail:
            error = self.always_fail()
            self.errors.append(error)
            raise error
        if self.failures:
            error = self.failures.pop(0)
            self.errors.append(error)
            raise error
        return PublishReceipt(topic=topic, mid=42, size=len(payload), client_id="test")


class FakeWaiter:
    def __init__(self, error=None, calls=None):
        self.error = error
        self.calls = calls if calls is not None else []
        self.waits = []

    def await_open(self, host, port, timeout_ms=15000, interval_ms=500, connect=None):
        self.calls.append("port.wait")
        self.waits.append((host, port, timeout_ms, interval_ms))
        if self.error:
            raise self.error
        return True


class FakeConnector:
    kind = "direct"

    def __init__(self, calls=None):
        self.calls = calls if calls is not None else []

    def ensure_ready(self):
        self.calls.append("relay.ready")

    def connect(self, host, port, timeout=None):
        return MagicMock()

    def describe(self):
        return "fake"


class FakeSecrets:
    def __init__(self, values=None):
        self.values = values or {}
        self.resolved = []

    def resolve(self, ref):
        self.resolved.append(ref)
        return self.values.get(ref)

    def resolve_many(self, refs):
        return {ref: self.resolve(ref) for ref in refs if ref}


def _deps(config=None, publisher=None, waiter=None, secrets=None, tunnel=None, calls=None):
    from src.runtime.config import BridgeConfig
    from src.runtime.deps import Deps

    calls = calls if calls is not None else []
    deps = Deps(config=config or BridgeConfig(broker_host="broker.local", topic="ci/pipelines",
                                              backoff_base_ms=0))
    deps.publisher = publisher or FakePublisher(calls=calls)
    deps.port_waiter = waiter or FakeWaiter(calls=calls)
    deps.connector = FakeConnector(calls=calls)
    deps.secrets = secrets or FakeSecrets()
    deps.tunnel_client = tunnel or FakeTunnelClient(calls=calls)
    return deps


def _tunnel_config(**overrides):
    from src.runtime.config import BridgeConfig

    values = dict(
        broker_host="100.64.0.10",
        topic="ci/pipelines",
        use_tailscale=True,
        use_relay=True,
        tailscale_auth_key_secret_ref="arn:ts",
        backoff_base_ms=0,
    )
    values.update(overrides)
    return BridgeConfig(**values)


# =============================================================================
# TEST: Happy path
# =============================================================================

class TestRunInvocation:
    """Tests for run_invocation."""

    def test_direct_publish_end_to_end(self):
        """No tunnel, broker reachable: one message with the exact body."""
        from src.app.handler import run_invocation

        deps = _deps()
        result = run_invocation(EVENT, deps)

        assert result["statusCode"] == 200
        assert result["subject"] == "Demo"
        assert result["state"] == "SUCCEEDED"
        assert result["mid"] == 42
        assert result["attempts"] == [{"attempt": 1, "outcome": "success", "reason": ""}]

        assert len(deps.publisher.published) == 1
        host, port, topic, payload, credentials = deps.publisher.published[0]
        assert (host, port, topic) == ("broker.local", 1883, "ci/pipelines")
        assert credentials is None
        assert json.loads(payload) == {
            "eventSource": "aws.codepipeline",
            "detailType": "CodePipeline Pipeline Execution State Change",
            "subject": "Demo",
            "state": "SUCCEEDED",
            "time": "2025-01-01T00:00:00Z",
            "raw": EVENT,
        }
        assert deps.port_waiter.waits == [("broker.local", 1883, 15000, 500)]
        assert deps.tunnel_client.started == 0
        print("✓ Direct publish delivered")

    def test_credentials_passed_to_publisher(self):
        from src.app.handler import run_invocation
        from src.broker.publisher import Credentials
        from src.runtime.config import BridgeConfig

        config = BridgeConfig(
            broker_host="broker.local",
            topic="t",
            username_secret_ref="arn:user",
            password_secret_ref="arn:pass",
        )
        deps = _deps(config=config, secrets=FakeSecrets({"arn:user": "u", "arn:pass": "p"}))
        run_invocation(EVENT, deps)

        assert deps.publisher.published[0][4] == Credentials("u", "p")

    def test_tunnel_precedes_broker_wait(self):
        """Tunnel reaches RouteConfirmed before the port wait and publish."""
        from src.app.handler import run_invocation
        from src.network.tunnel import PeerStatus

        calls = []
        peer = PeerStatus(hostname="broker", addresses=["100.64.0.10"], online=True)
        tunnel = FakeTunnelClient(peers_script=[[peer]], calls=calls)
        deps = _deps(
            config=_tunnel_config(),
            secrets=FakeSecrets({"arn:ts": "tskey-auth-abc"}),
            tunnel=tunnel,
            calls=calls,
        )

        run_invocation(EVENT, deps)

        assert tunnel.auth_keys == ["tskey-auth-abc"]
        assert calls.index("tunnel.status") < calls.index("port.wait") < calls.index("publish")


# =============================================================================
# TEST: Failure paths
# =============================================================================

class TestInvocationFailures:
    """Stage failures propagate and stop the pipeline."""

    def test_placeholder_auth_key(self):
        """Placeholder key: invalid-auth-key, no broker traffic."""
        from src.app.handler import run_invocation
        from src.runtime.errors import TunnelError

        deps = _deps(config=_tunnel_config(), secrets=FakeSecrets({"arn:ts": "REPLACE_WITH_TAILSCALE_AUTHKEY"}))

        with pytest.raises(TunnelError) as exc:
            run_invocation(EVENT, deps)

        assert exc.value.reason == "invalid-auth-key"
        assert deps.tunnel_client.auth_keys == []
        assert deps.port_waiter.waits == []
        assert deps.publisher.published == []

    def test_broker_never_reachable(self):
        from src.app.handler import run_invocation
        from src.runtime.errors import PortTimeoutError

        deps = _deps(waiter=FakeWaiter(error=PortTimeoutError("broker.local", 1883, 15000)))

        with pytest.raises(PortTimeoutError):
            run_invocation(EVENT, deps)
        assert deps.publisher.published == []

    def test_config_error_before_any_action(self):
        from src.app.handler import run_invocation
        from src.runtime.config import BridgeConfig
        from src.runtime.errors import ConfigError

        deps = _deps(config=BridgeConfig(broker_host="", topic="t"))
        with pytest.raises(ConfigError):
            run_invocation(EVENT, deps)
        assert deps.port_waiter.waits == []

    def test_fail_once_then_succeed(self):
        """Transient publish failure followed by success."""
        from src.app.handler import run_invocation
        from src.runtime.errors import PublishError

        publisher = FakePublisher(failures=[PublishError(PublishError.TRANSPORT_CLOSED, "reset")])
        deps = _deps(publisher=publisher)

        result = run_invocation(EVENT, deps)

        assert len(publisher.published) == 2
        assert [a["outcome"] for a in result["attempts"]] == ["transient_failure", "success"]

    def test_retries_exhausted(self):
        """Always failing: exactly max_attempts tries, last error re-raised unchanged."""
        from src.app.handler import run_invocation
        from src.runtime.errors import PublishError

        publisher = FakePublisher(always_fail=lambda: PublishError(PublishError.HANDSHAKE_TIMEOUT))
        deps = _deps(publisher=publisher)

        with pytest.raises(PublishError) as exc:
            run_invocation(EVENT, deps)

        assert len(publisher.published) == 3
        assert exc.value is publisher.errors[-1]

    def test_auth_rejected_is_retried(self):
        """Rejected credentials are a publish failure and stay inside the retry loop."""
        from src.app.handler import run_invocation
        from src.runtime.errors import PublishError

        publisher = FakePublisher(always_fail=lambda: PublishError(PublishError.AUTH_REJECTED))
        with pytest.raises(PublishError):
            run_invocation(EVENT, _deps(publisher=publisher))
        assert len(publisher.published) == 3

    def test_lambda_deadline_limits_attempts(self):
        """Remaining time too short for the next backoff: stop early."""
        from src.app.handler import run_invocation
        from src.runtime.config import BridgeConfig
        from src.runtime.errors import PublishError

        publisher = FakePublisher(always_fail=lambda: PublishError(PublishError.TRANSPORT_CLOSED))
        deps = _deps(
            config=BridgeConfig(broker_host="broker.local", topic="t", backoff_base_ms=2000),
            publisher=publisher,
        )
        context = MagicMock()
        context.get_remaining_time_in_millis.return_value = 3000  # 1000ms after the safety margin

        with pytest.raises(PublishError):
            run_invocation(EVENT, deps, context)
        assert len(publisher.published) == 1


# =============================================================================
# TEST: Tunnel bring-up retry
# =============================================================================

class TestTunnelBringUpRetry:
    """TAILSCALE_BRINGUP_ATTEMPTS re-runs the whole bring-up on timeouts only."""

    def test_route_timeout_then_success(self):
        """First bring-up times out waiting for peers; a fresh controller succeeds."""
        from src.app.handler import bring_up_tunnel
        from src.network.tunnel import PeerStatus, TunnelState

        peer = PeerStatus(hostname="broker", addresses=["100.64.0.10"], online=True)
        tunnel = FakeTunnelClient(peers_script=[[], [peer]])
        config = _tunnel_config(tunnel_bringup_attempts=2, route_timeout_ms=0)
        deps = _deps(config=config, secrets=FakeSecrets({"arn:ts": "tskey-auth-abc"}), tunnel=tunnel)

        controller = bring_up_tunnel(deps, config)

        assert controller.state == TunnelState.ROUTE_CONFIRMED
        assert tunnel.auth_keys == ["tskey-auth-abc", "tskey-auth-abc"]
        assert tunnel.status_polls == 2

    def test_route_timeout_exhausts_attempts(self):
        from src.app.handler import bring_up_tunnel
        from src.runtime.errors import RouteTimeoutError

        tunnel = FakeTunnelClient(peers_script=[[]])
        config = _tunnel_config(tunnel_bringup_attempts=3, route_timeout_ms=0)
        deps = _deps(config=config, secrets=FakeSecrets({"arn:ts": "tskey-auth-abc"}), tunnel=tunnel)

        with pytest.raises(RouteTimeoutError):
            bring_up_tunnel(deps, config)
        assert len(tunnel.auth_keys) == 3

    def test_invalid_auth_key_never_retried(self):
        """Placeholder key with several attempts configured: exactly one attempt."""
        from src.app.handler import run_invocation
        from src.runtime.errors import TunnelError

        secrets = FakeSecrets({"arn:ts": "REPLACE_WITH_TAILSCALE_AUTHKEY"})
        deps = _deps(config=_tunnel_config(tunnel_bringup_attempts=3), secrets=secrets)

        with pytest.raises(TunnelError) as exc:
            run_invocation(EVENT, deps)

        assert exc.value.reason == "invalid-auth-key"
        assert secrets.resolved == ["arn:ts"]
        assert deps.tunnel_client.auth_keys == []
        assert deps.port_waiter.waits == []


# =============================================================================
# TEST: Entry point
# =============================================================================

class TestLambdaHandler:
    """Tests for lambda_handler."""

    def test_success(self):
        from src.app.handler import lambda_handler

        deps = _deps()
        with patch("src.app.handler.get_deps", return_value=deps):
            result = lambda_handler(EVENT, None)
        assert result["statusCode"] == 200

    def test_failure_logged_with_stage(self, caplog):
        from src.app.handler import lambda_handler
        from src.runtime.config import BridgeConfig
        from src.runtime.errors import ConfigError

        deps = _deps(config=BridgeConfig(broker_host="broker.local", topic=""))
        with patch("src.app.handler.get_deps", return_value=deps):
            with caplog.at_level("ERROR"):
                with pytest.raises(ConfigError):
                    lambda_handler(EVENT, None)

        assert any("stage=config" in r.getMessage() for r in caplog.records)

    def test_unexpected_error_is_reraised(self):
        from src.app.handler import lambda_handler

        deps = _deps()
        with patch("src.app.handler.get_deps", return_value=deps):
            with pytest.raises(TypeError):
                lambda_handler(["not", "an", "object"], None)


# =============================================================================
# TEST: Deps
# =============================================================================

class TestDeps:
    """Tests for the dependency container."""

    def test_lazy_collaborators_follow_config(self):
        from src.broker.publisher import MqttPublisher
        from src.network.relay import Socks5Connector
        from src.runtime.deps import create_deps

        deps = create_deps(_tunnel_config(relay_port=1080, mqtt_connect_timeout_ms=4000))

        assert isinstance(deps.connector, Socks5Connector)
        assert deps.connector.relay_port == 1080
        assert isinstance(deps.publisher, MqttPublisher)
        assert deps.publisher.connector is deps.connector
        assert deps.publisher.connect_timeout_s == 4.0
        assert deps.tunnel_client.socks5_server == "localhost:1080"

    def test_get_deps_rebuilds_on_config_change(self, monkeypatch):
        from src.runtime import deps as deps_module

        monkeypatch.setattr(deps_module, "_global_deps", None)
        monkeypatch.setenv("MQTT_BROKER_HOST", "a.local")
        monkeypatch.setenv("MQTT_TOPIC", "t")
        first = deps_module.get_deps()
        assert deps_module.get_deps() is first

        monkeypatch.setenv("MQTT_BROKER_HOST", "b.local")
        second = deps_module.get_deps()
        assert second is not first
        assert second.config.broker_host == "b.local"
