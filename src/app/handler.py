# =============================================================================
# Pipeline Notifier Handler
# =============================================================================
# Entry point for EventBridge CodePipeline state-change events.
#
#   validate config -> [tunnel up + route] -> broker port wait
#   -> credentials -> retry { connect -> publish } -> result
#
# Any failure is logged with its stage and re-raised so the invocation fails
# and the invoking platform retries it.
# =============================================================================

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

from src.broker.publisher import Credentials
from src.network.tunnel import TunnelController
from src.runtime.config import BridgeConfig
from src.runtime.deps import Deps, get_deps
from src.runtime.errors import BridgeError
from src.runtime.event import InboundEvent, jdump
from src.runtime.retry import RetryOrchestrator, is_retryable_tunnel_error

logging.getLogger().setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

# Time kept back from the Lambda deadline for logging and teardown
DEADLINE_SAFETY_MARGIN_MS = 2000


def _resolve_credentials(deps: Deps, config: BridgeConfig) -> Optional[Credentials]:
    values = deps.secrets.resolve_many([config.username_secret_ref, config.password_secret_ref])
    credentials = Credentials(
        username=values.get(config.username_secret_ref),
        password=values.get(config.password_secret_ref),
    )
    return credentials or None


def bring_up_tunnel(deps: Deps, config: BridgeConfig) -> TunnelController:
    """Bring the overlay to RouteConfirmed, retrying the whole bring-up if configured."""

    def attempt() -> TunnelController:
        controller = TunnelController(
            client=deps.tunnel_client,
            secrets=deps.secrets,
            auth_key_ref=config.tailscale_auth_key_secret_ref,
            broker_host=config.broker_host,
            socket_timeout_ms=config.socket_timeout_ms,
            route_timeout_ms=config.route_timeout_ms,
            dns_server=config.dns_server,
            resolv_conf_path=config.resolv_conf_path,
        )
        controller.bring_up()
        return controller

    return RetryOrchestrator(
        max_attempts=config.tunnel_bringup_attempts,
        base_delay_ms=config.backoff_base_ms,
        is_retryable=is_retryable_tunnel_error,
        name="tunnel",
    ).run(attempt)


def wait_for_broker(deps: Deps, config: BridgeConfig) -> None:
    """Block until the broker port accepts connections, through the relay when enabled."""
    connector = deps.connector
    logger.info(f"Waiting for broker {config.broker_uri} to be reachable ({connector.describe()})...")
    connector.ensure_ready()
    deps.port_waiter.await_open(
        config.broker_host,
        config.broker_port,
        timeout_ms=config.port_wait_timeout_ms,
        interval_ms=config.port_wait_interval_ms,
        connect=connector.connect,
    )


def _remaining_ms(context: Any) -> Optional[int]:
    get_remaining = getattr(context, "get_remaining_time_in_millis", None)
    if get_remaining is None:
        return None
    return max(0, get_remaining() - DEADLINE_SAFETY_MARGIN_MS)


def run_invocation(event: Dict[str, Any], deps: Deps, context: Any = None) -> Dict[str, Any]:
    """
    Deliver one pipeline event to the MQTT broker.

    Args:
        event: EventBridge event
        deps: Dependency container (config, secrets, tunnel, connector, publisher)
        context: Lambda context, used for the overall deadline

    Returns:
        Invocation summary
    """
    config = deps.config.validate()
    inbound = InboundEvent.from_eventbridge(event)
    body = inbound.to_payload().to_bytes()

    logger.info(f"Using broker URI: {config.broker_uri}, topic: {config.topic}")

    with ThreadPoolExecutor(max_workers=1) as pool:
        # Credentials do not depend on the tunnel; fetch them while it comes up
        credentials_future = pool.submit(_resolve_credentials, deps, config) if config.auth_enabled else None

        if config.use_tailscale:
            bring_up_tunnel(deps, config)
        wait_for_broker(deps, config)

        credentials = credentials_future.result() if credentials_future else None

    orchestrator = RetryOrchestrator(
        max_attempts=config.max_attempts,
        base_delay_ms=config.backoff_base_ms,
        deadline_ms=_remaining_ms(context),
    )
    receipt = orchestrator.run(lambda: deps.publisher.publish(
        config.broker_host, config.broker_port, config.topic, body, credentials,
    ))

    logger.info(f"Published {inbound.state} for pipeline {inbound.subject} to topic {config.topic}")
    return {
        "statusCode": 200,
        "topic": config.topic,
        "subject": inbound.subject,
        "state": inbound.state,
        "mid": receipt.mid,
        "attempts": [a.to_dict() for a in orchestrator.attempts],
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Lambda entry point and top-level error boundary."""
    logger.info("RAW_EVENT=%s", jdump(event))
    try:
        return run_invocation(event, get_deps(), context)
    except BridgeError as e:
        logger.error(f"Invocation failed stage={e.stage} reason={e}")
        raise
    except Exception as e:
        logger.exception(f"Invocation failed stage=unhandled reason={e}")
        raise
