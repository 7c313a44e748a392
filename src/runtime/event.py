# =============================================================================
# Pipeline Events - Inbound EventBridge Event & Outbound MQTT Payload
# =============================================================================
# CodePipeline state-change events arrive from EventBridge and are normalized
# into an InboundEvent. Exactly one OutboundPayload is derived per invocation.
# =============================================================================

import copy
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"


def iso_now() -> str:
    """Current UTC time, millisecond precision, 'Z' suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def jdump(x: Any) -> str:
    """JSON dump with defaults for non-serializable types."""
    return json.dumps(x, ensure_ascii=False, default=str)


def _field(container: Dict[str, Any], key: str) -> Any:
    value = container.get(key)
    return UNKNOWN if value is None else value


@dataclass(frozen=True)
class InboundEvent:
    """
    Pipeline execution state-change event.

    Attributes:
        source: Event source (e.g. aws.codepipeline)
        detail_type: EventBridge detail-type
        subject: Pipeline name (detail.pipeline)
        state: Execution state (detail.state)
        time: Event time, ISO-8601
        raw: Original unmodified event
    """
    source: Any
    detail_type: Any
    subject: Any
    state: Any
    time: Any
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_eventbridge(cls, event: Dict[str, Any]) -> "InboundEvent":
        """Normalize an EventBridge event; absent fields become 'unknown'."""
        if not isinstance(event, dict):
            raise TypeError(f"event must be a JSON object, got {type(event).__name__}")

        if "detail-type" not in event or "source" not in event:
            logger.warning(f"Event is missing EventBridge fields, keys: {list(event.keys())}")

        detail = event.get("detail")
        if not isinstance(detail, dict):
            detail = {}

        time = event.get("time")
        return cls(
            source=_field(event, "source"),
            detail_type=_field(event, "detail-type"),
            subject=_field(detail, "pipeline"),
            state=_field(detail, "state"),
            time=time if time is not None else iso_now(),
            raw=copy.deepcopy(event),
        )

    def to_payload(self) -> "OutboundPayload":
        return OutboundPayload(
            event_source=self.source,
            detail_type=self.detail_type,
            subject=self.subject,
            state=self.state,
            time=self.time,
            raw=self.raw,
        )


@dataclass(frozen=True)
class OutboundPayload:
    """MQTT message body derived from an InboundEvent."""
    event_source: Any
    detail_type: Any
    subject: Any
    state: Any
    time: Any
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventSource": self.event_source,
            "detailType": self.detail_type,
            "subject": self.subject,
            "state": self.state,
            "time": self.time,
            "raw": self.raw,
        }

    def to_json(self) -> str:
        return jdump(self.to_dict())

    def to_bytes(self) -> bytes:
        return self.to_json().encode("utf-8")


def build_payload(event: Dict[str, Any]) -> OutboundPayload:
    """Build the outbound payload for a raw EventBridge event."""
    return InboundEvent.from_eventbridge(event).to_payload()
