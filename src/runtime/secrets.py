# =============================================================================
# Secret Resolver - AWS Secrets Manager
# =============================================================================
# Resolves credential references (ARN or name) to their values.
# Secrets created by the CDK construct are stored as {"value": "..."}; any
# other string is returned verbatim. Placeholder values are surfaced as
# warnings, never as errors.
# =============================================================================

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from src.runtime.errors import SecretFetchError

logger = logging.getLogger(__name__)

# One sentinel per credential kind, plus the generic construct default
PLACEHOLDER_VALUES = frozenset({
    "REPLACE_WITH_TAILSCALE_AUTHKEY",
    "REPLACE_WITH_MQTT_USERNAME",
    "REPLACE_WITH_MQTT_PASSWORD",
    "REPLACE_ME",
})


def is_placeholder(value: Optional[str]) -> bool:
    return value in PLACEHOLDER_VALUES


@dataclass(frozen=True)
class Secret:
    """A resolved credential. placeholder=True means configured but not production ready."""
    ref: str
    value: str
    placeholder: bool = False

    def __repr__(self) -> str:
        return f"Secret(ref={self.ref!r}, placeholder={self.placeholder})"


def unwrap_secret_string(secret_string: str) -> str:
    """Return the `value` field of a JSON object secret, else the raw string."""
    try:
        parsed = json.loads(secret_string)
    except (json.JSONDecodeError, TypeError):
        return secret_string
    if isinstance(parsed, dict) and parsed.get("value"):
        return parsed["value"]
    return secret_string


class SecretResolver:
    """
    Fetch secrets from Secrets Manager.

    Holds only the boto3 client (thread-safe), so independent references can
    be resolved concurrently.
    """

    def __init__(self, client: Any):
        self._client = client

    def resolve_secret(self, ref: Optional[str]) -> Optional[Secret]:
        if not ref:
            return None

        logger.info(f"Fetching secret: {ref}")
        try:
            response = self._client.get_secret_value(SecretId=ref)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            raise SecretFetchError(ref, code, f"{ref}: {e}") from e
        except BotoCoreError as e:
            raise SecretFetchError(ref, "store-unreachable", f"{ref}: {e}") from e

        if response.get("SecretString") is not None:
            value = unwrap_secret_string(response["SecretString"])
        elif response.get("SecretBinary") is not None:
            try:
                value = response["SecretBinary"].decode("utf-8")
            except UnicodeDecodeError as e:
                raise SecretFetchError(ref, "undecodable-secret", f"{ref}: {e}") from e
        else:
            raise SecretFetchError(ref, "empty-secret")

        placeholder = is_placeholder(value)
        if placeholder:
            logger.warning(
                f"Secret {ref} holds placeholder value {value}; "
                "configured but not ready for production"
            )
        return Secret(ref=ref, value=value, placeholder=placeholder)

    def resolve(self, ref: Optional[str]) -> Optional[str]:
        """Resolve a reference to its value, or None when ref is empty."""
        secret = self.resolve_secret(ref)
        return secret.value if secret else None

    def resolve_many(self, refs: Iterable[Optional[str]]) -> Dict[str, Optional[str]]:
        """Resolve independent references concurrently. Empty refs are skipped."""
        wanted = [ref for ref in dict.fromkeys(refs) if ref]
        if not wanted:
            return {}
        with ThreadPoolExecutor(max_workers=len(wanted)) as pool:
            values = list(pool.map(self.resolve, wanted))
        return dict(zip(wanted, values))
