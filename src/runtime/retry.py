# =============================================================================
# Publish Retry Logic
# =============================================================================
# Bounded, sequential retry loop around one end-to-end publish attempt.
#
# - Linear backoff: base_delay * k after failed attempt k
# - Optional overall deadline (e.g. Lambda remaining time)
# - Final error is re-raised unchanged
# - Every attempt is recorded for logging and the invocation result
# =============================================================================

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, TypeVar

from src.runtime.errors import BridgeError, TunnelError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# =============================================================================
# RETRY CONFIGURATION
# =============================================================================
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_MS = 2000

# Tunnel failures that a fresh bring-up can recover from
RETRYABLE_TUNNEL_REASONS = (TunnelError.SOCKET_TIMEOUT, TunnelError.ROUTE_TIMEOUT)


class AttemptOutcome:
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    FATAL_FAILURE = "fatal_failure"


@dataclass
class PublishAttempt:
    """One try of the retry loop."""
    index: int
    outcome: str
    reason: str = ""

    def to_dict(self):
        return {"attempt": self.index, "outcome": self.outcome, "reason": self.reason}


def calculate_retry_delay(attempt: int, base_delay_ms: int = DEFAULT_BASE_DELAY_MS) -> int:
    """Delay after failed attempt `attempt` (1-based), in ms.

    Example delays with base=2000ms:
    - after attempt 1: 2000ms
    - after attempt 2: 4000ms
    """
    return base_delay_ms * attempt


def is_retryable_error(error: BaseException) -> bool:
    """Relay and publish failures are retryable; config, secret and tunnel failures are not.

    Errors from outside the taxonomy (socket errors, library errors) are
    treated as transient.
    """
    if isinstance(error, BridgeError):
        return error.retryable
    return isinstance(error, Exception)


def is_retryable_tunnel_error(error: BaseException) -> bool:
    return isinstance(error, TunnelError) and error.reason in RETRYABLE_TUNNEL_REASONS


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__


class RetryOrchestrator:
    """Run an attempt function until it succeeds or attempts are exhausted."""

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        deadline_ms: Optional[int] = None,
        is_retryable: Callable[[BaseException], bool] = is_retryable_error,
        sleep: Callable[[float], Any] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        name: str = "publish",
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.deadline_ms = deadline_ms
        self.is_retryable = is_retryable
        self.name = name
        self._sleep = sleep
        self._clock = clock
        self.attempts: List[PublishAttempt] = []

    def run(self, attempt_fn: Callable[[], T]) -> T:
        started = self._clock()
        self.attempts = []

        for k in range(1, self.max_attempts + 1):
            logger.info(f"[{self.name}] attempt {k}/{self.max_attempts}")
            try:
                result = attempt_fn()
            except Exception as e:
                retryable = self.is_retryable(e)
                self.attempts.append(PublishAttempt(
                    index=k,
                    outcome=AttemptOutcome.TRANSIENT_FAILURE if retryable else AttemptOutcome.FATAL_FAILURE,
                    reason=_describe(e),
                ))

                if not retryable:
                    logger.error(f"[{self.name}] attempt {k} failed permanently: {_describe(e)}")
                    raise
                if k >= self.max_attempts:
                    logger.error(f"[{self.name}] retries exhausted after {k} attempts: {_describe(e)}")
                    raise

                delay_ms = calculate_retry_delay(k, self.base_delay_ms)
                if self.deadline_ms is not None:
                    elapsed_ms = (self._clock() - started) * 1000
                    if elapsed_ms + delay_ms >= self.deadline_ms:
                        logger.error(
                            f"[{self.name}] deadline of {self.deadline_ms}ms leaves no room "
                            f"for attempt {k + 1}: {_describe(e)}"
                        )
                        raise

                logger.warning(f"[{self.name}] attempt {k} failed, retrying in {delay_ms}ms: {_describe(e)}")
                self._sleep(delay_ms / 1000.0)
                continue

            self.attempts.append(PublishAttempt(index=k, outcome=AttemptOutcome.SUCCESS))
            if k > 1:
                logger.info(f"[{self.name}] succeeded on attempt {k}")
            return result

        # Unreachable: the loop either returns or raises
        raise RuntimeError("retry loop exited without result")
