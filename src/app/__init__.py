# =============================================================================
# Application Entry Points
# =============================================================================
# Lambda handler for EventBridge pipeline events.
# =============================================================================

from src.app.handler import lambda_handler, run_invocation

__all__ = [
    "lambda_handler",
    "run_invocation",
]
