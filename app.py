# =============================================================================
# Lambda Entry Point
# =============================================================================
# Handler: app.lambda_handler
# =============================================================================

from src.app.handler import lambda_handler

__all__ = ["lambda_handler"]
