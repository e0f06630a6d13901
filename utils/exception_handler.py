"""
Exception Handler Module
Provides the monetization error taxonomy and the API error-rendering decorator
"""

import logging
import functools
from typing import Any, Callable, Optional

from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class MonetizationError(Exception):
    """Base class for errors surfaced to API callers"""

    status_code = 500
    error_kind = "InternalError"

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_response(self) -> JSONResponse:
        body = {"success": False, "error": self.error_kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return JSONResponse(status_code=self.status_code, content=body)


class ValidationError(MonetizationError):
    """Custom validation error for input validation failures"""
    status_code = 400
    error_kind = "ValidationError"


class InvalidAmount(ValidationError):
    """Malformed, negative, non-finite or unknown-currency amount"""
    error_kind = "InvalidAmount"


class NotFound(MonetizationError):
    status_code = 404
    error_kind = "NotFound"


class OwnerMissing(MonetizationError):
    status_code = 400
    error_kind = "OwnerMissing"


class OwnerPayoutMissing(MonetizationError):
    status_code = 400
    error_kind = "OwnerPayoutMissing"


class InsufficientBalance(MonetizationError):
    status_code = 400
    error_kind = "InsufficientBalance"


class InvalidStateTransition(MonetizationError):
    status_code = 400
    error_kind = "InvalidStateTransition"


class GatewayTimeout(MonetizationError):
    status_code = 502
    error_kind = "GatewayTimeout"


class GatewayFailure(MonetizationError):
    status_code = 502
    error_kind = "GatewayFailure"


class SideEffectFailure(MonetizationError):
    """Database or email failure after a terminal gateway outcome; the reconciler retries"""
    status_code = 500
    error_kind = "SideEffectFailure"


def render_unexpected_error(func_name: str, error: Exception) -> JSONResponse:
    logger.error(f"❌ API_ERROR: Unhandled error in {func_name}: {type(error).__name__}: {error}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "InternalError", "message": "Internal server error"},
    )


def safe_api_handler(func: Callable) -> Callable:
    """
    Decorator for API handler functions.
    Renders MonetizationError subclasses with their status code and hides
    everything else behind a logged 500.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> Any:
        try:
            return await func(*args, **kwargs)
        except MonetizationError as e:
            level = logging.ERROR if e.status_code >= 500 else logging.WARNING
            logger.log(level, f"⚠️ API_{e.error_kind.upper()}: {func.__name__}: {e.message}")
            return e.to_response()
        except Exception as e:
            return render_unexpected_error(func.__name__, e)

    return wrapper


def error_message(error: Optional[BaseException]) -> Optional[str]:
    """Short, storable description of an error (fits failure_reason columns)"""
    if error is None:
        return None
    text = getattr(error, "message", None) or str(error) or type(error).__name__
    return text[:500]
