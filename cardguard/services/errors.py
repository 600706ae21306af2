"""
CardGuard — Error Handling & Exception Classes

Centralised exception handling with proper HTTP status codes and
safe error messages (avoids information leakage).
"""

import logging
from typing import Any, Dict, Optional

from fastapi import status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger("cardguard.errors")


# ===========================================================================
# Custom Exceptions (domain-specific)
# ===========================================================================
class CardGuardException(Exception):
    """Base exception for all CardGuard errors."""
    pass


class CardValidationError(CardGuardException):
    """Missing or invalid caller input. Nothing was mutated."""
    pass


class UnknownActionError(CardValidationError):
    """Action identifier is not one of the recognised actions."""

    def __init__(self, action: str):
        super().__init__(f"unknown action: {action!r}")
        self.action = action


class CardNotFoundError(CardGuardException):
    """Card has never been referenced."""
    pass


class StoreError(CardGuardException):
    """Card store errors."""
    pass


class StoreCorruptionError(StoreError):
    """Persisted card data could not be parsed. Never auto-repaired."""
    pass


# ===========================================================================
# HTTP Error Response Factory
# ===========================================================================
class ErrorResponse:
    """Standardised error response format."""

    def __init__(
        self,
        error_code: str,
        message: str,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ):
        self.error_code = error_code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.request_id = request_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "request_id": self.request_id,
            },
            **({"details": self.details} if self.details else {}),
        }

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


# ===========================================================================
# Exception to HTTP Response Mapping
# ===========================================================================
def exception_to_response(
    exc: Exception,
    request_id: Optional[str] = None,
) -> tuple[JSONResponse, str]:
    """
    Convert an exception to an HTTP response.

    Parameters
    ----------
    exc : Exception
        The exception to handle
    request_id : str
        Request ID for tracking

    Returns
    -------
    response : JSONResponse
    log_level : str
        Logging level (error, warning, info)
    """

    # Request body failed schema validation (missing cardNumber / action, bad ts)
    if isinstance(exc, RequestValidationError):
        return ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Input validation failed",
            status_code=422,
            details={"errors": [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
                for err in exc.errors()
            ]},
            request_id=request_id,
        ).to_response(), "warning"

    if isinstance(exc, UnknownActionError):
        return ErrorResponse(
            error_code="UNKNOWN_ACTION",
            message="unknown action",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"action": exc.action},
            request_id=request_id,
        ).to_response(), "warning"

    if isinstance(exc, CardValidationError):
        return ErrorResponse(
            error_code="VALIDATION_ERROR",
            message=str(exc),
            status_code=status.HTTP_400_BAD_REQUEST,
            request_id=request_id,
        ).to_response(), "warning"

    if isinstance(exc, CardNotFoundError):
        return ErrorResponse(
            error_code="CARD_NOT_FOUND",
            message="Card not found",
            status_code=status.HTTP_404_NOT_FOUND,
            request_id=request_id,
        ).to_response(), "info"

    # Store corruption is fatal; surface it, never repair
    if isinstance(exc, StoreCorruptionError):
        logger.error("StoreCorruptionError: %s", exc)
        return ErrorResponse(
            error_code="STORE_CORRUPTED",
            message="Card store data is unreadable",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            request_id=request_id,
        ).to_response(), "error"

    if isinstance(exc, StoreError):
        logger.error("StoreError: %s", exc)
        return ErrorResponse(
            error_code="STORE_ERROR",
            message="Card store operation failed",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            request_id=request_id,
        ).to_response(), "error"

    # Generic error (never expose full traceback to client)
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return ErrorResponse(
        error_code="INTERNAL_ERROR",
        message="An internal error occurred. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        request_id=request_id,
    ).to_response(), "error"
