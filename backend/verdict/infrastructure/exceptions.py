"""
Exception taxonomy and global exception handling for the Verdict API.

Two families live here:

* ResolutionError and its subclasses classify what went wrong while
  adjudicating an insight. Source-level failures are recoverable (retry or
  fall back to the next provider); AllSourcesExhausted is a terminal
  classification that the price resolver turns into an INVALID outcome.
* VerdictException and its subclasses are HTTP-facing and are rendered as
  structured JSON error responses, never as stack traces.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

logger = structlog.get_logger(__name__)


# ============================================
# RESOLUTION TAXONOMY
# ============================================

class ResolutionError(Exception):
    """Base class for errors raised while resolving an insight."""

    error_class = "ResolutionError"

    def __init__(self, message: str, *, source: Optional[str] = None):
        self.message = message
        self.source = source
        super().__init__(message)


class SourceError(ResolutionError):
    """A market-data provider call failed."""

    error_class = "SourceError"


class SourceUnavailable(SourceError):
    """Network or HTTP-level failure talking to a provider."""

    error_class = "SourceUnavailable"

    def __init__(
        self,
        message: str,
        *,
        source: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, source=source)
        self.status_code = status_code


class CircuitOpenError(SourceUnavailable):
    """Raised without any network attempt while a circuit breaker is open."""

    error_class = "CircuitOpen"

    def __init__(self, circuit_name: str, state: str):
        super().__init__(
            f"Circuit breaker '{circuit_name}' is {state}",
            source=circuit_name,
        )
        self.circuit_name = circuit_name
        self.state = state


class SourceTimeout(SourceError):
    """Provider did not answer within the per-call timeout."""

    error_class = "SourceTimeout"


class MalformedQuote(SourceError):
    """Provider answered but the payload could not be turned into a quote."""

    error_class = "MalformedQuote"


class UnsupportedAsset(MalformedQuote):
    """Asset or quote currency is not served by the provider."""

    error_class = "UnsupportedAsset"


class UnparsableReference(ResolutionError):
    """The insight's canonical statement / resolver reference is unusable."""

    error_class = "UnparsableReference"


class AllSourcesExhausted(ResolutionError):
    """Every configured provider failed. Terminal: maps to INVALID."""

    error_class = "AllSourcesExhausted"

    def __init__(self, failures: List[SourceError]):
        self.failures = failures
        summary = "; ".join(
            f"{f.source or 'unknown'}: {f.error_class}" for f in failures
        ) or "no sources configured"
        super().__init__(f"All price sources exhausted ({summary})")

    def describe(self) -> List[Dict[str, Any]]:
        return [
            {
                "source": f.source,
                "error_class": f.error_class,
                "message": f.message,
            }
            for f in self.failures
        ]


class AlreadyResolvedError(ResolutionError):
    """The insight left OPEN/COMMITTED before the outcome could be written."""

    error_class = "AlreadyResolved"

    def __init__(self, insight_id: str):
        super().__init__(f"Insight {insight_id} is already resolved")
        self.insight_id = insight_id


# ============================================
# HTTP-FACING EXCEPTIONS
# ============================================

class VerdictException(Exception):
    """Base exception for Verdict application errors."""
    def __init__(self, message: str, status_code: int = 500, details: dict = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class NotConfiguredError(VerdictException):
    """Raised when a required setting (e.g. the operator credential) is missing."""
    def __init__(self, what: str):
        super().__init__(
            message=f"Resolution system not configured: {what}",
            status_code=503,
            details={"missing": what},
        )


class ResolutionDisabledError(VerdictException):
    """Raised when a trigger arrives while resolution is switched off."""
    def __init__(self):
        super().__init__(
            message="Price resolution is disabled",
            status_code=503,
        )


class InsightNotFoundError(VerdictException):
    def __init__(self, insight_id: str):
        super().__init__(
            message=f"Insight {insight_id} not found",
            status_code=404,
            details={"insight_id": insight_id},
        )


class InsightConflictError(VerdictException):
    def __init__(self, insight_id: str):
        super().__init__(
            message=f"Insight {insight_id} is already resolved",
            status_code=409,
            details={"insight_id": insight_id},
        )


class InvalidConfirmationError(VerdictException):
    def __init__(self, message: str, details: dict = None):
        super().__init__(message=message, status_code=400, details=details)


def _error_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _verdict_exception_handler(request: Request, exc: VerdictException) -> JSONResponse:
    """Handle Verdict application exceptions."""
    error_id = _error_id()

    logger.warning(
        "verdict_exception",
        error_id=error_id,
        error_type=type(exc).__name__,
        message=exc.message,
        path=request.url.path,
        method=request.method,
        details=exc.details,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.message,
                "type": type(exc).__name__,
                "error_id": error_id,
                "details": exc.details,
                "timestamp": _timestamp(),
            }
        },
    )


async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unhandled exceptions."""
    error_id = _error_id()

    logger.error(
        "unhandled_exception",
        error_id=error_id,
        error_type=type(exc).__name__,
        error_message=str(exc),
        path=request.url.path,
        method=request.method,
        exc_info=exc,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "message": "Internal server error",
                "type": "InternalServerError",
                "error_id": error_id,
                "timestamp": _timestamp(),
            }
        },
    )


async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors with structured detail."""
    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=exc.errors(),
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": {
                "message": "Validation error",
                "type": "ValidationError",
                "details": [
                    {"loc": list(e.get("loc", [])), "msg": e.get("msg"), "type": e.get("type")}
                    for e in exc.errors()
                ],
                "timestamp": _timestamp(),
            }
        },
    )


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions with consistent format."""
    return JSONResponse(
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
        content={
            "error": {
                "message": exc.detail,
                "type": "HTTPException",
                "status_code": exc.status_code,
                "timestamp": _timestamp(),
            }
        },
    )


def register_exception_handlers(app: FastAPI):
    """Register all exception handlers with the FastAPI app."""
    app.add_exception_handler(VerdictException, _verdict_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(Exception, _global_exception_handler)
    logger.info("exception_handlers_registered")
