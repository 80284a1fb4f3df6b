"""HTTP middleware: correlation ids, the error contract, and CORS.

Every error leaves the service as ``{"error", "message", "details"}``. The
status code follows the exception family:

    NotFoundError                     404
    RaceLostError                     409 (details name the winner)
    InvalidStateTransitionError       409
    DistributionNotApprovedError      409
    NotEligibleError                  403
    SignatureInvalidError             400 (never retried by clients)
    ValidationError                   400
    GatewayTimeoutError               504 (Retry-After; retrying is safe)
    GatewayError                      502
    anything else                     500
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from marketplace_escrow.config import get_settings
from marketplace_escrow.domain.exceptions import (
    DistributionNotApprovedError,
    GatewayError,
    GatewayTimeoutError,
    InvalidStateTransitionError,
    MarketplaceError,
    NotEligibleError,
    NotFoundError,
    RaceLostError,
    SignatureInvalidError,
    ValidationError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)

GATEWAY_RETRY_AFTER_SECONDS = "5"

# Checked in order; subclasses come before their bases.
_STATUS_BY_ERROR: tuple[tuple[type[MarketplaceError], int], ...] = (
    (NotFoundError, 404),
    (RaceLostError, 409),
    (InvalidStateTransitionError, 409),
    (DistributionNotApprovedError, 409),
    (NotEligibleError, 403),
    (SignatureInvalidError, 400),
    (ValidationError, 400),
    (GatewayTimeoutError, 504),
    (GatewayError, 502),
)


def error_status(exc: MarketplaceError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 400


def error_body(exc: MarketplaceError) -> dict:
    return {"error": exc.code, "message": exc.message, "details": exc.details}


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind request_id (and the calling actor, when known) to every log line."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        actor_id = request.headers.get("X-Actor-Id")
        if actor_id:
            structlog.contextvars.bind_contextvars(actor_id=actor_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Translate domain exceptions into the JSON error contract."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except MarketplaceError as exc:
            status_code = error_status(exc)
            if status_code >= 500:
                logger.error("request.gateway_failed", code=exc.code, details=exc.details)
            elif isinstance(exc, RaceLostError):
                # Contention is an expected outcome, not a fault.
                logger.info("request.race_lost", code=exc.code, details=exc.details)
            else:
                logger.warning("request.rejected", code=exc.code, error=exc.message)
            response = JSONResponse(status_code=status_code, content=error_body(exc))
            if isinstance(exc, GatewayTimeoutError):
                response.headers["Retry-After"] = GATEWAY_RETRY_AFTER_SECONDS
            return response
        except Exception as exc:
            logger.exception("request.unhandled_error", error=str(exc))
            return JSONResponse(
                status_code=500,
                content={
                    "error": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                    "details": {},
                },
            )


def setup_middleware(app: FastAPI) -> None:
    """Register middleware; the last one added is the outermost."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_settings().cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestContextMiddleware)
