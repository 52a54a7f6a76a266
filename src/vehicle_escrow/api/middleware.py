"""FastAPI middleware for request tracing, error handling, and CORS.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware — injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware — catches domain exceptions -> structured JSON errors
    3. CORSMiddleware — handles browser-based marketplace clients
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from vehicle_escrow.domain.exceptions import (
    AlreadyFundedError,
    AmountMismatchError,
    DuplicateActiveRequestError,
    ForbiddenError,
    FundingReferenceConflictError,
    InvalidEscrowStateError,
    InvalidPriceError,
    InvalidTransitionError,
    MarketplaceError,
    PurchaseRequestNotFoundError,
    SelfPurchaseError,
    TransferFailedError,
    VerificationAttemptsExhaustedError,
    VerificationUnavailableError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)

ERROR_STATUS_CODES: dict[type[MarketplaceError], int] = {
    PurchaseRequestNotFoundError: 404,
    ForbiddenError: 403,
    InvalidTransitionError: 409,
    DuplicateActiveRequestError: 409,
    AlreadyFundedError: 409,
    FundingReferenceConflictError: 409,
    VerificationAttemptsExhaustedError: 409,
    InvalidPriceError: 422,
    SelfPurchaseError: 422,
    AmountMismatchError: 422,
    InvalidEscrowStateError: 500,
    TransferFailedError: 502,
    VerificationUnavailableError: 503,
}


def error_response(exc: MarketplaceError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(type(exc), 400)
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "message": exc.message},
    )


# ---------------------------------------------------------------------------
# 1. Request ID Middleware
# ---------------------------------------------------------------------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Inject a unique X-Request-ID into every request for log correlation."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# 2. Error Handler Middleware
# ---------------------------------------------------------------------------
class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch domain exceptions and return structured JSON error responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except PurchaseRequestNotFoundError as exc:
            logger.warning("purchase.not_found", error=exc.message)
            return error_response(exc)
        except InvalidTransitionError as exc:
            logger.warning(
                "state_machine.invalid_transition",
                current=exc.current_status,
                attempted=exc.attempted_event,
            )
            return error_response(exc)
        except InvalidEscrowStateError as exc:
            # Invariant violation, never a caller mistake.
            logger.error("escrow.invariant_violated", error=exc.message, escrow_status=exc.current)
            return error_response(exc)
        except (TransferFailedError, VerificationUnavailableError) as exc:
            logger.error("collaborator.failed", error=exc.message, code=exc.code)
            return error_response(exc)
        except MarketplaceError as exc:
            logger.warning("domain.error", error=exc.message, code=exc.code)
            return error_response(exc)
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc))
            return JSONResponse(
                status_code=500,
                content={
                    "error": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                },
            )


# ---------------------------------------------------------------------------
# Setup function
# ---------------------------------------------------------------------------
def setup_middleware(app: FastAPI) -> None:
    """Register all middleware on the FastAPI application.

    Order matters — middleware is applied bottom-up, so the last added
    middleware runs first.
    """
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(ErrorHandlerMiddleware)

    app.add_middleware(RequestIDMiddleware)
