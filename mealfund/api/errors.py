"""
Map core errors to HTTP responses.
"""

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from mealfund.errors import (
    AlreadyLocked,
    AlreadyReleased,
    BlockedByDispute,
    DuplicateVerification,
    EscrowCoreError,
    InvalidDeliveryState,
    InvalidTransition,
    NotFound,
    NotLocked,
    SettlementRailError,
    ValidationError,
)

logger = structlog.get_logger(__name__)

STATUS_BY_ERROR = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (InvalidDeliveryState, status.HTTP_409_CONFLICT),
    (DuplicateVerification, status.HTTP_409_CONFLICT),
    (NotLocked, status.HTTP_409_CONFLICT),
    (BlockedByDispute, status.HTTP_423_LOCKED),
    (SettlementRailError, status.HTTP_502_BAD_GATEWAY),
]


def status_for(error: EscrowCoreError) -> int:
    for kind, code in STATUS_BY_ERROR:
        if isinstance(error, kind):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def core_error_handler(request: Request, exc: EscrowCoreError) -> JSONResponse:
    code = status_for(exc)
    body = {"error_code": exc.error_code, "detail": exc.message}
    if isinstance(exc, BlockedByDispute):
        body["issue_ids"] = exc.issue_ids
    if isinstance(exc, SettlementRailError):
        body["ambiguous"] = exc.ambiguous

    log = logger.error if code >= 500 else logger.info
    log("request_failed", path=request.url.path, status=code, error_code=exc.error_code, error=exc.message)
    return JSONResponse(status_code=code, content=body)


async def existing_escrow_handler(request: Request, exc: EscrowCoreError) -> JSONResponse:
    """Repeat lock/release: 200 with the record that already exists."""
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={
            "error_code": exc.error_code,
            "detail": exc.message,
            "escrow": exc.escrow.model_dump(mode="json"),
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AlreadyLocked, existing_escrow_handler)
    app.add_exception_handler(AlreadyReleased, existing_escrow_handler)
    app.add_exception_handler(EscrowCoreError, core_error_handler)
