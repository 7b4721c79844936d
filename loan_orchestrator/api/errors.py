"""Translate domain exceptions into HTTP responses"""

import logging
from typing import Dict, Type

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from loan_orchestrator.domain.exceptions import (
    ConflictError,
    DefaultNotDueError,
    DisbursementFailedError,
    DomainException,
    DownstreamError,
    NotFoundError,
    RequestMismatchError,
    AuthorizationMismatchError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Most specific class first
STATUS_BY_EXCEPTION: Dict[Type[DomainException], int] = {
    NotFoundError: 404,
    AuthorizationMismatchError: 403,
    RequestMismatchError: 409,
    DefaultNotDueError: 409,
    ConflictError: 409,
    ValidationError: 422,
    DisbursementFailedError: 502,
    DownstreamError: 503,
}


def status_for(exc: DomainException) -> int:
    for exc_type, status_code in STATUS_BY_EXCEPTION.items():
        if isinstance(exc, exc_type):
            return status_code
    return 500


async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
    status_code = status_for(exc)
    request_id = getattr(request.state, "request_id", "unknown")
    if status_code >= 500:
        logger.error(f"{exc.code}: {exc}", extra={"request_id": request_id, "path": request.url.path})
    else:
        logger.info(f"{exc.code}: {exc}", extra={"request_id": request_id, "path": request.url.path})
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "detail": str(exc), "request_id": request_id},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainException, domain_exception_handler)
