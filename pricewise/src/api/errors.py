from __future__ import annotations

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from pricewise.src.contracts.errors import (
    InvalidAlertThreshold,
    InvalidRefreshRequest,
    PricewiseError,
    StorageUnavailable,
)

logger = structlog.get_logger(__name__)

_STATUS_BY_ERROR: dict[type[PricewiseError], int] = {
    InvalidRefreshRequest: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidAlertThreshold: status.HTTP_422_UNPROCESSABLE_ENTITY,
    StorageUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def pricewise_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in _STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            status_code = code
            break

    if status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=str(exc))
        detail = "Price storage unavailable" if isinstance(exc, StorageUnavailable) else "Internal error"
    else:
        logger.info("request_rejected", path=request.url.path, error=str(exc))
        detail = str(exc)

    return JSONResponse(status_code=status_code, content={"detail": detail})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PricewiseError, pricewise_error_handler)
