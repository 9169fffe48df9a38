"""Global error handlers ensuring request_id is included in JSON responses."""

from __future__ import annotations

import logging

import asyncpg
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.request_id import get_request_id
from app.moderation.domain.errors import ModerationError

logger = logging.getLogger(__name__)

# Store outages surface as a retryable 503 instead of a bare 500.
INFRA_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    RedisError,
    OSError,
    TimeoutError,
)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        payload = {"detail": exc.detail, "request_id": get_request_id(request)}
        return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        payload = {
            "detail": "validation_error",
            "errors": jsonable_encoder(exc.errors()),
            "request_id": get_request_id(request),
        }
        return JSONResponse(status_code=422, content=payload)

    @app.exception_handler(ModerationError)
    async def moderation_exc_handler(request: Request, exc: ModerationError):  # type: ignore[override]
        payload = exc.to_payload()
        payload["request_id"] = get_request_id(request)
        return JSONResponse(status_code=exc.status_code, content=payload)

    async def infra_exc_handler(request: Request, exc: Exception):
        logger.error(
            "moderation store unavailable",
            exc_info=exc,
            extra={"path": request.url.path, "error_type": type(exc).__name__},
        )
        payload = {"detail": "internal_error", "retryable": True, "request_id": get_request_id(request)}
        return JSONResponse(status_code=503, content=payload)

    for error_type in INFRA_ERRORS:
        app.add_exception_handler(error_type, infra_exc_handler)
