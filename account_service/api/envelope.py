"""Uniform success/error envelope and the exception handlers that feed it."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..domain.errors import ErrorKind, Messages, ServiceError

logger = logging.getLogger(__name__)


class Envelope(BaseModel):
    """Shape of every response body."""

    status: bool
    message: str
    data: Any | None = None
    errors: list[str] | None = None
    retry_after: int | None = None


def _render(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", by_alias=True)
    return jsonable_encoder(data)


def success(data: Any = None, message: str = "Success", status_code: int = status.HTTP_200_OK) -> JSONResponse:
    envelope = Envelope(status=True, message=message, data=None if data is None else _render(data))
    return JSONResponse(status_code=status_code, content=envelope.model_dump(exclude_none=True))


def failure(error: ServiceError, headers: dict[str, str] | None = None) -> JSONResponse:
    envelope = Envelope(status=False, message=error.message, errors=list(error.details) or None)
    response_headers = dict(headers or {})
    if error.kind is ErrorKind.RATE_LIMITED and error.retry_after is not None:
        envelope.retry_after = error.retry_after
        response_headers["Retry-After"] = str(error.retry_after)
    return JSONResponse(
        status_code=error.status_code,
        content=envelope.model_dump(exclude_none=True),
        headers=response_headers or None,
    )


_HTTP_MESSAGES = {
    status.HTTP_404_NOT_FOUND: Messages.NOT_FOUND,
    status.HTTP_405_METHOD_NOT_ALLOWED: Messages.METHOD_NOT_ALLOWED,
}


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = _HTTP_MESSAGES.get(exc.status_code) or str(exc.detail) or Messages.BAD_REQUEST
    return JSONResponse(
        status_code=exc.status_code,
        content={"status": False, "message": message},
        headers=getattr(exc, "headers", None),
    )


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part not in ("body", "query"))
        details.append(f"{location}: {error.get('msg', 'invalid')}" if location else error.get("msg", "invalid"))
    return failure(ServiceError.validation(details))


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return failure(ServiceError.internal())


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)
