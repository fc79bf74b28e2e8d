"""Exception handlers that render every failure as a response envelope.

Routes raise ``HTTPException`` like any FastAPI app; the handlers here turn
it into ``{"success": false, "error": ...}`` so mobile clients only ever
see one response shape.
"""

import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base class for domain errors raised below the route layer."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND


class OwnershipConflict(ServiceError):
    """A device, push token or subscription is already bound to another user."""

    status_code = status.HTTP_409_CONFLICT


class InvalidState(ServiceError):
    status_code = status.HTTP_409_CONFLICT


def error_response(status_code: int, message: str, **extra) -> JSONResponse:
    body = {"success": False, "error": message}
    body.update(extra)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
    response = error_response(exc.status_code, detail)
    if getattr(exc, "headers", None):
        response.headers.update(exc.headers)
    return response


async def _validation_exception_handler(request: Request, exc: RequestValidationError):
    return error_response(
        status.HTTP_400_BAD_REQUEST,
        "Invalid request data",
        details=[
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ],
    )


async def _service_error_handler(request: Request, exc: ServiceError):
    return error_response(exc.status_code, exc.message)


async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error"
    )


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(HTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(ServiceError, _service_error_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)
