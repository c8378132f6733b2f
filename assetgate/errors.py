import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

NEGATIVE_CACHE_CONTROL = "no-store, must-revalidate"


class AssetError(Exception):
    """Error translated to a JSON ``{"error": ...}`` response at the boundary."""

    status_code = 500

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra


class BadRequest(AssetError):
    status_code = 400


class Unauthorized(AssetError):
    status_code = 401


class NotFound(AssetError):
    status_code = 404


class RateLimited(AssetError):
    status_code = 429


class Internal(AssetError):
    status_code = 500


def error_response(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        {"error": message, **extra},
        status_code=status_code,
        headers={"Cache-Control": NEGATIVE_CACHE_CONTROL},
    )


async def asset_error_handler(request: Request, exc: AssetError) -> JSONResponse:
    return error_response(exc.status_code, exc.message, **exc.extra)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("request validation failed: path=%s errors=%s", request.url.path, len(exc.errors()))
    return error_response(400, "Invalid parameters")


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled error: method=%s path=%s request_id=%s",
        request.method,
        request.url.path,
        getattr(request.state, "request_id", None),
    )
    return error_response(500, "Internal Server Error")


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AssetError, asset_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
