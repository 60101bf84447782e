import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from library_service.config import settings
from library_service.errors import LibraryError

logger = logging.getLogger(__name__)

_GENERIC_MESSAGE = "An unexpected error occurred. Please try again later."

_HTTP_ERROR_CODES = {
    status.HTTP_401_UNAUTHORIZED: "Unauthorized",
    status.HTTP_403_FORBIDDEN: "Forbidden",
    status.HTTP_404_NOT_FOUND: "NotFound",
}


def _payload(error: str, details: str) -> dict:
    return {"error": error, "details": details}


async def library_error_handler(request: Request, exc: LibraryError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.details)
        details = exc.details if settings.is_development else _GENERIC_MESSAGE
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.error, exc.details)
        details = exc.details
    return JSONResponse(status_code=exc.status_code, content=_payload(exc.error, details))


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    error = _HTTP_ERROR_CODES.get(exc.status_code, "HttpError")
    return JSONResponse(
        status_code=exc.status_code,
        content=_payload(error, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_payload("ValidationError", details),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    details = f"{type(exc).__name__}: {exc}" if settings.is_development else _GENERIC_MESSAGE
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_payload("InternalError", details),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LibraryError, library_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
