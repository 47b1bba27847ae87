"""Error mapping for the HTTP layer.

Domain errors from ``keepsake.errors`` are turned into responses by
exception handlers; anything else is caught by the middleware and reported
as a generic 500.
"""

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from keepsake.errors import EventValidationError, FieldError, NotFoundError, StorageError
from keepsake.middleware.logging import redact_pii

logger = logging.getLogger(__name__)

STORAGE_ERROR_DETAIL = "A temporary storage error occurred. Please try again."


async def validation_error_handler(request: Request, exc: EventValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "detail": "Validation failed",
            "errors": [e.as_dict() for e in exc.errors],
        },
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append(FieldError(".".join(loc) or "request", err.get("msg", "Invalid value").removeprefix("Value error, ")))
    return await validation_error_handler(request, EventValidationError(errors))


async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": "Event not found"})


async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error(
        "Storage failure during %s: %s",
        exc.operation,
        redact_pii(str(exc.__cause__ or exc)),
    )
    return JSONResponse(
        status_code=503,
        content={"detail": STORAGE_ERROR_DETAIL},
        headers={"Retry-After": "5"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EventValidationError, validation_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(StorageError, storage_error_handler)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch unhandled exceptions and return safe error responses."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            logger.error(
                "Unhandled exception on %s %s: %s\n%s",
                request.method,
                redact_pii(request.url.path),
                redact_pii(str(exc)),
                redact_pii(traceback.format_exc()),
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "An internal error occurred. Please try again later."},
            )
