"""Exception handlers mapping service errors to HTTP responses."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from tuneportal.api.cookies import clear_auth_cookies
from tuneportal.services.errors import ServiceError, SessionNotFoundError

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers for the service error taxonomy and store failures."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                f"{type(exc).__name__} on {request.method} {request.url.path}",
                exc_info=exc.__cause__ or exc,
            )
        else:
            logger.info(
                f"{type(exc).__name__} ({exc.status_code}) on {request.method} {request.url.path}"
            )

        response = JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, **exc.extra},
            headers=exc.headers,
        )
        if isinstance(exc, SessionNotFoundError):
            clear_auth_cookies(response)
        return response

    @app.exception_handler(SQLAlchemyError)
    async def handle_store_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error(
            f"Database error on {request.method} {request.url.path}: {exc}", exc_info=exc
        )
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
