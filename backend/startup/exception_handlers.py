"""
Exception handlers module for the RDPForge server.

Every error response is JSON ``{"detail": ...}`` and carries CORS headers for
allowed origins. Database failures surface as 503 so dashboards can retry.
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from backend.utils.verbosity_logger import get_logger, sanitize_log

logger = get_logger("backend.startup.exceptions")


def _with_cors(response: JSONResponse, request: Request, origins: list) -> JSONResponse:
    request_origin = request.headers.get("origin")
    if request_origin and request_origin in origins:
        response.headers["Access-Control-Allow-Origin"] = request_origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Expose-Headers"] = "Authorization"
    return response


def register_exception_handlers(app: FastAPI, origins: list):
    """
    Register exception handlers for the FastAPI application.

    Args:
        app: The FastAPI application instance
        origins: List of allowed CORS origins
    """

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTP exceptions and ensure CORS headers are included."""
        logger.warning(
            "HTTP Exception occurred - Status: %s, Detail: %s, Path: %s",
            exc.status_code,
            sanitize_log(exc.detail),
            sanitize_log(request.url.path),
        )
        response = JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )
        return _with_cors(response, request, origins)

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        """The install store is unreachable or rejected a statement."""
        logger.error(
            "Database error - Path: %s, Exception type: %s, Exception: %s",
            sanitize_log(request.url.path),
            type(exc).__name__,
            exc,
        )
        response = JSONResponse(
            status_code=503,
            content={"detail": "Service temporarily unavailable, please retry"},
        )
        return _with_cors(response, request, origins)

    @app.exception_handler(500)
    async def internal_server_error_handler(request: Request, exc: Exception):
        """Handle internal server errors and ensure CORS headers are included."""
        logger.error(
            "Internal Server Error occurred - Path: %s, Exception: %s",
            sanitize_log(request.url.path),
            exc,
            exc_info=True,
        )
        response = JSONResponse(
            status_code=500, content={"detail": "Internal server error"}
        )
        return _with_cors(response, request, origins)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle any unhandled exceptions."""
        logger.error(
            "Unhandled Exception occurred - Path: %s, Exception type: %s, Exception: %s",
            sanitize_log(request.url.path),
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        response = JSONResponse(
            status_code=500, content={"detail": "An unexpected error occurred"}
        )
        return _with_cors(response, request, origins)

    logger.info("Exception handlers registered")
