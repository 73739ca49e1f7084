"""
Route registration module for the RDPForge server.
"""

from fastapi import FastAPI

from backend.api import download, install, notifications
from backend.utils.verbosity_logger import get_logger

logger = get_logger("backend.startup.routes")


def register_routes(app: FastAPI):
    """
    Register all API routes with the FastAPI application.

    The install routes and notification socket live under /api; the download
    route is served from the root because installer scripts fetch it directly.
    """
    app.include_router(install.router, prefix="/api")
    app.include_router(notifications.router, prefix="/api")
    app.include_router(download.router)
    logger.info("API routes registered")


def register_app_routes(app: FastAPI):
    """Register basic application routes."""

    @app.get("/")
    async def root():
        """This function provides the HTTP response to calls to the root path of the service."""
        return {"message": "Hello World"}

    @app.get("/health")
    async def health_check():
        """Health check endpoint for monitoring and testing."""
        return {"status": "healthy"}
