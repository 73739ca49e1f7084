"""
Application lifecycle management module for the RDPForge server.

This module provides the FastAPI lifespan context manager that builds the
install service, resumes monitoring of unfinished installs on startup and
cancels every monitoring task on shutdown.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from backend.services.install_service import build_install_service
from backend.utils.verbosity_logger import get_logger

logger = get_logger("backend.startup.lifecycle")


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """
    Application lifespan manager to handle startup and shutdown events.
    """
    logger.info("=== FASTAPI LIFESPAN STARTUP BEGIN ===")
    install_service = getattr(fastapi_app.state, "install_service", None)

    try:
        if install_service is None:
            install_service = build_install_service()
            fastapi_app.state.install_service = install_service

        logger.info("=== INSTALL MONITOR RESUME ===")
        if install_service.monitor is not None:
            resumed = await install_service.monitor.resume()
            logger.info("Install monitor resumed %d installs", resumed)

        logger.info("Server is ready to accept requests")
    except Exception as e:
        logger.error("Exception in lifespan startup: %s", e, exc_info=True)
        raise

    yield

    logger.info("=== FASTAPI LIFESPAN SHUTDOWN BEGIN ===")
    try:
        if install_service.monitor is not None:
            await install_service.monitor.stop()
        logger.info("Install monitor stopped")
    except Exception as e:
        logger.error("Error stopping install monitor: %s", e)

    logger.info("=== FASTAPI LIFESPAN SHUTDOWN COMPLETE ===")
