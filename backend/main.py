"""
This module provides the main setup and entry point for the RDPForge server
process.  It reads and processes the rdpforge.yaml configuration file, sets
up the CORS configuration in the middleware, includes all of the various
routers for the system and then launches the application.
"""

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.config import config
from backend.startup.cors_config import get_cors_origins
from backend.startup.exception_handlers import register_exception_handlers
from backend.startup.lifecycle import lifespan
from backend.startup.logging_config import configure_logging
from backend.startup.route_registration import register_app_routes, register_routes
from backend.utils.verbosity_logger import get_logger

startup_logger = get_logger("backend.startup")

# Parse the /etc/rdpforge.yaml file
app_config = config.get_config()

# Configure logging with UTC timestamp formatter
configure_logging()

app = FastAPI(title="RDPForge", lifespan=lifespan)

cert_file = app_config["api"].get("certFile")
key_file = app_config["api"].get("keyFile")
origins = get_cors_origins(
    app_config["webui"]["port"],
    app_config["api"]["port"],
    additional=app_config.get("cors", {}).get("additional_origins"),
    https=bool(cert_file and key_file),
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Authorization"],
)

# Add exception handlers to ensure CORS headers are always present
register_exception_handlers(app, origins)

# Register all API routes
register_routes(app)

# Register basic application routes
register_app_routes(app)


if __name__ == "__main__":
    ssl_config = {}
    if key_file and cert_file:
        ssl_config = {"ssl_keyfile": key_file, "ssl_certfile": cert_file}
        chain_file = app_config["api"].get("chainFile")
        if chain_file:
            ssl_config["ssl_ca_certs"] = chain_file

    # Configure uvicorn logging to match our format
    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["access"] = {
        "()": "backend.utils.logging_formatter.UTCTimestampFormatter",
        "fmt": "%(levelname)s: %(name)s: %(message)s",
    }
    log_config["formatters"]["default"] = {
        "()": "backend.utils.logging_formatter.UTCTimestampFormatter",
        "fmt": "%(levelname)s: %(name)s: %(message)s",
    }

    host = app_config["api"]["host"]
    port = app_config["api"]["port"]
    startup_logger.info(
        "Starting uvicorn on %s:%s (SSL %s)", host, port, "on" if ssl_config else "off"
    )
    uvicorn.run(
        app,
        host=host,
        port=port,
        proxy_headers=True,
        log_config=log_config,
        **ssl_config,
    )
