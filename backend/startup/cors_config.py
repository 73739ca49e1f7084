"""
CORS configuration module for the RDPForge server.

Origins cover localhost, the machine's hostname and FQDN on the web UI and
API ports, plus any ``cors.additional_origins`` from the configuration.
"""

import os
import socket

from backend.utils.verbosity_logger import get_logger

logger = get_logger("backend.startup.cors")


def get_cors_origins(web_ui_port, backend_api_port, additional=None, https=False):
    """Generate the list of allowed CORS origins."""
    hosts = ["localhost", "127.0.0.1"]

    # Check if running in CI mode - skip slow hostname resolution
    if os.getenv("RDPFORGE_CI_MODE", "").lower() not in ("true", "1", "yes"):
        try:
            hostname = socket.gethostname()
            if hostname and hostname not in hosts:
                hosts.append(hostname)
            fqdn = socket.getfqdn()
            if fqdn and fqdn not in hosts:
                hosts.append(fqdn)
        except OSError as e:
            logger.warning("Failed to resolve hostname for CORS origins: %s", e)

    origins = []
    for host in hosts:
        for port in (web_ui_port, backend_api_port):
            origins.append(f"http://{host}:{port}")

    origins.extend(additional or [])
    if https:
        origins.extend(
            [o.replace("http://", "https://") for o in origins if o.startswith("http://")]
        )

    logger.info("CORS origins configured: %d", len(origins))
    return origins
