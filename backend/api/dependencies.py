"""
FastAPI dependencies shared by the API routers.
"""

import asyncio
import functools

from fastapi import HTTPException, Request, WebSocket

from backend.services.install_service import InstallService


def get_install_service(request: Request) -> InstallService:
    """The install service built by the application lifespan."""
    service = getattr(request.app.state, "install_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return service


def get_ws_install_service(websocket: WebSocket) -> InstallService:
    return getattr(websocket.app.state, "install_service", None)


def get_client_ip(request: Request) -> str:
    """
    Address of the calling host; CF-Connecting-IP and X-Forwarded-For take
    precedence because the API sits behind a proxy.
    """
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def run_blocking(func, *args, **kwargs):
    """
    Run a store-backed service call on the default executor. Transitions
    notify channels such as SMTP, so none of them may run on the event loop.
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
