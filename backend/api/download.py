"""
Protected download endpoint hit by the installer on the target host.

A request must come from a downloader (curl/wget) on the IP the link was
signed for, within the token's freshness window. A verified request advances
the install through the download-access handler and is redirected to the
regional mirror.
"""

import re

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse

from backend.api.dependencies import get_client_ip, get_install_service, run_blocking
from backend.config import config
from backend.services.install_service import InstallService
from backend.services.install_state_machine import InstallNotFoundError
from backend.utils.verbosity_logger import get_logger, sanitize_log

logger = get_logger("backend.api.download")

router = APIRouter(tags=["download"])

ACCESS_DENIED = "Access denied"


def _agent_allowed(user_agent: str, download_config) -> bool:
    agent = user_agent.lower()
    blocked = download_config.get("blocked_user_agents")
    if blocked and re.search(blocked, agent, re.IGNORECASE):
        return False
    return any(name.lower() in agent for name in download_config["allowed_user_agents"])


@router.get("/download/{region}/{decoy}/{filename}")
async def download(
    region: str,
    decoy: str,
    filename: str,
    request: Request,
    sig: str = None,
    service: InstallService = Depends(get_install_service),
):
    download_config = config.get_download_config()
    if decoy != download_config["decoy_segment"]:
        raise HTTPException(status_code=404, detail="Not Found")

    client_ip = get_client_ip(request)
    user_agent = request.headers.get("user-agent", "")

    if not sig:
        raise HTTPException(status_code=400, detail="Missing required parameters")

    if not _agent_allowed(user_agent, download_config):
        logger.warning(
            "Download refused for agent %s from %s",
            sanitize_log(user_agent),
            sanitize_log(client_ip),
        )
        raise HTTPException(status_code=403, detail=ACCESS_DENIED)

    token = service.composer.signer.verify(client_ip, filename, sig)
    if token is None:
        logger.warning(
            "Invalid or expired download signature for %s from %s",
            sanitize_log(filename),
            sanitize_log(client_ip),
        )
        raise HTTPException(status_code=403, detail=ACCESS_DENIED)

    if not filename.endswith(download_config["allowed_extension"]):
        raise HTTPException(status_code=400, detail="Invalid file type")

    mirror = download_config["regions"].get(region)
    if not mirror:
        raise HTTPException(status_code=404, detail="Region not supported")

    try:
        await run_blocking(service.handle_download_access, token.install_id, user_agent)
    except InstallNotFoundError as e:
        raise HTTPException(status_code=404, detail="Not Found") from e

    logger.info(
        "Download redirect for install %s: %s/%s",
        token.install_id,
        region,
        sanitize_log(filename),
    )
    return RedirectResponse(
        url=f"{mirror.rstrip('/')}/{filename}",
        status_code=302,
        headers={"Cache-Control": "no-store", "Pragma": "no-cache"},
    )
