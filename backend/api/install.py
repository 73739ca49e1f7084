"""
API endpoints for starting, inspecting and cancelling Windows installations,
plus the progress callback used by the installer script on the target.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from backend.api.dependencies import get_client_ip, get_install_service, run_blocking
from backend.auth.auth_bearer import get_current_user
from backend.persistence.models import AuthType
from backend.services.install_service import InstallService
from backend.services.install_state_machine import InstallNotFoundError
from backend.services.install_validator import InstallRequest
from backend.utils.verbosity_logger import get_logger, sanitize_log

logger = get_logger("backend.api.install")

router = APIRouter(prefix="/install", tags=["install"])


class InstallCreate(BaseModel):
    """Request model for starting an installation."""

    ip: str = Field(..., max_length=45)
    ssh_port: int = 22
    auth_type: str = AuthType.PASSWORD
    passwd_vps: Optional[str] = None
    ssh_key: Optional[str] = None
    win_ver: str = Field(..., max_length=100)
    passwd_rdp: str = Field(..., max_length=128)

    class Config:
        extra = "forbid"


class ProgressReport(BaseModel):
    """Progress callback posted by the installer script."""

    install_id: int = Field(..., alias="installId")
    step: str = Field(..., max_length=50)
    status: str = Field(..., max_length=20)
    message: Optional[str] = Field(None, max_length=500)

    class Config:
        populate_by_name = True


@router.post("")
async def create_install(
    body: InstallCreate,
    user_id: int = Depends(get_current_user),
    service: InstallService = Depends(get_install_service),
):
    """Validate the target and start an installation on it."""
    result = await service.process_installation(
        InstallRequest(
            user_id=user_id,
            ip=body.ip,
            ssh_port=body.ssh_port,
            auth_type=body.auth_type,
            password=body.passwd_vps or "",
            ssh_key=body.ssh_key or "",
            windows_version=body.win_ver,
            rdp_password=body.passwd_rdp,
        )
    )
    if not result.success:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={**result.to_dict(), "error": "INSTALLATION_VALIDATION_FAILED"},
        )

    record = await run_blocking(service.get_install_by_id, result.install_id)
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={**result.to_dict(), "data": record.to_dict() if record else None},
    )


@router.get("/status/{install_id}")
async def get_install_status(
    install_id: int,
    user_id: int = Depends(get_current_user),
    service: InstallService = Depends(get_install_service),
):
    record = await run_blocking(service.get_install_by_id, install_id, user_id=user_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Installation not found")
    return {"success": True, "data": record.to_dict()}


@router.get("/active")
async def get_active_installs(
    user_id: int = Depends(get_current_user),
    service: InstallService = Depends(get_install_service),
):
    records = await run_blocking(service.get_user_active_installs, user_id)
    return {"success": True, "data": [record.to_dict() for record in records]}


@router.post("/cancel/{install_id}")
async def cancel_install(
    install_id: int,
    user_id: int = Depends(get_current_user),
    service: InstallService = Depends(get_install_service),
):
    """Cancel a pending installation and refund its quota."""
    result = await run_blocking(service.cancel_installation, install_id, user_id)
    if not result.success:
        code = 404 if result.install_id is None else 400
        raise HTTPException(status_code=code, detail=result.message)
    return result.to_dict()


@router.get("/quota")
async def get_quota(
    user_id: int = Depends(get_current_user),
    service: InstallService = Depends(get_install_service),
):
    quota = await run_blocking(service.get_quota, user_id)
    return {"success": True, "quota": quota}


@router.post("/progress")
async def report_progress(
    body: ProgressReport,
    request: Request,
    service: InstallService = Depends(get_install_service),
):
    """
    Progress callback from the installer. Only the target host of the
    install may report on it.
    """
    client_ip = get_client_ip(request)
    record = await run_blocking(service.get_install_by_id, body.install_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Installation not found")
    if record.ip != client_ip:
        logger.warning(
            "Rejected progress report for install %s from %s",
            body.install_id,
            sanitize_log(client_ip),
        )
        raise HTTPException(status_code=403, detail="Access denied")

    try:
        result = await run_blocking(
            service.handle_progress, body.install_id, body.step, body.status, body.message
        )
    except InstallNotFoundError as e:
        raise HTTPException(status_code=404, detail="Installation not found") from e
    return {"success": True, "changed": result.changed}
