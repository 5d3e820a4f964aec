"""
API endpoints for certificate deployment to managed servers.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from certkeeper.api.deps import get_gateway
from certkeeper.core.database import get_db
from certkeeper.schemas.certificate import (
    BindCertificateRequest,
    CommandOutputResponse,
    DeployCertificateRequest,
    ServerCertificatesResponse,
    ServerConnectivityResponse,
)
from certkeeper.services.command_gateway import CommandGateway
from certkeeper.services.deployment_service import (
    DeploymentError,
    bind_certificate,
    check_server_connectivity,
    get_server_certificates,
    install_certificate,
)

router = APIRouter(prefix="/servers", tags=["Servers"])


def _to_http(e: DeploymentError) -> HTTPException:
    if e.status_code == 502:
        return HTTPException(status_code=502, detail={"error": str(e), "details": e.detail})
    return HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/{server_id}/deploy", response_model=CommandOutputResponse)
async def deploy_certificate(
    server_id: uuid.UUID,
    request: DeployCertificateRequest,
    db: AsyncSession = Depends(get_db),
    gateway: CommandGateway = Depends(get_gateway),
):
    """
    Install a certificate file into the server's machine store.
    """
    try:
        output = await install_certificate(db, server_id, request.certificate_path, gateway)
    except DeploymentError as e:
        raise _to_http(e)
    return CommandOutputResponse(message="Certificate installed successfully", output=output)


@router.post("/{server_id}/bind", response_model=CommandOutputResponse)
async def bind_iis_certificate(
    server_id: uuid.UUID,
    request: BindCertificateRequest,
    db: AsyncSession = Depends(get_db),
    gateway: CommandGateway = Depends(get_gateway),
):
    """
    Bind a certificate to an IIS site.
    """
    try:
        output = await bind_certificate(db, server_id, request.site_name, request.thumbprint, request.port, gateway)
    except DeploymentError as e:
        raise _to_http(e)
    return CommandOutputResponse(message="Certificate bound successfully", output=output)


@router.post("/{server_id}/test", response_model=ServerConnectivityResponse)
async def check_connectivity(
    server_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    gateway: CommandGateway = Depends(get_gateway),
):
    """
    Check ping and WinRM reachability and record the server's status.
    """
    try:
        return await check_server_connectivity(db, server_id, gateway)
    except DeploymentError as e:
        raise _to_http(e)


@router.get("/{server_id}/certificates", response_model=ServerCertificatesResponse)
async def list_server_certificates(
    server_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    gateway: CommandGateway = Depends(get_gateway),
):
    try:
        return await get_server_certificates(db, server_id, gateway)
    except DeploymentError as e:
        raise _to_http(e)
