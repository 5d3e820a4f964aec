"""
API endpoints for certificate authority sync.
"""

from typing import List, Dict, Any
import uuid

from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.ext.asyncio import AsyncSession

from certkeeper.api.deps import get_gateway
from certkeeper.core.database import get_db
from certkeeper.models import CertificateAuthority
from certkeeper.schemas.certificate import CASyncResponse
from certkeeper.services.certificate_service import (
    CertificateSyncError,
    MalformedCAOutputError,
    refresh_ca_templates,
    sync_ca,
)
from certkeeper.services.command_gateway import CommandGateway

router = APIRouter(prefix="/cas", tags=["Certificate Authorities"])


async def _get_ca(db: AsyncSession, ca_id: uuid.UUID) -> CertificateAuthority:
    ca = await db.get(CertificateAuthority, ca_id)
    if not ca:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="CA not found")
    return ca


@router.post("/{ca_id}/sync", response_model=CASyncResponse)
async def sync_certificate_authority(
    ca_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    gateway: CommandGateway = Depends(get_gateway),
):
    """
    Sync issued certificates from a single CA.
    """
    ca = await _get_ca(db, ca_id)
    try:
        count = await sync_ca(db, ca, gateway)
    except MalformedCAOutputError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    except CertificateSyncError as e:
        if e.error_kind is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return CASyncResponse(message="CA synced successfully", certificates_synced=count)


@router.get("/{ca_id}/templates", response_model=List[Dict[str, Any]])
async def list_templates(
    ca_id: uuid.UUID,
    refresh: bool = Query(False, description="Re-read the template list from the CA"),
    db: AsyncSession = Depends(get_db),
    gateway: CommandGateway = Depends(get_gateway),
):
    ca = await _get_ca(db, ca_id)
    try:
        return await refresh_ca_templates(db, ca, gateway, force=refresh)
    except CertificateSyncError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
