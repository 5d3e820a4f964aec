"""
API endpoints for certificate inventory, sync and status reconciliation.
"""

from typing import List

from fastapi import APIRouter, Depends, status, Query
from sqlalchemy.ext.asyncio import AsyncSession

from certkeeper.api.deps import get_scheduler
from certkeeper.core.database import get_db
from certkeeper.schemas.certificate import (
    CertificateResponse,
    CertificateStatsResponse,
    JobAcceptedResponse,
    ReconcileResponse,
)
from certkeeper.services.certificate_service import (
    get_certificate_stats,
    get_expiring_certificates,
    update_certificate_statuses,
)
from certkeeper.tasks.scheduler import JobScheduler

router = APIRouter(prefix="/certificates", tags=["Certificates"])


@router.get("/stats", response_model=CertificateStatsResponse)
async def certificate_stats(db: AsyncSession = Depends(get_db)):
    """
    Certificate counts by status and by upcoming expiry.
    """
    return CertificateStatsResponse(**await get_certificate_stats(db))


@router.get("/expiring", response_model=List[CertificateResponse])
async def expiring_certificates(
    db: AsyncSession = Depends(get_db),
    days: int = Query(30, ge=1, le=365, description="Look-ahead window in days"),
):
    certificates = await get_expiring_certificates(db, days)
    return [CertificateResponse.model_validate(c) for c in certificates]


@router.post("/sync", response_model=JobAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def sync_certificates(scheduler: JobScheduler = Depends(get_scheduler)):
    """
    Start a sync of every CA in the background.
    """
    if scheduler.trigger_sync():
        return JobAcceptedResponse(message="Certificate sync started", accepted=True)
    return JobAcceptedResponse(message="Certificate sync already running", accepted=False)


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile_statuses(db: AsyncSession = Depends(get_db)):
    """
    Recompute active / expiring / expired status for all certificates.
    """
    return ReconcileResponse(updated=await update_certificate_statuses(db))
