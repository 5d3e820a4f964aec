"""
API endpoints for notification and sync settings.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from certkeeper.api.deps import get_scheduler
from certkeeper.core.database import get_db
from certkeeper.models import CertificateAuthority
from certkeeper.schemas.notification import (
    CASyncScheduleResponse,
    NotificationSettingsResponse,
    NotificationSettingsUpdate,
    SyncSettingsResponse,
)
from certkeeper.services.notification_service import get_notification_settings, update_notification_settings
from certkeeper.tasks.scheduler import JobScheduler

router = APIRouter(prefix="/settings", tags=["Settings"])


@router.get("/notifications", response_model=NotificationSettingsResponse)
async def read_notification_settings(db: AsyncSession = Depends(get_db)):
    return await get_notification_settings(db)


@router.put("/notifications", response_model=NotificationSettingsResponse)
async def write_notification_settings(
    data: NotificationSettingsUpdate,
    db: AsyncSession = Depends(get_db),
    scheduler: JobScheduler = Depends(get_scheduler),
):
    """
    Update notification settings. Only the fields sent are changed; a new
    schedule hour moves the daily notification run.
    """
    settings = await update_notification_settings(db, data)
    if settings.schedule_hour != scheduler.notification_hour:
        scheduler.reschedule_notifications(settings.schedule_hour)
    return settings


@router.get("/sync", response_model=SyncSettingsResponse)
async def read_sync_settings(
    db: AsyncSession = Depends(get_db),
    scheduler: JobScheduler = Depends(get_scheduler),
):
    """Per-CA sync schedule and the most recent sync across all CAs."""
    result = await db.execute(select(CertificateAuthority).order_by(CertificateAuthority.name))
    cas = result.scalars().all()
    last_sync = await db.scalar(select(func.max(CertificateAuthority.last_synced_at)))

    return SyncSettingsResponse(
        scheduler_running=scheduler.running,
        last_sync_time=last_sync,
        cas=[CASyncScheduleResponse.model_validate(ca, from_attributes=True) for ca in cas],
    )
