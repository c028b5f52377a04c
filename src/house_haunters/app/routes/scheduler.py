"""Booking scheduler cron endpoints, for an external scheduler to call."""
import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from house_haunters.app.config import get_settings
from house_haunters.infra.database import get_db
from house_haunters.services.notification_service import (
    NotificationService,
    get_notification_service,
)
from house_haunters.services.scheduler import BookingScheduler

logger = logging.getLogger(__name__)


async def verify_internal_token(x_internal_token: str = Header(...)):
    """Verify that the request includes a valid internal auth token."""
    settings = get_settings()
    if x_internal_token != settings.internal_token:
        raise HTTPException(status_code=401, detail="Invalid internal token")


router = APIRouter(
    prefix="/api/internal/scheduler",
    tags=["scheduler"],
    dependencies=[Depends(verify_internal_token)],
)


@router.post("/tick")
async def scheduler_tick(
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    """Run the auto-release sweep and expiration check once."""
    scheduler = BookingScheduler(db, notifier)
    results = await scheduler.tick()

    logger.info("Booking scheduler tick: %s", results)
    return {"ok": True, "results": results}


@router.post("/morning-prompts")
async def morning_prompts(
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    """Send today's viewing reminders once."""
    scheduler = BookingScheduler(db, notifier)
    results = await scheduler.morning()

    logger.info("Booking scheduler morning prompts: %s", results)
    return {"ok": True, "results": results}
