"""Booking Scheduler - timers for the background jobs.

Three loops run as asyncio tasks inside the API process:

- auto-release sweep every ``auto_release_interval_minutes``
- expiration check daily at ``expiration_check_hour``
- morning prompts daily at ``morning_prompt_hour``

Each loop opens a fresh session per run. A failed run is logged and the
loop waits for its next slot. ``BookingScheduler`` runs the same jobs once,
on demand, for the internal cron endpoint.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from house_haunters.app.config import Settings, get_settings
from house_haunters.domain.models import utcnow
from house_haunters.services.background_jobs import (
    check_expirations,
    process_auto_releases,
    send_morning_prompts,
)
from house_haunters.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


def seconds_until(hour: int, minute: int = 0, now: Optional[datetime] = None) -> float:
    """Seconds from ``now`` until the next ``hour:minute`` (UTC)."""
    now = now or utcnow()
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class BookingScheduler:
    """Runs the periodic booking jobs against one session."""

    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationService,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.settings = settings or get_settings()

    async def tick(self) -> dict:
        """Run the auto-release sweep and expiration check. Returns a summary."""
        results = {}

        try:
            results["auto_released"] = await process_auto_releases(
                self.db, self.notifier, self.settings
            )
        except Exception as e:
            logger.error("process_auto_releases failed: %s", e)
            results["auto_release_error"] = str(e)

        try:
            results["expired"] = await check_expirations(self.db)
        except Exception as e:
            logger.error("check_expirations failed: %s", e)
            results["expiration_error"] = str(e)

        return results

    async def morning(self) -> dict:
        """Send today's viewing reminders. Returns a summary."""
        results = {}
        try:
            results["prompted"] = await send_morning_prompts(self.db, self.notifier)
        except Exception as e:
            logger.error("send_morning_prompts failed: %s", e)
            results["morning_prompt_error"] = str(e)
        return results


async def auto_release_loop(
    session_factory: async_sessionmaker[AsyncSession],
    notifier: NotificationService,
    settings: Settings,
):
    """Run the auto-release sweep every ``auto_release_interval_minutes``."""
    while True:
        try:
            async with session_factory() as db:
                released = await process_auto_releases(db, notifier, settings)
                if released:
                    logger.info("Auto-release loop: released %d bookings", released)
        except Exception as e:
            logger.error("Auto-release loop error: %s", e)
        await asyncio.sleep(settings.auto_release_interval_minutes * 60)


async def daily_loop(
    name: str,
    hour: int,
    session_factory: async_sessionmaker[AsyncSession],
    job: Callable[[AsyncSession], Awaitable[int]],
):
    """Run ``job`` once a day at ``hour``:00 UTC."""
    while True:
        await asyncio.sleep(seconds_until(hour))
        try:
            async with session_factory() as db:
                count = await job(db)
                logger.info("%s: processed %d", name, count)
        except Exception as e:
            logger.error("%s error: %s", name, e)


def start_scheduler(
    session_factory: async_sessionmaker[AsyncSession],
    notifier: NotificationService,
    settings: Optional[Settings] = None,
) -> list[asyncio.Task]:
    """Start all scheduler loops. The caller cancels the tasks on shutdown."""
    settings = settings or get_settings()

    async def morning_job(db: AsyncSession) -> int:
        return await send_morning_prompts(db, notifier)

    tasks = [
        asyncio.create_task(auto_release_loop(session_factory, notifier, settings)),
        asyncio.create_task(
            daily_loop(
                "Expiration check", settings.expiration_check_hour,
                session_factory, check_expirations,
            )
        ),
        asyncio.create_task(
            daily_loop(
                "Morning prompts", settings.morning_prompt_hour,
                session_factory, morning_job,
            )
        ),
    ]
    logger.info(
        "Scheduler started: auto-release every %d min, expirations at %02d:00, "
        "morning prompts at %02d:00",
        settings.auto_release_interval_minutes,
        settings.expiration_check_hour,
        settings.morning_prompt_hour,
    )
    return tasks
