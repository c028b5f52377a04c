"""Background jobs for escrow auto-release and daily viewing reminders.

All jobs are safe to run repeatedly: auto-release goes through the same
escrow compare-and-swap as every other release path, so a booking settled
between the sweep query and the update is skipped, not released twice.

These are plain async functions; ``services/scheduler.py`` runs them on
timers and the internal scheduler route runs them on demand.
"""

import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from house_haunters.app.config import Settings, get_settings
from house_haunters.domain.enums import (
    BookingAction,
    BookingActor,
    BookingEventType,
    BookingStatus,
    NotificationType,
    PaymentStatus,
)
from house_haunters.domain.models import Booking, Property, utcnow
from house_haunters.services.booking_lifecycle import (
    atomic,
    format_amount,
    get_booking_or_404,
    release_escrow,
)
from house_haunters.services.booking_state_machine import (
    BookingError,
    BookingStateMachine,
)
from house_haunters.services.escrow_ledger import is_release_eligible
from house_haunters.services.notification_service import NotificationService

logger = logging.getLogger(__name__)
state_machine = BookingStateMachine()


# ---------------------------------------------------------------------------
# Job 1: auto-release escrow after the viewing window
# ---------------------------------------------------------------------------


async def process_auto_releases(
    db: AsyncSession,
    notifier: NotificationService,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> int:
    """Release escrow for every booking whose auto-release deadline has passed.

    Each booking is released in its own transaction; a failure on one is
    logged and the sweep moves on. Returns the number of bookings released.
    """
    settings = settings or get_settings()
    now = now or utcnow()

    result = await db.execute(
        select(Booking.id).where(
            Booking.status == BookingStatus.CONFIRMED.value,
            Booking.payment_status == PaymentStatus.ESCROW.value,
            Booking.tenant_confirmed.is_(False),
            Booking.viewing_outcome.is_(None),
            Booking.auto_release_at.isnot(None),
            Booking.auto_release_at <= now,
        )
    )
    booking_ids = list(result.scalars().all())
    logger.info("Auto-release sweep: %d candidate bookings", len(booking_ids))

    released = 0
    for booking_id in booking_ids:
        try:
            booking = await get_booking_or_404(db, booking_id)
            if not is_release_eligible(booking, now):
                continue
            state_machine.validate(BookingAction.AUTO_RELEASE, booking, BookingActor.SYSTEM)

            async with atomic(db):
                earnings = await release_escrow(
                    db, booking,
                    commission_rate=settings.platform_commission_rate,
                    actor=BookingActor.SYSTEM,
                    event_type=BookingEventType.AUTO_RELEASED,
                    conditions=(
                        Booking.tenant_confirmed.is_(False),
                        Booking.viewing_outcome.is_(None),
                    ),
                    data={"auto_release_at": booking.auto_release_at.isoformat()},
                )
        except BookingError as e:
            logger.info("Auto-release skipped for booking %s: %s", booking_id, e.message)
            continue
        except Exception as e:
            logger.error("Failed to auto-release booking %s: %s", booking_id, e)
            continue

        released += 1
        prop = await db.get(Property, booking.property_id)
        title = prop.title if prop else "the property"
        await notifier.send(
            booking.hunter_id,
            "Payment Released",
            f"Payment of {format_amount(earnings.amount, settings.currency)} "
            f"has been automatically released for viewing at {title}.",
            NotificationType.PAYMENT_RELEASED,
            "/wallet",
        )

    if released:
        logger.info("Auto-release sweep: released %d bookings", released)
    return released


# ---------------------------------------------------------------------------
# Job 2: daily expiration check
# ---------------------------------------------------------------------------


async def check_expirations(db: AsyncSession) -> int:
    """Daily expiration hook. Nothing in the booking lifecycle expires yet."""
    logger.info("Expiration check ran: nothing to expire")
    return 0


# ---------------------------------------------------------------------------
# Job 3: morning reminders for today's viewings
# ---------------------------------------------------------------------------


async def send_morning_prompts(
    db: AsyncSession,
    notifier: NotificationService,
    today: Optional[date] = None,
) -> int:
    """Remind both parties of every confirmed viewing scheduled for today.

    Returns the number of bookings prompted.
    """
    today = today or utcnow().date()
    result = await db.execute(
        select(Booking).where(
            Booking.scheduled_date == today.isoformat(),
            Booking.status == BookingStatus.CONFIRMED.value,
        )
    )
    bookings = result.scalars().all()
    logger.info("Morning prompts: %d bookings scheduled for %s", len(bookings), today)

    for booking in bookings:
        await notifier.send_many(
            [booking.tenant_id, booking.hunter_id],
            "Viewing Today!",
            f"You have a viewing scheduled for today at {booking.scheduled_time}. "
            "Still good to go?",
            NotificationType.MORNING_PROMPT,
            f"/bookings/{booking.id}",
        )
    return len(bookings)
