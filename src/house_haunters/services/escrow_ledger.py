"""Escrow Ledger - commission split, viewing timing and release eligibility.

Pure functions over Booking snapshots. Nothing here touches the database;
callers persist whatever these helpers produce.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from house_haunters.domain.enums import BookingStatus, EarningsStatus, PaymentStatus
from house_haunters.domain.models import HunterEarnings

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

DEFAULT_COMMISSION_RATE = 0.15
DEFAULT_VIEWING_MINUTES = 60
DEFAULT_GRACE_MINUTES = 10


@dataclass(frozen=True)
class CommissionSplit:
    """How an escrowed amount divides between hunter and platform."""

    hunter_share: Decimal
    platform_share: Decimal


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # via str() so a float rate of 0.15 is exactly Decimal("0.15")
    return Decimal(str(value))


def split_commission(amount, commission_rate=DEFAULT_COMMISSION_RATE) -> CommissionSplit:
    """Split ``amount`` into hunter and platform shares.

    The hunter share is ``amount * (1 - rate)`` rounded half-up to cents and
    the platform keeps the remainder, so the two shares always sum to the
    original amount.
    """
    total = _to_decimal(amount)
    rate = _to_decimal(commission_rate)
    if total < 0:
        raise ValueError("amount must not be negative")
    if rate < 0 or rate > 1:
        raise ValueError("commission_rate must be between 0 and 1")

    hunter_share = (total * (Decimal("1") - rate)).quantize(CENTS, rounding=ROUND_HALF_UP)
    platform_share = total - hunter_share
    return CommissionSplit(hunter_share=hunter_share, platform_share=platform_share)


def parse_schedule(scheduled_date: str, scheduled_time: str) -> datetime:
    """Combine ``YYYY-MM-DD`` and ``HH:MM`` into a naive datetime."""
    return datetime.strptime(f"{scheduled_date} {scheduled_time}", "%Y-%m-%d %H:%M")


def compute_auto_release_deadline(
    scheduled_date: str,
    scheduled_time: str,
    viewing_minutes: int = DEFAULT_VIEWING_MINUTES,
    grace_minutes: int = DEFAULT_GRACE_MINUTES,
) -> datetime:
    """Scheduled start + viewing duration + grace period."""
    start = parse_schedule(scheduled_date, scheduled_time)
    return start + timedelta(minutes=viewing_minutes + grace_minutes)


def compute_end_time(start_time: str, viewing_minutes: int = DEFAULT_VIEWING_MINUTES) -> str:
    """Return ``start_time`` plus the viewing duration as ``HH:MM``, wrapping past midnight."""
    hours, minutes = (int(part) for part in start_time.split(":"))
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError(f"Invalid time of day: {start_time}")
    total = (hours * 60 + minutes + viewing_minutes) % (24 * 60)
    return f"{total // 60:02d}:{total % 60:02d}"


def is_release_eligible(booking, now: datetime) -> bool:
    """True when the scheduler may force-release this booking's escrow.

    The booking must still be confirmed and in escrow, the tenant must not
    have confirmed it, no outcome may have been recorded (an issue report or
    alternative request parks the escrow), and the deadline must have passed.
    """
    if booking.status != BookingStatus.CONFIRMED.value:
        return False
    if booking.payment_status != PaymentStatus.ESCROW.value:
        return False
    if booking.tenant_confirmed:
        return False
    if booking.viewing_outcome is not None:
        return False
    if booking.auto_release_at is None:
        return False
    return booking.auto_release_at <= now


def build_earnings(booking, commission_rate=DEFAULT_COMMISSION_RATE) -> HunterEarnings:
    """Unsaved earnings row for the hunter's share of ``booking``."""
    split = split_commission(booking.amount, commission_rate)
    return HunterEarnings(
        hunter_id=booking.hunter_id,
        booking_id=booking.id,
        amount=split.hunter_share,
        platform_fee=split.platform_share,
        status=EarningsStatus.PENDING.value,
    )
