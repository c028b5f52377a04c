"""Booking lifecycle - meeting, outcome, completion, cancellation and no-show.

Every public operation follows the same shape:

1. Load the booking and validate the action against BookingStateMachine.
2. Apply all mutations inside ``atomic()`` so they commit together or not at all.
3. Dispatch notifications after the commit (best-effort).

The module-level helpers (escrow release/refund, property lock, disputes,
events) are shared with the reschedule, alternative, dispute and scheduler
code paths so money only ever moves through one compare-and-swap.
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from house_haunters.app.config import Settings, get_settings
from house_haunters.domain.enums import (
    BookingAction,
    BookingActor,
    BookingEventType,
    BookingStatus,
    DisputeCategory,
    DisputeStatus,
    MeetingPointStatus,
    MeetingPointType,
    NotificationType,
    PaymentStatus,
    ViewingOutcome,
)
from house_haunters.domain.models import (
    Booking,
    BookingEvent,
    Dispute,
    HunterEarnings,
    MeetingPoint,
    Property,
    User,
    utcnow,
)
from house_haunters.services.booking_state_machine import (
    AlreadyDoneError,
    BookingStateMachine,
    ConflictError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
    actor_for,
)
from house_haunters.services.escrow_ledger import build_earnings
from house_haunters.services.notification_service import NotificationService

logger = logging.getLogger(__name__)
state_machine = BookingStateMachine()


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


@asynccontextmanager
async def atomic(db: AsyncSession):
    """Commit everything done inside the block, or roll all of it back."""
    try:
        yield
        await db.commit()
    except Exception:
        await db.rollback()
        raise


async def get_booking_or_404(db: AsyncSession, booking_id: str) -> Booking:
    result = await db.execute(select(Booking).where(Booking.id == booking_id))
    booking = result.scalar_one_or_none()
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


def record_event(
    db: AsyncSession,
    booking: Booking,
    event_type: BookingEventType,
    actor: BookingActor,
    actor_id: Optional[str] = None,
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
    data: Optional[dict] = None,
) -> BookingEvent:
    """Add an audit event for ``booking`` to the current transaction."""
    event = BookingEvent(
        booking_id=booking.id,
        event_type=event_type.value,
        actor=actor.value,
        actor_id=actor_id,
        from_status=from_status,
        to_status=to_status,
        data=data,
    )
    db.add(event)
    return event


async def claim_property_lock(db: AsyncSession, property_id: str, booking_id: str) -> None:
    """Lock ``property_id`` for ``booking_id``. Re-claiming an owned lock is a no-op."""
    result = await db.execute(
        update(Property)
        .where(
            Property.id == property_id,
            or_(
                Property.is_locked.is_(False),
                Property.locked_by_booking_id == booking_id,
            ),
        )
        .values(is_locked=True, locked_by_booking_id=booking_id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise ConflictError("Property is already booked")
    logger.info("Property %s locked by booking %s", property_id, booking_id)


async def release_property_lock(db: AsyncSession, property_id: str, booking_id: str) -> bool:
    """Unlock ``property_id`` if ``booking_id`` owns the lock. Returns True if released."""
    result = await db.execute(
        update(Property)
        .where(
            Property.id == property_id,
            Property.locked_by_booking_id == booking_id,
        )
        .values(is_locked=False, locked_by_booking_id=None)
        .execution_options(synchronize_session=False)
    )
    released = result.rowcount > 0
    if released:
        logger.info("Property %s unlocked by booking %s", property_id, booking_id)
    return released


async def release_escrow(
    db: AsyncSession,
    booking: Booking,
    *,
    commission_rate: float,
    actor: BookingActor,
    actor_id: Optional[str] = None,
    event_type: BookingEventType = BookingEventType.PAYMENT_RELEASED,
    require_status: Optional[BookingStatus] = BookingStatus.CONFIRMED,
    conditions: tuple = (),
    data: Optional[dict] = None,
) -> HunterEarnings:
    """Move the escrowed amount to the hunter and complete the booking.

    The payment status changes through ``UPDATE ... WHERE payment_status =
    'ESCROW'``; if another path settled first no row matches and
    InvalidStateError is raised. Extra ``conditions`` are added to the same
    WHERE clause. The earnings row is protected by the
    UNIQUE constraint on ``hunter_earnings.booking_id``.
    """
    now = utcnow()
    from_status = booking.status
    await db.flush()

    stmt = update(Booking).where(
        Booking.id == booking.id,
        Booking.payment_status == PaymentStatus.ESCROW.value,
    )
    if require_status is not None:
        stmt = stmt.where(Booking.status == require_status.value)
    if conditions:
        stmt = stmt.where(*conditions)
    result = await db.execute(
        stmt.values(
            status=BookingStatus.COMPLETED.value,
            payment_status=PaymentStatus.RELEASED.value,
            completed_at=now,
            actual_end_time=booking.actual_end_time or now,
        ).execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise InvalidStateError("Payment for this booking has already been settled")
    await db.refresh(booking)

    earnings = build_earnings(booking, commission_rate)
    db.add(earnings)
    try:
        await db.flush()
    except IntegrityError:
        raise ConflictError("Earnings have already been recorded for this booking")

    await release_property_lock(db, booking.property_id, booking.id)
    record_event(
        db, booking, event_type, actor, actor_id,
        from_status=from_status,
        to_status=BookingStatus.COMPLETED.value,
        data={
            "hunter_share": str(earnings.amount),
            "platform_fee": str(earnings.platform_fee),
            **(data or {}),
        },
    )
    logger.info(
        "Escrow released: booking=%s hunter=%s share=%s fee=%s (actor=%s)",
        booking.id, booking.hunter_id, earnings.amount, earnings.platform_fee, actor.value,
    )
    return earnings


async def refund_escrow(
    db: AsyncSession,
    booking: Booking,
    *,
    actor: BookingActor,
    actor_id: Optional[str] = None,
    data: Optional[dict] = None,
) -> None:
    """Return the escrowed amount to the tenant and cancel the booking."""
    now = utcnow()
    from_status = booking.status
    await db.flush()

    result = await db.execute(
        update(Booking)
        .where(
            Booking.id == booking.id,
            Booking.payment_status == PaymentStatus.ESCROW.value,
        )
        .values(
            status=BookingStatus.CANCELLED.value,
            payment_status=PaymentStatus.REFUNDED.value,
            cancelled_at=booking.cancelled_at or now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise InvalidStateError("Payment for this booking has already been settled")
    await db.refresh(booking)

    await release_property_lock(db, booking.property_id, booking.id)
    record_event(
        db, booking, BookingEventType.PAYMENT_REFUNDED, actor, actor_id,
        from_status=from_status,
        to_status=BookingStatus.CANCELLED.value,
        data=data,
    )
    logger.info("Escrow refunded: booking=%s amount=%s", booking.id, booking.amount)


async def cancel_confirmed(
    db: AsyncSession,
    booking: Booking,
    *,
    actor: BookingActor,
    actor_id: Optional[str],
    reason: Optional[str],
    viewing_outcome: Optional[ViewingOutcome] = None,
) -> None:
    """Cancel a CONFIRMED booking without touching its escrow."""
    now = utcnow()
    await db.flush()

    values = {
        "status": BookingStatus.CANCELLED.value,
        "cancelled_by": actor.value,
        "cancel_reason": reason,
        "cancelled_at": now,
    }
    if viewing_outcome is not None:
        values["viewing_outcome"] = viewing_outcome.value
        values["outcome_submitted_at"] = now

    result = await db.execute(
        update(Booking)
        .where(
            Booking.id == booking.id,
            Booking.status == BookingStatus.CONFIRMED.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise InvalidStateError("Only confirmed bookings can be cancelled")
    await db.refresh(booking)

    await release_property_lock(db, booking.property_id, booking.id)
    record_event(
        db, booking, BookingEventType.CANCELLED, actor, actor_id,
        from_status=BookingStatus.CONFIRMED.value,
        to_status=BookingStatus.CANCELLED.value,
        data={"reason": reason},
    )


def open_dispute(
    db: AsyncSession,
    booking: Booking,
    *,
    category: DisputeCategory,
    title: str,
    description: Optional[str],
    reporter_id: Optional[str],
    against_id: Optional[str],
    evidence_urls: Optional[list[str]] = None,
) -> Dispute:
    dispute = Dispute(
        title=title,
        description=description,
        category=category.value,
        reporter_id=reporter_id,
        against_id=against_id,
        booking_id=booking.id,
        property_id=booking.property_id,
        status=DisputeStatus.OPEN.value,
        evidence_urls=evidence_urls,
    )
    db.add(dispute)
    logger.info("Dispute opened: booking=%s category=%s", booking.id, category.value)
    return dispute


def other_party_id(booking: Booking, actor: BookingActor) -> str:
    return booking.hunter_id if actor == BookingActor.TENANT else booking.tenant_id


def format_amount(amount: Decimal, currency: str) -> str:
    return f"{currency} {Decimal(amount):,.2f}"


# ---------------------------------------------------------------------------
# Lifecycle service
# ---------------------------------------------------------------------------


class BookingLifecycle:
    """Request-driven booking transitions.

    The caller supplies the session; every public method commits its own
    transaction.
    """

    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationService,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.settings = settings or get_settings()

    async def _property_title(self, booking: Booking) -> str:
        prop = await self.db.get(Property, booking.property_id)
        return prop.title if prop else "the property"

    # ------------------------------------------------------------------
    # Meeting point
    # ------------------------------------------------------------------

    async def share_meeting_point(
        self,
        booking_id: str,
        user: User,
        point_type: MeetingPointType,
        location: Optional[dict],
    ) -> MeetingPoint:
        """Hunter shares (or replaces) where to meet the tenant."""
        booking = await get_booking_or_404(self.db, booking_id)
        actor = actor_for(booking, user)
        state_machine.validate(BookingAction.SHARE_MEETING_POINT, booking, actor)

        result = await self.db.execute(
            select(MeetingPoint).where(MeetingPoint.booking_id == booking.id)
        )
        meeting_point = result.scalar_one_or_none()
        now = utcnow()

        async with atomic(self.db):
            if meeting_point is None:
                meeting_point = MeetingPoint(booking_id=booking.id)
                self.db.add(meeting_point)
                try:
                    await self.db.flush()
                except IntegrityError:
                    raise ConflictError("Meeting point was shared at the same time, please retry")
            meeting_point.type = point_type.value
            meeting_point.location = location
            meeting_point.status = MeetingPointStatus.PENDING.value
            meeting_point.shared_by = user.id
            meeting_point.shared_at = now
            meeting_point.tenant_viewed = False
            meeting_point.tenant_viewed_at = None
            record_event(
                self.db, booking, BookingEventType.MEETING_POINT_SHARED, actor, user.id,
                data={"type": point_type.value, "location": location},
            )

        logger.info("Meeting point shared: booking=%s type=%s", booking.id, point_type.value)
        await self.notifier.send(
            booking.tenant_id,
            "Meeting Point Updated",
            f"{user.name} has shared the meeting point for your viewing.",
            NotificationType.MEETING_POINT_UPDATED,
            f"/bookings/{booking.id}",
        )
        return meeting_point

    async def _get_meeting_point_for_tenant(self, booking_id: str, user: User):
        booking = await get_booking_or_404(self.db, booking_id)
        actor = actor_for(booking, user)
        state_machine.check_actor(BookingAction.RESPOND_MEETING_POINT, actor)

        result = await self.db.execute(
            select(MeetingPoint).where(MeetingPoint.booking_id == booking.id)
        )
        meeting_point = result.scalar_one_or_none()
        if meeting_point is None:
            raise NotFoundError("Meeting point not found")
        return booking, actor, meeting_point

    async def respond_meeting_point(self, booking_id: str, user: User, action: str) -> MeetingPoint:
        """Tenant accepts or rejects the shared meeting point."""
        booking, actor, meeting_point = await self._get_meeting_point_for_tenant(booking_id, user)
        action = (action or "").lower()
        if action not in ("accept", "reject"):
            raise InvalidArgumentError("action must be 'accept' or 'reject'")
        state_machine.check_phase(BookingAction.RESPOND_MEETING_POINT, booking)

        status = MeetingPointStatus.ACCEPTED if action == "accept" else MeetingPointStatus.REJECTED
        now = utcnow()
        async with atomic(self.db):
            meeting_point.status = status.value
            meeting_point.tenant_viewed = True
            meeting_point.tenant_viewed_at = meeting_point.tenant_viewed_at or now
            record_event(
                self.db, booking, BookingEventType.MEETING_POINT_RESPONDED, actor, user.id,
                data={"status": status.value},
            )

        logger.info("Meeting point %s: booking=%s", status.value, booking.id)
        await self.notifier.send(
            booking.hunter_id,
            "Meeting Point " + ("Accepted" if status == MeetingPointStatus.ACCEPTED else "Rejected"),
            f"{user.name} has {status.value.lower()} the meeting point.",
            NotificationType.MEETING_POINT_RESPONDED,
            f"/bookings/{booking.id}",
        )
        return meeting_point

    async def mark_meeting_point_viewed(self, booking_id: str, user: User) -> MeetingPoint:
        """Tenant has opened the meeting point details."""
        booking, _, meeting_point = await self._get_meeting_point_for_tenant(booking_id, user)
        if not meeting_point.tenant_viewed:
            async with atomic(self.db):
                meeting_point.tenant_viewed = True
                meeting_point.tenant_viewed_at = utcnow()
        return meeting_point

    # ------------------------------------------------------------------
    # Physical meeting
    # ------------------------------------------------------------------

    async def confirm_meeting(self, booking_id: str, user: User) -> tuple[Booking, bool]:
        """Record the caller's half of the physical-meeting handshake.

        Returns the refreshed booking and whether this call was the one that
        completed the handshake.
        """
        booking = await get_booking_or_404(self.db, booking_id)
        actor = actor_for(booking, user)
        state_machine.validate(BookingAction.CONFIRM_MEETING, booking, actor)

        own_flag = "tenant_met_confirmed" if actor == BookingActor.TENANT else "hunter_met_confirmed"
        now = utcnow()

        async with atomic(self.db):
            result = await self.db.execute(
                update(Booking)
                .where(
                    Booking.id == booking.id,
                    Booking.status == BookingStatus.CONFIRMED.value,
                )
                .values({own_flag: True})
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise InvalidStateError("Only confirmed bookings can confirm a meeting")

            # Only the update that observes both flags set flips the meeting on
            result = await self.db.execute(
                update(Booking)
                .where(
                    Booking.id == booking.id,
                    Booking.hunter_met_confirmed.is_(True),
                    Booking.tenant_met_confirmed.is_(True),
                    Booking.physical_meeting_confirmed.is_(False),
                )
                .values(physical_meeting_confirmed=True, actual_start_time=now)
                .execution_options(synchronize_session=False)
            )
            meeting_started = result.rowcount == 1

            record_event(
                self.db, booking, BookingEventType.MEETING_CONFIRMED, actor, user.id,
                data={"flag": own_flag},
            )
            if meeting_started:
                record_event(
                    self.db, booking, BookingEventType.PHYSICAL_MEETING_CONFIRMED, actor, user.id,
                    data={"actual_start_time": now.isoformat()},
                )
            await self.db.refresh(booking)

        logger.info(
            "Meeting confirmed by %s: booking=%s physical=%s",
            actor.value, booking.id, booking.physical_meeting_confirmed,
        )
        await self.notifier.send(
            other_party_id(booking, actor),
            "Arrival Confirmed",
            f"{user.name} has confirmed arrival at the viewing location.",
            NotificationType.ARRIVAL_CONFIRMED,
            f"/bookings/{booking.id}",
        )
        return booking, meeting_started

    # ------------------------------------------------------------------
    # Outcome and completion
    # ------------------------------------------------------------------

    async def submit_outcome(
        self,
        booking_id: str,
        user: User,
        outcome: str,
        feedback: Optional[str] = None,
        evidence_urls: Optional[list[str]] = None,
        evidence_description: Optional[str] = None,
    ) -> Booking:
        """Tenant declares how the viewing went."""
        booking = await get_booking_or_404(self.db, booking_id)
        actor = actor_for(booking, user)
        state_machine.check_actor(BookingAction.SUBMIT_OUTCOME, actor)
        try:
            outcome_enum = ViewingOutcome(outcome)
        except ValueError:
            raise InvalidArgumentError(
                "outcome must be one of: " + ", ".join(o.value for o in ViewingOutcome)
            )
        state_machine.check_phase(BookingAction.SUBMIT_OUTCOME, booking)

        title = await self._property_title(booking)
        now = utcnow()
        earnings = None

        async with atomic(self.db):
            booking.viewing_outcome = outcome_enum.value
            booking.outcome_submitted_at = now
            if feedback:
                booking.tenant_feedback = feedback
            record_event(
                self.db, booking, BookingEventType.OUTCOME_SUBMITTED, actor, user.id,
                from_status=booking.status, to_status=booking.status,
                data={"outcome": outcome_enum.value},
            )

            if outcome_enum == ViewingOutcome.COMPLETED_SATISFIED:
                booking.tenant_confirmed = True
                earnings = await release_escrow(
                    self.db, booking,
                    commission_rate=self.settings.platform_commission_rate,
                    actor=actor, actor_id=user.id,
                )
            elif outcome_enum == ViewingOutcome.ISSUE_REPORTED:
                booking.issue_evidence = {
                    "urls": evidence_urls or [],
                    "description": evidence_description,
                }
                open_dispute(
                    self.db, booking,
                    category=DisputeCategory.VIEWING_ISSUE,
                    title=f"Viewing Issue - {title}",
                    description=evidence_description or feedback or "Issue reported with viewing",
                    reporter_id=booking.tenant_id,
                    against_id=booking.hunter_id,
                    evidence_urls=evidence_urls,
                )
                record_event(
                    self.db, booking, BookingEventType.DISPUTE_OPENED, actor, user.id,
                    data={"category": DisputeCategory.VIEWING_ISSUE.value},
                )

        logger.info("Outcome submitted: booking=%s outcome=%s", booking.id, outcome_enum.value)

        if earnings is not None:
            await self.notifier.send(
                booking.hunter_id,
                "Payment Released",
                f"Payment of {format_amount(earnings.amount, self.settings.currency)} "
                f"has been released for viewing at {title}.",
                NotificationType.PAYMENT_RELEASED,
                "/wallet",
            )
        elif outcome_enum == ViewingOutcome.ISSUE_REPORTED:
            await self.notifier.send(
                booking.hunter_id,
                "Issue Reported",
                f"{user.name} reported an issue with the viewing at {title}. "
                "Payment is on hold pending review.",
                NotificationType.DISPUTE_CREATED,
                f"/bookings/{booking.id}",
            )
            await self.notifier.notify_admins(
                "New Dispute",
                f"A viewing issue has been reported for {title}.",
                NotificationType.DISPUTE_CREATED,
            )
        else:
            await self.notifier.send(
                booking.hunter_id,
                "Alternative Property Requested",
                f"{user.name} would like to see an alternative property. "
                "Original payment remains in escrow.",
                NotificationType.ALTERNATIVE_REQUESTED,
                f"/bookings/{booking.id}",
            )
        return booking

    async def confirm_completed(self, booking_id: str, user: User) -> Booking:
        """Tenant confirms the viewing happened, releasing payment."""
        booking = await get_booking_or_404(self.db, booking_id)
        actor = actor_for(booking, user)
        state_machine.check_actor(BookingAction.CONFIRM_COMPLETED, actor)
        if booking.tenant_confirmed:
            raise AlreadyDoneError("Viewing already confirmed")
        state_machine.check_phase(BookingAction.CONFIRM_COMPLETED, booking)

        async with atomic(self.db):
            booking.tenant_confirmed = True
            earnings = await release_escrow(
                self.db, booking,
                commission_rate=self.settings.platform_commission_rate,
                actor=actor, actor_id=user.id,
            )

        title = await self._property_title(booking)
        await self.notifier.send(
            booking.hunter_id,
            "Payment Released",
            f"Payment of {format_amount(earnings.amount, self.settings.currency)} "
            f"has been released for viewing at {title}.",
            NotificationType.PAYMENT_RELEASED,
            "/wallet",
        )
        return booking

    # ------------------------------------------------------------------
    # Cancellation and no-show
    # ------------------------------------------------------------------

    async def cancel(self, booking_id: str, user: User, reason: Optional[str] = None) -> Booking:
        """Cancel a confirmed booking. Escrow stays put for an admin to settle."""
        booking = await get_booking_or_404(self.db, booking_id)
        actor = actor_for(booking, user)
        state_machine.validate(BookingAction.CANCEL, booking, actor)

        async with atomic(self.db):
            await cancel_confirmed(
                self.db, booking, actor=actor, actor_id=user.id, reason=reason,
            )

        logger.info("Booking cancelled: booking=%s by=%s", booking.id, actor.value)
        if actor == BookingActor.ADMIN:
            recipients = [booking.tenant_id, booking.hunter_id]
        else:
            recipients = [other_party_id(booking, actor)]
        await self.notifier.send_many(
            recipients,
            "Booking Cancelled",
            f"Your viewing has been cancelled by {user.name}. "
            f"Reason: {reason or 'No reason provided'}",
            NotificationType.BOOKING_CANCELLED,
            f"/bookings/{booking.id}",
        )
        return booking

    async def report_no_show(
        self, booking_id: str, user: User, reason: Optional[str] = None
    ) -> tuple[Booking, Dispute]:
        """Either party reports that the other did not turn up."""
        booking = await get_booking_or_404(self.db, booking_id)
        actor = actor_for(booking, user)
        state_machine.validate(BookingAction.REPORT_NO_SHOW, booking, actor)

        tenant_reporting = actor == BookingActor.TENANT
        category = DisputeCategory.NO_SHOW_HUNTER if tenant_reporting else DisputeCategory.NO_SHOW_TENANT
        absent_party = "Hunter" if tenant_reporting else "Tenant"
        title = await self._property_title(booking)

        async with atomic(self.db):
            dispute = open_dispute(
                self.db, booking,
                category=category,
                title=f"No-Show Report - {title}",
                description=reason or f"{absent_party} did not show up for scheduled viewing",
                reporter_id=user.id,
                against_id=other_party_id(booking, actor),
            )
            await cancel_confirmed(
                self.db, booking,
                actor=actor, actor_id=user.id, reason=reason,
                viewing_outcome=ViewingOutcome.ISSUE_REPORTED,
            )
            record_event(
                self.db, booking, BookingEventType.NO_SHOW_REPORTED, actor, user.id,
                data={"category": category.value},
            )

        logger.info("No-show reported: booking=%s category=%s", booking.id, category.value)
        await self.notifier.notify_admins(
            "No-Show Reported",
            f"A no-show has been reported for viewing at {title}.",
            NotificationType.NO_SHOW_REPORTED,
        )
        return booking, dispute
