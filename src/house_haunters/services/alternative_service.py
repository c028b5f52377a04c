"""Alternative Property Service - swap a disappointing viewing for another property.

Flow: tenant records outcome ALTERNATIVE_REQUESTED -> tenant requests an
alternative -> hunter offers one of their own properties -> tenant accepts
(escrow moves to a new booking) or declines (a misrepresentation dispute is
opened and the booking is cancelled pending an admin refund).
"""

import json
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from house_haunters.app.config import Settings, get_settings
from house_haunters.domain.enums import (
    AlternativeOfferStatus,
    BookingAction,
    BookingEventType,
    BookingStatus,
    DisputeCategory,
    NotificationType,
    PaymentStatus,
    ViewingPaymentStatus,
    ViewingRequestStatus,
)
from house_haunters.domain.models import (
    AlternativeOffer,
    Booking,
    Dispute,
    Property,
    User,
    ViewingRequest,
    new_id,
    utcnow,
)
from house_haunters.services.booking_lifecycle import (
    atomic,
    cancel_confirmed,
    claim_property_lock,
    get_booking_or_404,
    open_dispute,
    record_event,
    release_property_lock,
)
from house_haunters.services.booking_state_machine import (
    BookingStateMachine,
    ConflictError,
    ForbiddenError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
    actor_for,
)
from house_haunters.services.escrow_ledger import (
    compute_auto_release_deadline,
    compute_end_time,
    parse_schedule,
)
from house_haunters.services.notification_service import NotificationService

logger = logging.getLogger(__name__)
state_machine = BookingStateMachine()

DEFAULT_TIME_SLOT = "10:00"


class AlternativeService:
    """Request, offer, accept and decline alternative properties."""

    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationService,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.settings = settings or get_settings()

    async def _latest_pending_offer(self, booking_id: str) -> Optional[AlternativeOffer]:
        result = await self.db.execute(
            select(AlternativeOffer)
            .where(
                AlternativeOffer.booking_id == booking_id,
                AlternativeOffer.status == AlternativeOfferStatus.PENDING.value,
            )
            .order_by(AlternativeOffer.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def request_alternative(
        self,
        booking_id: str,
        user: User,
        preferences: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Booking:
        booking = await get_booking_or_404(self.db, booking_id)
        actor = actor_for(booking, user)
        state_machine.validate(BookingAction.REQUEST_ALTERNATIVE, booking, actor)

        details = {
            "type": "ALTERNATIVE_REQUEST",
            "preferences": preferences or "Looking for alternative property",
            "reason": reason or "Property did not meet expectations",
        }
        async with atomic(self.db):
            booking.tenant_feedback = json.dumps(details)
            record_event(
                self.db, booking, BookingEventType.ALTERNATIVE_REQUESTED, actor, user.id,
                data=details,
            )

        logger.info("Alternative requested: booking=%s", booking.id)
        await self.notifier.send(
            booking.hunter_id,
            "Alternative Property Requested",
            f"{user.name} would like to see an alternative property. "
            "Original payment remains in escrow.",
            NotificationType.ALTERNATIVE_REQUESTED,
            f"/bookings/{booking.id}",
        )
        return booking

    async def offer_alternative(
        self,
        booking_id: str,
        user: User,
        property_id: Optional[str],
        message: Optional[str] = None,
        proposed_date: Optional[str] = None,
        proposed_time: Optional[str] = None,
    ) -> tuple[ViewingRequest, AlternativeOffer]:
        """Hunter offers one of their own properties in place of the original."""
        booking = await get_booking_or_404(self.db, booking_id)
        actor = actor_for(booking, user)
        state_machine.check_actor(BookingAction.OFFER_ALTERNATIVE, actor)
        if not property_id:
            raise InvalidArgumentError("Property ID is required")

        prop = await self.db.get(Property, property_id)
        if prop is None:
            raise NotFoundError("Property not found")
        if prop.hunter_id != user.id:
            raise ForbiddenError("You can only offer your own properties")
        state_machine.check_phase(BookingAction.OFFER_ALTERNATIVE, booking)

        if prop.is_locked and prop.locked_by_booking_id != booking.id:
            raise ConflictError("Property is already booked")
        if await self._latest_pending_offer(booking.id) is not None:
            raise ConflictError("An alternative offer is already pending for this booking")

        date_value = proposed_date or utcnow().date().isoformat()
        time_value = proposed_time or DEFAULT_TIME_SLOT
        try:
            parse_schedule(date_value, time_value)
        except ValueError:
            raise InvalidArgumentError("Date must be YYYY-MM-DD and time must be HH:MM")

        text = message or "Alternative property offered by hunter"
        async with atomic(self.db):
            viewing_request = ViewingRequest(
                id=new_id(),
                property_id=prop.id,
                tenant_id=booking.tenant_id,
                proposed_dates=[{"date": date_value, "timeSlot": time_value}],
                message=text,
                status=ViewingRequestStatus.PENDING.value,
                # Funded by the original booking's escrow
                payment_status=ViewingPaymentStatus.ESCROW.value,
                amount=booking.amount,
            )
            self.db.add(viewing_request)
            offer = AlternativeOffer(
                booking_id=booking.id,
                property_id=prop.id,
                viewing_request_id=viewing_request.id,
                message=text,
                status=AlternativeOfferStatus.PENDING.value,
            )
            self.db.add(offer)
            record_event(
                self.db, booking, BookingEventType.ALTERNATIVE_OFFERED, actor, user.id,
                data={"property_id": prop.id, "viewing_request_id": viewing_request.id},
            )

        logger.info(
            "Alternative offered: booking=%s property=%s request=%s",
            booking.id, prop.id, viewing_request.id,
        )
        await self.notifier.send(
            booking.tenant_id,
            "Alternative Property Offered",
            f"{user.name} has offered you an alternative property to view: {prop.title}.",
            NotificationType.ALTERNATIVE_OFFERED,
            f"/viewing-requests/{viewing_request.id}",
        )
        return viewing_request, offer

    async def accept_alternative(
        self,
        booking_id: str,
        user: User,
        viewing_request_id: Optional[str] = None,
    ) -> tuple[Booking, Booking]:
        """Tenant accepts the offer; escrow moves to a new booking.

        Returns ``(old_booking, new_booking)``.
        """
        booking = await get_booking_or_404(self.db, booking_id)
        actor = actor_for(booking, user)
        state_machine.validate(BookingAction.ACCEPT_ALTERNATIVE, booking, actor)

        if viewing_request_id:
            result = await self.db.execute(
                select(AlternativeOffer).where(
                    AlternativeOffer.booking_id == booking.id,
                    AlternativeOffer.viewing_request_id == viewing_request_id,
                )
            )
            offer = result.scalar_one_or_none()
        else:
            offer = await self._latest_pending_offer(booking.id)
        if offer is None:
            raise NotFoundError("Alternative offer not found")
        if offer.status != AlternativeOfferStatus.PENDING.value:
            raise InvalidStateError(f"Alternative offer is already {offer.status}")

        viewing_request = await self.db.get(ViewingRequest, offer.viewing_request_id)
        if viewing_request is None:
            raise NotFoundError("Viewing request not found")

        proposals = viewing_request.proposed_dates or []
        first = proposals[0] if proposals else {}
        date_value = first.get("date") or utcnow().date().isoformat()
        time_value = first.get("timeSlot") or DEFAULT_TIME_SLOT

        now = utcnow()
        new_booking_id = new_id()
        async with atomic(self.db):
            result = await self.db.execute(
                update(Booking)
                .where(
                    Booking.id == booking.id,
                    Booking.status == BookingStatus.CONFIRMED.value,
                    Booking.payment_status == PaymentStatus.ESCROW.value,
                )
                .values(
                    status=BookingStatus.COMPLETED.value,
                    payment_status=PaymentStatus.RELEASED.value,
                    completed_at=now,
                    escrow_transferred_to=new_booking_id,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise InvalidStateError("Payment for this booking has already been settled")
            await self.db.refresh(booking)
            await release_property_lock(self.db, booking.property_id, booking.id)

            new_booking = Booking(
                id=new_booking_id,
                property_id=offer.property_id,
                tenant_id=booking.tenant_id,
                hunter_id=booking.hunter_id,
                viewing_request_id=viewing_request.id,
                amount=booking.amount,
                payment_status=PaymentStatus.ESCROW.value,
                status=BookingStatus.CONFIRMED.value,
                scheduled_date=date_value,
                scheduled_time=time_value,
                scheduled_end_time=compute_end_time(
                    time_value, self.settings.viewing_duration_minutes
                ),
                auto_release_at=compute_auto_release_deadline(
                    date_value,
                    time_value,
                    self.settings.viewing_duration_minutes,
                    self.settings.auto_release_grace_minutes,
                ),
            )
            self.db.add(new_booking)
            await self.db.flush()
            await claim_property_lock(self.db, offer.property_id, new_booking_id)

            viewing_request.status = ViewingRequestStatus.ACCEPTED.value
            offer.status = AlternativeOfferStatus.ACCEPTED.value
            offer.new_booking_id = new_booking_id

            record_event(
                self.db, booking, BookingEventType.ESCROW_TRANSFERRED, actor, user.id,
                from_status=BookingStatus.CONFIRMED.value,
                to_status=BookingStatus.COMPLETED.value,
                data={"new_booking_id": new_booking_id, "amount": str(booking.amount)},
            )
            record_event(
                self.db, new_booking, BookingEventType.CREATED, actor, user.id,
                to_status=BookingStatus.CONFIRMED.value,
                data={"transferred_from": booking.id},
            )

        logger.info(
            "Escrow transferred: booking=%s -> %s amount=%s",
            booking.id, new_booking_id, booking.amount,
        )
        await self.notifier.send(
            booking.hunter_id,
            "Alternative Accepted",
            f"{user.name} has accepted the alternative property. "
            "Escrow transferred to new booking.",
            NotificationType.ALTERNATIVE_ACCEPTED,
            f"/bookings/{new_booking_id}",
        )
        return booking, new_booking

    async def decline_alternative(
        self, booking_id: str, user: User, reason: Optional[str] = None
    ) -> tuple[Booking, Dispute]:
        """Tenant declines; the booking is cancelled and a refund dispute opened."""
        booking = await get_booking_or_404(self.db, booking_id)
        actor = actor_for(booking, user)
        state_machine.validate(BookingAction.DECLINE_ALTERNATIVE, booking, actor)

        offer = await self._latest_pending_offer(booking.id)
        viewing_request = None
        if offer is not None:
            viewing_request = await self.db.get(ViewingRequest, offer.viewing_request_id)

        async with atomic(self.db):
            if offer is not None:
                offer.status = AlternativeOfferStatus.DECLINED.value
            if viewing_request is not None:
                viewing_request.status = ViewingRequestStatus.REJECTED.value
            dispute = open_dispute(
                self.db, booking,
                category=DisputeCategory.MISREPRESENTATION,
                title="Refund Request - Alternative Declined",
                description=reason or "Tenant declined alternative property and requests refund",
                reporter_id=booking.tenant_id,
                against_id=booking.hunter_id,
            )
            await cancel_confirmed(
                self.db, booking, actor=actor, actor_id=user.id, reason=reason,
            )
            record_event(
                self.db, booking, BookingEventType.ALTERNATIVE_DECLINED, actor, user.id,
                data={"offer_id": offer.id if offer else None},
            )

        logger.info("Alternative declined: booking=%s", booking.id)
        await self.notifier.notify_admins(
            "Refund Request",
            "Tenant declined alternative property and requests refund "
            f"for booking {booking.id}",
            NotificationType.REFUND_REQUESTED,
        )
        return booking, dispute
