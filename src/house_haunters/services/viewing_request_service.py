"""Viewing Request Service - negotiation and simulated escrow before a booking exists.

A tenant asks to view a property, pays the viewing fee into escrow, and the
two parties may trade counter-proposals. Acceptance claims the property lock
and turns the request into a CONFIRMED booking.

Payment is simulated: no gateway is called, a ``SIM`` receipt reference is
recorded and the request moves straight to ESCROW.
"""

import logging
import time
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from house_haunters.app.config import Settings, get_settings
from house_haunters.domain.enums import (
    BookingActor,
    BookingEventType,
    BookingStatus,
    MeetingPointStatus,
    MeetingPointType,
    NotificationType,
    PaymentStatus,
    UserRole,
    ViewingPaymentStatus,
    ViewingRequestStatus,
)
from house_haunters.domain.models import (
    AlternativeOffer,
    Booking,
    MeetingPoint,
    Property,
    User,
    ViewingRequest,
    new_id,
)
from house_haunters.services.booking_lifecycle import (
    atomic,
    claim_property_lock,
    record_event,
)
from house_haunters.services.booking_state_machine import (
    ConflictError,
    ForbiddenError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
)
from house_haunters.services.escrow_ledger import (
    compute_auto_release_deadline,
    compute_end_time,
    parse_schedule,
)
from house_haunters.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

OPEN_REQUEST_STATUSES = {
    ViewingRequestStatus.PENDING.value,
    ViewingRequestStatus.COUNTERED.value,
}


def simulated_receipt(prefix: str = "SIM") -> str:
    """M-Pesa style receipt number for a simulated payment or payout."""
    return f"{prefix}{int(time.time() * 1000) % 100_000_000:08d}"


def _meeting_point_from(location: dict) -> tuple[str, dict]:
    """Split a ``{type, location}`` payload into a point type and location body."""
    point_type = location.get("type") or MeetingPointType.LANDMARK.value
    if point_type not in {t.value for t in MeetingPointType}:
        raise InvalidArgumentError("Meeting point type must be PROPERTY or LANDMARK")
    return point_type, location.get("location") or location


class ViewingRequestService:
    """Tenant viewing requests from creation to booking."""

    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationService,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.settings = settings or get_settings()

    async def _get_request_or_404(self, request_id: str) -> tuple[ViewingRequest, Property]:
        viewing_request = await self.db.get(ViewingRequest, request_id)
        if viewing_request is None:
            raise NotFoundError("Viewing request not found")
        prop = await self.db.get(Property, viewing_request.property_id)
        if prop is None:
            raise NotFoundError("Property not found")
        return viewing_request, prop

    @staticmethod
    def _check_party(viewing_request: ViewingRequest, prop: Property, user: User) -> None:
        if user.id not in (viewing_request.tenant_id, prop.hunter_id):
            raise ForbiddenError("Not authorized")

    @staticmethod
    def _check_open(viewing_request: ViewingRequest) -> None:
        if viewing_request.status not in OPEN_REQUEST_STATUSES:
            raise InvalidStateError(f"Viewing request is already {viewing_request.status}")

    async def _check_not_alternative(self, viewing_request: ViewingRequest) -> None:
        """Requests backing an alternative offer are funded by the original booking."""
        result = await self.db.execute(
            select(AlternativeOffer.id).where(
                AlternativeOffer.viewing_request_id == viewing_request.id
            )
        )
        if result.first() is not None:
            raise InvalidStateError("Alternative offers are handled from the original booking")

    async def list_requests(self, user: User) -> list[ViewingRequest]:
        """Requests visible to ``user``: their own, or those on their properties."""
        query = select(ViewingRequest)
        if user.role == UserRole.HUNTER.value:
            owned = select(Property.id).where(Property.hunter_id == user.id)
            query = query.where(ViewingRequest.property_id.in_(owned))
        elif user.role != UserRole.ADMIN.value:
            query = query.where(ViewingRequest.tenant_id == user.id)
        result = await self.db.execute(query.order_by(ViewingRequest.created_at.desc()))
        return list(result.scalars().all())

    async def create(
        self,
        user: User,
        property_id: str,
        proposed_dates: list[dict],
        amount: Decimal,
        message: Optional[str] = None,
    ) -> ViewingRequest:
        if user.role != UserRole.TENANT.value:
            raise ForbiddenError("Only tenants can request viewings")
        if not proposed_dates:
            raise InvalidArgumentError("At least one proposed date is required")
        for slot in proposed_dates:
            try:
                parse_schedule(slot.get("date") or "", slot.get("timeSlot") or "")
            except ValueError:
                raise InvalidArgumentError("Date must be YYYY-MM-DD and time must be HH:MM")
        if Decimal(str(amount)) < 0:
            raise InvalidArgumentError("Amount cannot be negative")

        prop = await self.db.get(Property, property_id)
        if prop is None:
            raise NotFoundError("Property not found")
        if prop.is_locked:
            raise ConflictError("Property is already booked")

        result = await self.db.execute(
            select(ViewingRequest.id).where(
                ViewingRequest.property_id == prop.id,
                ViewingRequest.tenant_id == user.id,
                ViewingRequest.status.in_(list(OPEN_REQUEST_STATUSES)),
                ViewingRequest.payment_status == ViewingPaymentStatus.UNPAID.value,
            )
        )
        if result.first() is not None:
            raise ConflictError("You already have a pending viewing request for this property")

        async with atomic(self.db):
            viewing_request = ViewingRequest(
                property_id=prop.id,
                tenant_id=user.id,
                proposed_dates=proposed_dates,
                message=message,
                status=ViewingRequestStatus.PENDING.value,
                payment_status=ViewingPaymentStatus.UNPAID.value,
                amount=amount,
            )
            self.db.add(viewing_request)

        logger.info(
            "Viewing request created: request=%s property=%s amount=%s",
            viewing_request.id, prop.id, viewing_request.amount,
        )
        await self.notifier.send(
            prop.hunter_id,
            "New Viewing Request",
            f"A tenant has requested to view {prop.title}.",
            NotificationType.NEW_VIEWING_REQUEST,
            f"/viewing-requests/{viewing_request.id}",
        )
        return viewing_request

    async def pay(self, request_id: str, user: User) -> ViewingRequest:
        """Simulated M-Pesa payment: funds go straight into escrow."""
        viewing_request, _ = await self._get_request_or_404(request_id)
        if viewing_request.tenant_id != user.id:
            raise ForbiddenError("Only the requesting tenant can pay for this viewing")
        self._check_open(viewing_request)
        if viewing_request.payment_status != ViewingPaymentStatus.UNPAID.value:
            raise InvalidStateError("Viewing request has already been paid")

        async with atomic(self.db):
            viewing_request.payment_status = ViewingPaymentStatus.ESCROW.value
            viewing_request.payment_reference = simulated_receipt()

        logger.info(
            "Payment held in escrow: request=%s receipt=%s",
            viewing_request.id, viewing_request.payment_reference,
        )
        return viewing_request

    async def counter(
        self,
        request_id: str,
        user: User,
        date_value: str,
        time_value: str,
        location: Optional[dict] = None,
        message: Optional[str] = None,
    ) -> ViewingRequest:
        viewing_request, prop = await self._get_request_or_404(request_id)
        self._check_party(viewing_request, prop, user)
        self._check_open(viewing_request)
        await self._check_not_alternative(viewing_request)
        if not date_value or not time_value:
            raise InvalidArgumentError("Counter date and time are required")
        try:
            parse_schedule(date_value, time_value)
        except ValueError:
            raise InvalidArgumentError("Date must be YYYY-MM-DD and time must be HH:MM")

        async with atomic(self.db):
            viewing_request.status = ViewingRequestStatus.COUNTERED.value
            viewing_request.counter_date = date_value
            viewing_request.counter_time = time_value
            viewing_request.counter_location = location
            viewing_request.countered_by = user.id
            viewing_request.message = message or "Alternative proposed"

        logger.info("Viewing request countered: request=%s by=%s", viewing_request.id, user.id)
        recipient = prop.hunter_id if user.id == viewing_request.tenant_id else viewing_request.tenant_id
        await self.notifier.send(
            recipient,
            "New Counter-Offer",
            f"A counter-offer has been proposed for {prop.title}.",
            NotificationType.VIEWING_REQUEST_COUNTERED,
            f"/viewing-requests/{viewing_request.id}",
        )
        return viewing_request

    async def reject(
        self, request_id: str, user: User, reason: Optional[str] = None
    ) -> ViewingRequest:
        viewing_request, prop = await self._get_request_or_404(request_id)
        self._check_party(viewing_request, prop, user)
        self._check_open(viewing_request)
        await self._check_not_alternative(viewing_request)

        async with atomic(self.db):
            viewing_request.status = ViewingRequestStatus.REJECTED.value
            viewing_request.message = reason or "Request rejected"
            if viewing_request.payment_status == ViewingPaymentStatus.ESCROW.value:
                viewing_request.payment_status = ViewingPaymentStatus.REFUNDED.value

        logger.info(
            "Viewing request rejected: request=%s payment=%s",
            viewing_request.id, viewing_request.payment_status,
        )
        recipient = prop.hunter_id if user.id == viewing_request.tenant_id else viewing_request.tenant_id
        await self.notifier.send(
            recipient,
            "Viewing Request Rejected",
            f"The request for {prop.title} was rejected.",
            NotificationType.VIEWING_REQUEST_REJECTED,
            f"/viewing-requests/{viewing_request.id}",
        )
        return viewing_request

    async def accept(
        self,
        request_id: str,
        user: User,
        scheduled_date: Optional[str] = None,
        scheduled_time: Optional[str] = None,
        location: Optional[dict] = None,
    ) -> tuple[ViewingRequest, Booking]:
        """Confirm the viewing: lock the property and create the booking.

        Whoever made the latest counter-proposal cannot accept it; an
        uncountered request is accepted by the hunter.
        """
        viewing_request, prop = await self._get_request_or_404(request_id)
        self._check_party(viewing_request, prop, user)
        if viewing_request.countered_by == user.id:
            raise ForbiddenError("You cannot accept your own counter-offer")
        if viewing_request.countered_by is None and user.id != prop.hunter_id:
            raise ForbiddenError("Only the hunter can accept this viewing request")
        self._check_open(viewing_request)
        if viewing_request.payment_status != ViewingPaymentStatus.ESCROW.value:
            raise InvalidStateError("Payment must be in escrow before acceptance")
        await self._check_not_alternative(viewing_request)

        proposals = viewing_request.proposed_dates or []
        first = proposals[0] if proposals else {}
        date_value = scheduled_date or viewing_request.counter_date or first.get("date")
        time_value = scheduled_time or viewing_request.counter_time or first.get("timeSlot")
        if not date_value or not time_value:
            raise InvalidArgumentError("Scheduled date and time are required")
        try:
            parse_schedule(date_value, time_value)
        except ValueError:
            raise InvalidArgumentError("Date must be YYYY-MM-DD and time must be HH:MM")

        location = location or viewing_request.counter_location
        point = _meeting_point_from(location) if location else None
        actor = BookingActor.HUNTER if user.id == prop.hunter_id else BookingActor.TENANT
        booking_id = new_id()

        async with atomic(self.db):
            await claim_property_lock(self.db, prop.id, booking_id)
            booking = Booking(
                id=booking_id,
                property_id=prop.id,
                tenant_id=viewing_request.tenant_id,
                hunter_id=prop.hunter_id,
                viewing_request_id=viewing_request.id,
                amount=viewing_request.amount or 0,
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
            self.db.add(booking)
            if point is not None:
                self.db.add(
                    MeetingPoint(
                        booking_id=booking_id,
                        type=point[0],
                        location=point[1],
                        status=MeetingPointStatus.PENDING.value,
                        shared_by=prop.hunter_id,
                    )
                )
            viewing_request.status = ViewingRequestStatus.ACCEPTED.value
            record_event(
                self.db, booking, BookingEventType.CREATED, actor, user.id,
                to_status=BookingStatus.CONFIRMED.value,
                data={"viewing_request_id": viewing_request.id},
            )

        logger.info(
            "Viewing confirmed: request=%s booking=%s at %s %s",
            viewing_request.id, booking.id, date_value, time_value,
        )
        await self.notifier.send(
            viewing_request.tenant_id,
            "Viewing Confirmed!",
            f"Your viewing for {prop.title} is confirmed for {date_value} at {time_value}.",
            NotificationType.VIEWING_CONFIRMED,
            f"/bookings/{booking.id}",
        )
        return viewing_request, booking
