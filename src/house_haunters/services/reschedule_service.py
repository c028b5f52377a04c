"""Reschedule Service - propose, answer and counter schedule changes.

Any accepted schedule (original proposal or counter-proposal) goes through
``_apply_schedule`` which overwrites the booking's schedule, recomputes the
auto-release deadline and resets every meeting-confirmation flag.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from house_haunters.app.config import Settings, get_settings
from house_haunters.domain.enums import (
    BookingAction,
    BookingEventType,
    MeetingPointStatus,
    MeetingPointType,
    NotificationType,
    RescheduleAction,
    RescheduleStatus,
)
from house_haunters.domain.models import (
    Booking,
    MeetingPoint,
    RescheduleRequest,
    User,
    utcnow,
)
from house_haunters.services.booking_lifecycle import (
    atomic,
    get_booking_or_404,
    other_party_id,
    record_event,
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


def _validate_schedule(date_value: str, time_value: str) -> None:
    try:
        parse_schedule(date_value, time_value)
    except ValueError:
        raise InvalidArgumentError("Date must be YYYY-MM-DD and time must be HH:MM")


class RescheduleService:
    """Single entry point for every reschedule flow on a booking."""

    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationService,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.settings = settings or get_settings()

    async def _get_request_or_404(self, booking_id: str, reschedule_id: str) -> RescheduleRequest:
        result = await self.db.execute(
            select(RescheduleRequest).where(
                RescheduleRequest.id == reschedule_id,
                RescheduleRequest.booking_id == booking_id,
            )
        )
        request = result.scalar_one_or_none()
        if not request:
            raise NotFoundError("Reschedule request not found")
        return request

    async def _apply_schedule(
        self,
        booking: Booking,
        date_value: str,
        time_value: str,
        end_time: str,
        location: Optional[dict],
        shared_by: str,
    ) -> None:
        """Overwrite the schedule and reset the meeting handshake."""
        booking.scheduled_date = date_value
        booking.scheduled_time = time_value
        booking.scheduled_end_time = end_time
        booking.auto_release_at = compute_auto_release_deadline(
            date_value,
            time_value,
            self.settings.viewing_duration_minutes,
            self.settings.auto_release_grace_minutes,
        )
        booking.hunter_met_confirmed = False
        booking.tenant_met_confirmed = False
        booking.physical_meeting_confirmed = False
        booking.tenant_confirmed = False
        booking.actual_start_time = None

        if location:
            result = await self.db.execute(
                select(MeetingPoint).where(MeetingPoint.booking_id == booking.id)
            )
            meeting_point = result.scalar_one_or_none()
            if meeting_point is None:
                meeting_point = MeetingPoint(
                    booking_id=booking.id, type=MeetingPointType.LANDMARK.value
                )
                self.db.add(meeting_point)
            meeting_point.location = location
            meeting_point.status = MeetingPointStatus.PENDING.value
            meeting_point.shared_by = shared_by
            meeting_point.shared_at = utcnow()
            meeting_point.tenant_viewed = False
            meeting_point.tenant_viewed_at = None

    async def request_reschedule(
        self,
        booking_id: str,
        user: User,
        proposed_date: str,
        proposed_time: str,
        reason: Optional[str] = None,
        proposed_location: Optional[dict] = None,
    ) -> RescheduleRequest:
        booking = await get_booking_or_404(self.db, booking_id)
        actor = actor_for(booking, user)
        state_machine.validate(BookingAction.REQUEST_RESCHEDULE, booking, actor)
        _validate_schedule(proposed_date, proposed_time)

        result = await self.db.execute(
            select(RescheduleRequest.id).where(
                RescheduleRequest.booking_id == booking.id,
                RescheduleRequest.status == RescheduleStatus.PENDING.value,
            )
        )
        if result.first() is not None:
            raise ConflictError("There is already a pending reschedule request")

        async with atomic(self.db):
            request = RescheduleRequest(
                booking_id=booking.id,
                requested_by=user.id,
                proposed_date=proposed_date,
                proposed_time=proposed_time,
                proposed_end_time=compute_end_time(
                    proposed_time, self.settings.viewing_duration_minutes
                ),
                proposed_location=proposed_location,
                reason=reason,
                status=RescheduleStatus.PENDING.value,
            )
            self.db.add(request)
            try:
                await self.db.flush()
            except IntegrityError:
                raise ConflictError("There is already a pending reschedule request")
            record_event(
                self.db, booking, BookingEventType.RESCHEDULE_REQUESTED, actor, user.id,
                data={"date": proposed_date, "time": proposed_time, "reason": reason},
            )

        logger.info(
            "Reschedule requested: booking=%s by=%s to %s %s",
            booking.id, actor.value, proposed_date, proposed_time,
        )
        await self.notifier.send(
            other_party_id(booking, actor),
            "Reschedule Request",
            f"{user.name} has requested to reschedule the viewing.",
            NotificationType.RESCHEDULE_REQUESTED,
            f"/bookings/{booking.id}",
        )
        return request

    async def respond(
        self,
        booking_id: str,
        reschedule_id: str,
        user: User,
        action: str,
        counter_date: Optional[str] = None,
        counter_time: Optional[str] = None,
        counter_reason: Optional[str] = None,
        counter_location: Optional[dict] = None,
    ) -> RescheduleRequest:
        """The non-requesting party accepts, rejects or counters a proposal."""
        booking = await get_booking_or_404(self.db, booking_id)
        request = await self._get_request_or_404(booking.id, reschedule_id)
        actor = actor_for(booking, user)
        state_machine.check_actor(BookingAction.RESPOND_RESCHEDULE, actor)
        if request.requested_by == user.id:
            raise ForbiddenError("You cannot respond to your own request")

        try:
            action_enum = RescheduleAction((action or "").lower())
        except ValueError:
            raise InvalidArgumentError("action must be one of: accept, reject, counter")
        if request.status != RescheduleStatus.PENDING.value:
            raise InvalidStateError(f"Reschedule request is already {request.status}")
        state_machine.check_phase(BookingAction.RESPOND_RESCHEDULE, booking)

        if action_enum == RescheduleAction.COUNTER:
            if not counter_date or not counter_time:
                raise InvalidArgumentError("Counter date and time are required")
            _validate_schedule(counter_date, counter_time)

        now = utcnow()
        async with atomic(self.db):
            request.responded_by = user.id
            request.responded_at = now

            if action_enum == RescheduleAction.ACCEPT:
                request.status = RescheduleStatus.ACCEPTED.value
                await self._apply_schedule(
                    booking,
                    request.proposed_date,
                    request.proposed_time,
                    request.proposed_end_time,
                    request.proposed_location,
                    request.requested_by,
                )
                record_event(
                    self.db, booking, BookingEventType.RESCHEDULED, actor, user.id,
                    data={"reschedule_id": request.id, "date": request.proposed_date,
                          "time": request.proposed_time},
                )
            elif action_enum == RescheduleAction.REJECT:
                request.status = RescheduleStatus.REJECTED.value
            else:
                request.status = RescheduleStatus.COUNTERED.value
                request.counter_date = counter_date
                request.counter_time = counter_time
                request.counter_end_time = compute_end_time(
                    counter_time, self.settings.viewing_duration_minutes
                )
                request.counter_location = counter_location
                request.counter_reason = counter_reason

        logger.info(
            "Reschedule %s: booking=%s request=%s", request.status, booking.id, request.id
        )

        if action_enum == RescheduleAction.ACCEPT:
            await self.notifier.send(
                request.requested_by,
                "Reschedule Accepted",
                "Your reschedule request has been accepted. "
                f"New date: {request.proposed_date} at {request.proposed_time}",
                NotificationType.RESCHEDULE_ACCEPTED,
                f"/bookings/{booking.id}",
            )
        elif action_enum == RescheduleAction.REJECT:
            await self.notifier.send(
                request.requested_by,
                "Reschedule Rejected",
                "Your reschedule request has been rejected. The original schedule remains.",
                NotificationType.RESCHEDULE_REJECTED,
                f"/bookings/{booking.id}",
            )
        else:
            await self.notifier.send(
                request.requested_by,
                "Counter-Proposal",
                f"{user.name} proposed {counter_date} at {counter_time} instead.",
                NotificationType.RESCHEDULE_COUNTERED,
                f"/bookings/{booking.id}",
            )
        return request

    async def accept_counter(
        self, booking_id: str, reschedule_id: str, user: User
    ) -> RescheduleRequest:
        """The original requester takes the counter-proposal."""
        booking = await get_booking_or_404(self.db, booking_id)
        request = await self._get_request_or_404(booking.id, reschedule_id)
        if request.requested_by != user.id:
            raise ForbiddenError("Only the original requester can accept the counter-proposal")
        if request.status != RescheduleStatus.COUNTERED.value:
            raise InvalidStateError("No counter-proposal to accept")
        actor = actor_for(booking, user)
        state_machine.validate(BookingAction.RESPOND_RESCHEDULE, booking, actor)

        async with atomic(self.db):
            request.status = RescheduleStatus.ACCEPTED.value
            await self._apply_schedule(
                booking,
                request.counter_date,
                request.counter_time,
                request.counter_end_time,
                request.counter_location,
                user.id,
            )
            record_event(
                self.db, booking, BookingEventType.RESCHEDULED, actor, user.id,
                data={"reschedule_id": request.id, "date": request.counter_date,
                      "time": request.counter_time, "counter": True},
            )

        logger.info("Counter-proposal accepted: booking=%s request=%s", booking.id, request.id)
        if request.responded_by:
            await self.notifier.send(
                request.responded_by,
                "Counter-Proposal Accepted",
                "Your counter-proposal has been accepted. "
                f"New date: {request.counter_date} at {request.counter_time}",
                NotificationType.COUNTER_ACCEPTED,
                f"/bookings/{booking.id}",
            )
        return request
