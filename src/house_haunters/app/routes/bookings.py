"""Booking lifecycle API endpoints.

Every mutation goes through a service that validates the action against
BookingStateMachine, commits one transaction and records a BookingEvent.
Domain errors become HTTP errors here.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from house_haunters.app.routes.auth import get_current_user_dep
from house_haunters.domain.enums import MeetingPointType, UserRole
from house_haunters.domain.models import Booking, BookingEvent, MeetingPoint, User
from house_haunters.domain.schemas import (
    AlternativeAccept,
    AlternativeOfferCreate,
    AlternativeOfferResponse,
    AlternativeRequest,
    BookingResponse,
    DisputeResponse,
    MeetingPointRespond,
    MeetingPointResponse,
    MeetingPointShare,
    OutcomeSubmit,
    ReasonBody,
    RescheduleCreate,
    RescheduleRespond,
    RescheduleResponse,
    ViewingRequestResponse,
)
from house_haunters.infra.database import get_db
from house_haunters.services.alternative_service import AlternativeService
from house_haunters.services.booking_lifecycle import BookingLifecycle, get_booking_or_404
from house_haunters.services.booking_state_machine import (
    BookingError,
    BookingStateMachine,
    actor_for,
    derive_phase,
)
from house_haunters.services.notification_service import (
    NotificationService,
    get_notification_service,
)
from house_haunters.services.reschedule_service import RescheduleService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["bookings"])
state_machine = BookingStateMachine()


def serialize_booking(booking: Booking, user: User) -> BookingResponse:
    """Booking snapshot with its phase and the actions ``user`` may take next."""
    view = BookingResponse.model_validate(booking)
    view.phase = derive_phase(booking).value
    view.allowed_actions = [
        a.value for a in state_machine.get_allowed_actions(booking, actor_for(booking, user))
    ]
    return view


async def _get_visible_booking(db: AsyncSession, booking_id: str, user: User) -> Booking:
    """Fetch a booking the caller is a party to (or any booking for admins)."""
    try:
        booking = await get_booking_or_404(db, booking_id)
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if actor_for(booking, user) is None:
        raise HTTPException(status_code=403, detail="Access denied")
    return booking


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("")
async def list_bookings(
    status: Optional[str] = Query(None),
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    query = select(Booking)
    if user.role != UserRole.ADMIN.value:
        query = query.where(or_(Booking.tenant_id == user.id, Booking.hunter_id == user.id))
    if status:
        query = query.where(Booking.status == status)
    result = await db.execute(query.order_by(Booking.created_at.desc()))
    return [serialize_booking(b, user) for b in result.scalars().all()]


@router.get("/{booking_id}")
async def get_booking(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    booking = await _get_visible_booking(db, booking_id, user)
    result = await db.execute(select(MeetingPoint).where(MeetingPoint.booking_id == booking.id))
    meeting_point = result.scalar_one_or_none()
    return {
        "booking": serialize_booking(booking, user),
        "meeting_point": MeetingPointResponse.model_validate(meeting_point) if meeting_point else None,
    }


@router.get("/{booking_id}/timeline")
async def get_booking_timeline(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    """Audit trail of the booking, oldest first."""
    booking = await _get_visible_booking(db, booking_id, user)
    result = await db.execute(
        select(BookingEvent)
        .where(BookingEvent.booking_id == booking.id)
        .order_by(BookingEvent.created_at)
    )
    return [
        {
            "id": e.id,
            "event_type": e.event_type,
            "actor": e.actor,
            "actor_id": e.actor_id,
            "from_status": e.from_status,
            "to_status": e.to_status,
            "data": e.data,
            "created_at": e.created_at.isoformat() if e.created_at else None,
        }
        for e in result.scalars().all()
    ]


# ---------------------------------------------------------------------------
# Meeting point
# ---------------------------------------------------------------------------


@router.post("/{booking_id}/meeting-point")
async def share_meeting_point(
    booking_id: str,
    body: MeetingPointShare,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    try:
        point_type = MeetingPointType(body.type.upper())
    except ValueError:
        raise HTTPException(status_code=400, detail="type must be PROPERTY or LANDMARK")
    lifecycle = BookingLifecycle(db, notifier)
    try:
        meeting_point = await lifecycle.share_meeting_point(
            booking_id, user, point_type, body.location
        )
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Meeting point shared successfully",
        "meeting_point": MeetingPointResponse.model_validate(meeting_point),
    }


@router.post("/{booking_id}/meeting-point/respond")
async def respond_meeting_point(
    booking_id: str,
    body: MeetingPointRespond,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    lifecycle = BookingLifecycle(db, notifier)
    try:
        meeting_point = await lifecycle.respond_meeting_point(booking_id, user, body.action)
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": f"Meeting point {meeting_point.status.lower()}",
        "meeting_point": MeetingPointResponse.model_validate(meeting_point),
    }


@router.post("/{booking_id}/meeting-point/viewed")
async def mark_meeting_point_viewed(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    lifecycle = BookingLifecycle(db, notifier)
    try:
        meeting_point = await lifecycle.mark_meeting_point_viewed(booking_id, user)
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Meeting point marked as viewed",
        "meeting_point": MeetingPointResponse.model_validate(meeting_point),
    }


# ---------------------------------------------------------------------------
# Physical meeting, outcome and completion
# ---------------------------------------------------------------------------


@router.post("/{booking_id}/confirm-meeting")
async def confirm_meeting(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    lifecycle = BookingLifecycle(db, notifier)
    try:
        booking, _ = await lifecycle.confirm_meeting(booking_id, user)
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if booking.physical_meeting_confirmed:
        message = "Both parties confirmed. Viewing in progress."
    else:
        message = "Arrival confirmed. Waiting for the other party."
    return {
        "success": True,
        "message": message,
        "booking": serialize_booking(booking, user),
        "both_confirmed": booking.physical_meeting_confirmed,
    }


@router.post("/{booking_id}/confirm-arrival")
async def confirm_arrival(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    return await confirm_meeting(booking_id=booking_id, user=user, db=db, notifier=notifier)


@router.post("/{booking_id}/outcome")
async def submit_outcome(
    booking_id: str,
    body: OutcomeSubmit,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    lifecycle = BookingLifecycle(db, notifier)
    try:
        booking = await lifecycle.submit_outcome(
            booking_id,
            user,
            body.outcome,
            feedback=body.feedback,
            evidence_urls=body.evidence_urls,
            evidence_description=body.evidence_description,
        )
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Viewing outcome recorded",
        "booking": serialize_booking(booking, user),
    }


@router.post("/{booking_id}/complete")
async def confirm_completed(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    lifecycle = BookingLifecycle(db, notifier)
    try:
        booking = await lifecycle.confirm_completed(booking_id, user)
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Viewing confirmed. Payment released to hunter.",
        "booking": serialize_booking(booking, user),
    }


# ---------------------------------------------------------------------------
# Reschedule
# ---------------------------------------------------------------------------


@router.post("/{booking_id}/reschedule")
async def request_reschedule(
    booking_id: str,
    body: RescheduleCreate,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    service = RescheduleService(db, notifier)
    try:
        request = await service.request_reschedule(
            booking_id,
            user,
            body.proposed_date,
            body.proposed_time,
            reason=body.reason,
            proposed_location=body.proposed_location,
        )
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Reschedule request sent",
        "reschedule_request": RescheduleResponse.model_validate(request),
    }


@router.post("/{booking_id}/reschedule/{reschedule_id}/respond")
async def respond_reschedule(
    booking_id: str,
    reschedule_id: str,
    body: RescheduleRespond,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    service = RescheduleService(db, notifier)
    try:
        request = await service.respond(
            booking_id,
            reschedule_id,
            user,
            body.action,
            counter_date=body.counter_date,
            counter_time=body.counter_time,
            counter_reason=body.counter_reason,
            counter_location=body.counter_location,
        )
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": f"Reschedule request {request.status.lower()}",
        "reschedule_request": RescheduleResponse.model_validate(request),
    }


@router.post("/{booking_id}/reschedule/{reschedule_id}/accept-counter")
async def accept_counter(
    booking_id: str,
    reschedule_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    service = RescheduleService(db, notifier)
    try:
        request = await service.accept_counter(booking_id, reschedule_id, user)
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Counter-proposal accepted",
        "reschedule_request": RescheduleResponse.model_validate(request),
    }


# ---------------------------------------------------------------------------
# Cancellation and no-show
# ---------------------------------------------------------------------------


@router.post("/{booking_id}/cancel")
async def cancel_booking(
    booking_id: str,
    body: ReasonBody,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    lifecycle = BookingLifecycle(db, notifier)
    try:
        booking = await lifecycle.cancel(booking_id, user, body.reason)
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Booking cancelled",
        "booking": serialize_booking(booking, user),
    }


@router.post("/{booking_id}/report-no-show")
async def report_no_show(
    booking_id: str,
    body: ReasonBody,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    lifecycle = BookingLifecycle(db, notifier)
    try:
        booking, dispute = await lifecycle.report_no_show(booking_id, user, body.reason)
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "No-show reported. An administrator will review the case.",
        "booking": serialize_booking(booking, user),
        "dispute": DisputeResponse.model_validate(dispute),
    }


# ---------------------------------------------------------------------------
# Alternative property
# ---------------------------------------------------------------------------


@router.post("/{booking_id}/request-alternative")
async def request_alternative(
    booking_id: str,
    body: AlternativeRequest,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    service = AlternativeService(db, notifier)
    try:
        booking = await service.request_alternative(
            booking_id, user, preferences=body.preferences, reason=body.reason
        )
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Alternative property requested",
        "booking": serialize_booking(booking, user),
    }


@router.post("/{booking_id}/offer-alternative")
async def offer_alternative(
    booking_id: str,
    body: AlternativeOfferCreate,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    service = AlternativeService(db, notifier)
    try:
        viewing_request, offer = await service.offer_alternative(
            booking_id,
            user,
            body.property_id,
            message=body.message,
            proposed_date=body.proposed_date,
            proposed_time=body.proposed_time,
        )
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Alternative property offered",
        "viewing_request": ViewingRequestResponse.model_validate(viewing_request),
        "offer": AlternativeOfferResponse.model_validate(offer),
    }


@router.post("/{booking_id}/accept-alternative")
async def accept_alternative(
    booking_id: str,
    body: AlternativeAccept,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    service = AlternativeService(db, notifier)
    try:
        old_booking, new_booking = await service.accept_alternative(
            booking_id, user, body.viewing_request_id
        )
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Alternative accepted. Escrow transferred to the new booking.",
        "old_booking": serialize_booking(old_booking, user),
        "new_booking": serialize_booking(new_booking, user),
    }


@router.post("/{booking_id}/decline-alternative")
async def decline_alternative(
    booking_id: str,
    body: ReasonBody,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    service = AlternativeService(db, notifier)
    try:
        booking, dispute = await service.decline_alternative(booking_id, user, body.reason)
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Alternative declined. A refund request has been sent to the admin team.",
        "booking": serialize_booking(booking, user),
        "dispute": DisputeResponse.model_validate(dispute),
    }
