"""Viewing request API endpoints: create, pay, counter, reject, accept."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from house_haunters.app.routes.auth import get_current_user_dep
from house_haunters.app.routes.bookings import serialize_booking
from house_haunters.domain.models import User
from house_haunters.domain.schemas import (
    ReasonBody,
    ViewingRequestAccept,
    ViewingRequestCounter,
    ViewingRequestCreate,
    ViewingRequestResponse,
)
from house_haunters.infra.database import get_db
from house_haunters.services.booking_state_machine import BookingError
from house_haunters.services.notification_service import (
    NotificationService,
    get_notification_service,
)
from house_haunters.services.viewing_request_service import ViewingRequestService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/viewing-requests", tags=["viewing-requests"])


@router.get("")
async def list_viewing_requests(
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    service = ViewingRequestService(db, notifier)
    requests = await service.list_requests(user)
    return [ViewingRequestResponse.model_validate(r) for r in requests]


@router.post("", status_code=201)
async def create_viewing_request(
    body: ViewingRequestCreate,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    service = ViewingRequestService(db, notifier)
    try:
        viewing_request = await service.create(
            user,
            body.property_id,
            [slot.model_dump(by_alias=True) for slot in body.proposed_dates],
            body.amount,
            message=body.message,
        )
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Viewing request created",
        "viewing_request": ViewingRequestResponse.model_validate(viewing_request),
    }


@router.post("/{request_id}/pay")
async def pay_viewing_request(
    request_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    """Simulated M-Pesa payment into escrow."""
    service = ViewingRequestService(db, notifier)
    try:
        viewing_request = await service.pay(request_id, user)
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Payment successful! Viewing request sent to House Hunter.",
        "receipt": viewing_request.payment_reference,
        "viewing_request": ViewingRequestResponse.model_validate(viewing_request),
    }


@router.post("/{request_id}/counter")
async def counter_viewing_request(
    request_id: str,
    body: ViewingRequestCounter,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    service = ViewingRequestService(db, notifier)
    try:
        viewing_request = await service.counter(
            request_id, user, body.date, body.time,
            location=body.location, message=body.message,
        )
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Counter-proposal sent",
        "viewing_request": ViewingRequestResponse.model_validate(viewing_request),
    }


@router.post("/{request_id}/reject")
async def reject_viewing_request(
    request_id: str,
    body: ReasonBody,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    service = ViewingRequestService(db, notifier)
    try:
        viewing_request = await service.reject(request_id, user, body.reason)
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Viewing request rejected.",
        "viewing_request": ViewingRequestResponse.model_validate(viewing_request),
    }


@router.post("/{request_id}/accept")
async def accept_viewing_request(
    request_id: str,
    body: ViewingRequestAccept,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    service = ViewingRequestService(db, notifier)
    try:
        viewing_request, booking = await service.accept(
            request_id,
            user,
            scheduled_date=body.scheduled_date,
            scheduled_time=body.scheduled_time,
            location=body.location,
        )
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Viewing confirmed! Booking created.",
        "viewing_request": ViewingRequestResponse.model_validate(viewing_request),
        "booking": serialize_booking(booking, user),
    }
