"""Admin dispute moderation endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from house_haunters.app.routes.auth import require_role
from house_haunters.app.routes.bookings import serialize_booking
from house_haunters.domain.models import User
from house_haunters.domain.schemas import DisputeResolve, DisputeResponse
from house_haunters.infra.database import get_db
from house_haunters.services.booking_state_machine import BookingError
from house_haunters.services.dispute_service import DisputeService
from house_haunters.services.notification_service import (
    NotificationService,
    get_notification_service,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/disputes")
async def list_disputes(
    status: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    admin: User = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    service = DisputeService(db, notifier)
    try:
        disputes = await service.list_disputes(status=status, category=category)
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return [DisputeResponse.model_validate(d) for d in disputes]


@router.post("/disputes/{dispute_id}/resolve")
async def resolve_dispute(
    dispute_id: str,
    body: DisputeResolve,
    admin: User = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    service = DisputeService(db, notifier)
    try:
        dispute, booking = await service.resolve(dispute_id, admin, body.resolution, body.action)
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Dispute resolved",
        "dispute": DisputeResponse.model_validate(dispute),
        "booking": serialize_booking(booking, admin) if booking else None,
    }
