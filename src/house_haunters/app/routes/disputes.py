"""Dispute endpoints for the parties to a dispute."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from house_haunters.app.routes.auth import get_current_user_dep
from house_haunters.domain.models import User
from house_haunters.domain.schemas import DisputeRespond, DisputeResponse
from house_haunters.infra.database import get_db
from house_haunters.services.booking_state_machine import BookingError
from house_haunters.services.dispute_service import DisputeService
from house_haunters.services.notification_service import (
    NotificationService,
    get_notification_service,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/disputes", tags=["disputes"])


@router.post("/{dispute_id}/respond")
async def respond_to_dispute(
    dispute_id: str,
    body: DisputeRespond,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
):
    service = DisputeService(db, notifier)
    try:
        dispute = await service.respond(dispute_id, user, body.response, body.evidence_urls)
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Response submitted",
        "dispute": DisputeResponse.model_validate(dispute),
    }
