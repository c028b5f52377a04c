"""Dispute Service - admin resolution and hunter responses.

Resolution can move money. It uses the same escrow compare-and-swap as
every other release path, so a booking that was already released or
refunded cannot be settled a second time.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from house_haunters.app.config import Settings, get_settings
from house_haunters.domain.enums import (
    BookingActor,
    BookingEventType,
    DisputeAction,
    DisputeCategory,
    DisputeStatus,
    NotificationType,
    UserRole,
)
from house_haunters.domain.models import Booking, Dispute, User, utcnow
from house_haunters.services.booking_lifecycle import (
    atomic,
    format_amount,
    get_booking_or_404,
    record_event,
    refund_escrow,
    release_escrow,
)
from house_haunters.services.booking_state_machine import (
    AlreadyDoneError,
    ForbiddenError,
    InvalidArgumentError,
    NotFoundError,
)
from house_haunters.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

CLOSED_DISPUTE_STATUSES = {DisputeStatus.RESOLVED.value, DisputeStatus.CLOSED.value}


class DisputeService:
    """Admin-side dispute moderation."""

    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationService,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.settings = settings or get_settings()

    async def _get_dispute_or_404(self, dispute_id: str) -> Dispute:
        result = await self.db.execute(select(Dispute).where(Dispute.id == dispute_id))
        dispute = result.scalar_one_or_none()
        if not dispute:
            raise NotFoundError("Dispute not found")
        return dispute

    async def list_disputes(
        self,
        status: Optional[str] = None,
        category: Optional[str] = None,
    ) -> list[Dispute]:
        query = select(Dispute)
        if status:
            query = query.where(Dispute.status == status)
        if category:
            if category not in {c.value for c in DisputeCategory}:
                raise InvalidArgumentError(f"Unknown dispute category: {category}")
            query = query.where(Dispute.category == category)
        query = query.order_by(Dispute.created_at.desc())
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def resolve(
        self,
        dispute_id: str,
        admin: User,
        resolution: str,
        action: str = DisputeAction.NONE.value,
    ) -> tuple[Dispute, Optional[Booking]]:
        """Close a dispute, optionally refunding or releasing the linked escrow."""
        if admin.role != UserRole.ADMIN.value:
            raise ForbiddenError("Only administrators can resolve disputes")
        try:
            action_enum = DisputeAction((action or DisputeAction.NONE.value).upper())
        except ValueError:
            raise InvalidArgumentError("action must be one of: REFUND, RELEASE_PAYMENT, NONE")

        dispute = await self._get_dispute_or_404(dispute_id)
        if dispute.status in CLOSED_DISPUTE_STATUSES:
            raise AlreadyDoneError("Dispute is already resolved")

        booking = None
        if dispute.booking_id:
            booking = await get_booking_or_404(self.db, dispute.booking_id)

        earnings = None
        async with atomic(self.db):
            if booking is not None and action_enum == DisputeAction.REFUND:
                await refund_escrow(
                    self.db, booking,
                    actor=BookingActor.ADMIN, actor_id=admin.id,
                    data={"dispute_id": dispute.id},
                )
            elif booking is not None and action_enum == DisputeAction.RELEASE_PAYMENT:
                earnings = await release_escrow(
                    self.db, booking,
                    commission_rate=self.settings.platform_commission_rate,
                    actor=BookingActor.ADMIN, actor_id=admin.id,
                    require_status=None,
                    data={"dispute_id": dispute.id},
                )

            dispute.status = DisputeStatus.RESOLVED.value
            dispute.resolution = resolution
            dispute.resolution_action = action_enum.value
            dispute.resolved_by = admin.id
            dispute.resolved_at = utcnow()
            if booking is not None:
                record_event(
                    self.db, booking, BookingEventType.DISPUTE_RESOLVED,
                    BookingActor.ADMIN, admin.id,
                    data={"dispute_id": dispute.id, "action": action_enum.value},
                )

        logger.info(
            "Dispute resolved: dispute=%s booking=%s action=%s",
            dispute.id, dispute.booking_id, action_enum.value,
        )

        parties = [uid for uid in (dispute.reporter_id, dispute.against_id) if uid]
        await self.notifier.send_many(
            parties,
            "Dispute Resolved",
            f"Dispute '{dispute.title}' has been resolved: {resolution}",
            NotificationType.DISPUTE_RESOLVED,
            f"/disputes/{dispute.id}",
        )
        if earnings is not None:
            await self.notifier.send(
                booking.hunter_id,
                "Payment Released",
                f"Payment of {format_amount(earnings.amount, self.settings.currency)} "
                "has been released after dispute review.",
                NotificationType.PAYMENT_RELEASED,
                "/wallet",
            )
        elif booking is not None and action_enum == DisputeAction.REFUND:
            await self.notifier.send(
                booking.tenant_id,
                "Payment Refunded",
                f"Your payment of {format_amount(booking.amount, self.settings.currency)} "
                "has been refunded.",
                NotificationType.PAYMENT_REFUNDED,
                f"/bookings/{booking.id}",
            )
        return dispute, booking

    async def respond(
        self,
        dispute_id: str,
        user: User,
        response: str,
        evidence_urls: Optional[list[str]] = None,
    ) -> Dispute:
        """The party a dispute is against records their side of the story."""
        dispute = await self._get_dispute_or_404(dispute_id)
        if dispute.against_id != user.id:
            raise ForbiddenError("Not authorized to respond to this dispute")
        if dispute.status in CLOSED_DISPUTE_STATUSES:
            raise AlreadyDoneError("Dispute is already resolved")

        async with atomic(self.db):
            dispute.hunter_response = response
            if evidence_urls:
                dispute.hunter_evidence_urls = evidence_urls
            dispute.status = DisputeStatus.IN_PROGRESS.value

        logger.info("Dispute response recorded: dispute=%s by=%s", dispute.id, user.id)
        await self.notifier.notify_admins(
            "Dispute Response",
            f"{user.name} responded to dispute '{dispute.title}'.",
            NotificationType.DISPUTE_RESPONDED,
        )
        return dispute
