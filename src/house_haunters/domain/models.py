"""SQLAlchemy ORM models for the House Haunters booking service.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime for timestamps, stored as naive UTC
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    JSON,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from house_haunters.infra.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Collaborators: users and properties
# ---------------------------------------------------------------------------


class User(Base):
    """Platform user. Identity only; registration lives in the accounts service."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    role = Column(String(20), nullable=False, default="tenant")  # tenant, hunter, admin
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)


class Property(Base):
    """A listed rental property. The lock is owned by at most one booking."""

    __tablename__ = "properties"

    id = Column(String(36), primary_key=True, default=new_id)
    hunter_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    location = Column(String(500), nullable=True)
    is_locked = Column(Boolean, nullable=False, default=False)
    locked_by_booking_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    hunter = relationship("User")


# ---------------------------------------------------------------------------
# Viewing requests
# ---------------------------------------------------------------------------


class ViewingRequest(Base):
    """Tenant's request to view one property; becomes a Booking once accepted."""

    __tablename__ = "viewing_requests"

    id = Column(String(36), primary_key=True, default=new_id)
    property_id = Column(String(36), ForeignKey("properties.id"), nullable=False, index=True)
    tenant_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    proposed_dates = Column(JSON, nullable=False, default=list)  # [{"date": ..., "timeSlot": ...}]
    message = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="PENDING")  # ViewingRequestStatus
    payment_status = Column(String(20), nullable=False, default="UNPAID")  # ViewingPaymentStatus
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    payment_reference = Column(String(50), nullable=True)

    # Counter-proposal
    counter_date = Column(String(10), nullable=True)
    counter_time = Column(String(5), nullable=True)
    counter_location = Column(JSON, nullable=True)
    countered_by = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# ---------------------------------------------------------------------------
# Booking
# ---------------------------------------------------------------------------


class Booking(Base):
    """One confirmed viewing engagement with its escrowed fee."""

    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=new_id)
    property_id = Column(String(36), ForeignKey("properties.id"), nullable=False, index=True)
    tenant_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    hunter_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    viewing_request_id = Column(String(36), ForeignKey("viewing_requests.id"), nullable=True)

    # Money
    amount = Column(Numeric(12, 2), nullable=False)
    payment_status = Column(String(20), nullable=False, default="ESCROW", index=True)  # PaymentStatus

    # Status
    status = Column(String(20), nullable=False, default="CONFIRMED", index=True)  # BookingStatus

    # Schedule
    scheduled_date = Column(String(10), nullable=False)  # YYYY-MM-DD
    scheduled_time = Column(String(5), nullable=False)  # HH:MM
    scheduled_end_time = Column(String(5), nullable=False)
    auto_release_at = Column(DateTime, nullable=True, index=True)

    # Meeting
    hunter_met_confirmed = Column(Boolean, nullable=False, default=False)
    tenant_met_confirmed = Column(Boolean, nullable=False, default=False)
    physical_meeting_confirmed = Column(Boolean, nullable=False, default=False)
    actual_start_time = Column(DateTime, nullable=True)
    actual_end_time = Column(DateTime, nullable=True)

    # Outcome
    viewing_outcome = Column(String(30), nullable=True)  # ViewingOutcome
    outcome_submitted_at = Column(DateTime, nullable=True)
    tenant_feedback = Column(Text, nullable=True)
    issue_evidence = Column(JSON, nullable=True)
    tenant_confirmed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime, nullable=True)

    # Cancellation
    cancelled_by = Column(String(20), nullable=True)  # BookingActor
    cancel_reason = Column(String(500), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    # Escrow moved to an alternative-property booking
    escrow_transferred_to = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    property_ref = relationship("Property")
    events = relationship("BookingEvent", back_populates="booking")


class BookingEvent(Base):
    """Immutable audit trail entry for booking state transitions."""

    __tablename__ = "booking_events"

    id = Column(String(36), primary_key=True, default=new_id)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)  # BookingEventType
    actor = Column(String(20), nullable=False)  # BookingActor
    actor_id = Column(String(36), nullable=True)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    booking = relationship("Booking", back_populates="events")


class MeetingPoint(Base):
    """Hunter's proposal of where to meet the tenant. One per booking."""

    __tablename__ = "meeting_points"

    id = Column(String(36), primary_key=True, default=new_id)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, unique=True)
    type = Column(String(20), nullable=False, default="LANDMARK")  # MeetingPointType
    location = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, default="PENDING")  # MeetingPointStatus
    shared_by = Column(String(36), nullable=True)
    shared_at = Column(DateTime, default=utcnow)
    tenant_viewed = Column(Boolean, nullable=False, default=False)
    tenant_viewed_at = Column(DateTime, nullable=True)


class RescheduleRequest(Base):
    """Proposal from one party to move a booking's schedule."""

    __tablename__ = "reschedule_requests"

    id = Column(String(36), primary_key=True, default=new_id)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    requested_by = Column(String(36), ForeignKey("users.id"), nullable=False)
    proposed_date = Column(String(10), nullable=False)
    proposed_time = Column(String(5), nullable=False)
    proposed_end_time = Column(String(5), nullable=False)
    proposed_location = Column(JSON, nullable=True)
    reason = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="PENDING")  # RescheduleStatus

    # Counter-proposal
    counter_date = Column(String(10), nullable=True)
    counter_time = Column(String(5), nullable=True)
    counter_end_time = Column(String(5), nullable=True)
    counter_location = Column(JSON, nullable=True)
    counter_reason = Column(Text, nullable=True)

    responded_by = Column(String(36), nullable=True)
    responded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # At most one PENDING proposal per booking
    __table_args__ = (
        Index(
            "uq_reschedule_requests_pending_booking",
            "booking_id",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
    )


class AlternativeOffer(Base):
    """Hunter's offer of a substitute property after the tenant asked for one."""

    __tablename__ = "alternative_offers"

    id = Column(String(36), primary_key=True, default=new_id)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    property_id = Column(String(36), ForeignKey("properties.id"), nullable=False)
    viewing_request_id = Column(
        String(36), ForeignKey("viewing_requests.id"), nullable=False, unique=True
    )
    message = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="PENDING")  # AlternativeOfferStatus
    new_booking_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow)


# ---------------------------------------------------------------------------
# Disputes and money
# ---------------------------------------------------------------------------


class Dispute(Base):
    """Escalation tied to a booking, resolved by an administrator."""

    __tablename__ = "disputes"

    id = Column(String(36), primary_key=True, default=new_id)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(30), nullable=False)  # DisputeCategory
    reporter_id = Column(String(36), ForeignKey("users.id"), nullable=True)  # null = system
    against_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=True, index=True)
    property_id = Column(String(36), ForeignKey("properties.id"), nullable=True)
    status = Column(String(20), nullable=False, default="OPEN", index=True)  # DisputeStatus
    evidence_urls = Column(JSON, nullable=True)

    # Hunter side
    hunter_response = Column(Text, nullable=True)
    hunter_evidence_urls = Column(JSON, nullable=True)

    # Resolution
    resolution = Column(Text, nullable=True)
    resolution_action = Column(String(20), nullable=True)  # DisputeAction
    resolved_by = Column(String(36), nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class HunterEarnings(Base):
    """Ledger line for a hunter's share of a released booking. One per booking."""

    __tablename__ = "hunter_earnings"

    id = Column(String(36), primary_key=True, default=new_id)
    hunter_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, unique=True)
    amount = Column(Numeric(12, 2), nullable=False)
    platform_fee = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default="PENDING")  # EarningsStatus
    withdrawal_id = Column(String(36), ForeignKey("withdrawals.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Withdrawal(Base):
    """Simulated M-Pesa payout of a hunter's pending earnings."""

    __tablename__ = "withdrawals"

    id = Column(String(36), primary_key=True, default=new_id)
    hunter_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    receipt_number = Column(String(20), nullable=False)
    phone_number = Column(String(20), nullable=True)
    status = Column(String(20), nullable=False, default="COMPLETED")
    created_at = Column(DateTime, default=utcnow)


class Notification(Base):
    """Persisted notification for later retrieval by the recipient."""

    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(50), nullable=False)  # NotificationType
    action_url = Column(String(500), nullable=True)
    data = Column(JSON, nullable=True)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)
