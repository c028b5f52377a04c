"""Domain enumerations for the House Haunters booking service.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class UserRole(str, Enum):
    """Platform role of an authenticated user."""

    TENANT = "tenant"
    HUNTER = "hunter"
    ADMIN = "admin"


class BookingActor(str, Enum):
    """Who performed a booking transition."""

    TENANT = "tenant"
    HUNTER = "hunter"
    ADMIN = "admin"
    SYSTEM = "system"


class ViewingRequestStatus(str, Enum):
    """Negotiation status of a tenant's viewing request."""

    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    COUNTERED = "COUNTERED"


class ViewingPaymentStatus(str, Enum):
    """Where the viewing fee sits before a booking exists."""

    UNPAID = "UNPAID"
    ESCROW = "ESCROW"
    REFUNDED = "REFUNDED"


class BookingStatus(str, Enum):
    """Persisted booking status."""

    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    """Escrow status of a booking's viewing fee."""

    ESCROW = "ESCROW"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"


class ViewingOutcome(str, Enum):
    """Tenant's declared result of the in-person viewing."""

    COMPLETED_SATISFIED = "COMPLETED_SATISFIED"
    ISSUE_REPORTED = "ISSUE_REPORTED"
    ALTERNATIVE_REQUESTED = "ALTERNATIVE_REQUESTED"


class BookingPhase(str, Enum):
    """Lifecycle phase derived from a booking's status, payment and meeting flags."""

    AWAITING_MEETING = "awaiting_meeting"
    MEETING_IN_PROGRESS = "meeting_in_progress"
    OUTCOME_RECORDED = "outcome_recorded"
    COMPLETED_RELEASED = "completed_released"
    DISPUTED = "disputed"
    ALTERNATIVE_PENDING = "alternative_pending"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class BookingAction(str, Enum):
    """Operations that can be requested against a booking."""

    SHARE_MEETING_POINT = "share_meeting_point"
    RESPOND_MEETING_POINT = "respond_meeting_point"
    CONFIRM_MEETING = "confirm_meeting"
    SUBMIT_OUTCOME = "submit_outcome"
    CONFIRM_COMPLETED = "confirm_completed"
    REQUEST_RESCHEDULE = "request_reschedule"
    RESPOND_RESCHEDULE = "respond_reschedule"
    REQUEST_ALTERNATIVE = "request_alternative"
    OFFER_ALTERNATIVE = "offer_alternative"
    ACCEPT_ALTERNATIVE = "accept_alternative"
    DECLINE_ALTERNATIVE = "decline_alternative"
    CANCEL = "cancel"
    REPORT_NO_SHOW = "report_no_show"
    AUTO_RELEASE = "auto_release"
    RESOLVE_DISPUTE = "resolve_dispute"


class BookingEventType(str, Enum):
    """Audit trail event types for booking transitions."""

    CREATED = "created"
    MEETING_POINT_SHARED = "meeting_point_shared"
    MEETING_POINT_RESPONDED = "meeting_point_responded"
    MEETING_CONFIRMED = "meeting_confirmed"
    PHYSICAL_MEETING_CONFIRMED = "physical_meeting_confirmed"
    OUTCOME_SUBMITTED = "outcome_submitted"
    PAYMENT_RELEASED = "payment_released"
    PAYMENT_REFUNDED = "payment_refunded"
    AUTO_RELEASED = "auto_released"
    RESCHEDULE_REQUESTED = "reschedule_requested"
    RESCHEDULED = "rescheduled"
    ALTERNATIVE_REQUESTED = "alternative_requested"
    ALTERNATIVE_OFFERED = "alternative_offered"
    ESCROW_TRANSFERRED = "escrow_transferred"
    ALTERNATIVE_DECLINED = "alternative_declined"
    CANCELLED = "cancelled"
    NO_SHOW_REPORTED = "no_show_reported"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_RESOLVED = "dispute_resolved"


class MeetingPointType(str, Enum):
    """Where the hunter and tenant meet."""

    PROPERTY = "PROPERTY"
    LANDMARK = "LANDMARK"


class MeetingPointStatus(str, Enum):
    """Tenant's response to a shared meeting point."""

    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class RescheduleStatus(str, Enum):
    """Status of a reschedule proposal."""

    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    COUNTERED = "COUNTERED"


class RescheduleAction(str, Enum):
    """Counterparty responses to a reschedule proposal."""

    ACCEPT = "accept"
    REJECT = "reject"
    COUNTER = "counter"


class AlternativeOfferStatus(str, Enum):
    """Status of a hunter's alternative property offer."""

    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"


class DisputeCategory(str, Enum):
    """Reason a dispute was opened."""

    MISREPRESENTATION = "MISREPRESENTATION"
    NO_SHOW_HUNTER = "NO_SHOW_HUNTER"
    NO_SHOW_TENANT = "NO_SHOW_TENANT"
    VIEWING_ISSUE = "VIEWING_ISSUE"
    PAYMENT = "PAYMENT"
    OTHER = "OTHER"


class DisputeStatus(str, Enum):
    """Moderation status of a dispute."""

    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class DisputeAction(str, Enum):
    """Financial action an admin attaches to a dispute resolution."""

    REFUND = "REFUND"
    RELEASE_PAYMENT = "RELEASE_PAYMENT"
    NONE = "NONE"


class EarningsStatus(str, Enum):
    """Status of a hunter earnings ledger line."""

    PENDING = "PENDING"
    WITHDRAWN = "WITHDRAWN"


class NotificationType(str, Enum):
    """Event tags attached to persisted notifications."""

    NEW_VIEWING_REQUEST = "NEW_VIEWING_REQUEST"
    VIEWING_REQUEST_COUNTERED = "VIEWING_REQUEST_COUNTERED"
    VIEWING_REQUEST_REJECTED = "VIEWING_REQUEST_REJECTED"
    VIEWING_CONFIRMED = "VIEWING_CONFIRMED"
    MEETING_POINT_UPDATED = "MEETING_POINT_UPDATED"
    MEETING_POINT_RESPONDED = "MEETING_POINT_RESPONDED"
    ARRIVAL_CONFIRMED = "ARRIVAL_CONFIRMED"
    PAYMENT_RELEASED = "PAYMENT_RELEASED"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
    DISPUTE_CREATED = "DISPUTE_CREATED"
    DISPUTE_RESPONDED = "DISPUTE_RESPONDED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"
    RESCHEDULE_REQUESTED = "RESCHEDULE_REQUESTED"
    RESCHEDULE_ACCEPTED = "RESCHEDULE_ACCEPTED"
    RESCHEDULE_REJECTED = "RESCHEDULE_REJECTED"
    RESCHEDULE_COUNTERED = "RESCHEDULE_COUNTERED"
    COUNTER_ACCEPTED = "COUNTER_ACCEPTED"
    ALTERNATIVE_REQUESTED = "ALTERNATIVE_REQUESTED"
    ALTERNATIVE_OFFERED = "ALTERNATIVE_OFFERED"
    ALTERNATIVE_ACCEPTED = "ALTERNATIVE_ACCEPTED"
    REFUND_REQUESTED = "REFUND_REQUESTED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    NO_SHOW_REPORTED = "NO_SHOW_REPORTED"
    MORNING_PROMPT = "MORNING_PROMPT"
