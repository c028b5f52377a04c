"""Pydantic v2 schemas for API request/response validation.

Request bodies accept the web client's camelCase keys (``proposedDate``)
as well as snake_case field names.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class RequestBody(BaseModel):
    """Base for request bodies: camelCase aliases, snake_case also accepted."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Booking requests
# ---------------------------------------------------------------------------


class MeetingPointShare(RequestBody):
    type: str = "LANDMARK"
    location: dict | None = None


class MeetingPointRespond(RequestBody):
    action: str


class OutcomeSubmit(RequestBody):
    outcome: str
    feedback: str | None = None
    evidence_urls: list[str] | None = None
    evidence_description: str | None = None


class RescheduleCreate(RequestBody):
    proposed_date: str
    proposed_time: str
    reason: str | None = None
    proposed_location: dict | None = None


class RescheduleRespond(RequestBody):
    action: str
    counter_date: str | None = None
    counter_time: str | None = None
    counter_reason: str | None = None
    counter_location: dict | None = None


class ReasonBody(RequestBody):
    """Body for cancel, no-show and decline-alternative."""

    reason: str | None = None


class AlternativeRequest(RequestBody):
    preferences: str | None = None
    reason: str | None = None


class AlternativeOfferCreate(RequestBody):
    property_id: str | None = None
    message: str | None = None
    proposed_date: str | None = None
    proposed_time: str | None = None


class AlternativeAccept(RequestBody):
    viewing_request_id: str | None = None


# ---------------------------------------------------------------------------
# Viewing request bodies
# ---------------------------------------------------------------------------


class ProposedSlot(RequestBody):
    date: str
    time_slot: str


class ViewingRequestCreate(RequestBody):
    property_id: str
    proposed_dates: list[ProposedSlot] = Field(min_length=1)
    amount: Decimal = Field(ge=0)
    message: str | None = None


class ViewingRequestCounter(RequestBody):
    date: str
    time: str
    location: dict | None = None
    message: str | None = None


class ViewingRequestAccept(RequestBody):
    scheduled_date: str | None = None
    scheduled_time: str | None = None
    location: dict | None = None


# ---------------------------------------------------------------------------
# Dispute bodies
# ---------------------------------------------------------------------------


class DisputeResolve(RequestBody):
    resolution: str
    action: str = "NONE"


class DisputeRespond(RequestBody):
    response: str
    evidence_urls: list[str] | None = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class BookingResponse(BaseModel):
    """Booking snapshot plus its derived phase and the caller's allowed actions."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    property_id: str
    tenant_id: str
    hunter_id: str
    viewing_request_id: str | None = None
    amount: Decimal
    payment_status: str
    status: str
    scheduled_date: str
    scheduled_time: str
    scheduled_end_time: str
    auto_release_at: datetime | None = None
    hunter_met_confirmed: bool
    tenant_met_confirmed: bool
    physical_meeting_confirmed: bool
    actual_start_time: datetime | None = None
    actual_end_time: datetime | None = None
    viewing_outcome: str | None = None
    outcome_submitted_at: datetime | None = None
    tenant_feedback: str | None = None
    issue_evidence: dict | None = None
    tenant_confirmed: bool
    completed_at: datetime | None = None
    cancelled_by: str | None = None
    cancel_reason: str | None = None
    cancelled_at: datetime | None = None
    escrow_transferred_to: str | None = None
    created_at: datetime | None = None
    phase: str | None = None
    allowed_actions: list[str] = []


class MeetingPointResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    type: str
    location: dict | None = None
    status: str
    shared_by: str | None = None
    shared_at: datetime | None = None
    tenant_viewed: bool
    tenant_viewed_at: datetime | None = None


class RescheduleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    requested_by: str
    proposed_date: str
    proposed_time: str
    proposed_end_time: str
    proposed_location: dict | None = None
    reason: str | None = None
    status: str
    counter_date: str | None = None
    counter_time: str | None = None
    counter_end_time: str | None = None
    counter_location: dict | None = None
    counter_reason: str | None = None
    responded_by: str | None = None
    responded_at: datetime | None = None


class ViewingRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    property_id: str
    tenant_id: str
    proposed_dates: list[dict] = []
    message: str | None = None
    status: str
    payment_status: str
    amount: Decimal
    payment_reference: str | None = None
    counter_date: str | None = None
    counter_time: str | None = None
    counter_location: dict | None = None
    countered_by: str | None = None
    created_at: datetime | None = None


class AlternativeOfferResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    property_id: str
    viewing_request_id: str
    message: str | None = None
    status: str
    new_booking_id: str | None = None


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    description: str | None = None
    category: str
    reporter_id: str | None = None
    against_id: str | None = None
    booking_id: str | None = None
    property_id: str | None = None
    status: str
    evidence_urls: list[str] | None = None
    hunter_response: str | None = None
    hunter_evidence_urls: list[str] | None = None
    resolution: str | None = None
    resolution_action: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime | None = None


class EarningsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    amount: Decimal
    platform_fee: Decimal
    status: str
    withdrawal_id: str | None = None
    created_at: datetime | None = None


class EarningsSummary(BaseModel):
    earnings: list[EarningsResponse]
    total_pending: Decimal
    total_withdrawn: Decimal
    total_earnings: Decimal


class WithdrawalRequest(RequestBody):
    amount: Decimal | None = None
    phone_number: str | None = None


class WithdrawalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    amount: Decimal
    receipt_number: str
    phone_number: str | None = None
    status: str
    created_at: datetime | None = None
