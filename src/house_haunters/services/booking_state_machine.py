"""Booking state machine - derives lifecycle phases and validates actions.

A booking's phase is not stored. It is computed from the persisted status,
payment status, outcome and meeting flags, and every requested action is
checked against the rule table below before any mutation happens.
"""

from typing import Optional

from house_haunters.domain.enums import (
    BookingAction,
    BookingActor,
    BookingPhase,
    BookingStatus,
    PaymentStatus,
    UserRole,
    ViewingOutcome,
)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class BookingError(Exception):
    """Base class for booking domain errors. Carries an HTTP status code."""

    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(BookingError):
    status_code = 404


class ForbiddenError(BookingError):
    status_code = 403


class InvalidStateError(BookingError):
    """Raised when an action is not allowed in the booking's current phase."""

    status_code = 400


class InvalidArgumentError(BookingError):
    status_code = 400


class ConflictError(BookingError):
    status_code = 409


class AlreadyDoneError(BookingError):
    status_code = 400


# ---------------------------------------------------------------------------
# Rule table: action -> (allowed phases, allowed actors)
# ---------------------------------------------------------------------------

P = BookingPhase
A = BookingActor

# Phases in which the booking row still has status CONFIRMED
CONFIRMED_PHASES: set[BookingPhase] = {
    P.AWAITING_MEETING,
    P.MEETING_IN_PROGRESS,
    P.OUTCOME_RECORDED,
    P.DISPUTED,
    P.ALTERNATIVE_PENDING,
}

# Phases before the tenant has declared an outcome
ACTIVE_PHASES: set[BookingPhase] = {
    P.AWAITING_MEETING,
    P.MEETING_IN_PROGRESS,
}

TERMINAL_PHASES: set[BookingPhase] = {
    P.COMPLETED_RELEASED,
    P.CANCELLED,
    P.REFUNDED,
}

ACTION_RULES: dict[BookingAction, tuple[set[BookingPhase], set[BookingActor]]] = {
    BookingAction.SHARE_MEETING_POINT: (ACTIVE_PHASES, {A.HUNTER}),
    BookingAction.RESPOND_MEETING_POINT: (ACTIVE_PHASES, {A.TENANT}),
    BookingAction.CONFIRM_MEETING: (CONFIRMED_PHASES, {A.TENANT, A.HUNTER}),
    BookingAction.SUBMIT_OUTCOME: ({P.MEETING_IN_PROGRESS}, {A.TENANT}),
    BookingAction.CONFIRM_COMPLETED: (ACTIVE_PHASES, {A.TENANT}),
    BookingAction.REQUEST_RESCHEDULE: (ACTIVE_PHASES, {A.TENANT, A.HUNTER}),
    BookingAction.RESPOND_RESCHEDULE: (ACTIVE_PHASES, {A.TENANT, A.HUNTER}),
    BookingAction.REQUEST_ALTERNATIVE: ({P.ALTERNATIVE_PENDING}, {A.TENANT}),
    BookingAction.OFFER_ALTERNATIVE: ({P.ALTERNATIVE_PENDING}, {A.HUNTER}),
    BookingAction.ACCEPT_ALTERNATIVE: ({P.ALTERNATIVE_PENDING}, {A.TENANT}),
    BookingAction.DECLINE_ALTERNATIVE: ({P.ALTERNATIVE_PENDING}, {A.TENANT}),
    BookingAction.CANCEL: (CONFIRMED_PHASES, {A.TENANT, A.HUNTER, A.ADMIN}),
    BookingAction.REPORT_NO_SHOW: ({P.AWAITING_MEETING}, {A.TENANT, A.HUNTER}),
    BookingAction.AUTO_RELEASE: ({P.AWAITING_MEETING, P.MEETING_IN_PROGRESS}, {A.SYSTEM}),
    # Money movement for disputes is guarded by the escrow compare-and-swap
    BookingAction.RESOLVE_DISPUTE: (set(BookingPhase), {A.ADMIN}),
}

# Human-readable reasons for the most common phase rejections
_PHASE_HINTS: dict[BookingAction, str] = {
    BookingAction.SUBMIT_OUTCOME: "Physical meeting must be confirmed by both parties first",
    BookingAction.REQUEST_ALTERNATIVE: "Viewing outcome must be set to ALTERNATIVE_REQUESTED first",
    BookingAction.OFFER_ALTERNATIVE: "Tenant has not requested an alternative property",
    BookingAction.ACCEPT_ALTERNATIVE: "Tenant has not requested an alternative property",
    BookingAction.DECLINE_ALTERNATIVE: "Tenant has not requested an alternative property",
    BookingAction.CANCEL: "Only confirmed bookings can be cancelled",
    BookingAction.CONFIRM_MEETING: "Only confirmed bookings can confirm a meeting",
}


def derive_phase(booking) -> BookingPhase:
    """Compute the lifecycle phase from a booking snapshot."""
    status = booking.status
    payment_status = booking.payment_status

    if status == BookingStatus.CANCELLED.value:
        if payment_status == PaymentStatus.REFUNDED.value:
            return P.REFUNDED
        return P.CANCELLED

    if status == BookingStatus.COMPLETED.value:
        if payment_status == PaymentStatus.REFUNDED.value:
            return P.REFUNDED
        return P.COMPLETED_RELEASED

    outcome = booking.viewing_outcome
    if outcome == ViewingOutcome.ISSUE_REPORTED.value:
        return P.DISPUTED
    if outcome == ViewingOutcome.ALTERNATIVE_REQUESTED.value:
        return P.ALTERNATIVE_PENDING
    if outcome is not None:
        return P.OUTCOME_RECORDED
    if booking.physical_meeting_confirmed:
        return P.MEETING_IN_PROGRESS
    return P.AWAITING_MEETING


def actor_for(booking, user) -> Optional[BookingActor]:
    """Map a user to their role on ``booking``, or None if they are not a party."""
    if user.id == booking.tenant_id:
        return A.TENANT
    if user.id == booking.hunter_id:
        return A.HUNTER
    if user.role == UserRole.ADMIN.value:
        return A.ADMIN
    return None


class BookingStateMachine:
    """Validates booking actions against phase and actor rules."""

    def validate(
        self,
        action: BookingAction,
        booking,
        actor: Optional[BookingActor],
    ) -> BookingPhase:
        """Return the current phase if ``actor`` may perform ``action``.

        Raises ForbiddenError when the actor is not allowed to perform the
        action at all, and InvalidStateError when the action is not valid
        in the booking's current phase. Actor checks run first so outsiders
        learn nothing about the booking's state.
        """
        self.check_actor(action, actor)
        return self.check_phase(action, booking)

    def check_actor(self, action: BookingAction, actor: Optional[BookingActor]) -> None:
        _, allowed_actors = ACTION_RULES[action]
        if actor is None or actor not in allowed_actors:
            raise ForbiddenError(
                f"Not authorized to {action.value.replace('_', ' ')} on this booking"
            )

    def check_phase(self, action: BookingAction, booking) -> BookingPhase:
        allowed_phases, _ = ACTION_RULES[action]
        phase = derive_phase(booking)
        if phase not in allowed_phases:
            hint = _PHASE_HINTS.get(action)
            message = f"Cannot {action.value.replace('_', ' ')} while booking is {phase.value}"
            if hint:
                message = f"{message}: {hint}"
            raise InvalidStateError(message)
        return phase

    def get_allowed_actions(self, booking, actor: Optional[BookingActor]) -> list[BookingAction]:
        """Return the actions ``actor`` could attempt in the booking's current phase."""
        if actor is None:
            return []
        phase = derive_phase(booking)
        return [
            action
            for action, (phases, actors) in ACTION_RULES.items()
            if phase in phases and actor in actors and action != BookingAction.AUTO_RELEASE
        ]
