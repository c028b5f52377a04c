"""Tests for BookingLifecycle: meeting point, meeting handshake, outcome,
completion, cancellation and no-show."""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from house_haunters.domain.enums import BookingEventType, MeetingPointType
from house_haunters.domain.models import Booking, BookingEvent, Dispute, HunterEarnings, MeetingPoint
from house_haunters.services.booking_lifecycle import BookingLifecycle
from house_haunters.services.booking_state_machine import (
    AlreadyDoneError,
    ConflictError,
    ForbiddenError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
    derive_phase,
)


@pytest.fixture
def lifecycle(db_session, notifier, settings):
    return BookingLifecycle(db_session, notifier, settings)


@pytest.fixture
async def parties(make_user, make_property):
    tenant = await make_user("tenant", "Tina Tenant")
    hunter = await make_user("hunter", "Harry Hunter")
    prop = await make_property(hunter)
    return tenant, hunter, prop


async def _events(session_factory, booking_id, event_type=None):
    async with session_factory() as session:
        query = select(BookingEvent).where(BookingEvent.booking_id == booking_id)
        if event_type:
            query = query.where(BookingEvent.event_type == event_type.value)
        result = await session.execute(query)
        return list(result.scalars().all())


async def _earnings(session_factory, booking_id):
    async with session_factory() as session:
        result = await session.execute(
            select(HunterEarnings).where(HunterEarnings.booking_id == booking_id)
        )
        return list(result.scalars().all())


async def _meet(lifecycle, booking, tenant, hunter):
    await lifecycle.confirm_meeting(booking.id, hunter)
    await lifecycle.confirm_meeting(booking.id, tenant)


# ---------------------------------------------------------------------------
# Meeting point
# ---------------------------------------------------------------------------


class TestMeetingPoint:
    async def test_hunter_shares_and_tenant_is_notified(self, lifecycle, parties, make_booking, notifications):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)

        point = await lifecycle.share_meeting_point(
            booking.id, hunter, MeetingPointType.LANDMARK, {"name": "Yaya Centre"}
        )

        assert point.status == "PENDING"
        assert point.location == {"name": "Yaya Centre"}
        assert point.shared_by == hunter.id
        assert len(await notifications(tenant.id, "MEETING_POINT_UPDATED")) == 1

    async def test_sharing_again_replaces_the_point(self, lifecycle, parties, make_booking):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        first = await lifecycle.share_meeting_point(
            booking.id, hunter, MeetingPointType.LANDMARK, {"name": "Yaya Centre"}
        )
        await lifecycle.respond_meeting_point(booking.id, tenant, "accept")

        second = await lifecycle.share_meeting_point(
            booking.id, hunter, MeetingPointType.PROPERTY, None
        )

        assert second.id == first.id
        assert second.type == "PROPERTY"
        assert second.status == "PENDING"
        assert second.tenant_viewed is False

    async def test_concurrent_shares_keep_one_point(
        self, parties, make_booking, session_factory, notifier, settings
    ):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)

        async def share(name):
            async with session_factory() as session:
                try:
                    await BookingLifecycle(session, notifier, settings).share_meeting_point(
                        booking.id, hunter, MeetingPointType.LANDMARK, {"name": name}
                    )
                    return "ok"
                except ConflictError:
                    return "conflict"

        results = await asyncio.gather(share("Yaya Centre"), share("Junction Mall"))

        assert "ok" in results
        assert set(results) <= {"ok", "conflict"}
        async with session_factory() as session:
            result = await session.execute(
                select(MeetingPoint).where(MeetingPoint.booking_id == booking.id)
            )
            assert len(result.scalars().all()) == 1

    async def test_tenant_cannot_share(self, lifecycle, parties, make_booking):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        with pytest.raises(ForbiddenError):
            await lifecycle.share_meeting_point(booking.id, tenant, MeetingPointType.LANDMARK, {})

    async def test_tenant_accepts(self, lifecycle, parties, make_booking, notifications):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        await lifecycle.share_meeting_point(booking.id, hunter, MeetingPointType.PROPERTY, None)

        point = await lifecycle.respond_meeting_point(booking.id, tenant, "accept")

        assert point.status == "ACCEPTED"
        assert point.tenant_viewed is True
        assert len(await notifications(hunter.id, "MEETING_POINT_RESPONDED")) == 1

    async def test_response_action_is_case_insensitive(self, lifecycle, parties, make_booking):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        await lifecycle.share_meeting_point(booking.id, hunter, MeetingPointType.PROPERTY, None)

        point = await lifecycle.respond_meeting_point(booking.id, tenant, "REJECT")

        assert point.status == "REJECTED"

    async def test_invalid_response_action(self, lifecycle, parties, make_booking):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        await lifecycle.share_meeting_point(booking.id, hunter, MeetingPointType.PROPERTY, None)
        with pytest.raises(InvalidArgumentError):
            await lifecycle.respond_meeting_point(booking.id, tenant, "maybe")

    async def test_respond_without_point(self, lifecycle, parties, make_booking):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        with pytest.raises(NotFoundError):
            await lifecycle.respond_meeting_point(booking.id, tenant, "accept")

    async def test_mark_viewed(self, lifecycle, parties, make_booking):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        await lifecycle.share_meeting_point(booking.id, hunter, MeetingPointType.PROPERTY, None)

        point = await lifecycle.mark_meeting_point_viewed(booking.id, tenant)

        assert point.tenant_viewed is True
        assert point.tenant_viewed_at is not None
        assert point.status == "PENDING"


# ---------------------------------------------------------------------------
# Physical meeting handshake
# ---------------------------------------------------------------------------


class TestConfirmMeeting:
    async def test_one_side_is_not_enough(self, lifecycle, parties, make_booking, notifications):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)

        booking, started = await lifecycle.confirm_meeting(booking.id, hunter)

        assert started is False
        assert booking.hunter_met_confirmed is True
        assert booking.physical_meeting_confirmed is False
        assert len(await notifications(tenant.id, "ARRIVAL_CONFIRMED")) == 1

    async def test_both_sides_start_the_meeting(self, lifecycle, parties, make_booking, session_factory):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)

        await lifecycle.confirm_meeting(booking.id, hunter)
        booking, started = await lifecycle.confirm_meeting(booking.id, tenant)

        assert started is True
        assert booking.physical_meeting_confirmed is True
        assert booking.actual_start_time is not None
        assert derive_phase(booking).value == "meeting_in_progress"
        events = await _events(session_factory, booking.id, BookingEventType.PHYSICAL_MEETING_CONFIRMED)
        assert len(events) == 1

    async def test_repeat_confirmation_does_not_restart(self, lifecycle, parties, make_booking, session_factory):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        await _meet(lifecycle, booking, tenant, hunter)

        _, started = await lifecycle.confirm_meeting(booking.id, tenant)

        assert started is False
        events = await _events(session_factory, booking.id, BookingEventType.PHYSICAL_MEETING_CONFIRMED)
        assert len(events) == 1

    async def test_concurrent_confirmations_meet_exactly_once(
        self, parties, make_booking, session_factory, notifier, settings
    ):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)

        async def confirm(user):
            async with session_factory() as session:
                return await BookingLifecycle(session, notifier, settings).confirm_meeting(
                    booking.id, user
                )

        results = await asyncio.gather(confirm(hunter), confirm(tenant))

        assert sorted(started for _, started in results) == [False, True]
        async with session_factory() as session:
            stored = await session.get(Booking, booking.id)
            assert stored.hunter_met_confirmed is True
            assert stored.tenant_met_confirmed is True
            assert stored.physical_meeting_confirmed is True
        events = await _events(session_factory, booking.id, BookingEventType.PHYSICAL_MEETING_CONFIRMED)
        assert len(events) == 1

    async def test_stranger_cannot_confirm(self, lifecycle, parties, make_booking, make_user):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        stranger = await make_user("tenant")
        with pytest.raises(ForbiddenError):
            await lifecycle.confirm_meeting(booking.id, stranger)

    async def test_unknown_booking(self, lifecycle, parties):
        _, hunter, _ = parties
        with pytest.raises(NotFoundError):
            await lifecycle.confirm_meeting("missing", hunter)


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------


class TestSubmitOutcome:
    async def test_satisfied_releases_escrow(
        self, lifecycle, parties, make_booking, session_factory, db_session, notifications
    ):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop, amount="1000.00")
        await _meet(lifecycle, booking, tenant, hunter)

        booking = await lifecycle.submit_outcome(booking.id, tenant, "COMPLETED_SATISFIED", "Great")

        assert booking.status == "COMPLETED"
        assert booking.payment_status == "RELEASED"
        assert booking.tenant_confirmed is True
        assert booking.tenant_feedback == "Great"
        assert booking.completed_at is not None

        earnings = await _earnings(session_factory, booking.id)
        assert len(earnings) == 1
        assert earnings[0].amount == Decimal("850.00")
        assert earnings[0].platform_fee == Decimal("150.00")
        assert earnings[0].hunter_id == hunter.id

        await db_session.refresh(prop)
        assert prop.is_locked is False
        assert prop.locked_by_booking_id is None

        released = await notifications(hunter.id, "PAYMENT_RELEASED")
        assert len(released) == 1
        assert "KES 850.00" in released[0].message

    async def test_requires_physical_meeting(self, lifecycle, parties, make_booking):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        with pytest.raises(InvalidStateError):
            await lifecycle.submit_outcome(booking.id, tenant, "COMPLETED_SATISFIED")

    async def test_only_tenant_submits(self, lifecycle, parties, make_booking):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        await _meet(lifecycle, booking, tenant, hunter)
        with pytest.raises(ForbiddenError):
            await lifecycle.submit_outcome(booking.id, hunter, "COMPLETED_SATISFIED")

    async def test_unknown_outcome(self, lifecycle, parties, make_booking):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        await _meet(lifecycle, booking, tenant, hunter)
        with pytest.raises(InvalidArgumentError):
            await lifecycle.submit_outcome(booking.id, tenant, "MEH")

    async def test_issue_opens_dispute_and_holds_escrow(
        self, lifecycle, parties, make_booking, make_user, session_factory, notifications
    ):
        tenant, hunter, prop = parties
        admin = await make_user("admin")
        booking = await make_booking(tenant, hunter, prop)
        await _meet(lifecycle, booking, tenant, hunter)

        booking = await lifecycle.submit_outcome(
            booking.id, tenant, "ISSUE_REPORTED",
            evidence_urls=["https://img/1.jpg"], evidence_description="Not as listed",
        )

        assert booking.status == "CONFIRMED"
        assert booking.payment_status == "ESCROW"
        assert booking.issue_evidence == {"urls": ["https://img/1.jpg"], "description": "Not as listed"}
        assert derive_phase(booking).value == "disputed"

        async with session_factory() as session:
            result = await session.execute(select(Dispute).where(Dispute.booking_id == booking.id))
            disputes = list(result.scalars().all())
        assert len(disputes) == 1
        assert disputes[0].category == "VIEWING_ISSUE"
        assert disputes[0].reporter_id == tenant.id
        assert disputes[0].against_id == hunter.id
        assert disputes[0].status == "OPEN"

        assert await _earnings(session_factory, booking.id) == []
        assert len(await notifications(admin.id, "DISPUTE_CREATED")) == 1

    async def test_alternative_keeps_booking_open(self, lifecycle, parties, make_booking, db_session, notifications):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        await _meet(lifecycle, booking, tenant, hunter)

        booking = await lifecycle.submit_outcome(booking.id, tenant, "ALTERNATIVE_REQUESTED")

        assert booking.status == "CONFIRMED"
        assert booking.payment_status == "ESCROW"
        assert derive_phase(booking).value == "alternative_pending"
        await db_session.refresh(prop)
        assert prop.is_locked is True
        assert len(await notifications(hunter.id, "ALTERNATIVE_REQUESTED")) == 1

    async def test_outcome_cannot_be_submitted_twice(self, lifecycle, parties, make_booking):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        await _meet(lifecycle, booking, tenant, hunter)
        await lifecycle.submit_outcome(booking.id, tenant, "ALTERNATIVE_REQUESTED")

        with pytest.raises(InvalidStateError):
            await lifecycle.submit_outcome(booking.id, tenant, "COMPLETED_SATISFIED")


class TestConfirmCompleted:
    async def test_releases_payment(self, lifecycle, parties, make_booking, session_factory):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop, amount="500.00")

        booking = await lifecycle.confirm_completed(booking.id, tenant)

        assert booking.status == "COMPLETED"
        assert booking.payment_status == "RELEASED"
        earnings = await _earnings(session_factory, booking.id)
        assert earnings[0].amount == Decimal("425.00")

    async def test_second_confirmation_is_already_done(self, lifecycle, parties, make_booking, session_factory):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        await lifecycle.confirm_completed(booking.id, tenant)

        with pytest.raises(AlreadyDoneError):
            await lifecycle.confirm_completed(booking.id, tenant)
        assert len(await _earnings(session_factory, booking.id)) == 1

    async def test_hunter_cannot_confirm(self, lifecycle, parties, make_booking):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        with pytest.raises(ForbiddenError):
            await lifecycle.confirm_completed(booking.id, hunter)


# ---------------------------------------------------------------------------
# Cancellation and no-show
# ---------------------------------------------------------------------------


class TestCancel:
    async def test_tenant_cancels(self, lifecycle, parties, make_booking, db_session, notifications):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)

        booking = await lifecycle.cancel(booking.id, tenant, "Found another place")

        assert booking.status == "CANCELLED"
        assert booking.payment_status == "ESCROW"
        assert booking.cancelled_by == "tenant"
        assert booking.cancel_reason == "Found another place"
        await db_session.refresh(prop)
        assert prop.is_locked is False
        assert len(await notifications(hunter.id, "BOOKING_CANCELLED")) == 1
        assert await notifications(tenant.id, "BOOKING_CANCELLED") == []

    async def test_admin_cancel_notifies_both(self, lifecycle, parties, make_booking, make_user, notifications):
        tenant, hunter, prop = parties
        admin = await make_user("admin")
        booking = await make_booking(tenant, hunter, prop)

        booking = await lifecycle.cancel(booking.id, admin)

        assert booking.cancelled_by == "admin"
        assert len(await notifications(tenant.id, "BOOKING_CANCELLED")) == 1
        assert len(await notifications(hunter.id, "BOOKING_CANCELLED")) == 1

    async def test_cannot_cancel_twice(self, lifecycle, parties, make_booking):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        await lifecycle.cancel(booking.id, tenant)
        with pytest.raises(InvalidStateError):
            await lifecycle.cancel(booking.id, hunter)

    async def test_stranger_cannot_cancel(self, lifecycle, parties, make_booking, make_user):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        stranger = await make_user("hunter")
        with pytest.raises(ForbiddenError):
            await lifecycle.cancel(booking.id, stranger)


class TestReportNoShow:
    async def test_tenant_reports_hunter_absent(
        self, lifecycle, parties, make_booking, make_user, session_factory, notifications
    ):
        tenant, hunter, prop = parties
        admin = await make_user("admin")
        booking = await make_booking(tenant, hunter, prop)

        booking, dispute = await lifecycle.report_no_show(booking.id, tenant)

        assert booking.status == "CANCELLED"
        assert booking.payment_status == "ESCROW"
        assert booking.viewing_outcome == "ISSUE_REPORTED"
        assert dispute.category == "NO_SHOW_HUNTER"
        assert dispute.against_id == hunter.id
        events = await _events(session_factory, booking.id, BookingEventType.NO_SHOW_REPORTED)
        assert len(events) == 1
        assert len(await notifications(admin.id, "NO_SHOW_REPORTED")) == 1

    async def test_hunter_reports_tenant_absent(self, lifecycle, parties, make_booking):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)

        _, dispute = await lifecycle.report_no_show(booking.id, hunter, "Waited 30 minutes")

        assert dispute.category == "NO_SHOW_TENANT"
        assert dispute.description == "Waited 30 minutes"

    async def test_not_after_meeting(self, lifecycle, parties, make_booking):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        await _meet(lifecycle, booking, tenant, hunter)
        with pytest.raises(InvalidStateError):
            await lifecycle.report_no_show(booking.id, tenant)
