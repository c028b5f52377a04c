"""Tests for hunter earnings and simulated withdrawals."""

import asyncio
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import select

from house_haunters.domain.models import HunterEarnings, Withdrawal
from house_haunters.services.background_jobs import process_auto_releases
from house_haunters.services.booking_state_machine import ConflictError, InvalidArgumentError
from house_haunters.services.earnings_service import get_hunter_earnings, request_withdrawal
from house_haunters.services.escrow_ledger import split_commission


@pytest.fixture
async def hunter(make_user):
    return await make_user("hunter", "Harry Hunter")


@pytest.fixture
async def lines(db_session, hunter, make_user, make_property, make_booking):
    """Three pending earnings lines of 850, 425 and 170, oldest first."""
    tenant = await make_user("tenant")
    prop = await make_property(hunter)
    for day, amount in enumerate(["850.00", "425.00", "170.00"], start=1):
        booking = await make_booking(
            tenant, hunter, prop, status="COMPLETED", payment_status="RELEASED"
        )
        db_session.add(
            HunterEarnings(
                hunter_id=hunter.id,
                booking_id=booking.id,
                amount=Decimal(amount),
                platform_fee=Decimal("0"),
                status="PENDING",
                created_at=datetime(2030, 1, day, 12, 0),
            )
        )
    await db_session.commit()


class TestEarningsSummary:
    async def test_empty(self, db_session, hunter):
        summary = await get_hunter_earnings(db_session, hunter.id)
        assert summary["earnings"] == []
        assert summary["total_earnings"] == Decimal("0")

    async def test_newest_first(self, db_session, hunter, lines):
        summary = await get_hunter_earnings(db_session, hunter.id)
        assert [e.amount for e in summary["earnings"]] == [
            Decimal("170.00"), Decimal("425.00"), Decimal("850.00"),
        ]
        assert summary["total_pending"] == Decimal("1445.00")


class TestWithdrawal:
    async def test_withdrawing_released_earnings_keeps_totals(
        self, db_session, notifier, settings, hunter, make_user, make_property, make_booking,
    ):
        tenant = await make_user("tenant")
        amounts = ["1000.00", "500.00", "200.00"]
        for amount in amounts:
            prop = await make_property(hunter, f"Unit {amount}")
            await make_booking(tenant, hunter, prop, amount=amount, scheduled_date="2025-03-01")
        assert await process_auto_releases(db_session, notifier, settings) == 3
        released = sum(split_commission(Decimal(a)).hunter_share for a in amounts)

        withdrawal = await request_withdrawal(db_session, hunter.id, phone_number="254700000001")

        assert withdrawal.amount == released
        assert withdrawal.receipt_number.startswith("WD")
        assert len(withdrawal.receipt_number) == 10
        assert withdrawal.phone_number == "254700000001"
        summary = await get_hunter_earnings(db_session, hunter.id)
        assert summary["total_pending"] == Decimal("0")
        assert summary["total_withdrawn"] == released
        assert summary["total_pending"] + summary["total_withdrawn"] == released
        assert {e.withdrawal_id for e in summary["earnings"]} == {withdrawal.id}

    async def test_partial_withdrawal_takes_whole_lines_oldest_first(self, db_session, hunter, lines):
        withdrawal = await request_withdrawal(db_session, hunter.id, Decimal("1100"))

        # 850 fits, 425 does not fit the remaining 250, 170 does
        assert withdrawal.amount == Decimal("1020.00")
        summary = await get_hunter_earnings(db_session, hunter.id)
        assert summary["total_pending"] == Decimal("425.00")
        assert summary["total_withdrawn"] == Decimal("1020.00")
        assert summary["total_earnings"] == Decimal("1445.00")

    async def test_insufficient_balance(self, db_session, hunter, lines):
        with pytest.raises(InvalidArgumentError, match="Insufficient balance"):
            await request_withdrawal(db_session, hunter.id, Decimal("2000"))

    async def test_nothing_pending(self, db_session, hunter):
        with pytest.raises(InvalidArgumentError, match="Insufficient balance"):
            await request_withdrawal(db_session, hunter.id)

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-50")])
    async def test_amount_must_be_positive(self, db_session, hunter, lines, amount):
        with pytest.raises(InvalidArgumentError, match="positive"):
            await request_withdrawal(db_session, hunter.id, amount)

    async def test_amount_below_every_line(self, db_session, hunter, lines):
        with pytest.raises(InvalidArgumentError, match="does not cover"):
            await request_withdrawal(db_session, hunter.id, Decimal("100"))

    async def test_cannot_withdraw_twice(self, db_session, hunter, lines):
        await request_withdrawal(db_session, hunter.id)
        with pytest.raises(InvalidArgumentError, match="Insufficient balance"):
            await request_withdrawal(db_session, hunter.id)

    async def test_concurrent_withdrawals_pay_out_once(self, hunter, lines, session_factory):
        async def withdraw():
            async with session_factory() as session:
                try:
                    await request_withdrawal(session, hunter.id)
                    return "ok"
                except (ConflictError, InvalidArgumentError):
                    return "refused"

        results = await asyncio.gather(withdraw(), withdraw())

        assert sorted(results) == ["ok", "refused"]
        async with session_factory() as session:
            result = await session.execute(select(Withdrawal))
            withdrawals = result.scalars().all()
            assert len(withdrawals) == 1
            assert withdrawals[0].amount == Decimal("1445.00")
            summary = await get_hunter_earnings(session, hunter.id)
            assert summary["total_withdrawn"] == Decimal("1445.00")
            assert summary["total_pending"] == Decimal("0")
