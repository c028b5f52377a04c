"""Hunter earnings summary and simulated withdrawals.

A withdrawal pays out whole PENDING earnings lines, oldest first, and marks
them WITHDRAWN under a single conditional update. Lines are never split, so
the amount paid out may be less than the amount asked for.
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from house_haunters.domain.enums import EarningsStatus
from house_haunters.domain.models import HunterEarnings, Withdrawal, new_id
from house_haunters.services.booking_lifecycle import atomic
from house_haunters.services.booking_state_machine import ConflictError, InvalidArgumentError
from house_haunters.services.viewing_request_service import simulated_receipt

logger = logging.getLogger(__name__)


async def get_hunter_earnings(db: AsyncSession, hunter_id: str) -> dict:
    """Earnings rows for ``hunter_id`` with pending, withdrawn and total sums."""
    result = await db.execute(
        select(HunterEarnings)
        .where(HunterEarnings.hunter_id == hunter_id)
        .order_by(HunterEarnings.created_at.desc())
    )
    earnings = list(result.scalars().all())

    total_pending = sum(
        (Decimal(e.amount) for e in earnings if e.status == EarningsStatus.PENDING.value),
        Decimal("0"),
    )
    total_withdrawn = sum(
        (Decimal(e.amount) for e in earnings if e.status == EarningsStatus.WITHDRAWN.value),
        Decimal("0"),
    )
    return {
        "earnings": earnings,
        "total_pending": total_pending,
        "total_withdrawn": total_withdrawn,
        "total_earnings": total_pending + total_withdrawn,
    }


async def request_withdrawal(
    db: AsyncSession,
    hunter_id: str,
    amount: Optional[Decimal] = None,
    phone_number: Optional[str] = None,
) -> Withdrawal:
    """Pay out pending earnings up to ``amount`` (everything pending when omitted)."""
    if amount is not None and Decimal(str(amount)) <= 0:
        raise InvalidArgumentError("Withdrawal amount must be positive")

    result = await db.execute(
        select(HunterEarnings)
        .where(
            HunterEarnings.hunter_id == hunter_id,
            HunterEarnings.status == EarningsStatus.PENDING.value,
        )
        .order_by(HunterEarnings.created_at.asc(), HunterEarnings.id.asc())
    )
    pending = list(result.scalars().all())
    balance = sum((Decimal(e.amount) for e in pending), Decimal("0"))

    requested = balance if amount is None else Decimal(str(amount))
    if balance <= 0 or requested > balance:
        raise InvalidArgumentError("Insufficient balance")

    selected = []
    remaining = requested
    for earning in pending:
        if Decimal(earning.amount) <= remaining:
            selected.append(earning)
            remaining -= Decimal(earning.amount)
    if not selected:
        raise InvalidArgumentError("Amount does not cover any pending earning")

    withdrawal = Withdrawal(
        id=new_id(),
        hunter_id=hunter_id,
        amount=sum((Decimal(e.amount) for e in selected), Decimal("0")),
        receipt_number=simulated_receipt("WD"),
        phone_number=phone_number,
        status="COMPLETED",
    )
    ids = [e.id for e in selected]

    async with atomic(db):
        db.add(withdrawal)
        result = await db.execute(
            update(HunterEarnings)
            .where(
                HunterEarnings.id.in_(ids),
                HunterEarnings.status == EarningsStatus.PENDING.value,
            )
            .values(status=EarningsStatus.WITHDRAWN.value, withdrawal_id=withdrawal.id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(ids):
            raise ConflictError("Earnings changed during withdrawal, please retry")
    for earning in selected:
        await db.refresh(earning)

    logger.info(
        "Withdrawal completed: hunter=%s amount=%s lines=%d receipt=%s",
        hunter_id, withdrawal.amount, len(ids), withdrawal.receipt_number,
    )
    return withdrawal
