"""Payment endpoints for hunters: earnings and simulated withdrawals."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from house_haunters.app.routes.auth import require_role
from house_haunters.domain.models import User
from house_haunters.domain.schemas import EarningsSummary, WithdrawalRequest, WithdrawalResponse
from house_haunters.infra.database import get_db
from house_haunters.services.booking_state_machine import BookingError
from house_haunters.services.earnings_service import get_hunter_earnings, request_withdrawal

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.get("/earnings", response_model=EarningsSummary)
async def hunter_earnings(
    user: User = Depends(require_role("hunter")),
    db: AsyncSession = Depends(get_db),
):
    return EarningsSummary.model_validate(await get_hunter_earnings(db, user.id), from_attributes=True)


@router.post("/withdraw")
async def withdraw_earnings(
    body: WithdrawalRequest,
    user: User = Depends(require_role("hunter")),
    db: AsyncSession = Depends(get_db),
):
    """Simulated M-Pesa payout of pending earnings."""
    try:
        withdrawal = await request_withdrawal(db, user.id, body.amount, body.phone_number)
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Withdrawal completed successfully",
        "withdrawal": WithdrawalResponse.model_validate(withdrawal),
    }
