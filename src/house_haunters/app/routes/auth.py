"""Authentication dependencies and the current-user endpoint.

Tokens are issued by the accounts service. This API only verifies the
bearer JWT and loads the matching active user.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from house_haunters.domain.models import User
from house_haunters.infra.database import get_db
from house_haunters.services.auth_service import decode_token, get_user_by_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    phone: str | None = None
    role: str
    is_active: bool


async def get_current_user_dep(
    request: Request, db: AsyncSession = Depends(get_db)
) -> User:
    """Dependency: extract current user from Bearer token."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid token",
        )
    token = auth_header.removeprefix("Bearer ")
    payload = decode_token(token)
    if not payload or "sub" not in payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    user = await get_user_by_id(db, payload["sub"])
    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )
    return user


def require_role(*roles: str):
    """Factory: dependency that checks user has one of the required roles."""

    async def checker(user: User = Depends(get_current_user_dep)):
        if user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return user

    return checker


@router.get("/me", response_model=UserResponse)
async def me(user: User = Depends(get_current_user_dep)):
    return UserResponse.model_validate(user)
