"""User router (current user endpoints)."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.dependencies import get_db_session
from src.features.auth.dependencies import get_clock, get_current_user, get_session_token
from src.shared.clock import Clock

from .models import User
from .schemas import PasswordChangeRequest, UserResponse
from .service import UserService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/users", tags=["User Management"])


@router.get("/me", response_model=UserResponse)
async def get_current_user_info(current_user: User = Depends(get_current_user)):
    """Get current user information (session access token or personal API token)."""
    return UserResponse.model_validate(current_user)


@router.post("/me/change-password", dependencies=[Depends(get_session_token)])
async def change_password(
    data: PasswordChangeRequest,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
):
    """Change current user's password.

    All sessions, including the current one, are revoked; log in again afterwards.
    """
    await UserService.change_password(session, current_user, data.current_password, data.new_password, clock)
    await session.commit()
    return {"message": "Password changed successfully"}
