"""User endpoints."""

from typing import Annotated, Any

from fastapi import APIRouter, Depends

from app.dependencies import CurrentUser, RoleGuard
from app.schemas.users import UserResponse

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/me", response_model=UserResponse)
async def get_current_user_profile(
    principal: Annotated[dict[str, Any], Depends(RoleGuard())],
    current_user: CurrentUser,
):
    """Get current user's profile."""
    return UserResponse.model_validate(current_user)
