"""Admin-only endpoints for user management."""

from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.core.exceptions import IdentityProviderError
from app.core.redis_client import CacheManager
from app.core.roles import Role
from app.dependencies import AdminPrincipal, Cache, DatabaseSession, Identity
from app.schemas.users import UserListResponse, UserResponse
from app.services.user_service import UserService

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.get(
    "/users",
    response_model=UserListResponse,
    summary="List all users (admin only)",
)
async def list_all_users(
    db: DatabaseSession,
    cache_manager: Cache,
    admin: AdminPrincipal,
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    role: Role | None = Query(None, description="Filter by role"),
    is_active: bool | None = Query(None, description="Filter by active status"),
    search: str | None = Query(None, description="Search by name or email"),
) -> UserListResponse:
    """
    Get paginated list of all users with filtering.

    Requires admin role.
    """
    user_service = UserService(cache_manager)
    rows, total = await user_service.list_users(
        db,
        role=role,
        is_active=is_active,
        search=search,
        page=page,
        page_size=page_size,
    )

    return UserListResponse(
        users=[UserResponse.model_validate(row) for row in rows],
        total=total,
        page=page,
        page_size=page_size,
    )


async def _set_active(
    db: AsyncSession,
    cache_manager: CacheManager,
    admin: dict,
    user_id: UUID,
    is_active: bool,
) -> dict:
    user_service = UserService(cache_manager)
    target = await user_service.get_user_by_id(db, user_id)

    if not target:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )

    if not is_active and target["external_id"] == admin["external_id"]:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Admins cannot deactivate their own account",
        )

    user = await user_service.set_active(db, user_id, is_active)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )

    logger.info(
        "user_activation_changed",
        user_id=str(user_id),
        is_active=is_active,
        admin_external_id=admin["external_id"],
    )
    return user


@router.post(
    "/users/{user_id}/deactivate",
    response_model=UserResponse,
    summary="Deactivate a user (admin only)",
)
async def deactivate_user(
    user_id: UUID,
    db: DatabaseSession,
    cache_manager: Cache,
    identity: Identity,
    admin: AdminPrincipal,
) -> UserResponse:
    """
    Deactivate a user and revoke their identity provider sessions.

    Revocation is best-effort; the next session resolution rejects the
    account either way.
    """
    user = await _set_active(db, cache_manager, admin, user_id, is_active=False)

    try:
        await identity.sign_out(user["external_id"])
    except IdentityProviderError as e:
        logger.warning(
            "provider_sign_out_failed",
            external_user_id=user["external_id"],
            error=e.message,
        )

    return UserResponse.model_validate(user)


@router.post(
    "/users/{user_id}/activate",
    response_model=UserResponse,
    summary="Reactivate a user (admin only)",
)
async def activate_user(
    user_id: UUID,
    db: DatabaseSession,
    cache_manager: Cache,
    admin: AdminPrincipal,
) -> UserResponse:
    user = await _set_active(db, cache_manager, admin, user_id, is_active=True)
    return UserResponse.model_validate(user)
