"""FastAPI dependencies."""

import asyncio
from collections.abc import AsyncIterator
from typing import Annotated, Any

import redis
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import (
    GuardRedirectException,
    IdentityProviderError,
    IdentityUnavailableError,
)
from app.core.firebase import FirebaseIdentityProvider
from app.core.guard import evaluate_access
from app.core.identity import IdentityProvider
from app.core.redis_client import CacheManager, get_redis_client
from app.core.roles import ACCOUNT_INACTIVE, Role, login_route
from app.core.security import decode_access_token
from app.database import get_db
from app.services.auth_service import AuthService
from app.services.session_service import SessionCoordinator
from app.services.session_store import HandoffStore
from app.services.sync_gateway import HttpSyncGateway, LocalSyncGateway, SyncGateway
from app.services.user_service import UserService
from app.services.user_sync_service import UserSyncService

# Security
security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)

# How often the disconnect watcher polls the client connection
DISCONNECT_POLL_SECONDS = 0.5

_identity_provider: FirebaseIdentityProvider | None = None


def get_cache_manager(
    redis_client: Annotated[redis.Redis, Depends(get_redis_client)],
) -> CacheManager:
    return CacheManager(redis_client)


def get_identity_provider() -> IdentityProvider:
    """Get the process-wide identity provider client."""
    global _identity_provider

    if _identity_provider is None:
        _identity_provider = FirebaseIdentityProvider(
            api_key=settings.firebase_web_api_key,
            base_url=settings.identity_toolkit_url,
            timeout=settings.identity_request_timeout_seconds,
        )
    return _identity_provider


def get_user_sync_service(
    identity: Annotated[IdentityProvider, Depends(get_identity_provider)],
    cache_manager: Annotated[CacheManager, Depends(get_cache_manager)],
) -> UserSyncService:
    return UserSyncService(identity, cache_manager)


def get_sync_gateway(
    db: Annotated[AsyncSession, Depends(get_db)],
    sync_service: Annotated[UserSyncService, Depends(get_user_sync_service)],
) -> SyncGateway:
    """Remote sync endpoint when one is configured, in-process otherwise."""
    if settings.sync_endpoint_url:
        return HttpSyncGateway(
            settings.sync_endpoint_url,
            timeout=settings.sync_request_timeout_seconds,
        )
    return LocalSyncGateway(db, sync_service)


def get_session_coordinator(
    identity: Annotated[IdentityProvider, Depends(get_identity_provider)],
    gateway: Annotated[SyncGateway, Depends(get_sync_gateway)],
    cache_manager: Annotated[CacheManager, Depends(get_cache_manager)],
) -> SessionCoordinator:
    return SessionCoordinator(identity, gateway, HandoffStore(cache_manager))


def get_auth_service(
    cache_manager: Annotated[CacheManager, Depends(get_cache_manager)],
    identity: Annotated[IdentityProvider, Depends(get_identity_provider)],
    coordinator: Annotated[SessionCoordinator, Depends(get_session_coordinator)],
) -> AuthService:
    return AuthService(cache_manager, identity, coordinator)


async def get_cancel_event(request: Request) -> AsyncIterator[asyncio.Event]:
    """
    Cancellation token released when the client disconnects.

    Retry waits inside the request race against it, so a caller that goes
    away does not leave sync retries running.
    """
    cancel_event = asyncio.Event()

    async def watch() -> None:
        while not cancel_event.is_set():
            if await request.is_disconnected():
                cancel_event.set()
                return
            await asyncio.sleep(DISCONNECT_POLL_SECONDS)

    watcher = asyncio.create_task(watch())
    try:
        yield cancel_event
    finally:
        watcher.cancel()


async def get_provider_user_id(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    identity: Annotated[IdentityProvider, Depends(get_identity_provider)],
) -> str:
    """
    Verify the identity provider ID token in the Authorization header.

    Returns:
        External user id the token belongs to

    Raises:
        HTTPException: 401 if the token is invalid, expired or revoked;
            503 if it cannot be checked
    """
    try:
        return await identity.verify_token(credentials.credentials)
    except IdentityUnavailableError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Identity provider unavailable",
        )
    except IdentityProviderError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid identity token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def _principal_from_token(token: str) -> dict[str, Any]:
    payload = decode_access_token(token)

    if payload is None or not isinstance(payload.get("sub"), str):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return {"external_id": payload["sub"], "role": payload.get("role")}


async def get_current_principal(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> dict[str, Any]:
    """
    Extract the caller from an application access token.

    Returns:
        Dict with ``external_id`` and the ``role`` resolved at sign-in

    Raises:
        HTTPException: If the token is invalid or expired
    """
    return _principal_from_token(credentials.credentials)


async def get_current_user(
    principal: Annotated[dict[str, Any], Depends(get_current_principal)],
    db: Annotated[AsyncSession, Depends(get_db)],
    cache_manager: Annotated[CacheManager, Depends(get_cache_manager)],
) -> dict:
    """
    Get the application user behind the access token.

    Raises:
        HTTPException: If the user was never synced or is deactivated
    """
    user = await UserService(cache_manager).get_user_by_external_id(db, principal["external_id"])

    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not synced",
        )

    if not user["is_active"]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    return user


class RoleGuard:
    """
    Dependency restricting an endpoint to a set of roles.

    Callers outside the set are redirected the way the portal's pages are:
    anonymous callers to the login page, callers without a role to the login
    page with an error, callers with another role to their own dashboard.
    """

    def __init__(self, *roles: Role, require_active: bool = False):
        """
        Initialize with the roles permitted on the endpoint; none permits any role.

        With ``require_active`` the caller's account is also looked up, and a
        deactivated account is sent back to the login page even while its
        access token is still valid.
        """
        self.roles = roles or None
        self.require_active = require_active

    async def __call__(
        self,
        credentials: Annotated[
            HTTPAuthorizationCredentials | None, Depends(optional_security)
        ],
        db: Annotated[AsyncSession, Depends(get_db)],
        cache_manager: Annotated[CacheManager, Depends(get_cache_manager)],
    ) -> dict[str, Any]:
        principal = _principal_from_token(credentials.credentials) if credentials else None

        decision = evaluate_access(
            resolved=True,
            signed_in=principal is not None,
            role=principal["role"] if principal else None,
            allowed_roles=self.roles,
        )
        if not decision.allowed:
            assert decision.redirect_to is not None
            raise GuardRedirectException(decision.redirect_to)

        assert principal is not None

        if self.require_active:
            user = await UserService(cache_manager).get_user_by_external_id(
                db, principal["external_id"]
            )
            if user is not None and not user["is_active"]:
                raise GuardRedirectException(login_route(ACCOUNT_INACTIVE))

        return principal


# Type aliases for dependency injection
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
Cache = Annotated[CacheManager, Depends(get_cache_manager)]
Identity = Annotated[IdentityProvider, Depends(get_identity_provider)]
Auth = Annotated[AuthService, Depends(get_auth_service)]
SyncService = Annotated[UserSyncService, Depends(get_user_sync_service)]
CancelEvent = Annotated[asyncio.Event, Depends(get_cancel_event)]
ProviderUserId = Annotated[str, Depends(get_provider_user_id)]
CurrentPrincipal = Annotated[dict[str, Any], Depends(get_current_principal)]
CurrentUser = Annotated[dict, Depends(get_current_user)]
AdminPrincipal = Annotated[dict[str, Any], Depends(RoleGuard(Role.ADMIN, require_active=True))]
