"""Authentication endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from app.config import settings
from app.core.exceptions import (
    BadRequestException,
    IdentityUnavailableError,
    NotFoundException,
)
from app.core.roles import LOGIN_ROUTE
from app.core.security import decode_access_token
from app.dependencies import (
    Auth,
    Cache,
    CancelEvent,
    DatabaseSession,
    ProviderUserId,
    SyncService,
    optional_security,
    security,
)
from app.schemas.auth import (
    CheckSyncResponse,
    MfaCodeRequest,
    MfaStateResponse,
    RegisterRequest,
    SignInRequest,
    SignInResult,
    SignOutRequest,
    SignUpResult,
    SyncRequest,
    SyncResponse,
    Token,
    TokenRefresh,
)
from app.schemas.session import SessionHandoff
from app.schemas.users import UserResponse
from app.services.session_store import HandoffStore

logger = get_logger(__name__)

router = APIRouter()

# HTTP status for each sign-in error code
SIGN_IN_ERROR_STATUS = {
    "invalid_input": status.HTTP_400_BAD_REQUEST,
    "invalid_credentials": status.HTTP_401_UNAUTHORIZED,
    "invalid_code": status.HTTP_400_BAD_REQUEST,
    "challenge_expired": status.HTTP_401_UNAUTHORIZED,
    "session_invalid": status.HTTP_401_UNAUTHORIZED,
    "no_role_found": status.HTTP_403_FORBIDDEN,
    "account_inactive": status.HTTP_403_FORBIDDEN,
    "provider_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _pending_token(request: Request) -> str | None:
    return request.cookies.get(settings.pending_auth_cookie_name)


def _set_pending_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=settings.pending_auth_cookie_name,
        value=token,
        max_age=settings.pending_auth_ttl_seconds,
        path="/",
        httponly=True,
        samesite="strict",
        secure=settings.pending_auth_cookie_secure,
    )


def _clear_pending_cookie(response: Response) -> None:
    response.delete_cookie(
        key=settings.pending_auth_cookie_name,
        path="/",
        httponly=True,
        samesite="strict",
        secure=settings.pending_auth_cookie_secure,
    )


def _apply_sign_in_result(
    result: SignInResult, request: Request, response: Response
) -> SignInResult:
    """Move the pending token into the cookie and pick the status code."""
    current = _pending_token(request)

    if result.needs_mfa and result.pending_token:
        if result.pending_token != current:
            _set_pending_cookie(response, result.pending_token)
    elif current:
        _clear_pending_cookie(response)

    if result.error_code:
        response.status_code = SIGN_IN_ERROR_STATUS.get(
            result.error_code, status.HTTP_400_BAD_REQUEST
        )
    return result


def _require_same_user(caller_id: str, external_user_id: str) -> None:
    if caller_id != external_user_id:
        logger.warning(
            "user_sync_forbidden",
            caller_id=caller_id,
            external_user_id=external_user_id,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot sync another user",
        )


@router.post(
    "/sign-in",
    response_model=SignInResult,
    response_model_exclude_none=True,
    summary="Sign in with email and password",
)
async def sign_in(
    body: SignInRequest,
    request: Request,
    response: Response,
    auth_service: Auth,
    cancel_event: CancelEvent,
) -> SignInResult:
    """
    Submit credentials to the identity provider.

    When a second factor is required the response carries ``needs_mfa`` and
    the pendingAuth cookie is set; no redirect is returned until the code is
    verified.
    """
    result = await auth_service.handle_sign_in(
        body.email,
        body.password,
        pending_token=_pending_token(request),
        cancel_event=cancel_event,
    )
    return _apply_sign_in_result(result, request, response)


@router.post(
    "/mfa/verify",
    response_model=SignInResult,
    response_model_exclude_none=True,
    summary="Submit a second-factor code",
)
async def verify_mfa(
    body: MfaCodeRequest,
    request: Request,
    response: Response,
    auth_service: Auth,
    cancel_event: CancelEvent,
) -> SignInResult:
    """Complete a pending sign-in with the six-digit code."""
    result = await auth_service.submit_mfa_code(
        _pending_token(request), body.code, cancel_event=cancel_event
    )
    return _apply_sign_in_result(result, request, response)


@router.post(
    "/mfa/resend",
    response_model=MfaStateResponse,
    response_model_exclude_none=True,
    summary="Send a new second-factor code",
)
async def resend_mfa(request: Request, auth_service: Auth) -> MfaStateResponse:
    """Issue a fresh challenge for the pending sign-in."""
    return await auth_service.resend_mfa_code(_pending_token(request))


@router.get(
    "/mfa/status",
    response_model=MfaStateResponse,
    response_model_exclude_none=True,
    summary="Whether an MFA challenge is pending",
)
async def mfa_status(request: Request, auth_service: Auth) -> MfaStateResponse:
    return auth_service.mfa_state(_pending_token(request))


@router.post(
    "/register",
    response_model=SignUpResult,
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
    summary="Register a new account",
)
async def register(
    body: RegisterRequest, response: Response, auth_service: Auth
) -> SignUpResult:
    """
    Create the identity and remember the chosen role.

    The application user is created on the first session resolution, using
    the chosen role as sync hint.
    """
    result = await auth_service.sign_up(
        body.email,
        body.password,
        body.first_name,
        body.last_name,
        role=body.role,
        specialty=body.specialty,
    )
    if not result.success:
        response.status_code = (
            status.HTTP_503_SERVICE_UNAVAILABLE
            if result.error_code == "provider_unavailable"
            else status.HTTP_400_BAD_REQUEST
        )
    return result


@router.post(
    "/session/resolve",
    response_model=SignInResult,
    response_model_exclude_none=True,
    summary="Resolve role and landing route for a provider session",
)
async def resolve_session(
    request: Request,
    response: Response,
    user_id: ProviderUserId,
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    auth_service: Auth,
    cancel_event: CancelEvent,
) -> SignInResult:
    """
    Sync the caller and return where they should land.

    For clients that signed in with the identity provider directly and hold
    its ID token. Without a role the provider session is revoked.
    """
    result = await auth_service.resolve_session(
        user_id, id_token=credentials.credentials, cancel_event=cancel_event
    )
    return _apply_sign_in_result(result, request, response)


@router.post(
    "/sync/{external_user_id}",
    response_model=SyncResponse,
    response_model_exclude_none=True,
    summary="Create or update the application user for an identity",
)
async def sync_user(
    external_user_id: str,
    caller_id: ProviderUserId,
    db: DatabaseSession,
    sync_service: SyncService,
    response: Response,
    body: SyncRequest | None = None,
) -> SyncResponse:
    """
    Upsert the application user mirroring ``external_user_id``.

    Server errors are reported as 5xx so callers know to retry; a missing
    identity or role is a 4xx and final.
    """
    _require_same_user(caller_id, external_user_id)
    body = body or SyncRequest()

    try:
        user = await sync_service.sync_user(
            db, external_user_id, role=body.role, specialty=body.specialty
        )
    except (NotFoundException, BadRequestException) as e:
        response.status_code = e.status_code
        return SyncResponse(success=False, error=e.message)
    except IdentityUnavailableError as e:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return SyncResponse(success=False, error=e.message)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("user_sync_database_error", external_user_id=external_user_id, error=str(e))
        response.status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        return SyncResponse(success=False, error="Failed to sync user")

    return SyncResponse(
        success=True,
        message="User synced successfully",
        user=UserResponse.model_validate(user),
    )


@router.get(
    "/check-sync/{external_user_id}",
    response_model=CheckSyncResponse,
    response_model_exclude_none=True,
    summary="Check whether an identity has been synced",
)
async def check_sync(
    external_user_id: str,
    caller_id: ProviderUserId,
    db: DatabaseSession,
    sync_service: SyncService,
) -> CheckSyncResponse:
    _require_same_user(caller_id, external_user_id)

    user = await sync_service.check_sync(db, external_user_id)
    if user is None:
        return CheckSyncResponse(exists=False)
    return CheckSyncResponse(exists=True, user_id=str(user["id"]))


@router.get(
    "/handoff",
    response_model=SessionHandoff,
    summary="Session handoff hints for the caller",
)
async def get_handoff(user_id: ProviderUserId, cache_manager: Cache) -> SessionHandoff:
    return HandoffStore(cache_manager).get(user_id)


@router.post(
    "/refresh",
    response_model=Token,
    summary="Refresh access token",
)
async def refresh_token(body: TokenRefresh, auth_service: Auth) -> Token:
    """
    Exchange a refresh token for a new token pair.

    The presented refresh token is revoked.
    """
    return auth_service.refresh_access_token(body.refresh_token)


@router.post(
    "/sign-out",
    summary="Sign out",
)
async def sign_out(
    request: Request,
    response: Response,
    auth_service: Auth,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(optional_security)],
    body: SignOutRequest | None = None,
) -> dict[str, str | bool]:
    """
    Sign out locally and at the identity provider.

    Always succeeds: the pending challenge and refresh token are dropped even
    if the provider cannot be reached.
    """
    payload = decode_access_token(credentials.credentials) if credentials else None
    user_id = payload.get("sub") if payload else None

    await auth_service.sign_out(
        user_id=user_id,
        refresh_token=body.refresh_token if body else None,
        pending_token=_pending_token(request),
    )
    _clear_pending_cookie(response)

    return {"success": True, "redirect_to": LOGIN_ROUTE}
