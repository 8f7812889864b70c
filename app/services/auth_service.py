"""Authentication façade over the identity provider and application tokens."""

import asyncio
import re
from datetime import timedelta

from structlog import get_logger

from app.config import settings
from app.core.exceptions import (
    ChallengeExpiredError,
    IdentityProviderError,
    IdentityUnavailableError,
    InvalidCodeError,
    InvalidCredentialsError,
    ServiceUnavailableException,
    UnauthorizedException,
)
from app.core.identity import (
    IdentityProvider,
    IdentitySession,
    MfaStrategy,
    SecondFactor,
    SignInStatus,
)
from app.core.redis_client import CacheManager
from app.core.roles import (
    SELF_ASSIGNABLE_ROLES,
    ProviderSpecialty,
    Role,
    landing_route_for,
    login_route,
)
from app.core.security import (
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
)
from app.schemas.auth import MfaStateResponse, SignInResult, SignUpResult, Token
from app.schemas.session import PendingAuth
from app.services.session_service import ResolutionStatus, SessionCoordinator, SessionResolution
from app.services.session_store import HandoffStore, PendingAuthStore

logger = get_logger(__name__)

MFA_CODE_PATTERN = re.compile(r"[0-9]{6}")

# User-facing messages
MISSING_CREDENTIALS = "Email and password are required"
INVALID_CREDENTIALS = "Invalid email or password"
INVALID_CODE_FORMAT = "Verification code must be 6 digits"
INVALID_CODE = "Invalid or expired verification code"
CHALLENGE_EXPIRED = "Your verification session has expired. Please sign in again."
NO_ROLE = "No role assigned to your account. Please contact support."
ACCOUNT_INACTIVE = "Your account has been deactivated. Please contact support."
SESSION_INVALID = "Your session is no longer valid. Please sign in again."
PROVIDER_UNAVAILABLE = "Authentication service is unavailable. Please try again."
EMAIL_EXISTS = "An account with this email already exists"
ROLE_NOT_ALLOWED = "This role cannot be chosen at registration"


def _failure(error: str, error_code: str, **extra) -> SignInResult:
    return SignInResult(success=False, error=error, error_code=error_code, **extra)


def choose_second_factor(factors: list[SecondFactor]) -> SecondFactor | None:
    """Prefer an emailed code; otherwise take the first factor the provider offers."""
    for factor in factors:
        if factor.strategy is MfaStrategy.EMAIL_CODE:
            return factor
    return factors[0] if factors else None


class AuthService:
    """
    Sign-in, MFA, registration and sign-out for the portal.

    Provider errors never escape the sign-in methods: they are turned into
    display-ready ``SignInResult`` errors with a machine ``error_code``.
    """

    def __init__(
        self,
        cache_manager: CacheManager,
        identity: IdentityProvider,
        coordinator: SessionCoordinator,
    ):
        """Initialize auth service with cache, identity provider and session coordinator."""
        self.cache = cache_manager
        self.identity = identity
        self.coordinator = coordinator
        self.pending = PendingAuthStore(cache_manager)
        self.handoffs = HandoffStore(cache_manager)

    async def handle_sign_in(
        self,
        email: str,
        password: str,
        pending_token: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SignInResult:
        """
        Submit email and password.

        Args:
            email: Email address
            password: Password
            pending_token: Token from the pendingAuth cookie; its challenge is discarded
            cancel_event: Set when the request goes away during sync retries

        Returns:
            Success with redirect and tokens, an MFA challenge, or an error
        """
        email = (email or "").strip()
        if not email or not password or not password.strip():
            return _failure(MISSING_CREDENTIALS, "invalid_input")

        # A new submission abandons any challenge still in flight
        self.pending.delete(pending_token)

        try:
            attempt = await self.identity.sign_in(email, password)
        except InvalidCredentialsError:
            logger.info("sign_in_rejected")
            return _failure(INVALID_CREDENTIALS, "invalid_credentials")
        except IdentityUnavailableError as e:
            logger.error("sign_in_provider_unavailable", error=e.message)
            return _failure(PROVIDER_UNAVAILABLE, "provider_unavailable")
        except IdentityProviderError as e:
            logger.warning("sign_in_failed", provider_code=e.code)
            return _failure(INVALID_CREDENTIALS, "invalid_credentials")

        if attempt.status is SignInStatus.NEEDS_SECOND_FACTOR:
            return await self._start_second_factor(email, attempt.attempt_id, attempt.second_factors)

        assert attempt.session is not None
        return await self._complete(attempt.session, cancel_event)

    async def _start_second_factor(
        self, email: str, attempt_id: str | None, factors: list[SecondFactor]
    ) -> SignInResult:
        factor = choose_second_factor(factors)
        if attempt_id is None or factor is None:
            logger.error("sign_in_mfa_without_factor")
            return _failure(PROVIDER_UNAVAILABLE, "provider_unavailable")

        try:
            verification_id = await self.identity.prepare_second_factor(attempt_id, factor)
        except IdentityUnavailableError as e:
            logger.error("mfa_prepare_failed", error=e.message)
            return _failure(PROVIDER_UNAVAILABLE, "provider_unavailable")
        except IdentityProviderError as e:
            logger.warning("mfa_prepare_rejected", provider_code=e.code)
            return _failure(CHALLENGE_EXPIRED, "challenge_expired")

        token = self.pending.create(
            PendingAuth(
                email=email,
                attempt_id=attempt_id,
                mfa_strategy=factor.strategy,
                factor_id=factor.factor_id,
                verification_id=verification_id,
            )
        )
        logger.info("sign_in_mfa_required", mfa_strategy=factor.strategy.value)
        return SignInResult(
            success=False,
            needs_mfa=True,
            mfa_strategy=factor.strategy,
            pending_token=token,
        )

    async def submit_mfa_code(
        self,
        pending_token: str | None,
        code: str,
        cancel_event: asyncio.Event | None = None,
    ) -> SignInResult:
        """
        Complete a pending sign-in with a six-digit second-factor code.

        A rejected code keeps the pending record so the user can retry or ask
        for a new code. There is no attempt counter; throttling is left to the
        identity provider.
        """
        record = self.pending.get(pending_token)
        if record is None:
            return _failure(CHALLENGE_EXPIRED, "challenge_expired")

        still_pending = {
            "needs_mfa": True,
            "mfa_strategy": record.mfa_strategy,
            "pending_token": pending_token,
        }

        code = (code or "").strip()
        if not MFA_CODE_PATTERN.fullmatch(code):
            return _failure(INVALID_CODE_FORMAT, "invalid_input", **still_pending)

        try:
            session = await self.identity.attempt_second_factor(
                record.attempt_id,
                record.mfa_strategy,
                code,
                factor_id=record.factor_id,
                verification_id=record.verification_id,
            )
        except ChallengeExpiredError:
            self.pending.delete(pending_token)
            logger.info("mfa_challenge_expired")
            return _failure(CHALLENGE_EXPIRED, "challenge_expired")
        except InvalidCodeError:
            logger.info("mfa_code_rejected", mfa_strategy=record.mfa_strategy.value)
            return _failure(INVALID_CODE, "invalid_code", **still_pending)
        except IdentityUnavailableError as e:
            logger.error("mfa_provider_unavailable", error=e.message)
            return _failure(PROVIDER_UNAVAILABLE, "provider_unavailable", **still_pending)
        except IdentityProviderError as e:
            logger.warning("mfa_attempt_failed", provider_code=e.code)
            return _failure(INVALID_CODE, "invalid_code", **still_pending)

        self.pending.delete(pending_token)
        logger.info("mfa_verified", external_user_id=session.user_id)
        return await self._complete(session, cancel_event)

    async def resend_mfa_code(self, pending_token: str | None) -> MfaStateResponse:
        """
        Issue a fresh challenge for the pending factor.

        Raises:
            UnauthorizedException: If no pending sign-in exists
            ServiceUnavailableException: If the provider cannot be reached
        """
        record = self.pending.get(pending_token)
        if record is None or pending_token is None:
            raise UnauthorizedException(CHALLENGE_EXPIRED)

        factor = SecondFactor(strategy=record.mfa_strategy, factor_id=record.factor_id)
        try:
            verification_id = await self.identity.prepare_second_factor(record.attempt_id, factor)
        except ChallengeExpiredError:
            self.pending.delete(pending_token)
            raise UnauthorizedException(CHALLENGE_EXPIRED)
        except IdentityProviderError as e:
            logger.error("mfa_resend_failed", provider_code=e.code, error=e.message)
            raise ServiceUnavailableException(PROVIDER_UNAVAILABLE)

        if verification_id is not None:
            record = record.model_copy(update={"verification_id": verification_id})
        self.pending.refresh(pending_token, record)
        logger.info("mfa_code_resent", mfa_strategy=record.mfa_strategy.value)

        return MfaStateResponse(needs_mfa=True, mfa_strategy=record.mfa_strategy)

    def mfa_state(self, pending_token: str | None) -> MfaStateResponse:
        """Report whether an MFA challenge is in flight for ``pending_token``."""
        record = self.pending.get(pending_token)
        if record is None:
            return MfaStateResponse(needs_mfa=False)
        return MfaStateResponse(needs_mfa=True, mfa_strategy=record.mfa_strategy)

    async def sign_up(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        role: Role = Role.PATIENT,
        specialty: ProviderSpecialty | None = None,
    ) -> SignUpResult:
        """
        Register a new identity with a self-chosen role.

        The role is written to unsafe metadata and kept as the pending role in
        the handoff; the first session resolution syncs it into the database.
        """
        if role not in SELF_ASSIGNABLE_ROLES:
            return SignUpResult(success=False, error=ROLE_NOT_ALLOWED, error_code="invalid_input")

        unsafe_metadata: dict[str, str] = {"role": role.value}
        if specialty is not None:
            unsafe_metadata["specialty"] = specialty.value

        try:
            session = await self.identity.sign_up(
                email,
                password,
                first_name=first_name,
                last_name=last_name,
                unsafe_metadata=unsafe_metadata,
            )
        except InvalidCredentialsError as e:
            logger.info("sign_up_rejected", provider_code=e.code)
            message = EMAIL_EXISTS if e.code == "EMAIL_EXISTS" else INVALID_CREDENTIALS
            return SignUpResult(success=False, error=message, error_code="invalid_credentials")
        except IdentityProviderError as e:
            logger.error("sign_up_failed", provider_code=e.code, error=e.message)
            return SignUpResult(
                success=False, error=PROVIDER_UNAVAILABLE, error_code="provider_unavailable"
            )

        self.handoffs.update(session.user_id, pending_role=role, pending_specialty=specialty)
        logger.info("user_registered", external_user_id=session.user_id, role=role.value)

        return SignUpResult(
            success=True,
            user_id=session.user_id,
            redirect_to=landing_route_for(role),
        )

    async def resolve_session(
        self,
        user_id: str,
        id_token: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SignInResult:
        """Resolve role and landing route for a user already signed in at the provider."""
        return await self._complete(
            IdentitySession(user_id=user_id, id_token=id_token or ""), cancel_event
        )

    async def _complete(
        self, session: IdentitySession, cancel_event: asyncio.Event | None
    ) -> SignInResult:
        """Shared tail of every successful sign-in: sync, resolve role, redirect."""
        try:
            resolution = await self.coordinator.resolve(
                session.user_id,
                id_token=session.id_token or None,
                cancel_event=cancel_event,
            )
        except IdentityUnavailableError as e:
            logger.error("session_resolution_unavailable", error=e.message)
            return _failure(PROVIDER_UNAVAILABLE, "provider_unavailable")

        if resolution.resolved:
            assert resolution.role is not None
            tokens = self.create_tokens(session.user_id, resolution.role)
            return SignInResult(
                success=True,
                redirect_to=resolution.redirect_to,
                role=resolution.role,
                synced=resolution.synced,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
            )

        return await self._reject(session.user_id, resolution)

    async def _reject(self, user_id: str, resolution: SessionResolution) -> SignInResult:
        """Force the sign-out that every unresolved session ends in."""
        if resolution.status is ResolutionStatus.INVALID:
            if resolution.sign_out_required:
                await self._provider_sign_out(user_id)
            return _failure(
                SESSION_INVALID, "session_invalid", redirect_to=resolution.redirect_to
            )

        await self.sign_out(user_id)

        if resolution.status is ResolutionStatus.INACTIVE:
            return _failure(
                ACCOUNT_INACTIVE,
                "account_inactive",
                redirect_to=resolution.redirect_to,
                synced=resolution.synced,
            )
        return _failure(
            NO_ROLE,
            "no_role_found",
            redirect_to=resolution.redirect_to,
            synced=resolution.synced,
        )

    async def sign_out(
        self,
        user_id: str | None = None,
        refresh_token: str | None = None,
        pending_token: str | None = None,
    ) -> None:
        """
        End the session locally, then at the provider.

        Local state is always cleared; a provider failure is logged and
        swallowed so sign-out never fails.
        """
        if refresh_token:
            self.revoke_token(refresh_token)
        self.pending.delete(pending_token)

        if user_id:
            self.handoffs.clear(user_id)
            await self._provider_sign_out(user_id)

        logger.info("signed_out", external_user_id=user_id)

    async def _provider_sign_out(self, user_id: str) -> None:
        try:
            await self.identity.sign_out(user_id)
        except IdentityProviderError as e:
            logger.warning("provider_sign_out_failed", external_user_id=user_id, error=e.message)

    def create_tokens(self, user_id: str, role: Role) -> Token:
        """
        Create access and refresh tokens for a user.

        Args:
            user_id: External identity id
            role: Resolved application role

        Returns:
            Token pair (access and refresh)
        """
        claims = {"sub": user_id, "role": role.value}

        access_token = create_access_token(
            data=claims,
            expires_delta=timedelta(minutes=settings.access_token_expire_minutes),
        )
        refresh_token = create_refresh_token(
            data=claims,
            expires_delta=timedelta(days=settings.refresh_token_expire_days),
        )

        return Token(access_token=access_token, refresh_token=refresh_token, token_type="bearer")

    def refresh_access_token(self, refresh_token: str) -> Token:
        """
        Create new tokens from a refresh token.

        Raises:
            UnauthorizedException: If the refresh token is invalid or revoked
        """
        payload = decode_refresh_token(refresh_token)
        if payload is None:
            raise UnauthorizedException("Invalid refresh token")

        user_id = payload.get("sub")
        role = payload.get("role")
        if not user_id or not role:
            raise UnauthorizedException("Invalid refresh token")

        if self.cache.exists(f"blacklist:{refresh_token}"):
            raise UnauthorizedException("Token has been revoked")

        # Rotate: the presented refresh token cannot be used again
        self.revoke_token(refresh_token)
        return self.create_tokens(user_id, Role(role))

    def revoke_token(self, token: str, ttl: int | None = None) -> None:
        """Blacklist a refresh token for the rest of its lifetime."""
        ttl = ttl or settings.refresh_token_expire_days * 86400
        self.cache.set(f"blacklist:{token}", "1", ttl=ttl)
