"""Session resolution: sync the signed-in identity, then settle its role."""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from structlog import get_logger

from app.config import settings
from app.core.exceptions import RetryExhaustedError, SyncRejectedError, SyncUnavailableError
from app.core.identity import IdentityProvider
from app.core.retry import SleepFunc, retry_with_backoff
from app.core.roles import (
    ACCOUNT_INACTIVE,
    NO_ROLE_FOUND,
    SELF_ASSIGNABLE_ROLES,
    SESSION_INVALID,
    Role,
    landing_route_for,
    login_route,
    parse_role,
)
from app.schemas.session import SyncStatus
from app.services.session_store import HandoffStore
from app.services.sync_gateway import SyncGateway

logger = get_logger(__name__)


class ResolutionStatus(str, Enum):
    """Terminal states of session resolution."""

    RESOLVED = "resolved"
    NO_ROLE = "no_role"
    INACTIVE = "inactive"
    INVALID = "invalid"


@dataclass
class SessionResolution:
    """Where a signed-in identity ends up once sync has settled."""

    status: ResolutionStatus
    redirect_to: str
    role: Role | None = None
    synced: bool = False
    user: dict[str, Any] | None = None
    sign_out_required: bool = True

    @property
    def resolved(self) -> bool:
        return self.status is ResolutionStatus.RESOLVED


class SessionCoordinator:
    """
    Drives the RoleResolving step for a signed-in identity.

    The identity is synced into the users table with exponential-backoff
    retry on transient failures. When every attempt fails, resolution carries
    on degraded with the role found in identity metadata or the pending
    registration role. No redirect is decided before the sync attempts settle.
    """

    def __init__(
        self,
        identity: IdentityProvider,
        gateway: SyncGateway,
        handoffs: HandoffStore,
        *,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        clean_cooldown_seconds: int | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        """Initialize with identity provider, sync gateway, handoff store and retry policy."""
        self.identity = identity
        self.gateway = gateway
        self.handoffs = handoffs
        self.max_attempts = max_attempts or settings.sync_max_attempts
        self.base_delay = settings.sync_base_delay_seconds if base_delay is None else base_delay
        self.clean_cooldown = timedelta(
            seconds=(
                settings.session_clean_cooldown_seconds
                if clean_cooldown_seconds is None
                else clean_cooldown_seconds
            )
        )
        self.sleep = sleep

    async def resolve(
        self,
        user_id: str,
        *,
        id_token: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SessionResolution:
        """
        Sync ``user_id`` and decide where the session goes.

        Args:
            user_id: Identity provider uid of the signed-in user
            id_token: Provider ID token, forwarded to a remote sync endpoint
            cancel_event: Set when the owning request goes away

        Returns:
            The resolution; callers sign the user out unless it is RESOLVED

        Raises:
            IdentityUnavailableError: If the identity cannot be read
            RetryCancelledError: If ``cancel_event`` fires during a retry wait
        """
        identity_user = await self.identity.get_user(user_id)
        if identity_user is None:
            return self._stale_session(user_id)

        handoff = self.handoffs.get(user_id)
        hint = identity_user.metadata_role or handoff.pending_role

        user: dict[str, Any] | None = None
        try:
            user = await retry_with_backoff(
                lambda: self.gateway.sync(
                    user_id, hint, handoff.pending_specialty, id_token=id_token
                ),
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                retry_on=(SyncUnavailableError,),
                cancel_event=cancel_event,
                sleep=self.sleep,
                operation_name="user_sync",
            )
            sync_status = SyncStatus.SYNCED
        except RetryExhaustedError as e:
            logger.warning(
                "user_sync_degraded",
                external_user_id=user_id,
                attempts=e.attempts,
                error=str(e.last_error),
            )
            sync_status = SyncStatus.DEGRADED
        except SyncRejectedError as e:
            logger.warning(
                "user_sync_rejected",
                external_user_id=user_id,
                status_code=e.status_code,
                error=str(e),
            )
            sync_status = SyncStatus.FAILED

        handoff_changes: dict[str, Any] = {
            "user_sync_status": sync_status,
            "email_verification_completed": identity_user.email_verified,
            "verification_status": "verified" if identity_user.email_verified else "pending",
        }
        if identity_user.email_verified and handoff.verification_timestamp is None:
            handoff_changes["verification_timestamp"] = datetime.now(UTC)
        if user is not None:
            handoff_changes["pending_role"] = None
            handoff_changes["pending_specialty"] = None
        self.handoffs.update(user_id, **handoff_changes)

        if user is not None and not user.get("is_active", True):
            logger.warning("session_account_inactive", external_user_id=user_id)
            return SessionResolution(
                status=ResolutionStatus.INACTIVE,
                redirect_to=login_route(ACCOUNT_INACTIVE),
                synced=True,
                user=user,
            )

        if user is not None:
            role = parse_role(user.get("role"))
        else:
            role = identity_user.metadata_role or (
                handoff.pending_role if handoff.pending_role in SELF_ASSIGNABLE_ROLES else None
            )

        if role is None:
            logger.warning(
                "session_role_missing",
                external_user_id=user_id,
                sync_status=sync_status.value,
            )
            return SessionResolution(
                status=ResolutionStatus.NO_ROLE,
                redirect_to=login_route(NO_ROLE_FOUND),
                synced=user is not None,
                user=user,
            )

        logger.info(
            "session_resolved",
            external_user_id=user_id,
            role=role.value,
            sync_status=sync_status.value,
        )
        return SessionResolution(
            status=ResolutionStatus.RESOLVED,
            redirect_to=landing_route_for(role),
            role=role,
            synced=user is not None,
            user=user,
        )

    def _stale_session(self, user_id: str) -> SessionResolution:
        """Signed in with a token whose identity no longer exists."""
        now = datetime.now(UTC)
        last_attempt = self.handoffs.get(user_id).last_session_clean_attempt
        recently_cleaned = last_attempt is not None and now - last_attempt < self.clean_cooldown

        if not recently_cleaned:
            self.handoffs.update(user_id, last_session_clean_attempt=now)
        logger.warning(
            "session_identity_missing",
            external_user_id=user_id,
            recently_cleaned=recently_cleaned,
        )

        return SessionResolution(
            status=ResolutionStatus.INVALID,
            redirect_to=login_route(SESSION_INVALID),
            sign_out_required=not recently_cleaned,
        )
