"""Ephemeral session state kept in Redis between requests."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

from app.core.identity import MfaStrategy
from app.core.roles import ProviderSpecialty, Role


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PendingAuth(BaseModel):
    """An MFA challenge in flight, addressed by the pendingAuth cookie."""

    email: str
    attempt_id: str
    mfa_strategy: MfaStrategy
    factor_id: str | None = None
    verification_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class SyncStatus(str, Enum):
    """Outcome of the last user sync for an identity."""

    SYNCED = "synced"
    DEGRADED = "degraded"
    FAILED = "failed"


class SessionHandoff(BaseModel):
    """
    Cross-step hints for one identity.

    Written by registration and session resolution, read back when the
    session is resolved. Never authoritative: the identity provider decides
    whether a user is signed in and the database decides their role.
    """

    pending_role: Role | None = None
    pending_specialty: ProviderSpecialty | None = None
    email_verification_completed: bool = False
    verification_timestamp: datetime | None = None
    verification_status: str | None = None
    user_sync_status: SyncStatus | None = None
    last_session_clean_attempt: datetime | None = None
