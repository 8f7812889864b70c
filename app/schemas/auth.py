"""Authentication schemas."""

from pydantic import BaseModel, EmailStr, Field

from app.core.identity import MfaStrategy
from app.core.roles import ProviderSpecialty, Role
from app.schemas.users import UserResponse


class Token(BaseModel):
    """JWT token response schema."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class TokenRefresh(BaseModel):
    """Token refresh request schema."""

    refresh_token: str


class SignInRequest(BaseModel):
    """Email/password sign-in request; emptiness is checked by the auth service."""

    email: str = ""
    password: str = ""


class MfaCodeRequest(BaseModel):
    """Second-factor code submission."""

    code: str = Field(default="", description="Six-digit verification code")


class RegisterRequest(BaseModel):
    """Registration request."""

    email: EmailStr
    password: str = Field(..., min_length=8)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    role: Role = Role.PATIENT
    specialty: ProviderSpecialty | None = None


class SignOutRequest(BaseModel):
    """Sign-out request; the refresh token is revoked when supplied."""

    refresh_token: str | None = None


class SignInResult(BaseModel):
    """
    Outcome of a sign-in step.

    Exactly one shape is populated: success with a redirect target, an MFA
    challenge, or a display-ready error. ``pending_token`` never leaves the
    server in the body; endpoints move it into the pendingAuth cookie.
    """

    success: bool
    redirect_to: str | None = None
    role: Role | None = None
    needs_mfa: bool = False
    mfa_strategy: MfaStrategy | None = None
    error: str | None = None
    error_code: str | None = None
    synced: bool = False
    access_token: str | None = None
    refresh_token: str | None = None
    token_type: str = "bearer"
    pending_token: str | None = Field(default=None, exclude=True)


class MfaStateResponse(BaseModel):
    """Whether an MFA challenge is in flight for the caller."""

    needs_mfa: bool
    mfa_strategy: MfaStrategy | None = None


class SignUpResult(BaseModel):
    """Outcome of registration."""

    success: bool
    user_id: str | None = None
    redirect_to: str | None = None
    error: str | None = None
    error_code: str | None = None


class SyncRequest(BaseModel):
    """Body of the user-sync endpoint."""

    role: Role | None = None
    specialty: ProviderSpecialty | None = None


class SyncResponse(BaseModel):
    """Result of syncing an identity into the users table."""

    success: bool
    message: str | None = None
    user: UserResponse | None = None
    error: str | None = None


class CheckSyncResponse(BaseModel):
    """Whether an identity already has an application user."""

    exists: bool
    user_id: str | None = None
