"""Identity provider interface.

The portal never owns credentials, sessions or second-factor challenges. All
of that is delegated to a hosted identity provider, reached only through the
``IdentityProvider`` protocol below so the auth flow can run against any
implementation (Firebase in production, an in-memory fake in tests).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from app.core.roles import SELF_ASSIGNABLE_ROLES, Role, parse_role


class SignInStatus(str, Enum):
    """Provider-side state of a password sign-in attempt."""

    COMPLETE = "complete"
    NEEDS_SECOND_FACTOR = "needs_second_factor"


class MfaStrategy(str, Enum):
    """Second-factor strategies a provider may offer."""

    EMAIL_CODE = "email_code"
    TOTP = "totp"
    PHONE_CODE = "phone_code"
    BACKUP_CODE = "backup_code"


@dataclass
class IdentitySession:
    """A signed-in provider session."""

    user_id: str
    id_token: str
    refresh_token: str | None = None


@dataclass
class SecondFactor:
    """A second factor enrolled for the user signing in."""

    strategy: MfaStrategy
    factor_id: str | None = None
    hint: str | None = None


@dataclass
class SignInAttempt:
    """Outcome of submitting email and password to the provider."""

    status: SignInStatus
    attempt_id: str | None = None
    session: IdentitySession | None = None
    second_factors: list[SecondFactor] = field(default_factory=list)


@dataclass
class IdentityUser:
    """User record as held by the identity provider."""

    user_id: str
    email: str | None
    email_verified: bool = False
    first_name: str | None = None
    last_name: str | None = None
    image_url: str | None = None
    public_metadata: dict[str, Any] = field(default_factory=dict)
    unsafe_metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def full_name(self) -> str | None:
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or None

    @property
    def metadata_role(self) -> Role | None:
        """Role from public metadata, else a self-assignable role from unsafe metadata."""
        public_role = parse_role(self.public_metadata.get("role"))
        if public_role is not None:
            return public_role
        unsafe_role = parse_role(self.unsafe_metadata.get("role"))
        return unsafe_role if unsafe_role in SELF_ASSIGNABLE_ROLES else None


class IdentityProvider(Protocol):
    """Capabilities the portal consumes from its hosted identity provider."""

    async def sign_in(self, email: str, password: str) -> SignInAttempt:
        """Submit email and password; raises InvalidCredentialsError on rejection."""
        ...

    async def prepare_second_factor(self, attempt_id: str, factor: SecondFactor) -> str | None:
        """Issue the challenge for ``factor``; returns a verification id if the provider uses one."""
        ...

    async def attempt_second_factor(
        self,
        attempt_id: str,
        strategy: MfaStrategy,
        code: str,
        *,
        factor_id: str | None = None,
        verification_id: str | None = None,
    ) -> IdentitySession:
        """Complete sign-in with a second-factor code; raises InvalidCodeError on rejection."""
        ...

    async def sign_up(
        self,
        email: str,
        password: str,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        unsafe_metadata: dict[str, Any] | None = None,
    ) -> IdentitySession:
        """Create a new identity and sign it in."""
        ...

    async def get_user(self, user_id: str) -> IdentityUser | None:
        """Fetch an identity, or None when it does not exist."""
        ...

    async def update_metadata(
        self,
        user_id: str,
        *,
        public: dict[str, Any] | None = None,
        unsafe: dict[str, Any] | None = None,
    ) -> None:
        """Merge keys into the identity's public and/or unsafe metadata."""
        ...

    async def verify_token(self, id_token: str) -> str:
        """Validate a provider ID token and return its user id."""
        ...

    async def sign_out(self, user_id: str) -> None:
        """End all provider sessions for ``user_id``."""
        ...
