"""Reconcile identity provider users with application users."""

from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.core.exceptions import (
    BadRequestException,
    IdentityProviderError,
    NotFoundException,
)
from app.core.identity import IdentityProvider, IdentityUser
from app.core.redis_client import CacheManager
from app.core.roles import SELF_ASSIGNABLE_ROLES, ProviderSpecialty, Role, parse_role
from app.services.user_service import UserService

logger = get_logger(__name__)


def resolve_sync_role(identity_user: IdentityUser, hint: Role | None) -> Role | None:
    """Pick the role to store for ``identity_user``; None when no usable role exists."""
    public_role = parse_role(identity_user.public_metadata.get("role"))
    if public_role is not None:
        return public_role

    for candidate in (hint, parse_role(identity_user.unsafe_metadata.get("role"))):
        if candidate in SELF_ASSIGNABLE_ROLES:
            return candidate
        if candidate is not None:
            logger.warning(
                "user_sync_role_hint_ignored",
                external_user_id=identity_user.user_id,
                role=candidate.value,
            )
    return None


class UserSyncService:
    """Upserts the application user for an external identity."""

    def __init__(self, identity: IdentityProvider, cache_manager: CacheManager | None = None):
        """Initialize with identity provider and optional cache."""
        self.identity = identity
        self.users = UserService(cache_manager)

    async def sync_user(
        self,
        db: AsyncSession,
        external_user_id: str,
        role: Role | None = None,
        specialty: ProviderSpecialty | None = None,
    ) -> dict:
        """
        Create or update the application user for ``external_user_id``.

        Role priority: public metadata (written only by the server), then the
        caller's hint, then unsafe metadata. Hints and unsafe metadata are
        client-controlled and can never grant ADMIN. There is no default role.

        Args:
            db: Database session
            external_user_id: Identity provider uid
            role: Role hint from the caller (e.g. pending registration role)
            specialty: Provider specialty hint

        Returns:
            The synced user

        Raises:
            NotFoundException: If the identity does not exist
            BadRequestException: If no role can be determined or email is missing
            IdentityUnavailableError: If the provider cannot be reached
            SQLAlchemyError: On database failure
        """
        identity_user = await self.identity.get_user(external_user_id)
        if identity_user is None:
            raise NotFoundException("User not found at identity provider")

        user_role = resolve_sync_role(identity_user, role)
        if user_role is None:
            logger.info("user_sync_no_role", external_user_id=external_user_id)
            raise BadRequestException("No role specified for user")

        if not identity_user.email:
            raise BadRequestException("Identity has no email address")

        values = {
            "email": identity_user.email,
            "email_verified": identity_user.email_verified,
            "full_name": identity_user.full_name,
            "given_name": identity_user.first_name,
            "family_name": identity_user.last_name,
            "photo_url": identity_user.image_url,
            "role": user_role.value,
        }
        if specialty is not None:
            values["specialty"] = specialty.value

        user, created = await self.users.upsert_by_external_id(db, external_user_id, values)
        logger.info(
            "user_synced",
            external_user_id=external_user_id,
            user_id=str(user["id"]),
            role=user_role.value,
            created=created,
        )

        await self._write_sync_markers(identity_user, user, role=user_role)
        return user

    async def check_sync(self, db: AsyncSession, external_user_id: str) -> dict | None:
        """Return the application user if it exists, refreshing the sync markers."""
        user = await self.users.get_user_by_external_id(db, external_user_id)
        if user is None:
            logger.info("user_sync_check_missing", external_user_id=external_user_id)
            return None

        try:
            await self.identity.update_metadata(
                external_user_id,
                public={
                    "dbSynced": True,
                    "dbUserId": str(user["id"]),
                    "lastSyncCheck": datetime.now(UTC).isoformat(),
                },
            )
        except IdentityProviderError as e:
            logger.warning(
                "identity_metadata_update_failed",
                external_user_id=external_user_id,
                error=str(e),
            )

        return user

    async def _write_sync_markers(self, identity_user: IdentityUser, user: dict, role: Role) -> None:
        """Record sync bookkeeping in identity metadata; failures only get logged."""
        try:
            await self.identity.update_metadata(
                identity_user.user_id,
                public={
                    "role": role.value,
                    "dbSynced": True,
                    "dbUserId": str(user["id"]),
                    "lastSyncCheck": datetime.now(UTC).isoformat(),
                },
            )
        except IdentityProviderError as e:
            logger.warning(
                "identity_metadata_update_failed",
                external_user_id=identity_user.user_id,
                error=str(e),
            )
