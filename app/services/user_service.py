"""User service for application user records."""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.redis_client import CacheManager
from app.core.roles import Role
from app.models.users import users


class UserService:
    """Service for user operations."""

    # Cache TTL in seconds (30 minutes for user profiles)
    USER_CACHE_TTL = 1800

    def __init__(self, cache_manager: CacheManager | None = None):
        """Initialize service with optional cache manager."""
        self.cache = cache_manager

    @staticmethod
    def _get_user_cache_key(user_id: UUID | str) -> str:
        """Generate cache key for user."""
        return f"user:{user_id}"

    def _invalidate(self, user_id: UUID | str) -> None:
        if self.cache:
            self.cache.delete(self._get_user_cache_key(user_id))

    async def get_user_by_id(self, db: AsyncSession, user_id: UUID) -> dict | None:
        """Get user by internal ID with caching."""
        if self.cache:
            cached_user = self.cache.get_json(self._get_user_cache_key(user_id))
            if cached_user:
                return cached_user

        result = await db.execute(select(users).where(users.c.id == user_id))
        user = result.mappings().first()

        if not user:
            return None

        user_dict = dict(user)

        if self.cache:
            self.cache.set_json(
                self._get_user_cache_key(user_id), user_dict, ttl=self.USER_CACHE_TTL
            )

        return user_dict

    async def get_user_by_external_id(self, db: AsyncSession, external_id: str) -> dict | None:
        """Get user by identity provider uid."""
        result = await db.execute(select(users).where(users.c.external_id == external_id))
        user = result.mappings().first()
        return dict(user) if user else None

    async def upsert_by_external_id(
        self, db: AsyncSession, external_id: str, values: dict[str, Any]
    ) -> tuple[dict, bool]:
        """
        Create or update the user mirroring ``external_id``.

        A unique-constraint violation on insert means a concurrent sync won
        the race; the row is then updated instead.

        Returns:
            Tuple of (user dict, created flag)
        """
        now = datetime.now(UTC)
        values = {**values, "updated_at": now, "last_sync_at": now, "last_login_at": now}

        existing = await self.get_user_by_external_id(db, external_id)
        if existing:
            return await self._update_by_external_id(db, external_id, values), False

        try:
            result = await db.execute(
                users.insert().values(external_id=external_id, **values).returning(users)
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            return await self._update_by_external_id(db, external_id, values), False

        user = result.mappings().first()
        if not user:
            raise ValueError("Failed to create user")
        return dict(user), True

    async def _update_by_external_id(
        self, db: AsyncSession, external_id: str, values: dict[str, Any]
    ) -> dict:
        result = await db.execute(
            update(users)
            .where(users.c.external_id == external_id)
            .values(**values)
            .returning(users)
        )
        await db.commit()
        user = result.mappings().first()
        if not user:
            raise ValueError("Failed to update user")

        user_dict = dict(user)
        self._invalidate(user_dict["id"])
        return user_dict

    async def list_users(
        self,
        db: AsyncSession,
        *,
        role: Role | None = None,
        is_active: bool | None = None,
        search: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[dict], int]:
        """List users with optional filters, newest first."""
        query = select(users)
        count_query = select(func.count()).select_from(users)

        if role is not None:
            query = query.where(users.c.role == role.value)
            count_query = count_query.where(users.c.role == role.value)
        if is_active is not None:
            query = query.where(users.c.is_active == is_active)
            count_query = count_query.where(users.c.is_active == is_active)
        if search:
            pattern = f"%{search.strip()}%"
            condition = or_(users.c.email.ilike(pattern), users.c.full_name.ilike(pattern))
            query = query.where(condition)
            count_query = count_query.where(condition)

        query = (
            query.order_by(users.c.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )

        rows = (await db.execute(query)).mappings().all()
        total = (await db.execute(count_query)).scalar_one()
        return [dict(row) for row in rows], total

    async def set_active(self, db: AsyncSession, user_id: UUID, is_active: bool) -> dict | None:
        """Activate or deactivate a user account."""
        result = await db.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(is_active=is_active, updated_at=datetime.now(UTC))
            .returning(users)
        )
        await db.commit()
        user = result.mappings().first()

        if not user:
            return None

        self._invalidate(user_id)
        return dict(user)
