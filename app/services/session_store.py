"""Redis-backed stores for pending MFA challenges and session handoff hints."""

import secrets
from typing import Any

from pydantic import ValidationError
from structlog import get_logger

from app.config import settings
from app.core.redis_client import CacheManager
from app.schemas.session import PendingAuth, SessionHandoff

logger = get_logger(__name__)


class PendingAuthStore:
    """
    Server-side state of MFA challenges in flight.

    Records are addressed by an opaque random token; only that token travels
    to the browser, in the pendingAuth cookie.
    """

    def __init__(self, cache_manager: CacheManager, ttl: int | None = None):
        """Initialize with cache manager and record lifetime in seconds."""
        self.cache = cache_manager
        self.ttl = ttl or settings.pending_auth_ttl_seconds

    @staticmethod
    def _key(token: str) -> str:
        return f"pending_auth:{token}"

    def create(self, record: PendingAuth) -> str:
        """Store ``record`` under a fresh token and return the token."""
        token = secrets.token_urlsafe(32)
        self.cache.set(self._key(token), record.model_dump_json(), ttl=self.ttl)
        return token

    def get(self, token: str | None) -> PendingAuth | None:
        """Load the record for ``token``; None when missing, expired or corrupt."""
        if not token:
            return None

        raw = self.cache.get(self._key(token))
        if not raw:
            return None

        try:
            return PendingAuth.model_validate_json(raw)
        except ValidationError:
            logger.warning("pending_auth_record_invalid")
            self.cache.delete(self._key(token))
            return None

    def refresh(self, token: str, record: PendingAuth) -> None:
        """Overwrite the record and restart its lifetime."""
        self.cache.set(self._key(token), record.model_dump_json(), ttl=self.ttl)

    def delete(self, token: str | None) -> None:
        if token:
            self.cache.delete(self._key(token))


class HandoffStore:
    """Typed per-identity hints shared between registration and session resolution."""

    def __init__(self, cache_manager: CacheManager, ttl: int | None = None):
        """Initialize with cache manager and record lifetime in seconds."""
        self.cache = cache_manager
        self.ttl = ttl or settings.handoff_ttl_seconds

    @staticmethod
    def _key(external_user_id: str) -> str:
        return f"handoff:{external_user_id}"

    def get(self, external_user_id: str) -> SessionHandoff:
        """Return the handoff for ``external_user_id``, empty when none is stored."""
        data = self.cache.get_json(self._key(external_user_id))
        if not data:
            return SessionHandoff()

        try:
            return SessionHandoff.model_validate(data)
        except ValidationError:
            logger.warning("session_handoff_invalid", external_user_id=external_user_id)
            return SessionHandoff()

    def update(self, external_user_id: str, **changes: Any) -> SessionHandoff:
        """Merge ``changes`` into the stored handoff (last write wins)."""
        handoff = self.get(external_user_id).model_copy(update=changes)
        self.cache.set_json(
            self._key(external_user_id), handoff.model_dump(mode="json"), ttl=self.ttl
        )
        return handoff

    def clear(self, external_user_id: str) -> None:
        self.cache.delete(self._key(external_user_id))
