"""Ways of reaching the user-sync action: in-process or over HTTP."""

from typing import Any, Protocol

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.core.exceptions import (
    BadRequestException,
    IdentityUnavailableError,
    NotFoundException,
    SyncRejectedError,
    SyncUnavailableError,
)
from app.core.roles import ProviderSpecialty, Role
from app.services.user_sync_service import UserSyncService

logger = get_logger(__name__)


class SyncGateway(Protocol):
    """Runs one user-sync attempt and returns the application user."""

    async def sync(
        self,
        external_user_id: str,
        role: Role | None = None,
        specialty: ProviderSpecialty | None = None,
        *,
        id_token: str | None = None,
    ) -> dict[str, Any]:
        """
        Raises:
            SyncUnavailableError: On transient failures worth retrying
            SyncRejectedError: When the sync action refuses the request
        """
        ...


class LocalSyncGateway:
    """Calls ``UserSyncService`` directly on the request's database session."""

    def __init__(self, db: AsyncSession, sync_service: UserSyncService):
        """Initialize with database session and sync service."""
        self.db = db
        self.sync_service = sync_service

    async def sync(
        self,
        external_user_id: str,
        role: Role | None = None,
        specialty: ProviderSpecialty | None = None,
        *,
        id_token: str | None = None,
    ) -> dict[str, Any]:
        try:
            return await self.sync_service.sync_user(
                self.db, external_user_id, role=role, specialty=specialty
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise SyncUnavailableError(f"Database error during sync: {e!s}") from e
        except IdentityUnavailableError as e:
            raise SyncUnavailableError(e.message) from e
        except (NotFoundException, BadRequestException) as e:
            raise SyncRejectedError(e.message, status_code=e.status_code) from e


class HttpSyncGateway:
    """Calls ``POST /api/auth/sync/{externalUserId}`` on a remote backend."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize with backend base URL, request timeout and optional transport."""
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def sync(
        self,
        external_user_id: str,
        role: Role | None = None,
        specialty: ProviderSpecialty | None = None,
        *,
        id_token: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if role is not None:
            payload["role"] = role.value
        if specialty is not None:
            payload["specialty"] = specialty.value

        headers = {"Authorization": f"Bearer {id_token}"} if id_token else {}

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(
                    f"{self.base_url}/api/auth/sync/{external_user_id}",
                    json=payload,
                    headers=headers,
                )
        except httpx.HTTPError as e:
            raise SyncUnavailableError(f"Sync endpoint unreachable: {e!s}") from e

        if response.status_code >= 500:
            raise SyncUnavailableError(f"Sync endpoint error: HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise SyncUnavailableError("Sync endpoint returned invalid JSON") from e
        if not isinstance(data, dict):
            raise SyncUnavailableError("Sync endpoint returned a non-object body")

        if response.status_code >= 400 or not data.get("success") or not data.get("user"):
            message = data.get("error") or data.get("message") or "Sync rejected"
            logger.info(
                "user_sync_rejected",
                external_user_id=external_user_id,
                status_code=response.status_code,
            )
            raise SyncRejectedError(str(message), status_code=response.status_code)

        return data["user"]
