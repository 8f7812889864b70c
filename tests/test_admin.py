"""Tests for admin endpoints."""

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.services.user_service import UserService


async def _synced_user(identity, sync_service, db_session, uid: str, email: str, role: str):
    identity.add_user(uid, email, public={"role": role})
    return await sync_service.sync_user(db_session, uid)


@pytest.mark.asyncio
class TestAdminUserEndpoints:
    """Tests for admin user management endpoints."""

    async def test_list_users_with_filters(
        self,
        client: AsyncClient,
        admin_headers: dict,
        identity,
        sync_service,
        db_session: AsyncSession,
    ):
        """Test listing users with role filter."""
        await _synced_user(identity, sync_service, db_session, "uid-1", "pat@example.com", "PATIENT")
        await _synced_user(identity, sync_service, db_session, "uid-2", "doc@example.com", "PROVIDER")

        response = await client.get(
            "/api/admin/users",
            params={"role": "PROVIDER", "page": 1, "page_size": 10},
            headers=admin_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["users"][0]["email"] == "doc@example.com"

    async def test_list_users_search(
        self,
        client: AsyncClient,
        admin_headers: dict,
        identity,
        sync_service,
        db_session: AsyncSession,
    ):
        await _synced_user(identity, sync_service, db_session, "uid-1", "pat@example.com", "PATIENT")
        await _synced_user(identity, sync_service, db_session, "uid-2", "doc@example.com", "PROVIDER")

        response = await client.get(
            "/api/admin/users", params={"search": "DOC@"}, headers=admin_headers
        )

        assert response.status_code == 200
        assert [user["email"] for user in response.json()["users"]] == ["doc@example.com"]

    async def test_list_users_pagination(
        self,
        client: AsyncClient,
        admin_headers: dict,
        identity,
        sync_service,
        db_session: AsyncSession,
    ):
        """Test user listing pagination."""
        for index in range(3):
            await _synced_user(
                identity, sync_service, db_session, f"uid-{index}", f"u{index}@example.com", "PATIENT"
            )

        response = await client.get(
            "/api/admin/users",
            params={"page": 2, "page_size": 2},
            headers=admin_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["page"] == 2
        assert data["page_size"] == 2
        assert data["total"] == 3
        assert len(data["users"]) == 1

    async def test_list_users_as_provider_redirects(
        self,
        client: AsyncClient,
        auth_headers,
    ):
        """Test listing users as non-admin is redirected to the caller's dashboard."""
        response = await client.get(
            "/api/admin/users", headers=auth_headers("uid-doc", "PROVIDER")
        )

        assert response.status_code == 307
        assert response.headers["location"] == "/provider/dashboard"

    async def test_admin_cannot_deactivate_self(
        self,
        client: AsyncClient,
        admin_headers: dict,
        identity,
        sync_service,
        db_session: AsyncSession,
    ):
        admin = await _synced_user(
            identity, sync_service, db_session, "uid-admin", "admin@example.com", "ADMIN"
        )

        response = await client.post(
            f"/api/admin/users/{admin['id']}/deactivate", headers=admin_headers
        )

        assert response.status_code == 400
        assert identity.sign_out_calls == []

    async def test_deactivate_unknown_user(self, client: AsyncClient, admin_headers: dict):
        response = await client.post(
            f"/api/admin/users/{uuid.uuid4()}/deactivate", headers=admin_headers
        )

        assert response.status_code == 404

    async def test_deactivate_survives_provider_failure(
        self,
        client: AsyncClient,
        admin_headers: dict,
        identity,
        sync_service,
        db_session: AsyncSession,
    ):
        user = await _synced_user(
            identity, sync_service, db_session, "uid-1", "pat@example.com", "PATIENT"
        )
        identity.fail_sign_out = True

        response = await client.post(
            f"/api/admin/users/{user['id']}/deactivate", headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json()["is_active"] is False

    async def test_deactivated_admin_loses_admin_access(
        self,
        client: AsyncClient,
        admin_headers: dict,
        identity,
        sync_service,
        cache_manager,
        db_session: AsyncSession,
    ):
        """A still-valid access token does not keep a deactivated admin in."""
        admin = await _synced_user(
            identity, sync_service, db_session, "uid-admin", "admin@example.com", "ADMIN"
        )
        assert (await client.get("/api/admin/users", headers=admin_headers)).status_code == 200

        await UserService(cache_manager).set_active(db_session, admin["id"], False)

        response = await client.get("/api/admin/users", headers=admin_headers)

        assert response.status_code == 307
        assert response.headers["location"] == "/auth/login?error=account_inactive"
