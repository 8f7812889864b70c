"""Tests for the HTTP surface of sign-in, sync and route guarding."""

import re

import pytest
from httpx import AsyncClient

from app.core.identity import MfaStrategy, SecondFactor
from app.middleware.logging import redact_secrets

PASSWORD = "correct-horse-battery"


def _pending_cookie(response) -> str:
    match = re.search(r"pendingAuth=([^;]+)", response.headers["set-cookie"])
    assert match is not None
    return match.group(1)


async def _sign_in(client: AsyncClient, email: str, password: str = PASSWORD):
    return await client.post("/api/auth/sign-in", json={"email": email, "password": password})


@pytest.mark.asyncio
async def test_mfa_sign_in_flow_sets_and_clears_cookie(client: AsyncClient, identity):
    identity.add_user(
        "uid-1",
        "doctor@example.com",
        public={"role": "PROVIDER"},
        factors=[SecondFactor(strategy=MfaStrategy.TOTP)],
    )

    status_before = await client.get("/api/auth/mfa/status")
    assert status_before.json() == {"needs_mfa": False}

    response = await _sign_in(client, "doctor@example.com")

    assert response.status_code == 200
    data = response.json()
    assert data["needs_mfa"] is True
    assert data["mfa_strategy"] == "totp"
    assert "redirect_to" not in data
    assert "pending_token" not in data

    set_cookie = response.headers["set-cookie"].lower()
    assert "httponly" in set_cookie
    assert "path=/" in set_cookie
    assert "samesite=strict" in set_cookie
    assert "max-age=900" in set_cookie

    cookie = {"Cookie": f"pendingAuth={_pending_cookie(response)}"}

    pending = await client.get("/api/auth/mfa/status", headers=cookie)
    assert pending.json() == {"needs_mfa": True, "mfa_strategy": "totp"}

    verified = await client.post("/api/auth/mfa/verify", json={"code": "123456"}, headers=cookie)

    assert verified.status_code == 200
    body = verified.json()
    assert body["success"] is True
    assert body["needs_mfa"] is False
    assert body["redirect_to"] == "/provider/dashboard"
    assert body["role"] == "PROVIDER"
    assert "max-age=0" in verified.headers["set-cookie"].lower()


@pytest.mark.asyncio
async def test_invalid_code_keeps_cookie(client: AsyncClient, identity):
    identity.add_user(
        "uid-1",
        "doctor@example.com",
        public={"role": "PROVIDER"},
        factors=[SecondFactor(strategy=MfaStrategy.TOTP)],
    )
    response = await _sign_in(client, "doctor@example.com")
    cookie = {"Cookie": f"pendingAuth={_pending_cookie(response)}"}

    failed = await client.post("/api/auth/mfa/verify", json={"code": "000000"}, headers=cookie)

    assert failed.status_code == 400
    assert failed.json()["error"] == "Invalid or expired verification code"
    assert "set-cookie" not in failed.headers


@pytest.mark.asyncio
async def test_empty_sign_in_is_rejected(client: AsyncClient, identity):
    response = await client.post("/api/auth/sign-in", json={"email": "", "password": ""})

    assert response.status_code == 400
    assert response.json()["error_code"] == "invalid_input"
    assert "set-cookie" not in response.headers
    assert identity.sign_in_calls == 0


@pytest.mark.asyncio
async def test_wrong_password_is_unauthorized(client: AsyncClient, identity):
    identity.add_user("uid-1", "user@example.com", public={"role": "PATIENT"})

    response = await _sign_in(client, "user@example.com", "nope")

    assert response.status_code == 401
    assert response.json()["error"] == "Invalid email or password"


@pytest.mark.asyncio
async def test_other_account_signs_in_over_abandoned_challenge(client: AsyncClient, identity):
    identity.add_user(
        "uid-a",
        "a@example.com",
        public={"role": "PATIENT"},
        factors=[SecondFactor(strategy=MfaStrategy.TOTP)],
    )
    identity.add_user("uid-b", "b@example.com", public={"role": "PROVIDER"})
    challenge = await _sign_in(client, "a@example.com")
    cookie = {"Cookie": f"pendingAuth={_pending_cookie(challenge)}"}

    response = await client.post(
        "/api/auth/sign-in",
        json={"email": "b@example.com", "password": PASSWORD},
        headers=cookie,
    )

    assert response.status_code == 200
    assert response.json()["redirect_to"] == "/provider/dashboard"
    assert "max-age=0" in response.headers["set-cookie"].lower()
    assert (await client.get("/api/auth/mfa/status", headers=cookie)).json()["needs_mfa"] is False


@pytest.mark.asyncio
async def test_no_role_signs_out_and_redirects(client: AsyncClient, identity):
    identity.add_user("uid-1", "user@example.com")

    response = await _sign_in(client, "user@example.com")

    assert response.status_code == 403
    assert response.json()["redirect_to"] == "/auth/login?error=no_role_found"
    assert identity.sign_out_calls == ["uid-1"]


@pytest.mark.asyncio
async def test_sign_in_then_profile(client: AsyncClient, identity):
    identity.add_user("uid-1", "user@example.com", public={"role": "PATIENT"})

    signed_in = await _sign_in(client, "user@example.com")
    token = signed_in.json()["access_token"]

    response = await client.get("/api/users/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json()["external_id"] == "uid-1"
    assert response.json()["role"] == "PATIENT"


@pytest.mark.asyncio
async def test_guard_redirects_anonymous_to_login(client: AsyncClient):
    response = await client.get("/api/users/me")

    assert response.status_code == 307
    assert response.headers["location"] == "/auth/login"


@pytest.mark.asyncio
async def test_guard_redirects_other_role_to_own_dashboard(client: AsyncClient, patient_headers):
    response = await client.get("/api/admin/users", headers=patient_headers)

    assert response.status_code == 307
    assert response.headers["location"] == "/patient/dashboard"
    assert response.json()["redirect_to"] == "/patient/dashboard"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "role, location",
    [("SUPERUSER", "/unauthorized"), (None, "/auth/login?error=no_role_found")],
)
async def test_guard_unusable_roles(client: AsyncClient, auth_headers, role, location):
    response = await client.get("/api/admin/users", headers=auth_headers("uid-x", role))

    assert response.status_code == 307
    assert response.headers["location"] == location


@pytest.mark.asyncio
async def test_admin_lists_users(client: AsyncClient, identity, admin_headers):
    identity.add_user("uid-1", "user@example.com", public={"role": "PATIENT"})
    await _sign_in(client, "user@example.com")

    response = await client.get("/api/admin/users", headers=admin_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    assert data["users"][0]["email"] == "user@example.com"


@pytest.mark.asyncio
async def test_deactivated_user_cannot_sign_in(client: AsyncClient, identity, admin_headers):
    identity.add_user("uid-1", "user@example.com", public={"role": "PATIENT"})
    await _sign_in(client, "user@example.com")
    listing = await client.get("/api/admin/users", headers=admin_headers)
    user_id = listing.json()["users"][0]["id"]

    deactivated = await client.post(
        f"/api/admin/users/{user_id}/deactivate", headers=admin_headers
    )

    assert deactivated.status_code == 200
    assert deactivated.json()["is_active"] is False
    assert "uid-1" in identity.sign_out_calls

    response = await _sign_in(client, "user@example.com")

    assert response.status_code == 403
    assert response.json()["error_code"] == "account_inactive"

    reactivated = await client.post(f"/api/admin/users/{user_id}/activate", headers=admin_headers)
    assert reactivated.json()["is_active"] is True


@pytest.mark.asyncio
async def test_sync_endpoint(client: AsyncClient, identity):
    identity.add_user("uid-1", "user@example.com", public={"role": "PATIENT"})
    headers = {"Authorization": "Bearer token-uid-1"}

    missing = await client.get("/api/auth/check-sync/uid-1", headers=headers)
    assert missing.json() == {"exists": False}

    response = await client.post("/api/auth/sync/uid-1", json={}, headers=headers)

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["user"]["role"] == "PATIENT"

    found = await client.get("/api/auth/check-sync/uid-1", headers=headers)
    assert found.json()["exists"] is True
    assert found.json()["user_id"] == response.json()["user"]["id"]


@pytest.mark.asyncio
async def test_sync_endpoint_rejects_other_user(client: AsyncClient, identity):
    identity.add_user("uid-1", "user@example.com", public={"role": "PATIENT"})

    response = await client.post(
        "/api/auth/sync/uid-1", json={}, headers={"Authorization": "Bearer token-uid-2"}
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_sync_endpoint_without_role(client: AsyncClient, identity):
    identity.add_user("uid-1", "user@example.com")

    response = await client.post(
        "/api/auth/sync/uid-1", json={}, headers={"Authorization": "Bearer token-uid-1"}
    )

    assert response.status_code == 400
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_resolve_session_with_provider_token(client: AsyncClient, identity):
    identity.add_user("uid-1", "user@example.com", public={"role": "ADMIN"})

    response = await client.post(
        "/api/auth/session/resolve", headers={"Authorization": "Bearer token-uid-1"}
    )

    assert response.status_code == 200
    assert response.json()["redirect_to"] == "/admin/dashboard"


@pytest.mark.asyncio
async def test_forced_sign_out_revokes_provider_token(client: AsyncClient, identity):
    identity.add_user("uid-1", "user@example.com")
    headers = {"Authorization": "Bearer token-uid-1"}

    first = await client.post("/api/auth/session/resolve", headers=headers)

    assert first.status_code == 403
    assert first.json()["redirect_to"] == "/auth/login?error=no_role_found"
    assert identity.sign_out_calls == ["uid-1"]

    again = await client.post("/api/auth/session/resolve", headers=headers)
    handoff = await client.get("/api/auth/handoff", headers=headers)

    assert again.status_code == 401
    assert handoff.status_code == 401
    assert identity.sign_out_calls == ["uid-1"]


@pytest.mark.asyncio
async def test_register_then_handoff(client: AsyncClient, identity):
    response = await client.post(
        "/api/auth/register",
        json={
            "email": "new@example.com",
            "password": PASSWORD,
            "first_name": "New",
            "last_name": "Doctor",
            "role": "PROVIDER",
            "specialty": "CARDIOLOGY",
        },
    )

    assert response.status_code == 201
    user_id = response.json()["user_id"]

    handoff = await client.get(
        "/api/auth/handoff", headers={"Authorization": f"Bearer token-{user_id}"}
    )

    assert handoff.json()["pending_role"] == "PROVIDER"
    assert handoff.json()["pending_specialty"] == "CARDIOLOGY"


@pytest.mark.asyncio
async def test_register_admin_is_rejected(client: AsyncClient):
    response = await client.post(
        "/api/auth/register",
        json={
            "email": "boss@example.com",
            "password": PASSWORD,
            "first_name": "Big",
            "last_name": "Boss",
            "role": "ADMIN",
        },
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_refresh_and_sign_out(client: AsyncClient, identity):
    identity.add_user("uid-1", "user@example.com", public={"role": "PATIENT"})
    tokens = (await _sign_in(client, "user@example.com")).json()

    refreshed = await client.post(
        "/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
    )
    assert refreshed.status_code == 200
    new_tokens = refreshed.json()

    reused = await client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert reused.status_code == 401

    signed_out = await client.post(
        "/api/auth/sign-out",
        json={"refresh_token": new_tokens["refresh_token"]},
        headers={"Authorization": f"Bearer {new_tokens['access_token']}"},
    )

    assert signed_out.status_code == 200
    assert signed_out.json() == {"success": True, "redirect_to": "/auth/login"}
    assert identity.sign_out_calls == ["uid-1"]

    after = await client.post(
        "/api/auth/refresh", json={"refresh_token": new_tokens["refresh_token"]}
    )
    assert after.status_code == 401


@pytest.mark.asyncio
async def test_health_endpoints(client: AsyncClient):
    assert (await client.get("/api/ping")).json() == {"message": "pong"}
    assert (await client.get("/api/health")).json()["status"] == "healthy"

    detailed = await client.get("/api/health/detailed")
    assert detailed.status_code == 200
    data = detailed.json()
    assert data["database"] == "healthy"
    assert data["redis"] == "healthy"
    assert data["sync_mode"] == "local"


@pytest.mark.asyncio
async def test_request_id_is_echoed(client: AsyncClient):
    response = await client.get("/api/ping", headers={"X-Request-ID": "req-123"})

    assert response.headers["x-request-id"] == "req-123"


def test_secrets_are_redacted_from_log_events():
    event = redact_secrets(None, "info", {"event": "sign_in", "password": "hunter2", "email": "a@b.c"})

    assert event["password"] == "[redacted]"
    assert event["email"] == "a@b.c"
