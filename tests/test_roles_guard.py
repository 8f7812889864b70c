"""Tests for role routing and the protected-route guard."""

import pytest

from app.core.guard import GuardOutcome, evaluate_access
from app.core.roles import Role, landing_route_for, login_route, parse_role


@pytest.mark.parametrize(
    "value, expected",
    [
        ("PATIENT", Role.PATIENT),
        ("provider", Role.PROVIDER),
        (" Admin ", Role.ADMIN),
        (Role.ADMIN, Role.ADMIN),
        ("SUPERUSER", None),
        ("", None),
        (None, None),
        (42, None),
    ],
)
def test_parse_role(value, expected):
    assert parse_role(value) is expected


def test_landing_routes():
    assert landing_route_for(Role.PATIENT) == "/patient/dashboard"
    assert landing_route_for(Role.PROVIDER) == "/provider/dashboard"
    assert landing_route_for(Role.ADMIN) == "/admin/dashboard"


def test_login_route_with_error():
    assert login_route() == "/auth/login"
    assert login_route("no_role_found") == "/auth/login?error=no_role_found"


def test_guard_pending_until_resolved():
    decision = evaluate_access(resolved=False, signed_in=True, role="ADMIN")
    assert decision.outcome is GuardOutcome.PENDING
    assert decision.redirect_to is None
    assert not decision.allowed


def test_guard_sends_anonymous_to_login():
    decision = evaluate_access(resolved=True, signed_in=False, role=None)
    assert decision.outcome is GuardOutcome.REDIRECT
    assert decision.redirect_to == "/auth/login"


def test_guard_renders_public_page_for_anonymous():
    decision = evaluate_access(resolved=True, signed_in=False, role=None, require_auth=False)
    assert decision.allowed


@pytest.mark.parametrize("role", [None, ""])
def test_guard_without_role_redirects_with_error(role):
    decision = evaluate_access(resolved=True, signed_in=True, role=role)
    assert decision.redirect_to == "/auth/login?error=no_role_found"


def test_guard_unrecognised_role_goes_to_unauthorized():
    decision = evaluate_access(
        resolved=True, signed_in=True, role="SUPERUSER", allowed_roles=[Role.ADMIN]
    )
    assert decision.redirect_to == "/unauthorized"


def test_guard_other_role_redirects_to_own_dashboard():
    decision = evaluate_access(
        resolved=True, signed_in=True, role="PROVIDER", allowed_roles=[Role.ADMIN]
    )
    assert decision.outcome is GuardOutcome.REDIRECT
    assert decision.redirect_to == "/provider/dashboard"


def test_guard_renders_allowed_role():
    decision = evaluate_access(
        resolved=True, signed_in=True, role="patient", allowed_roles=[Role.PATIENT, Role.ADMIN]
    )
    assert decision.allowed


def test_guard_any_role_when_unrestricted():
    decision = evaluate_access(resolved=True, signed_in=True, role="ADMIN")
    assert decision.allowed
