"""Roles, provider specialties and the role-to-landing-route table."""

from enum import Enum
from urllib.parse import urlencode


class Role(str, Enum):
    """Application role."""

    PATIENT = "PATIENT"
    PROVIDER = "PROVIDER"
    ADMIN = "ADMIN"


class ProviderSpecialty(str, Enum):
    """Provider specialty recorded at registration."""

    RADIOLOGY = "RADIOLOGY"
    NEUROLOGY = "NEUROLOGY"
    CARDIOLOGY = "CARDIOLOGY"
    ORTHOPEDICS = "ORTHOPEDICS"
    ONCOLOGY = "ONCOLOGY"
    GASTROENTEROLOGY = "GASTROENTEROLOGY"
    PEDIATRICS = "PEDIATRICS"
    INTERNAL_MEDICINE = "INTERNAL_MEDICINE"
    FAMILY_MEDICINE = "FAMILY_MEDICINE"
    EMERGENCY_MEDICINE = "EMERGENCY_MEDICINE"
    OBSTETRICS_GYNECOLOGY = "OBSTETRICS_GYNECOLOGY"
    DERMATOLOGY = "DERMATOLOGY"
    OPHTHALMOLOGY = "OPHTHALMOLOGY"
    PSYCHIATRY = "PSYCHIATRY"
    UROLOGY = "UROLOGY"
    OTOLARYNGOLOGY = "OTOLARYNGOLOGY"
    ANESTHESIOLOGY = "ANESTHESIOLOGY"
    PATHOLOGY = "PATHOLOGY"
    NUCLEAR_MEDICINE = "NUCLEAR_MEDICINE"
    INTERVENTIONAL_RADIOLOGY = "INTERVENTIONAL_RADIOLOGY"
    GENERAL_SURGERY = "GENERAL_SURGERY"


LOGIN_ROUTE = "/auth/login"
UNAUTHORIZED_ROUTE = "/unauthorized"
GENERIC_DASHBOARD_ROUTE = "/dashboard"

# Roles a client may claim for itself through hints or unsafe metadata
SELF_ASSIGNABLE_ROLES = frozenset({Role.PATIENT, Role.PROVIDER})

DEFAULT_ROUTES: dict[Role, str] = {
    Role.PATIENT: "/patient/dashboard",
    Role.PROVIDER: "/provider/dashboard",
    Role.ADMIN: "/admin/dashboard",
}

# Error values understood by the login page
NO_ROLE_FOUND = "no_role_found"
SESSION_INVALID = "session_invalid"
ACCOUNT_INACTIVE = "account_inactive"


def parse_role(value: object) -> Role | None:
    """Parse a role from metadata or user input; returns None when unrecognised."""
    if isinstance(value, Role):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return Role(value.strip().upper())
    except ValueError:
        return None


def landing_route_for(role: Role) -> str:
    """Dashboard a user with ``role`` lands on after sign-in."""
    return DEFAULT_ROUTES.get(role, GENERIC_DASHBOARD_ROUTE)


def login_route(error: str | None = None) -> str:
    """Login page path, optionally carrying an error query parameter."""
    if not error:
        return LOGIN_ROUTE
    return f"{LOGIN_ROUTE}?{urlencode({'error': error})}"
