"""Protected-route access decisions."""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from app.core.roles import (
    NO_ROLE_FOUND,
    UNAUTHORIZED_ROUTE,
    Role,
    landing_route_for,
    login_route,
    parse_role,
)


class GuardOutcome(str, Enum):
    """What the guard does with a request."""

    PENDING = "pending"
    RENDER = "render"
    REDIRECT = "redirect"


@dataclass(frozen=True)
class GuardDecision:
    """Result of evaluating access to a role-restricted resource."""

    outcome: GuardOutcome
    redirect_to: str | None = None

    @property
    def allowed(self) -> bool:
        return self.outcome is GuardOutcome.RENDER


def evaluate_access(
    *,
    resolved: bool,
    signed_in: bool,
    role: object,
    allowed_roles: Iterable[Role] | None = None,
    require_auth: bool = True,
) -> GuardDecision:
    """
    Decide whether a caller may see a protected resource.

    Args:
        resolved: Whether identity and role resolution has finished
        signed_in: Whether the identity provider reports a session
        role: Raw role value from the session (may be missing or unrecognised)
        allowed_roles: Roles permitted on the resource; None permits any role
        require_auth: Whether anonymous callers are sent to the login page

    Returns:
        GuardDecision with the outcome and, for redirects, the target path
    """
    if not resolved:
        return GuardDecision(GuardOutcome.PENDING)

    if not signed_in:
        if require_auth:
            return GuardDecision(GuardOutcome.REDIRECT, login_route())
        return GuardDecision(GuardOutcome.RENDER)

    if role is None or role == "":
        return GuardDecision(GuardOutcome.REDIRECT, login_route(NO_ROLE_FOUND))

    parsed = parse_role(role)
    if parsed is None:
        return GuardDecision(GuardOutcome.REDIRECT, UNAUTHORIZED_ROUTE)

    if allowed_roles is not None and parsed not in set(allowed_roles):
        return GuardDecision(GuardOutcome.REDIRECT, landing_route_for(parsed))

    return GuardDecision(GuardOutcome.RENDER)
