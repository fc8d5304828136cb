"""
Per-route access control.

Each protected route declares an AccessPolicy when it is registered; one
pipeline function evaluates it in a fixed order, Role -> Scope -> MFA, and
stops at the first failing stage. MFA is last because it is the only stage
that calls the identity provider.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

from fastapi import Depends, Request

from ..core.errors import (
    Forbidden,
    IdentityProviderError,
    InsufficientScopes,
    MfaRequired,
    MfaVerificationUnavailable,
)
from ..models.Principal import Principal
from .dependencies import get_current_principal, get_idp_admin, get_settings

logger = logging.getLogger(__name__)

MfaChecker = Callable[[str], Awaitable[bool]]


def _names(values: Iterable) -> tuple[str, ...]:
    # Accept Role/Scope enum members as well as plain strings
    return tuple(str(getattr(value, "value", value)) for value in values)


@dataclass(frozen=True)
class AccessPolicy:
    roles: tuple[str, ...] = ()
    scopes: tuple[str, ...] = ()
    mfa_required: bool = False

    def __post_init__(self):
        object.__setattr__(self, "roles", _names(self.roles))
        object.__setattr__(self, "scopes", _names(self.scopes))


def check_roles(principal: Principal | None, required: Iterable[str]) -> None:
    """Any one of the required roles is enough. No required roles means unrestricted."""
    if principal is None:
        raise Forbidden(reason="no principal")

    required = _names(required)
    if not required:
        return
    if not principal.has_any_role(required):
        logger.warning(
            "Role check failed",
            extra={"user_id": principal.id, "required_roles": required, "user_roles": principal.roles},
        )
        raise Forbidden(required_roles=required, user_roles=principal.roles)


def check_scopes(principal: Principal, required: Iterable[str]) -> None:
    """Every required scope must be held."""
    required = _names(required)
    if not required:
        return
    if not principal.has_all_scopes(required):
        error = InsufficientScopes(required=required, held=principal.scopes)
        logger.warning(
            "Scope check failed",
            extra={"user_id": principal.id, "missing_scopes": error.missing},
        )
        raise error


async def check_mfa(principal: Principal, has_mfa: MfaChecker, timeout: float) -> None:
    """
    Denies unless the identity provider confirms an OTP credential within
    ``timeout`` seconds. Provider failures deny as well.
    """
    try:
        enabled = await asyncio.wait_for(has_mfa(principal.id), timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.error("MFA status check timed out", extra={"user_id": principal.id, "timeout": timeout})
        raise MfaVerificationUnavailable("MFA status check timed out") from exc
    except IdentityProviderError as exc:
        logger.error("MFA status check failed", extra={"user_id": principal.id, "error": exc.message})
        raise MfaVerificationUnavailable("MFA status check failed") from exc

    if not enabled:
        logger.warning("MFA required but not configured", extra={"user_id": principal.id})
        raise MfaRequired()


async def evaluate_policy(
    principal: Principal | None,
    policy: AccessPolicy,
    has_mfa: MfaChecker | None = None,
    mfa_timeout: float = 3.0,
) -> Principal:
    check_roles(principal, policy.roles)
    check_scopes(principal, policy.scopes)
    if policy.mfa_required:
        if has_mfa is None:
            raise MfaVerificationUnavailable("No MFA checker available")
        await check_mfa(principal, has_mfa, mfa_timeout)
    return principal


def enforce(policy: AccessPolicy):
    """
    Builds a FastAPI dependency that authenticates the request and then
    applies ``policy``. Returns the Principal so handlers can use it directly.

        @router.get("/", dependencies=[Depends(enforce(AccessPolicy(roles=("admin",))))])
    """

    async def dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        has_mfa = None
        if policy.mfa_required:
            has_mfa = get_idp_admin(request).user_has_mfa
        timeout = get_settings(request).MFA_CHECK_TIMEOUT_SECONDS
        return await evaluate_policy(principal, policy, has_mfa, timeout)

    return dependency
