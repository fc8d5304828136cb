"""
Gateway error taxonomy.

Every failure raised by the authentication and authorization pipeline derives
from GatewayError. The exception handler registered in main.py renders them
with the same ``{"detail": ...}`` body FastAPI uses for HTTPException.
"""
from typing import Any, Iterable

from fastapi import Request, status
from fastapi.responses import JSONResponse

GENERIC_AUTH_DETAIL = "Could not validate credentials"


class GatewayError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    public_detail: Any = "Internal server error"

    def __init__(self, message: str | None = None):
        # message is for logs; public_detail is what the caller sees
        self.message = message or self.__class__.__name__
        super().__init__(self.message)

    @property
    def detail(self) -> Any:
        return self.public_detail

    @property
    def headers(self) -> dict[str, str] | None:
        return None


# Configuration

class ConfigurationError(GatewayError):
    public_detail = "Authentication is not configured"

    @property
    def detail(self) -> Any:
        return self.message


# Authentication (401)

class AuthenticationError(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    public_detail = GENERIC_AUTH_DETAIL

    @property
    def headers(self) -> dict[str, str] | None:
        return {"WWW-Authenticate": "Bearer"}


class MalformedToken(AuthenticationError):
    pass


class KeyResolutionError(AuthenticationError):
    pass


class SignatureInvalid(AuthenticationError):
    pass


class TokenExpired(AuthenticationError):
    pass


class IssuerMismatch(AuthenticationError):
    pass


class MissingRequiredClaims(AuthenticationError):
    pass


class StateMismatch(AuthenticationError):
    public_detail = "Invalid state token"


class TokenExchangeFailed(AuthenticationError):
    public_detail = "Failed to exchange authorization code for tokens"


class RefreshFailed(AuthenticationError):
    public_detail = "Refresh token is invalid or expired"


# Authorization (403)

class AuthorizationError(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    public_detail = "Forbidden"


class Forbidden(AuthorizationError):
    def __init__(
        self,
        required_roles: Iterable[str] = (),
        user_roles: Iterable[str] = (),
        reason: str | None = None,
    ):
        self.required_roles = sorted(required_roles)
        self.user_roles = sorted(user_roles)
        self.reason = reason
        if reason:
            message = reason
        else:
            message = (
                f"Insufficient permissions. Required roles: {', '.join(self.required_roles)}. "
                f"User roles: {', '.join(self.user_roles) or 'none'}."
            )
        super().__init__(message)

    @property
    def detail(self) -> Any:
        if self.reason:
            return {"message": "Forbidden", "reason": self.reason}
        return {
            "message": self.message,
            "required_roles": self.required_roles,
            "user_roles": self.user_roles,
        }


class InsufficientScopes(AuthorizationError):
    def __init__(self, required: Iterable[str], held: Iterable[str]):
        self.required = sorted(required)
        self.held = sorted(held)
        held_set = set(self.held)
        self.missing = [scope for scope in self.required if scope not in held_set]
        super().__init__(
            f"Insufficient scopes. Required: {', '.join(self.required)}. "
            f"User has: {', '.join(self.held) or 'none'}."
        )

    @property
    def detail(self) -> Any:
        return {
            "message": self.message,
            "required_scopes": self.required,
            "user_scopes": self.held,
            "missing_scopes": self.missing,
        }


class MfaRequired(AuthorizationError):
    def __init__(self, setup_url: str = "/api/auth/mfa/setup"):
        self.setup_url = setup_url
        super().__init__("MFA is required for this action. Please configure MFA first.")

    @property
    def detail(self) -> Any:
        return {"message": self.message, "mfa_setup_url": self.setup_url}


# Upstream (identity provider)

class UpstreamError(GatewayError):
    public_detail = "Identity provider request failed"


class IdentityProviderError(UpstreamError):
    pass


class MfaVerificationUnavailable(UpstreamError):
    public_detail = "Unable to verify MFA status"


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=exc.headers,
    )
