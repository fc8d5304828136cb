import logging
from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..core.errors import AuthenticationError, MalformedToken
from ..core.settings import Settings
from ..models.Principal import Principal
from .mfa import SecretCipher

logger = logging.getLogger(__name__)

# auto_error=False so a missing header goes through our own 401 rendering
bearer_scheme = HTTPBearer(auto_error=False)


# Services are built once in create_app and kept on app.state
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_token_validator(request: Request):
    return request.app.state.token_validator


def get_auth_flow(request: Request):
    return request.app.state.auth_flow


def get_idp_admin(request: Request):
    return request.app.state.idp_admin


def get_audit_recorder(request: Request):
    return request.app.state.audit_recorder


def get_document_storage(request: Request):
    return request.app.state.document_storage


def get_secret_cipher(request: Request):
    # Built per request so a missing key only breaks the MFA enrollment routes
    return SecretCipher(get_settings(request).MFA_ENCRYPTION_KEY)


async def get_current_principal(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> Principal:
    if credentials is None or not credentials.credentials:
        raise MalformedToken("Missing bearer token")

    validator = get_token_validator(request)
    try:
        principal = await validator.validate(credentials.credentials)
    except AuthenticationError as exc:
        logger.info(
            "Bearer token rejected",
            extra={"reason": exc.message, "error_type": type(exc).__name__, "path": request.url.path},
        )
        raise

    # Read by the audit middleware after the response is produced
    request.state.principal = principal
    return principal


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
