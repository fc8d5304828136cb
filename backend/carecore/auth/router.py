import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response
from sqlmodel import Session

from ..core.database import get_session
from ..core.errors import ConfigurationError, GatewayError, RefreshFailed
from ..core.settings import Settings
from ..models.Principal import Principal
from ..models.Role import CRITICAL_ROLES
from ..models.MfaEnrollment import MfaChangeResponse, MfaCodeRequest
from ..models.Token import AuthorizationRequest, MfaStatus, RefreshTokenRequest, TokenSet
from . import mfa
from .dependencies import (
    CurrentPrincipal,
    get_audit_recorder,
    get_auth_flow,
    get_idp_admin,
    get_secret_cipher,
    get_settings,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

STATE_COOKIE = "oauth_state"
STATE_COOKIE_MAX_AGE = 10 * 60
ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_MAX_AGE = 30 * 24 * 60 * 60


def _state_cookie_path(settings: Settings) -> str:
    return f"{settings.API_PREFIX.rstrip('/')}/auth"


def _callback_uri(request: Request, settings: Settings) -> str:
    if settings.OAUTH_REDIRECT_URI:
        return settings.OAUTH_REDIRECT_URI
    return str(request.url_for("auth_callback"))


def _set_token_cookies(response: Response, tokens: TokenSet, settings: Settings, previous_refresh: Optional[str] = None):
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        max_age=tokens.expires_in,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path="/",
    )
    # Only rewrite the refresh cookie when the provider rotated the token
    if tokens.refresh_token and tokens.refresh_token != previous_refresh:
        response.set_cookie(
            REFRESH_COOKIE,
            tokens.refresh_token,
            max_age=REFRESH_COOKIE_MAX_AGE,
            httponly=True,
            secure=settings.is_production,
            samesite="lax",
            path="/",
        )


def _clear_token_cookies(response: Response) -> None:
    response.delete_cookie(ACCESS_COOKIE, path="/")
    response.delete_cookie(REFRESH_COOKIE, path="/")


def _refresh_token_from(request: Request, body: Optional[RefreshTokenRequest]) -> str:
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Refresh token is required. Provide it in the request body or as a cookie.",
        )
    return token


@router.post("/login", response_model=AuthorizationRequest)
async def login(
    request: Request,
    return_url: bool = Query(default=False, alias="returnUrl"),
    settings: Settings = Depends(get_settings),
):
    """
    Start the OAuth2 Authorization Code flow.
    Redirects to the identity provider, or returns the URL as JSON with ?returnUrl=true.
    """
    flow = get_auth_flow(request)
    try:
        authorization = flow.issue(_callback_uri(request, settings))
    except ConfigurationError as exc:
        logger.error("Login attempted without identity provider configuration", extra={"error": exc.message})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)

    if return_url:
        response = JSONResponse(authorization.model_dump(by_alias=True))
    else:
        response = RedirectResponse(authorization.authorization_url, status_code=status.HTTP_302_FOUND)

    response.set_cookie(
        STATE_COOKIE,
        authorization.state,
        max_age=STATE_COOKIE_MAX_AGE,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path=_state_cookie_path(settings),
    )
    return response


@router.get("/callback", name="auth_callback")
async def callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    settings: Settings = Depends(get_settings),
):
    """
    Redirect target of the identity provider. Sets the session cookies and
    sends the browser back to the frontend.
    """
    if not code or not state:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Authorization code and state are required",
        )

    flow = get_auth_flow(request)
    frontend = settings.FRONTEND_URL.rstrip("/")
    try:
        tokens, _ = await flow.handle_callback(
            code, state, request.cookies.get(STATE_COOKIE), _callback_uri(request, settings)
        )
    except GatewayError as exc:
        logger.warning("Login callback failed", extra={"error_type": type(exc).__name__, "reason": exc.message})
        message = exc.detail if isinstance(exc.detail, str) else "Authentication failed"
        response = RedirectResponse(
            f"{frontend}?auth=error&message={quote(message)}", status_code=status.HTTP_302_FOUND
        )
    else:
        response = RedirectResponse(f"{frontend}?auth=success", status_code=status.HTTP_302_FOUND)
        _set_token_cookies(response, tokens, settings)

    # The state is single use whatever the outcome
    response.delete_cookie(STATE_COOKIE, path=_state_cookie_path(settings))
    return response


@router.post("/refresh")
async def refresh(
    request: Request,
    body: Optional[RefreshTokenRequest] = None,
    settings: Settings = Depends(get_settings),
):
    refresh_token = _refresh_token_from(request, body)
    flow = get_auth_flow(request)
    try:
        tokens = await flow.refresh(refresh_token)
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    except RefreshFailed as exc:
        response = JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=exc.headers,
        )
        _clear_token_cookies(response)
        return response

    response = JSONResponse(tokens.model_dump(by_alias=True))
    _set_token_cookies(response, tokens, settings, previous_refresh=refresh_token)
    return response


@router.post("/logout")
async def logout(request: Request, body: Optional[RefreshTokenRequest] = None):
    refresh_token = _refresh_token_from(request, body)
    flow = get_auth_flow(request)
    try:
        await flow.logout(refresh_token)
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)

    response = JSONResponse({"message": "Logged out successfully"})
    _clear_token_cookies(response)
    return response


@router.get("/user", response_model=Principal)
async def get_user(principal: CurrentPrincipal):
    return principal


@router.get("/mfa/status", response_model=MfaStatus)
async def get_mfa_status(request: Request, principal: CurrentPrincipal):
    enabled = await get_idp_admin(request).user_has_mfa(principal.id)
    required = principal.has_any_role(CRITICAL_ROLES)
    if enabled:
        message = "MFA is enabled"
    elif required:
        message = "MFA is required for your role. Please configure MFA first."
    else:
        message = "MFA is not enabled"
    return MfaStatus(mfa_enabled=enabled, mfa_required=required, message=message)


@router.post("/mfa/setup")
async def setup_mfa(
    request: Request,
    principal: CurrentPrincipal,
    settings: Settings = Depends(get_settings),
    session: Session = Depends(get_session),
):
    """
    Generate a TOTP secret and QR code. Confirm it with POST /auth/mfa/verify.
    """
    setup = await mfa.start_enrollment(
        session,
        get_idp_admin(request),
        get_secret_cipher(request),
        principal,
        issuer=f"CareCore ({settings.KEYCLOAK_REALM})",
    )
    return JSONResponse(setup.model_dump(by_alias=True))


@router.post("/mfa/verify", response_model=MfaChangeResponse)
async def verify_mfa(
    request: Request,
    body: MfaCodeRequest,
    principal: CurrentPrincipal,
    settings: Settings = Depends(get_settings),
    session: Session = Depends(get_session),
):
    return await mfa.confirm_enrollment(
        session,
        get_idp_admin(request),
        get_secret_cipher(request),
        get_audit_recorder(request),
        principal,
        body.code,
        ttl_seconds=settings.MFA_ENROLLMENT_TTL_SECONDS,
        request=request,
    )


@router.post("/mfa/disable", response_model=MfaChangeResponse)
async def disable_mfa(
    request: Request,
    body: MfaCodeRequest,
    principal: CurrentPrincipal,
    session: Session = Depends(get_session),
):
    return await mfa.disable_mfa(
        session,
        get_idp_admin(request),
        get_secret_cipher(request),
        get_audit_recorder(request),
        principal,
        body.code,
        request=request,
    )
