import hmac
import logging
import secrets
from urllib.parse import urlencode

import httpx

from ..core.errors import (
    AuthenticationError,
    ConfigurationError,
    RefreshFailed,
    StateMismatch,
    TokenExchangeFailed,
)
from ..core.settings import Settings
from ..models.Principal import Principal
from ..models.Token import AuthorizationRequest, TokenSet
from .tokens import TokenValidator

logger = logging.getLogger(__name__)

STATE_TOKEN_BYTES = 32


def generate_state_token() -> str:
    """256 random bits, URL-safe base64."""
    return secrets.token_urlsafe(STATE_TOKEN_BYTES)


def validate_state(received_state: str | None, stored_state: str | None) -> None:
    """
    Exact comparison of the state returned by the provider against the one
    issued to the browser. Missing on either side is a mismatch.
    """
    if not received_state or not stored_state:
        logger.warning(
            "OAuth state missing",
            extra={"has_received": bool(received_state), "has_stored": bool(stored_state)},
        )
        raise StateMismatch("State token missing")

    if not hmac.compare_digest(received_state.encode(), stored_state.encode()):
        logger.warning("OAuth state mismatch, possible CSRF attempt")
        raise StateMismatch("State token mismatch")


class AuthorizationCodeFlow:
    """
    OAuth2 Authorization Code flow against the identity provider.
    This is the unauthenticated entry path that produces the tokens the
    TokenValidator checks on every later request.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient, validator: TokenValidator):
        self.settings = settings
        self.validator = validator
        self._http = http_client

    def _require_config(self) -> None:
        if not self.settings.KEYCLOAK_URL or not self.settings.KEYCLOAK_CLIENT_ID:
            raise ConfigurationError("Keycloak configuration is missing")

    def issue(self, redirect_uri: str) -> AuthorizationRequest:
        self._require_config()
        if not redirect_uri:
            raise ConfigurationError("Redirect URI is not configured")

        state = generate_state_token()
        params = {
            "client_id": self.settings.KEYCLOAK_CLIENT_ID,
            "response_type": "code",
            "scope": self.settings.OAUTH_SCOPES,
            "redirect_uri": redirect_uri,
            "state": state,
        }
        url = f"{self.settings.authorization_endpoint}?{urlencode(params)}"
        logger.debug("Authorization URL generated", extra={"redirect_uri": redirect_uri})
        return AuthorizationRequest(authorization_url=url, state=state)

    async def handle_callback(
        self,
        code: str,
        received_state: str | None,
        stored_state: str | None,
        redirect_uri: str,
    ) -> tuple[TokenSet, Principal]:
        validate_state(received_state, stored_state)
        self._require_config()

        tokens = await self.exchange_code(code, redirect_uri)
        try:
            principal = await self.validator.validate(tokens.access_token)
        except AuthenticationError as exc:
            logger.warning("Provider returned an access token that failed validation", extra={"reason": exc.message})
            raise TokenExchangeFailed("Access token from provider failed validation") from exc

        profile = await self.fetch_user_info(tokens.access_token)
        principal = principal.with_profile(profile)
        logger.info("User logged in", extra={"user_id": principal.id, "username": principal.username})
        return tokens, principal

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        data = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
            TokenExchangeFailed,
        )
        return TokenSet.from_provider(data)

    async def fetch_user_info(self, access_token: str) -> dict:
        try:
            response = await self._http.get(
                self.settings.userinfo_endpoint,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.settings.IDP_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            profile = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Failed to get user info", extra={"error": str(exc)})
            raise TokenExchangeFailed("Failed to get user information") from exc

        if not isinstance(profile, dict):
            raise TokenExchangeFailed("User info response is not an object")
        return profile

    async def refresh(self, refresh_token: str) -> TokenSet:
        """
        Exchanges a refresh token for a new token set. Any failure means the
        session is over; callers must not retry.
        """
        self._require_config()
        data = await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            RefreshFailed,
        )
        tokens = TokenSet.from_provider(data, fallback_refresh_token=refresh_token)
        logger.debug("Access token refreshed")
        return tokens

    async def logout(self, refresh_token: str) -> None:
        """Ends the provider session. Provider errors are logged, never raised."""
        self._require_config()
        try:
            response = await self._http.post(
                self.settings.logout_endpoint,
                data={
                    "client_id": self.settings.KEYCLOAK_CLIENT_ID,
                    "client_secret": self.settings.KEYCLOAK_CLIENT_SECRET,
                    "refresh_token": refresh_token,
                },
                timeout=self.settings.IDP_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as exc:
            logger.warning("Provider logout request failed", extra={"error": str(exc)})
            return

        if response.is_error:
            logger.warning("Provider logout returned an error", extra={"status_code": response.status_code})
            return
        logger.info("User logged out")

    async def _token_request(self, form: dict, failure: type[AuthenticationError]) -> dict:
        payload = {
            **form,
            "client_id": self.settings.KEYCLOAK_CLIENT_ID,
            "client_secret": self.settings.KEYCLOAK_CLIENT_SECRET,
        }
        try:
            response = await self._http.post(
                self.settings.token_endpoint,
                data=payload,
                timeout=self.settings.IDP_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as exc:
            logger.error("Token endpoint unreachable", extra={"grant_type": form["grant_type"], "error": str(exc)})
            raise failure("Token endpoint unreachable") from exc

        if response.is_error:
            logger.warning(
                "Token endpoint rejected the request",
                extra={"grant_type": form["grant_type"], "status_code": response.status_code},
            )
            raise failure(f"Token endpoint returned {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise failure("Token endpoint returned invalid JSON") from exc

        if not isinstance(data, dict) or not data.get("access_token"):
            raise failure("Token endpoint response has no access token")
        return data
