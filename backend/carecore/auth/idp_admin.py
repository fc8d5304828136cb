"""
Client for the identity provider's admin REST API.

Authenticates with the client-credentials grant and caches the admin token
until shortly before it expires. Every call is bounded by the configured
timeout and any failure surfaces as IdentityProviderError.
"""
import json
import logging
import time
from typing import Any, Callable

import httpx

from ..core.errors import ConfigurationError, IdentityProviderError
from ..core.settings import Settings
from ..core.singleflight import SingleFlight

logger = logging.getLogger(__name__)

# Renew the admin token this many seconds before the provider says it expires
TOKEN_EXPIRY_MARGIN_SECONDS = 30
OTP_CREDENTIAL_TYPE = "otp"


class IdentityProviderAdmin:
    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self._http = http_client
        self._clock = clock
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_flight = SingleFlight()

    @property
    def client_id(self) -> str:
        return self.settings.KEYCLOAK_ADMIN_CLIENT_ID or self.settings.KEYCLOAK_CLIENT_ID

    @property
    def client_secret(self) -> str:
        return self.settings.KEYCLOAK_ADMIN_CLIENT_SECRET or self.settings.KEYCLOAK_CLIENT_SECRET

    async def user_has_mfa(self, user_id: str) -> bool:
        credentials = await self._request("GET", f"/users/{user_id}/credentials")
        return any(
            isinstance(credential, dict) and credential.get("type") == OTP_CREDENTIAL_TYPE
            for credential in credentials or []
        )

    async def add_otp_credential(
        self,
        user_id: str,
        secret: str,
        digits: int = 6,
        period: int = 30,
        label: str = "CareCore authenticator",
    ) -> None:
        """
        Stores a TOTP credential on the user. ``secret`` is the raw HMAC key in
        the provider's own credential format, not the base32 form.
        """
        credential = {
            "type": OTP_CREDENTIAL_TYPE,
            "userLabel": label,
            "secretData": json.dumps({"value": secret}),
            "credentialData": json.dumps({
                "subType": "totp",
                "digits": digits,
                "period": period,
                "algorithm": "HmacSHA1",
                "counter": 0,
            }),
        }
        await self._request("PUT", f"/users/{user_id}", json={"credentials": [credential]})
        logger.info("OTP credential added", extra={"user_id": user_id})

    async def remove_otp_credentials(self, user_id: str) -> int:
        credentials = await self._request("GET", f"/users/{user_id}/credentials")
        removed = 0
        for credential in credentials or []:
            if not isinstance(credential, dict) or credential.get("type") != OTP_CREDENTIAL_TYPE:
                continue
            if not credential.get("id"):
                logger.warning("OTP credential without id skipped", extra={"user_id": user_id})
                continue
            await self._request("DELETE", f"/users/{user_id}/credentials/{credential['id']}")
            removed += 1
        logger.info("OTP credentials removed", extra={"user_id": user_id, "removed": removed})
        return removed

    async def get_user_roles(self, user_id: str) -> list[str]:
        mappings = await self._request("GET", f"/users/{user_id}/role-mappings/realm")
        return [role["name"] for role in mappings or [] if role.get("name")]

    async def add_realm_role(self, user_id: str, role_name: str) -> None:
        role = await self._get_realm_role(role_name)
        await self._request("POST", f"/users/{user_id}/role-mappings/realm", json=[role])
        logger.info("Realm role added", extra={"user_id": user_id, "role": role_name})

    async def remove_realm_role(self, user_id: str, role_name: str) -> None:
        role = await self._get_realm_role(role_name)
        await self._request("DELETE", f"/users/{user_id}/role-mappings/realm", json=[role])
        logger.info("Realm role removed", extra={"user_id": user_id, "role": role_name})

    async def _get_realm_role(self, role_name: str) -> dict:
        role = await self._request("GET", f"/roles/{role_name}")
        if not isinstance(role, dict) or not role.get("id"):
            raise IdentityProviderError(f"Realm role {role_name} not found")
        return {"id": role["id"], "name": role.get("name", role_name)}

    async def _request(self, method: str, path: str, json: Any = None) -> Any:
        token = await self._admin_token()
        url = f"{self.settings.admin_base_url}{path}"
        try:
            response = await self._http.request(
                method,
                url,
                json=json,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.settings.IDP_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as exc:
            logger.error("Admin API request failed", extra={"method": method, "path": path, "error": str(exc)})
            raise IdentityProviderError(f"Admin API {method} {path} failed") from exc

        if response.status_code == 401:
            # Token revoked or rotated on the provider side
            self._token = None
        if response.is_error:
            logger.error(
                "Admin API returned an error",
                extra={"method": method, "path": path, "status_code": response.status_code},
            )
            raise IdentityProviderError(f"Admin API {method} {path} returned {response.status_code}")

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise IdentityProviderError(f"Admin API {method} {path} returned invalid JSON") from exc

    async def _admin_token(self) -> str:
        if self._token and self._clock() < self._token_expires_at:
            return self._token
        return await self._token_flight.do("admin-token", self._fetch_admin_token)

    async def _fetch_admin_token(self) -> str:
        if not self.settings.KEYCLOAK_URL or not self.client_id:
            raise ConfigurationError("Identity provider admin client is not configured")

        try:
            response = await self._http.post(
                self.settings.token_endpoint,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
                timeout=self.settings.IDP_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            payload = response.json()
            token = payload["access_token"]
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            logger.error("Failed to obtain admin token", extra={"error": str(exc)})
            raise IdentityProviderError("Failed to obtain admin token") from exc

        expires_in = int(payload.get("expires_in") or 60)
        self._token = token
        self._token_expires_at = self._clock() + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
        logger.debug("Admin token renewed", extra={"expires_in": expires_in})
        return token
