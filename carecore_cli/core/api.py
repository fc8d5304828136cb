# carecore_cli/core/api.py
import threading
from typing import Any, Optional

import requests

from . import config
from .session import clear_session, load_refresh_token, load_token, save_tokens


class ApiError(Exception):
    def __init__(self, status_code: int, detail: Any):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"{status_code}: {detail}")


class SessionExpired(Exception):
    """The refresh token was rejected; the user has to log in again."""


class GatewayClient:
    """
    HTTP client for the gateway.

    A 401 on an authenticated call triggers one token refresh and one retry.
    Concurrent callers that hit a 401 together share a single refresh: the
    first one refreshes, the others wait on the lock and reuse the new token.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        http: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = (base_url or config.BASE_URL).rstrip("/")
        self.http = http or requests.Session()
        self.timeout = timeout or config.REQUEST_TIMEOUT
        self._refresh_lock = threading.Lock()

    def _verify(self):
        return config.CA_CERT or True

    def _send(self, method: str, path: str, token: Optional[str], **kwargs) -> requests.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            return self.http.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                timeout=self.timeout,
                verify=self._verify(),
                **kwargs,
            )
        except requests.RequestException as exc:
            raise ApiError(0, f"Gateway unreachable: {exc}") from exc

    def request(self, method: str, path: str, authenticated: bool = True, **kwargs) -> Any:
        if not authenticated:
            return self._handle(self._send(method, path, None, **kwargs))

        token = load_token()
        if not token:
            raise SessionExpired("No active session. Please login first.")

        response = self._send(method, path, token, **kwargs)
        if response.status_code == 401:
            token = self.refresh(stale_token=token)
            response = self._send(method, path, token, **kwargs)
        return self._handle(response)

    def get(self, path: str, **kwargs) -> Any:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, **kwargs) -> Any:
        return self.request("POST", path, **kwargs)

    def put(self, path: str, **kwargs) -> Any:
        return self.request("PUT", path, **kwargs)

    def refresh(self, stale_token: Optional[str] = None) -> str:
        """
        Exchanges the stored refresh token for a new access token and returns it.
        If another caller already replaced ``stale_token`` while we waited, its
        token is reused and no request is made.
        """
        with self._refresh_lock:
            current = load_token()
            if current and stale_token and current != stale_token:
                return current

            refresh_token = load_refresh_token()
            if not refresh_token:
                clear_session()
                raise SessionExpired("Session expired. Please login again.")

            response = self._send("POST", "/auth/refresh", None, json={"refreshToken": refresh_token})

            if response.status_code != 200:
                # The provider ended the session; retrying cannot help
                clear_session()
                raise SessionExpired("Session expired. Please login again.")

            try:
                data = response.json()
                access_token = data["accessToken"]
            except (ValueError, KeyError, TypeError):
                access_token = None
            if not access_token:
                clear_session()
                raise SessionExpired("Gateway returned no access token. Please login again.")

            save_tokens(access_token, data.get("refreshToken") or refresh_token)
            return access_token

    @staticmethod
    def _handle(response: requests.Response) -> Any:
        if response.ok:
            if not response.content:
                return None
            return response.json()
        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = response.text
        raise ApiError(response.status_code, detail)


def api_login_url(client: GatewayClient) -> dict:
    """
    Asks the gateway for an authorization URL (no session needed).
    """
    return client.post("/auth/login", authenticated=False, params={"returnUrl": "true"})


def api_logout(client: GatewayClient, refresh_token: str) -> None:
    client.post("/auth/logout", authenticated=False, json={"refreshToken": refresh_token})


def api_whoami(client: GatewayClient) -> dict:
    return client.get("/auth/user")


def api_mfa_status(client: GatewayClient) -> dict:
    return client.get("/auth/mfa/status")


def api_mfa_setup(client: GatewayClient) -> dict:
    return client.post("/auth/mfa/setup")


def api_mfa_verify(client: GatewayClient, code: str) -> dict:
    return client.post("/auth/mfa/verify", json={"code": code})


def api_mfa_disable(client: GatewayClient, code: str) -> dict:
    return client.post("/auth/mfa/disable", json={"code": code})


def api_list_verifications(client: GatewayClient, status: Optional[str] = None, page: int = 1, limit: int = 10) -> dict:
    params = {"page": page, "limit": limit}
    if status:
        params["status"] = status
    return client.get("/auth/verify-practitioner", params=params)


def api_get_verification(client: GatewayClient, verification_id: str) -> dict:
    return client.get(f"/auth/verify-practitioner/{verification_id}")


def api_review_verification(
    client: GatewayClient,
    verification_id: str,
    status: str,
    rejection_reason: Optional[str] = None,
) -> dict:
    body = {"status": status}
    if rejection_reason:
        body["rejectionReason"] = rejection_reason
    return client.put(f"/auth/verify-practitioner/{verification_id}/review", json=body)


def api_get_audit_logs(client: GatewayClient, **filters) -> list:
    params = {key: value for key, value in filters.items() if value is not None}
    return client.get("/audit/log", params=params)


def api_verify_audit_log(client: GatewayClient) -> dict:
    return client.get("/audit/log/verify")
