"""
Shared fixtures for the gateway tests: RSA signing keys, token claims, test
settings and an in-process fake of the identity provider.
"""
import json
import tempfile
import time
import unittest
from typing import Optional
from urllib.parse import parse_qs

import httpx
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import APIRouter, Depends
from fastapi.testclient import TestClient
from jose import jwk, jwt

from carecore.auth.policy import AccessPolicy, enforce
from carecore.core.database import build_engine
from carecore.core.errors import KeyResolutionError
from carecore.core.settings import Settings
from carecore.main import create_app
from carecore.models.Principal import Principal

KEYCLOAK_URL = "http://idp.test"
REALM = "carecore"
ISSUER = f"{KEYCLOAK_URL}/realms/{REALM}"
CLIENT_ID = "carecore-api"
CLIENT_SECRET = "client-secret"
FRONTEND_URL = "http://frontend.test"
MFA_ENCRYPTION_KEY = Fernet.generate_key().decode()


class SigningKey:
    def __init__(self, kid: str = "test-key"):
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.kid = kid
        self.private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()
        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode()
        self.public_jwk = jwk.construct(public_pem, "RS256").to_dict()
        self.public_jwk.update({"kid": kid, "use": "sig", "alg": "RS256"})

    def sign(self, claims: dict, headers: Optional[dict] = None) -> str:
        token_headers = {"kid": self.kid}
        token_headers.update(headers or {})
        return jwt.encode(claims, self.private_pem, algorithm="RS256", headers=token_headers)


# Key generation is slow; share one pair across the test modules
DEFAULT_KEY = SigningKey("test-key")
OTHER_KEY = SigningKey("other-key")


def make_claims(**overrides) -> dict:
    now = int(time.time())
    claims = {
        "sub": "user-1",
        "preferred_username": "alice",
        "email": "alice@example.org",
        "iss": ISSUER,
        "iat": now,
        "exp": now + 300,
        "realm_access": {"roles": ["patient"]},
        "scope": "openid patient:read",
    }
    claims.update(overrides)
    return {key: value for key, value in claims.items() if value is not None}


def make_token(key: SigningKey = DEFAULT_KEY, headers: Optional[dict] = None, **overrides) -> str:
    return key.sign(make_claims(**overrides), headers=headers)


def auth_header(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def make_settings(**overrides) -> Settings:
    values = {
        "KEYCLOAK_URL": KEYCLOAK_URL,
        "KEYCLOAK_REALM": REALM,
        "KEYCLOAK_CLIENT_ID": CLIENT_ID,
        "KEYCLOAK_CLIENT_SECRET": CLIENT_SECRET,
        "FRONTEND_URL": FRONTEND_URL,
        "DATABASE_URL": "sqlite://",
        "DOCUMENT_STORAGE_PATH": tempfile.mkdtemp(prefix="carecore-docs-"),
        "LOG_LEVEL": "WARNING",
        "MFA_ENCRYPTION_KEY": MFA_ENCRYPTION_KEY,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class StaticKeyResolver:
    """Key resolver double that never touches the network."""

    def __init__(self, *keys: SigningKey):
        self.keys = {key.kid: key.public_jwk for key in keys}

    async def get_signing_key(self, kid: str) -> dict:
        if kid not in self.keys:
            raise KeyResolutionError(f"Signing key {kid} not found")
        return self.keys[kid]


class FakeIdentityProvider:
    """
    Keycloak-shaped identity provider served through httpx.MockTransport.
    Records every request and lets tests override individual endpoints.
    """

    def __init__(self, keys=(DEFAULT_KEY,)):
        self.keys = list(keys)
        self.requests: list[httpx.Request] = []
        self.token_response = None  # (status, body) override for the token endpoint
        self.userinfo_status = 200
        self.logout_status = 204
        self.certs_status = 200
        self.mfa_users: set[str] = set()
        self.admin_status = 200
        self.role_changes: list[tuple[str, str, str]] = []
        self.otp_credentials: dict[str, dict] = {}  # user id -> credential written through the admin API
        self.issued_claims: dict = {}

    @property
    def base(self) -> str:
        return f"{ISSUER}/protocol/openid-connect"

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport())

    def calls_to(self, suffix: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path.endswith(suffix)]

    def form(self, request: httpx.Request) -> dict:
        return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/protocol/openid-connect/certs"):
            return httpx.Response(self.certs_status, json={"keys": [key.public_jwk for key in self.keys]})
        if path.endswith("/protocol/openid-connect/token"):
            return self._token(request)
        if path.endswith("/protocol/openid-connect/userinfo"):
            if self.userinfo_status != 200:
                return httpx.Response(self.userinfo_status, json={"error": "invalid_token"})
            return httpx.Response(200, json={
                "sub": "user-1",
                "preferred_username": "alice",
                "email": "alice@example.org",
                "given_name": "Alice",
                "family_name": "Doe",
                "name": "Alice Doe",
            })
        if path.endswith("/protocol/openid-connect/logout"):
            return httpx.Response(self.logout_status)
        if "/admin/realms/" in path:
            return self._admin(request)
        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        if self.token_response is not None:
            status, body = self.token_response
            return httpx.Response(status, json=body)

        form = self.form(request)
        if form.get("grant_type") == "client_credentials":
            return httpx.Response(200, json={"access_token": "admin-token", "expires_in": 300})

        claims = make_claims(**self.issued_claims)
        return httpx.Response(200, json={
            "access_token": self.keys[0].sign(claims),
            "refresh_token": "refresh-2" if form.get("grant_type") == "refresh_token" else "refresh-1",
            "expires_in": 300,
            "token_type": "Bearer",
        })

    def _admin(self, request: httpx.Request) -> httpx.Response:
        if self.admin_status != 200:
            return httpx.Response(self.admin_status, json={"error": "unavailable"})

        path = request.url.path
        parts = path.split("/")
        if request.method == "DELETE" and parts[-2] == "credentials":
            user_id = parts[-3]
            if parts[-1] != f"otp-{user_id}":
                return httpx.Response(404)
            self.mfa_users.discard(user_id)
            self.otp_credentials.pop(user_id, None)
            return httpx.Response(204)
        if path.endswith("/credentials"):
            user_id = parts[-2]
            credentials = [{"id": f"password-{user_id}", "type": "password"}]
            if user_id in self.mfa_users:
                credentials.append({"id": f"otp-{user_id}", "type": "otp"})
            return httpx.Response(200, json=credentials)
        if request.method == "PUT" and parts[-2] == "users":
            user_id = parts[-1]
            for credential in json.loads(request.content).get("credentials", []):
                if credential.get("type") == "otp":
                    self.otp_credentials[user_id] = credential
                    self.mfa_users.add(user_id)
            return httpx.Response(204)
        if "/roles/" in path:
            return httpx.Response(200, json={"id": f"role-{parts[-1]}", "name": parts[-1]})
        if path.endswith("/role-mappings/realm"):
            user_id = parts[-3]
            if request.method == "GET":
                return httpx.Response(200, json=[{"id": "role-patient", "name": "patient"}])
            for role in json.loads(request.content):
                self.role_changes.append((request.method, user_id, role["name"]))
            return httpx.Response(204)
        return httpx.Response(404)


def build_resource_router() -> list[APIRouter]:
    """
    Minimal FHIR-style resource endpoints standing in for the resource services.
    """
    read_policy = AccessPolicy(roles=("practitioner", "admin"), scopes=("patient:read",))
    write_policy = AccessPolicy(roles=("practitioner", "admin"), scopes=("patient:read", "patient:write"))

    fhir = APIRouter(prefix="/fhir")

    @fhir.get("/Patient")
    def search_patients(name: Optional[str] = None, principal: Principal = Depends(enforce(read_policy))):
        return {"resourceType": "Bundle", "type": "searchset", "total": 0}

    @fhir.get("/Patient/{patient_id}")
    def read_patient(patient_id: str, principal: Principal = Depends(enforce(read_policy))):
        return {"resourceType": "Patient", "id": patient_id}

    @fhir.post("/Patient", status_code=201)
    def create_patient(principal: Principal = Depends(enforce(write_policy))):
        return {"resourceType": "Patient", "id": "new"}

    @fhir.put("/Patient/{patient_id}")
    def update_patient(patient_id: str, principal: Principal = Depends(enforce(write_policy))):
        return {"resourceType": "Patient", "id": patient_id}

    @fhir.get("/Encounter/{encounter_id}")
    def read_encounter(encounter_id: str, principal: Principal = Depends(enforce(read_policy))):
        raise RuntimeError("encounter store unavailable")

    patients = APIRouter(prefix="/patients")

    @patients.get("/{patient_id}")
    def read_patient_alias(patient_id: str, principal: Principal = Depends(enforce(read_policy))):
        return {"id": patient_id}

    return [fhir, patients]


class GatewayTestCase(unittest.TestCase):
    """
    Runs the full gateway app (lifespan included) against an in-memory
    database and the fake identity provider.
    """
    settings_overrides: dict = {}

    def setUp(self):
        self.idp = FakeIdentityProvider()
        self.engine = build_engine("sqlite://")
        self.settings = make_settings(**self.settings_overrides)
        self.app = create_app(
            settings=self.settings,
            engine=self.engine,
            http_client=self.idp.client(),
            resource_routers=build_resource_router(),
        )
        self.client = TestClient(self.app, raise_server_exceptions=False)
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)
        self.engine.dispose()

    def flush_audit(self) -> None:
        self.client.portal.call(self.app.state.audit_recorder.flush)
