import logging
from typing import Any

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError

from ..core.errors import (
    IssuerMismatch,
    MalformedToken,
    MissingRequiredClaims,
    SignatureInvalid,
    TokenExpired,
)
from ..core.settings import Settings
from ..models.Principal import Principal
from .keys import KeyResolver

logger = logging.getLogger(__name__)


class TokenValidator:
    """
    Verifies bearer tokens issued by the identity provider and turns them into
    a Principal. Holds no state of its own apart from the shared key cache.
    """

    def __init__(self, settings: Settings, key_resolver: KeyResolver):
        self.settings = settings
        self.key_resolver = key_resolver

    async def validate(self, raw_token: str) -> Principal:
        header = self._read_header(raw_token)
        jwk = await self.key_resolver.get_signing_key(header["kid"])
        claims = self._verify(raw_token, jwk, header["alg"])

        issuer = claims.get("iss")
        if issuer != self.settings.issuer:
            logger.warning(
                "Token issuer mismatch",
                extra={"expected_issuer": self.settings.issuer, "token_issuer": issuer},
            )
            raise IssuerMismatch(f"Unexpected issuer {issuer!r}")

        return principal_from_claims(claims)

    def _read_header(self, raw_token: str) -> dict:
        if not raw_token:
            raise MalformedToken("Empty token")
        try:
            header = jwt.get_unverified_header(raw_token)
        except JWTError as exc:
            raise MalformedToken(f"Unreadable token header: {exc}") from exc

        alg = header.get("alg")
        if not isinstance(alg, str) or alg not in self.settings.ALLOWED_ALGORITHMS:
            logger.warning("Token algorithm rejected", extra={"alg": alg})
            raise MalformedToken(f"Algorithm {alg!r} is not allowed")

        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            raise MalformedToken("Token header has no usable key id")
        return header

    def _verify(self, raw_token: str, jwk: dict, alg: str) -> dict:
        try:
            claims = jwt.decode(
                raw_token,
                jwk,
                algorithms=[alg],
                options={"verify_aud": False, "verify_iss": False},
            )
        except ExpiredSignatureError as exc:
            raise TokenExpired("Token has expired") from exc
        except JWTClaimsError as exc:
            raise MissingRequiredClaims(f"Invalid token claims: {exc}") from exc
        except JWTError as exc:
            raise SignatureInvalid(f"Signature verification failed: {exc}") from exc

        if "exp" not in claims:
            raise MissingRequiredClaims("Token has no expiry")
        return claims


def principal_from_claims(claims: dict[str, Any]) -> Principal:
    subject = claims.get("sub")
    username = claims.get("preferred_username") or subject
    if not subject or not username:
        raise MissingRequiredClaims("Token has no subject")

    return Principal(
        id=str(subject),
        username=str(username),
        email=claims.get("email"),
        name=claims.get("name"),
        given_name=claims.get("given_name"),
        family_name=claims.get("family_name"),
        roles=_realm_roles(claims),
        scopes=_scopes(claims),
    )


def _realm_roles(claims: dict) -> tuple[str, ...]:
    realm_access = claims.get("realm_access")
    if not isinstance(realm_access, dict):
        return ()
    roles = realm_access.get("roles")
    if not isinstance(roles, (list, tuple)):
        return ()
    return tuple(str(role) for role in roles)


def _scopes(claims: dict) -> tuple[str, ...]:
    # Keycloak sends "scope" as a space separated string; some providers use "scp"
    raw = claims.get("scope")
    if raw is None:
        raw = claims.get("scp")
    if not raw:
        return ()
    if isinstance(raw, str):
        return tuple(raw.split())
    return tuple(str(scope) for scope in raw)
