"""
TOTP enrollment.

The gateway generates the shared secret and keeps it encrypted while the user
confirms it with a first code from their authenticator app. Once confirmed,
the secret is written to the identity provider as an OTP credential, which is
what the MFA policy stage checks. The confirmed secret is kept so that
turning MFA off can be guarded by a current code.
"""
import base64
import io
import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Optional

import pyotp
import qrcode
from cryptography.fernet import Fernet, InvalidToken
from fastapi import HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlmodel import Session

from ..audit.service import AuditRecorder
from ..core.errors import ConfigurationError
from ..models.MfaEnrollment import MfaChangeResponse, MfaEnrollment, MfaSetupResponse
from ..models.Principal import Principal
from .idp_admin import IdentityProviderAdmin

logger = logging.getLogger(__name__)

SECRET_LENGTH = 20
SECRET_ALPHABET = string.ascii_letters + string.digits
TOTP_DIGITS = 6
TOTP_PERIOD = 30
# One time step either side absorbs clock drift on the phone
VALID_WINDOW = 1
RESOURCE_TYPE = "MfaCredential"


class SecretCipher:
    """Fernet encryption for TOTP secrets at rest."""

    def __init__(self, key: str):
        if not key:
            raise ConfigurationError("MFA_ENCRYPTION_KEY is not configured")
        try:
            self._fernet = Fernet(key.encode())
        except ValueError as exc:
            raise ConfigurationError("MFA_ENCRYPTION_KEY is not a valid Fernet key") from exc

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise ConfigurationError("Stored MFA secret cannot be decrypted with the configured key") from exc


def generate_secret() -> str:
    """Raw HMAC key in the identity provider's format (20 alphanumerics)."""
    return "".join(secrets.choice(SECRET_ALPHABET) for _ in range(SECRET_LENGTH))


def authenticator_key(secret: str) -> str:
    """Base32 form of ``secret``, as typed into or scanned by authenticator apps."""
    return base64.b32encode(secret.encode()).decode().rstrip("=")


def _totp(secret: str) -> pyotp.TOTP:
    return pyotp.TOTP(authenticator_key(secret), digits=TOTP_DIGITS, interval=TOTP_PERIOD)


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    return _totp(secret).provisioning_uri(name=account, issuer_name=issuer)


def verify_code(secret: str, code: str, for_time: Optional[datetime] = None) -> bool:
    return _totp(secret).verify(code, for_time=for_time, valid_window=VALID_WINDOW)


def qr_code_data_url(uri: str) -> str:
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=10, border=4)
    qr.add_data(uri)
    qr.make(fit=True)
    image = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


def _bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def _expired(enrollment: MfaEnrollment, ttl_seconds: int) -> bool:
    created_at = enrollment.created_at
    if created_at.tzinfo is None:
        # SQLite hands datetimes back without a zone
        created_at = created_at.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) - created_at > timedelta(seconds=ttl_seconds)


def _store_pending(session: Session, user_id: str, encrypted_secret: str) -> None:
    enrollment = session.get(MfaEnrollment, user_id)
    if enrollment is None:
        enrollment = MfaEnrollment(user_id=user_id, encrypted_secret=encrypted_secret)
    else:
        # A new setup replaces whatever was there before
        enrollment.encrypted_secret = encrypted_secret
        enrollment.confirmed = False
        enrollment.confirmed_at = None
        enrollment.created_at = datetime.now(timezone.utc)
    session.add(enrollment)
    session.commit()


def _mark_confirmed(session: Session, enrollment: MfaEnrollment) -> None:
    enrollment.confirmed = True
    enrollment.confirmed_at = datetime.now(timezone.utc)
    session.add(enrollment)
    session.commit()


def _delete(session: Session, enrollment: MfaEnrollment) -> None:
    session.delete(enrollment)
    session.commit()


async def start_enrollment(
    session: Session,
    idp_admin: IdentityProviderAdmin,
    cipher: SecretCipher,
    principal: Principal,
    issuer: str,
) -> MfaSetupResponse:
    if await idp_admin.user_has_mfa(principal.id):
        raise _bad_request("MFA is already configured for this user")

    secret = generate_secret()
    await run_in_threadpool(_store_pending, session, principal.id, cipher.encrypt(secret))

    key = authenticator_key(secret)
    uri = provisioning_uri(secret, principal.email or principal.username, issuer)
    qr_code = await run_in_threadpool(qr_code_data_url, uri)
    logger.info("MFA enrollment started", extra={"user_id": principal.id})
    return MfaSetupResponse(secret=key, qr_code=qr_code, manual_entry_key=key, otpauth_url=uri)


async def confirm_enrollment(
    session: Session,
    idp_admin: IdentityProviderAdmin,
    cipher: SecretCipher,
    recorder: AuditRecorder,
    principal: Principal,
    code: str,
    ttl_seconds: int,
    request: Optional[Request] = None,
) -> MfaChangeResponse:
    if await idp_admin.user_has_mfa(principal.id):
        raise _bad_request("MFA is already enabled for this user")

    enrollment = await run_in_threadpool(session.get, MfaEnrollment, principal.id)
    if enrollment is None or enrollment.confirmed or _expired(enrollment, ttl_seconds):
        raise _bad_request("No MFA setup in progress. Start again with POST /auth/mfa/setup.")

    secret = cipher.decrypt(enrollment.encrypted_secret)
    if not verify_code(secret, code):
        logger.warning("Invalid TOTP code during MFA setup", extra={"user_id": principal.id})
        raise _bad_request("Invalid TOTP code. Please try again.")

    await idp_admin.add_otp_credential(principal.id, secret, digits=TOTP_DIGITS, period=TOTP_PERIOD)
    await run_in_threadpool(_mark_confirmed, session, enrollment)

    recorder.log_create(principal, RESOURCE_TYPE, principal.id, changes={"type": "otp"}, request=request)
    logger.info("MFA enabled", extra={"user_id": principal.id})
    return MfaChangeResponse(success=True, message="MFA enabled successfully", mfa_enabled=True)


async def disable_mfa(
    session: Session,
    idp_admin: IdentityProviderAdmin,
    cipher: SecretCipher,
    recorder: AuditRecorder,
    principal: Principal,
    code: str,
    request: Optional[Request] = None,
) -> MfaChangeResponse:
    if not await idp_admin.user_has_mfa(principal.id):
        raise _bad_request("MFA is not enabled for this user")

    enrollment = await run_in_threadpool(session.get, MfaEnrollment, principal.id)
    if enrollment is None or not enrollment.confirmed:
        raise _bad_request(
            "MFA was not set up through CareCore. Remove it from the identity provider account console."
        )

    secret = cipher.decrypt(enrollment.encrypted_secret)
    if not verify_code(secret, code):
        logger.warning("Invalid TOTP code when disabling MFA", extra={"user_id": principal.id})
        raise _bad_request("Invalid TOTP code. Please provide a valid code to disable MFA.")

    await idp_admin.remove_otp_credentials(principal.id)
    await run_in_threadpool(_delete, session, enrollment)

    recorder.log_delete(principal, RESOURCE_TYPE, principal.id, request=request)
    logger.info("MFA disabled", extra={"user_id": principal.id})
    return MfaChangeResponse(success=True, message="MFA disabled successfully", mfa_enabled=False)
