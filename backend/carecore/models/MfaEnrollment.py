from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel
from pydantic import Field as PydanticField
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MfaEnrollment(SQLModel, table=True):
    """
    TOTP secret issued by the gateway. Pending until the user confirms it
    with a first code, then kept so that disabling MFA can require a code.
    """
    __tablename__ = "mfa_enrollments"

    user_id: str = Field(primary_key=True)  # IdP subject
    encrypted_secret: str
    confirmed: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    confirmed_at: Optional[datetime] = None


class MfaSetupResponse(BaseModel):
    secret: str
    qr_code: str = PydanticField(serialization_alias="qrCode")
    manual_entry_key: str = PydanticField(serialization_alias="manualEntryKey")
    otpauth_url: str = PydanticField(serialization_alias="otpauthUrl")
    message: str = "Scan the QR code with your authenticator app"


class MfaCodeRequest(BaseModel):
    code: str = PydanticField(pattern=r"^\d{6}$")


class MfaChangeResponse(BaseModel):
    success: bool
    message: str
    mfa_enabled: bool
