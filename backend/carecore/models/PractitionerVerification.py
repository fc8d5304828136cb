from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import AliasChoices, BaseModel
from pydantic import Field as PydanticField
from sqlmodel import Field, SQLModel


class VerificationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ReviewDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class DocumentType(str, Enum):
    CEDULA = "cedula"  # Professional ID card
    LICENCIA = "licencia"  # Medical license


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==========================================
# SQLModel (Database Entity)
# ==========================================
class PractitionerVerification(SQLModel, table=True):
    __tablename__ = "practitioner_verifications"

    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    practitioner_id: str = Field(index=True)
    user_id: Optional[str] = Field(default=None, index=True)  # IdP subject of the submitter
    document_type: DocumentType
    document_path: str
    status: VerificationStatus = Field(default=VerificationStatus.PENDING, index=True)
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    additional_info: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow, index=True)
    updated_at: datetime = Field(default_factory=_utcnow)


# ==========================================
# Pydantic Models (DTOs)
# ==========================================
class VerificationSubmittedResponse(SQLModel):
    verification_id: UUID
    status: VerificationStatus
    message: str = "Verification request submitted successfully"
    estimated_review_time: str = "2-3 business days"


class VerificationDetail(SQLModel):
    id: UUID
    practitioner_id: str
    user_id: Optional[str] = None
    document_type: DocumentType
    document_path: str
    status: VerificationStatus
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    additional_info: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class VerificationPage(SQLModel):
    data: list[VerificationDetail]
    total: int
    page: int
    limit: int
    total_pages: int


class ReviewRequest(BaseModel):
    status: ReviewDecision
    rejection_reason: Optional[str] = PydanticField(
        default=None,
        max_length=1000,
        validation_alias=AliasChoices("rejectionReason", "rejection_reason"),
    )


class ReviewResponse(SQLModel):
    verification_id: UUID
    status: VerificationStatus
    reviewed_by: str
    reviewed_at: datetime
    message: str
