import logging
import math
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy import func, update
from sqlmodel import Session, select

from ..audit.service import AuditRecorder
from ..auth.idp_admin import IdentityProviderAdmin
from ..core.errors import GatewayError
from ..models.Principal import Principal
from ..models.PractitionerVerification import (
    DocumentType,
    PractitionerVerification,
    ReviewDecision,
    ReviewRequest,
    ReviewResponse,
    VerificationDetail,
    VerificationPage,
    VerificationStatus,
    VerificationSubmittedResponse,
)
from ..models.Role import Role
from .storage import DocumentStorage

logger = logging.getLogger(__name__)

RESOURCE_TYPE = "PractitionerVerification"


def submit_verification(
    session: Session,
    storage: DocumentStorage,
    recorder: AuditRecorder,
    principal: Principal,
    practitioner_id: str,
    document_type: DocumentType,
    filename: str,
    content_type: Optional[str],
    data: bytes,
    additional_info: Optional[str] = None,
    request: Optional[Request] = None,
) -> VerificationSubmittedResponse:
    if not practitioner_id.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="practitionerId is required")

    document_path = storage.store(practitioner_id, filename, content_type, data)
    verification = PractitionerVerification(
        practitioner_id=practitioner_id,
        user_id=principal.id,
        document_type=document_type,
        document_path=document_path,
        status=VerificationStatus.PENDING,
        additional_info=additional_info,
    )
    try:
        session.add(verification)
        session.commit()
        session.refresh(verification)
    except Exception:
        # Do not leave an orphaned document behind
        session.rollback()
        storage.delete(document_path)
        raise

    recorder.log_create(
        principal,
        RESOURCE_TYPE,
        verification.id,
        changes={"practitioner_id": practitioner_id, "document_type": document_type, "status": verification.status},
        request=request,
    )
    logger.info(
        "Practitioner verification submitted",
        extra={"verification_id": str(verification.id), "practitioner_id": practitioner_id},
    )
    return VerificationSubmittedResponse(verification_id=verification.id, status=verification.status)


def list_verifications(
    session: Session,
    status_filter: Optional[VerificationStatus] = None,
    page: int = 1,
    limit: int = 10,
) -> VerificationPage:
    statement = select(PractitionerVerification)
    count_statement = select(func.count()).select_from(PractitionerVerification)
    if status_filter:
        statement = statement.where(PractitionerVerification.status == status_filter)
        count_statement = count_statement.where(PractitionerVerification.status == status_filter)

    total = session.exec(count_statement).one()
    statement = (
        statement.order_by(PractitionerVerification.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    records = session.exec(statement).all()
    return VerificationPage(
        data=[VerificationDetail.model_validate(record) for record in records],
        total=total,
        page=page,
        limit=limit,
        total_pages=math.ceil(total / limit) if total else 0,
    )


def get_verification(session: Session, verification_id: UUID) -> PractitionerVerification:
    verification = session.get(PractitionerVerification, verification_id)
    if not verification:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Verification with ID {verification_id} not found",
        )
    return verification


async def review_verification(
    session: Session,
    idp_admin: IdentityProviderAdmin,
    recorder: AuditRecorder,
    reviewer: Principal,
    verification_id: UUID,
    review: ReviewRequest,
    request: Optional[Request] = None,
) -> ReviewResponse:
    """
    Approves or rejects a pending verification. A record is reviewed once;
    reviewing it again is a conflict and leaves it untouched.
    """
    verification, previous_status = await run_in_threadpool(
        apply_review, session, reviewer, verification_id, review
    )

    await _sync_verified_role(idp_admin, verification)

    recorder.log_update(
        reviewer,
        RESOURCE_TYPE,
        verification.id,
        changes={
            "status": {"from": previous_status.value, "to": verification.status.value},
            "rejection_reason": verification.rejection_reason,
        },
        request=request,
    )

    if verification.status == VerificationStatus.APPROVED:
        message = "Verification approved successfully"
    else:
        message = "Verification rejected"
    logger.info(
        "Practitioner verification reviewed",
        extra={"verification_id": str(verification.id), "status": verification.status.value, "reviewed_by": reviewer.id},
    )
    return ReviewResponse(
        verification_id=verification.id,
        status=verification.status,
        reviewed_by=reviewer.id,
        reviewed_at=verification.reviewed_at,
        message=message,
    )


def apply_review(
    session: Session,
    reviewer: Principal,
    verification_id: UUID,
    review: ReviewRequest,
) -> tuple[PractitionerVerification, VerificationStatus]:
    """
    Moves a verification out of pending and returns it with its previous status.
    The transition is a single conditional UPDATE, so of two concurrent
    reviewers only one can win; the other gets a 409.
    """
    verification = get_verification(session, verification_id)
    if verification.status != VerificationStatus.PENDING:
        raise _already_reviewed(verification.status)

    reason = (review.rejection_reason or "").strip()
    if review.status == ReviewDecision.REJECTED and not reason:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Rejection reason is required when rejecting a verification",
        )

    now = datetime.now(timezone.utc)
    statement = (
        update(PractitionerVerification)
        .where(
            PractitionerVerification.id == verification_id,
            PractitionerVerification.status == VerificationStatus.PENDING,
        )
        .values(
            status=VerificationStatus(review.status.value),
            reviewed_by=reviewer.id,
            reviewed_at=now,
            rejection_reason=reason if review.status == ReviewDecision.REJECTED else None,
            updated_at=now,
        )
    )
    result = session.connection().execute(statement)
    if result.rowcount != 1:
        session.rollback()
        current = get_verification(session, verification_id)
        session.refresh(current)
        logger.warning(
            "Concurrent review lost the race",
            extra={"verification_id": str(verification_id), "reviewed_by": reviewer.id},
        )
        raise _already_reviewed(current.status)

    session.commit()
    session.refresh(verification)
    return verification, VerificationStatus.PENDING


def _already_reviewed(current: VerificationStatus) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"Verification has already been reviewed. Current status: {current.value}",
    )


async def _sync_verified_role(idp_admin: IdentityProviderAdmin, verification: PractitionerVerification) -> None:
    """The review is already committed; a failed role update is logged only."""
    if not verification.user_id:
        logger.warning(
            "Verification has no identity provider user, skipping role update",
            extra={"verification_id": str(verification.id)},
        )
        return

    role = Role.PRACTITIONER_VERIFIED.value
    try:
        if verification.status == VerificationStatus.APPROVED:
            await idp_admin.add_realm_role(verification.user_id, role)
        else:
            await idp_admin.remove_realm_role(verification.user_id, role)
    except GatewayError as exc:
        logger.error(
            "Failed to update practitioner-verified role",
            extra={"verification_id": str(verification.id), "user_id": verification.user_id, "error": exc.message},
        )
