from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile, status
from sqlmodel import Session

from ..auth.dependencies import get_audit_recorder, get_document_storage, get_idp_admin
from ..auth.policy import AccessPolicy, enforce
from ..core.database import get_session
from ..models.Principal import Principal
from ..models.PractitionerVerification import (
    DocumentType,
    ReviewRequest,
    ReviewResponse,
    VerificationDetail,
    VerificationPage,
    VerificationStatus,
    VerificationSubmittedResponse,
)
from ..models.Role import Role
from . import service

router = APIRouter(prefix="/auth/verify-practitioner", tags=["practitioner verification"])

submit_policy = AccessPolicy(roles=(Role.PRACTITIONER, Role.ADMIN))
admin_policy = AccessPolicy(roles=(Role.ADMIN,))
review_policy = AccessPolicy(roles=(Role.ADMIN,), mfa_required=True)


@router.post("", response_model=VerificationSubmittedResponse, status_code=status.HTTP_201_CREATED)
def submit_verification(
    request: Request,
    practitioner_id: Annotated[str, Form(alias="practitionerId")],
    document_type: Annotated[DocumentType, Form(alias="documentType")],
    document_file: Annotated[UploadFile, File(alias="documentFile")],
    additional_info: Annotated[Optional[str], Form(alias="additionalInfo")] = None,
    principal: Principal = Depends(enforce(submit_policy)),
    session: Session = Depends(get_session),
):
    """
    Submit an identity document (PDF, JPEG or PNG) for practitioner verification.
    """
    storage = get_document_storage(request)
    # One byte over the cap is enough to reject the upload
    data = document_file.file.read(storage.max_size + 1)
    return service.submit_verification(
        session,
        storage,
        get_audit_recorder(request),
        principal,
        practitioner_id=practitioner_id,
        document_type=document_type,
        filename=document_file.filename or "",
        content_type=document_file.content_type,
        data=data,
        additional_info=additional_info,
        request=request,
    )


@router.get("", response_model=VerificationPage, dependencies=[Depends(enforce(admin_policy))])
def list_verifications(
    status_filter: Annotated[Optional[VerificationStatus], Query(alias="status")] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    session: Session = Depends(get_session),
):
    return service.list_verifications(session, status_filter=status_filter, page=page, limit=limit)


@router.get("/{verification_id}", response_model=VerificationDetail, dependencies=[Depends(enforce(admin_policy))])
def get_verification(verification_id: UUID, session: Session = Depends(get_session)):
    return service.get_verification(session, verification_id)


@router.put("/{verification_id}/review", response_model=ReviewResponse)
async def review_verification(
    request: Request,
    verification_id: UUID,
    review: ReviewRequest,
    reviewer: Principal = Depends(enforce(review_policy)),
    session: Session = Depends(get_session),
):
    """
    Approve or reject a pending verification. Requires MFA.
    """
    return await service.review_verification(
        session,
        get_idp_admin(request),
        get_audit_recorder(request),
        reviewer,
        verification_id,
        review,
        request=request,
    )
