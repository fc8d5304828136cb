from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from ..auth.policy import AccessPolicy, enforce
from ..core.database import get_session
from ..models.Audit import AuditAction, AuditChainReport, AuditLog
from ..models.Role import Role
from .service import list_records, verify_chain

router = APIRouter(
    prefix="/audit",
    tags=["audit"],
    responses={404: {"description": "Not found"}},
)

auditor_policy = AccessPolicy(roles=(Role.AUDIT, Role.ADMIN))


@router.get("/log", response_model=List[AuditLog], dependencies=[Depends(enforce(auditor_policy))])
def get_audit_logs(
    resource_type: Optional[str] = None,
    user_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
    limit: int = Query(default=100, ge=1, le=500),
    session: Session = Depends(get_session),
):
    return list_records(session, resource_type=resource_type, user_id=user_id, action=action, limit=limit)


@router.get("/log/verify", response_model=AuditChainReport, dependencies=[Depends(enforce(auditor_policy))])
def verify_audit_log(session: Session = Depends(get_session)):
    """
    Recompute the hash chain over the whole ledger.
    """
    return verify_chain(session)
