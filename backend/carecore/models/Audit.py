from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import hashlib
import json

from sqlalchemy import JSON, Column, event
from sqlmodel import Field, SQLModel

GENESIS_HASH = "00000000000000000000000000000000"


class AuditAction(str, Enum):
    READ = "read"
    SEARCH = "search"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class AuditLog(SQLModel, table=True):
    """
    Immutable record of one access event. Rows are chained by hash so that any
    edit made outside the application is detectable.
    """
    __tablename__ = "audit_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    action: str = Field(index=True)
    resource_type: str = Field(index=True)
    resource_id: Optional[str] = Field(default=None, index=True)
    user_id: Optional[str] = Field(default=None, index=True)
    user_roles: Optional[list[str]] = Field(default=None, sa_column=Column(JSON))
    scopes: Optional[list[str]] = Field(default=None, sa_column=Column(JSON))
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_method: Optional[str] = None
    request_path: Optional[str] = None
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    changes: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc).replace(microsecond=0),
        index=True,
    )
    previous_hash: str = GENESIS_HASH
    current_hash: str = ""

    def calculate_hash(self) -> str:
        """
        SHA-256 over previous_hash and a canonical JSON dump of the record fields.
        """
        # Naive UTC string so the hash survives a SQLite roundtrip (tz is lost there)
        ts_str = self.created_at.replace(tzinfo=None).isoformat()
        body = {
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "user_id": self.user_id,
            "user_roles": self.user_roles,
            "scopes": self.scopes,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "request_method": self.request_method,
            "request_path": self.request_path,
            "status_code": self.status_code,
            "error_message": self.error_message,
            "changes": self.changes,
            "created_at": ts_str,
        }
        data = self.previous_hash + json.dumps(body, sort_keys=True, default=str)
        return hashlib.sha256(data.encode("utf-8")).hexdigest()


class AuditLogImmutableError(RuntimeError):
    pass


@event.listens_for(AuditLog, "before_update")
def _refuse_update(mapper, connection, target):
    raise AuditLogImmutableError("Audit log records cannot be updated")


@event.listens_for(AuditLog, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise AuditLogImmutableError("Audit log records cannot be deleted")


class AuditChainReport(SQLModel):
    valid: bool
    checked: int
    broken_at: Optional[int] = None
