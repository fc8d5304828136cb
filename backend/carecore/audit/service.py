import asyncio
import contextlib
import json
import logging
from typing import Any, Optional

from fastapi import Request
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from ..models.Audit import GENESIS_HASH, AuditAction, AuditChainReport, AuditLog
from ..models.Principal import Principal

logger = logging.getLogger(__name__)


def client_ip(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop, then the transport peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return None


def request_details(request: Optional[Request]) -> dict[str, Any]:
    if request is None:
        return {}
    return {
        "ip_address": client_ip(request),
        "user_agent": request.headers.get("user-agent"),
        "request_method": request.method,
        "request_path": request.url.path,
    }


def _json_safe(changes: Optional[dict]) -> Optional[dict]:
    if changes is None:
        return None
    return json.loads(json.dumps(changes, default=str))


class AuditRecorder:
    """
    Fire-and-forget audit trail.

    ``record`` puts the entry on a bounded queue and returns immediately; a
    single background worker appends entries to the hash chained ledger. A full
    queue drops the entry, and a failed write is logged. Neither is ever
    reported to the caller.
    """

    def __init__(self, engine: Engine, queue_size: int = 1000):
        self.engine = engine
        self.queue_size = queue_size
        self.dropped = 0
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._worker = asyncio.create_task(self._run(), name="audit-recorder")
        logger.debug("Audit recorder started", extra={"queue_size": self.queue_size})

    async def flush(self) -> None:
        """Waits until every queued entry has been written (or has failed)."""
        if self._queue is not None and self.running:
            await self._queue.join()

    async def stop(self) -> None:
        if self._worker is None:
            return
        await self.flush()
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None
        logger.debug("Audit recorder stopped", extra={"dropped": self.dropped})

    def record(self, entry: AuditLog) -> None:
        """Never blocks and never raises."""
        if not self.running:
            self._drop(entry, "recorder not running")
            return

        try:
            running_loop = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None

        if running_loop is self._loop:
            self._enqueue(entry)
            return
        # Sync handlers run in a worker thread; hand the entry to the loop
        try:
            self._loop.call_soon_threadsafe(self._enqueue, entry)
        except RuntimeError:
            self._drop(entry, "event loop closed")

    def _enqueue(self, entry: AuditLog) -> None:
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            self._drop(entry, "queue full")

    def _drop(self, entry: AuditLog, reason: str) -> None:
        self.dropped += 1
        logger.warning(
            "Audit record dropped",
            extra={
                "reason": reason,
                "action": entry.action,
                "resource_type": entry.resource_type,
                "resource_id": entry.resource_id,
            },
        )

    async def _run(self) -> None:
        while True:
            entry = await self._queue.get()
            context = {"action": entry.action, "resource_type": entry.resource_type}
            try:
                await asyncio.to_thread(self._persist, entry)
            except Exception:
                logger.exception("Failed to persist audit record", extra=context)
            finally:
                self._queue.task_done()

    def _persist(self, entry: AuditLog) -> None:
        with Session(self.engine) as session:
            last_entry = session.exec(select(AuditLog).order_by(AuditLog.id.desc())).first()
            entry.previous_hash = last_entry.current_hash if last_entry else GENESIS_HASH
            entry.current_hash = entry.calculate_hash()
            session.add(entry)
            session.commit()

    # Convenience builders

    def log_access(
        self,
        action: AuditAction,
        resource_type: str,
        resource_id: Optional[str] = None,
        principal: Optional[Principal] = None,
        request: Optional[Request] = None,
        status_code: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        self.record(
            _build_entry(action, resource_type, resource_id, principal, request, status_code, error_message)
        )

    def log_create(self, principal, resource_type, resource_id, changes=None, request=None) -> None:
        self._log_write(AuditAction.CREATE, principal, resource_type, resource_id, changes, request)

    def log_update(self, principal, resource_type, resource_id, changes=None, request=None) -> None:
        self._log_write(AuditAction.UPDATE, principal, resource_type, resource_id, changes, request)

    def log_delete(self, principal, resource_type, resource_id, request=None) -> None:
        self._log_write(AuditAction.DELETE, principal, resource_type, resource_id, None, request)

    def _log_write(self, action, principal, resource_type, resource_id, changes, request) -> None:
        try:
            entry = _build_entry(action, resource_type, resource_id, principal, request, None, None)
            entry.changes = _json_safe(changes)
        except (TypeError, ValueError):
            logger.exception("Could not build audit record", extra={"resource_type": resource_type})
            return
        self.record(entry)


def _build_entry(action, resource_type, resource_id, principal, request, status_code, error_message) -> AuditLog:
    return AuditLog(
        action=AuditAction(action).value,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        user_id=principal.id if principal else None,
        user_roles=list(principal.roles) if principal else None,
        scopes=list(principal.scopes) if principal else None,
        status_code=status_code,
        error_message=error_message,
        **request_details(request),
    )


def list_records(
    session: Session,
    resource_type: Optional[str] = None,
    user_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
    limit: int = 100,
) -> list[AuditLog]:
    statement = select(AuditLog)
    if resource_type:
        statement = statement.where(AuditLog.resource_type == resource_type)
    if user_id:
        statement = statement.where(AuditLog.user_id == user_id)
    if action:
        statement = statement.where(AuditLog.action == AuditAction(action).value)
    statement = statement.order_by(AuditLog.id.desc()).limit(limit)
    return list(session.exec(statement).all())


def verify_chain(session: Session) -> AuditChainReport:
    """
    Walks the ledger in insertion order recomputing each hash.
    Reports the id of the first record whose link or content does not match.
    """
    previous_hash = GENESIS_HASH
    checked = 0
    for record in session.exec(select(AuditLog).order_by(AuditLog.id.asc())):
        if record.previous_hash != previous_hash or record.calculate_hash() != record.current_hash:
            logger.warning("Audit chain broken", extra={"audit_log_id": record.id})
            return AuditChainReport(valid=False, checked=checked, broken_at=record.id)
        previous_hash = record.current_hash
        checked += 1
    return AuditChainReport(valid=True, checked=checked)
