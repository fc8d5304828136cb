import asyncio
import unittest
from unittest.mock import patch

from sqlalchemy import text
from sqlmodel import Session, select

from carecore.audit.service import AuditRecorder, list_records, verify_chain
from carecore.core.database import build_engine, create_db_and_tables
from carecore.models.Audit import GENESIS_HASH, AuditAction, AuditLog, AuditLogImmutableError
from carecore.models.Principal import Principal

PRINCIPAL = Principal(id="user-1", username="alice", roles=("practitioner",), scopes=("patient:read",))


class TestAuditRecorder(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.engine = build_engine("sqlite://")
        create_db_and_tables(self.engine)
        self.recorder = AuditRecorder(self.engine, queue_size=100)
        await self.recorder.start()

    async def asyncTearDown(self):
        await self.recorder.stop()
        self.engine.dispose()

    def records(self) -> list[AuditLog]:
        with Session(self.engine) as session:
            return list(session.exec(select(AuditLog).order_by(AuditLog.id)).all())

    async def test_entries_are_chained(self):
        self.recorder.log_access(AuditAction.READ, "Patient", "1", principal=PRINCIPAL, status_code=200)
        self.recorder.log_access(AuditAction.SEARCH, "Patient", principal=PRINCIPAL, status_code=200)
        self.recorder.log_create(PRINCIPAL, "Patient", "2", changes={"name": "Alice"})
        self.recorder.log_delete(PRINCIPAL, "Consent", "9")
        await self.recorder.flush()

        records = self.records()
        self.assertEqual([record.action for record in records], ["read", "search", "create", "delete"])
        self.assertEqual(records[0].previous_hash, GENESIS_HASH)
        self.assertEqual(records[1].previous_hash, records[0].current_hash)
        self.assertEqual(records[2].previous_hash, records[1].current_hash)
        self.assertEqual(records[0].user_roles, ["practitioner"])
        self.assertEqual(records[2].changes, {"name": "Alice"})
        self.assertEqual((records[3].resource_type, records[3].resource_id), ("Consent", "9"))
        self.assertIsNone(records[3].changes)

        with Session(self.engine) as session:
            report = verify_chain(session)
        self.assertTrue(report.valid)
        self.assertEqual(report.checked, 4)

    async def test_empty_ledger_is_valid(self):
        with Session(self.engine) as session:
            report = verify_chain(session)
        self.assertTrue(report.valid)
        self.assertEqual(report.checked, 0)

    async def test_full_queue_drops_without_raising(self):
        recorder = AuditRecorder(self.engine, queue_size=1)
        await recorder.start()
        try:
            with self.assertLogs("carecore.audit.service", level="WARNING"):
                for resource_id in range(5):
                    recorder.log_access(AuditAction.READ, "Patient", str(resource_id))
            await recorder.flush()
        finally:
            await recorder.stop()

        self.assertEqual(recorder.dropped, 4)
        self.assertEqual(len(self.records()), 1)

    async def test_persist_failure_is_logged_and_worker_survives(self):
        with patch.object(self.recorder, "_persist", side_effect=RuntimeError("database is locked")):
            with self.assertLogs("carecore.audit.service", level="ERROR") as logs:
                self.recorder.log_access(AuditAction.READ, "Patient", "1")
                await self.recorder.flush()
        self.assertIn("Failed to persist audit record", logs.output[0])

        self.recorder.log_access(AuditAction.READ, "Patient", "2")
        await self.recorder.flush()

        self.assertTrue(self.recorder.running)
        self.assertEqual([record.resource_id for record in self.records()], ["2"])

    async def test_record_before_start_is_dropped(self):
        recorder = AuditRecorder(self.engine)
        recorder.log_access(AuditAction.READ, "Patient", "1")

        self.assertEqual(recorder.dropped, 1)
        self.assertFalse(recorder.running)

    async def test_record_from_worker_thread(self):
        changes = {"status": {"from": "pending", "to": "approved"}}
        await asyncio.to_thread(self.recorder.log_update, PRINCIPAL, "PractitionerVerification", "v-1", changes)
        await asyncio.sleep(0)
        await self.recorder.flush()

        records = self.records()
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].action, "update")
        self.assertEqual(records[0].changes, changes)

    async def test_raw_tampering_is_detected(self):
        for resource_id in ("1", "2", "3"):
            self.recorder.log_access(AuditAction.READ, "Patient", resource_id)
        await self.recorder.flush()
        second = self.records()[1]

        with self.engine.begin() as connection:
            connection.execute(
                text("UPDATE audit_logs SET resource_id = :rid WHERE id = :id"),
                {"rid": "999", "id": second.id},
            )

        with Session(self.engine) as session:
            report = verify_chain(session)
        self.assertFalse(report.valid)
        self.assertEqual(report.broken_at, second.id)
        self.assertEqual(report.checked, 1)

    async def test_orm_updates_and_deletes_are_refused(self):
        self.recorder.log_access(AuditAction.READ, "Patient", "1")
        await self.recorder.flush()

        with Session(self.engine) as session:
            record = session.exec(select(AuditLog)).first()
            record.resource_id = "2"
            session.add(record)
            with self.assertRaises(AuditLogImmutableError):
                session.commit()

        with Session(self.engine) as session:
            record = session.exec(select(AuditLog)).first()
            session.delete(record)
            with self.assertRaises(AuditLogImmutableError):
                session.commit()

    async def test_list_records_filters_newest_first(self):
        other = Principal(id="user-2", username="bob")
        self.recorder.log_access(AuditAction.READ, "Patient", "1", principal=PRINCIPAL)
        self.recorder.log_access(AuditAction.READ, "Encounter", "2", principal=other)
        self.recorder.log_access(AuditAction.SEARCH, "Patient", principal=PRINCIPAL)
        await self.recorder.flush()

        with Session(self.engine) as session:
            patients = list_records(session, resource_type="Patient")
            by_user = list_records(session, user_id="user-2")
            searches = list_records(session, action=AuditAction.SEARCH)
            limited = list_records(session, limit=1)

        self.assertEqual([record.action for record in patients], ["search", "read"])
        self.assertEqual([record.resource_type for record in by_user], ["Encounter"])
        self.assertEqual(len(searches), 1)
        self.assertEqual(limited[0].action, "search")


if __name__ == "__main__":
    unittest.main()
