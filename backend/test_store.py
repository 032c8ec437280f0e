import os
import shutil
import sqlite3
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from models import (
    Action,
    AuditEntry,
    ConcurrentModificationError,
    DuplicateActiveTreatment,
    Patient,
    PersistenceFailure,
    Procedure,
    ScriptStage,
    StageData,
    Survey,
    SurveyStatus,
    TimingRule,
    Treatment,
    TreatmentStatus,
)
from store import InMemoryStore, LocalMediaStorage, SQLiteStore

TZ = ZoneInfo("America/Sao_Paulo")
STARTED = datetime(2024, 3, 1, 9, 0, tzinfo=TZ)

PROCEDURE = Procedure(
    id="proc-botox",
    name="Botox",
    scripts=(
        ScriptStage(index=1, title="Day 1", template="Hi #NomePaciente",
                    actions=(Action(id="a1", description="Ask about bruising"),),
                    timing=TimingRule.delay(1, "days"), request_media=True, id="st-1"),
        ScriptStage(index=2, title="Day 15", timing=TimingRule.specific(15, "10:00"), id="st-2"),
    ),
    has_survey=True,
)

def make_treatment(treatment_id="t-1", patient_id="p-1", started_at=STARTED):
    return Treatment(
        id=treatment_id,
        patient_id=patient_id,
        procedure_id=PROCEDURE.id,
        procedure_name=PROCEDURE.name,
        started_at=started_at,
        scripts=PROCEDURE.scripts,
        has_survey=PROCEDURE.has_survey,
        total_tasks=len(PROCEDURE.scripts),
        stage_data={"stage1": StageData(), "stage2": StageData()},
    )

class StoreContract:
    """Behaviour every TreatmentStore must share; mixed into the concrete cases below."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()
        self.store.upsert_patient(Patient(id="p-1", name="Ana Souza", procedure_date=STARTED))
        self.store.upsert_procedure(PROCEDURE)

    def test_01_reference_data(self):
        self.assertEqual(self.store.get_patient("p-1").name, "Ana Souza")
        self.assertEqual(self.store.get_patient("p-1").procedure_date, STARTED)
        self.assertIsNone(self.store.get_patient("nobody"))
        self.assertEqual(self.store.get_procedure("proc-botox"), PROCEDURE)
        self.assertEqual([p.id for p in self.store.list_patients()], ["p-1"])

    def test_02_insert_and_load(self):
        stored = self.store.insert_treatment(make_treatment())
        self.assertEqual(stored.version, 1)
        loaded = self.store.get_treatment("t-1")
        self.assertEqual(loaded, stored)
        self.assertEqual(loaded.scripts, PROCEDURE.scripts)

    def test_03_stage_data_update_bumps_version(self):
        self.store.insert_treatment(make_treatment())
        data = StageData(checklist={"a1": True}, message_sent_at=STARTED + timedelta(hours=1))
        updated = self.store.update_stage_data("t-1", {"stage1": data, "stage2": StageData()}, 1)
        self.assertEqual(updated.version, 2)
        self.assertEqual(self.store.get_treatment("t-1").stage_data["stage1"], data)

    def test_04_stale_version_rejected(self):
        """[STORE] A write against an old version fails and leaves the row untouched"""
        self.store.insert_treatment(make_treatment())
        self.store.update_progress("t-1", 1, 50, TreatmentStatus.ACTIVE, 1)

        with self.assertRaises(ConcurrentModificationError) as ctx:
            self.store.update_stage_data("t-1", {"stage1": StageData(checklist={"a1": True})}, 1)
        self.assertTrue(ctx.exception.retryable)
        self.assertIsInstance(ctx.exception, PersistenceFailure)

        current = self.store.get_treatment("t-1")
        self.assertEqual((current.version, current.tasks_completed), (2, 1))
        self.assertEqual(current.stage_data["stage1"], StageData())

    def test_05_update_missing_treatment(self):
        with self.assertRaises(PersistenceFailure):
            self.store.update_survey("ghost", Survey(), 1)

    def test_06_progress_and_survey(self):
        self.store.insert_treatment(make_treatment())
        done = self.store.update_progress("t-1", 2, 100, TreatmentStatus.COMPLETED, 1)
        self.assertEqual(done.status, TreatmentStatus.COMPLETED)
        survey = Survey(status=SurveyStatus.SENT, sent_at=STARTED + timedelta(days=20))
        self.assertEqual(self.store.update_survey("t-1", survey, 2).survey, survey)
        self.assertEqual(self.store.list_active_treatments(), [])

    def test_07_duplicate_active_rejected(self):
        """[STORE] One active protocol per patient and procedure, even without the registry"""
        self.store.insert_treatment(make_treatment())
        with self.assertRaises(DuplicateActiveTreatment):
            self.store.insert_treatment(make_treatment(treatment_id="t-2"))

        self.store.update_progress("t-1", 2, 100, TreatmentStatus.COMPLETED, 1)
        self.store.insert_treatment(make_treatment(treatment_id="t-2"))
        self.assertEqual(len(self.store.list_treatments_for_patient("p-1")), 2)

    def test_08_patient_listing_newest_first(self):
        self.store.insert_treatment(make_treatment())
        self.store.update_progress("t-1", 2, 100, TreatmentStatus.COMPLETED, 1)
        self.store.insert_treatment(make_treatment(treatment_id="t-2", started_at=STARTED + timedelta(days=30)))
        ids = [t.id for t in self.store.list_treatments_for_patient("p-1")]
        self.assertEqual(ids, ["t-2", "t-1"])
        self.assertEqual([t.id for t in self.store.list_active_treatments()], ["t-2"])

    def test_09_audit_log_and_delete(self):
        self.store.insert_treatment(make_treatment())
        for minute in (1, 2):
            self.store.append(AuditEntry(
                treatment_id="t-1", action="task_completed", description=f"entry {minute}",
                timestamp=STARTED + timedelta(minutes=minute), metadata={"stage": minute},
            ))
        entries = self.store.list_audit_entries("t-1")
        self.assertEqual([e.description for e in entries], ["entry 2", "entry 1"])
        self.assertEqual(entries[0].metadata, {"stage": 2})

        self.assertTrue(self.store.delete_treatment("t-1"))
        self.store.delete_audit_entries("t-1")
        self.assertIsNone(self.store.get_treatment("t-1"))
        self.assertEqual(self.store.list_audit_entries("t-1"), [])
        self.assertFalse(self.store.delete_treatment("t-1"))

    def test_10_loaded_copies_are_isolated(self):
        self.store.insert_treatment(make_treatment())
        loaded = self.store.get_treatment("t-1")
        loaded.stage_data["stage1"] = StageData(checklist={"a1": True})
        self.assertEqual(self.store.get_treatment("t-1").stage_data["stage1"], StageData())

    def test_14_audit_entry_written_with_update(self):
        """[STORE] A logged write lands together with its entry, a rejected one leaves neither"""
        self.store.insert_treatment(make_treatment())
        entry = AuditEntry(treatment_id="t-1", action="manual_message_registered",
                           description="Registered manual message for stage 1",
                           timestamp=STARTED + timedelta(hours=1), metadata={"stage": 1})
        data = StageData(message_sent_at=STARTED + timedelta(hours=1))
        updated = self.store.update_stage_data("t-1", {"stage1": data, "stage2": StageData()}, 1, entry)
        self.assertEqual(updated.version, 2)
        self.assertEqual(self.store.list_audit_entries("t-1"), [entry])

        with self.assertRaises(ConcurrentModificationError):
            self.store.update_progress("t-1", 1, 50, TreatmentStatus.ACTIVE, 1, entry)
        self.assertEqual(len(self.store.list_audit_entries("t-1")), 1)
        self.assertEqual(self.store.get_treatment("t-1").tasks_completed, 0)

    def test_15_listing_orders_by_instant_across_offsets(self):
        # 09:00-03:00 is 12:00 UTC, later than 11:00 UTC despite sorting first as text
        self.store.insert_treatment(make_treatment())
        self.store.update_progress("t-1", 2, 100, TreatmentStatus.COMPLETED, 1)
        self.store.insert_treatment(make_treatment(
            treatment_id="t-2", started_at=datetime(2024, 3, 1, 11, 0, tzinfo=timezone.utc),
        ))
        self.assertEqual([t.id for t in self.store.list_treatments_for_patient("p-1")], ["t-1", "t-2"])

class TestInMemoryStore(StoreContract, unittest.TestCase):
    def make_store(self):
        return InMemoryStore()

class TestSQLiteStore(StoreContract, unittest.TestCase):
    def make_store(self):
        self.tmp = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmp, True)
        store = SQLiteStore(os.path.join(self.tmp, "db", "followflow.db"))
        store.init_db()
        return store

    def test_11_survives_reopen(self):
        self.store.insert_treatment(make_treatment())
        reopened = SQLiteStore(self.store.db_path)
        reopened.init_db()
        self.assertEqual(reopened.get_treatment("t-1").started_at, STARTED)

    def test_12_sqlite_errors_wrapped(self):
        broken = SQLiteStore(self.tmp)  # a directory cannot be opened as a database
        with self.assertRaises(PersistenceFailure):
            broken.get_treatment("t-1")

    def test_13_in_memory_database(self):
        store = SQLiteStore(":memory:")
        store.init_db()
        store.upsert_procedure(PROCEDURE)
        store.insert_treatment(make_treatment())
        self.assertIsNotNone(store.get_treatment("t-1"))

    def test_16_failed_log_insert_rolls_back_update(self):
        """[STORE] If the log row cannot be written, the treatment keeps its old version"""
        self.store.insert_treatment(make_treatment())
        conn = sqlite3.connect(self.store.db_path)
        with conn:
            conn.execute("DROP TABLE treatment_logs")
        conn.close()

        entry = AuditEntry(treatment_id="t-1", action="task_completed", description="Completed stage 1: Day 1",
                           timestamp=STARTED + timedelta(days=1), metadata={"stage": 1})
        with self.assertRaises(PersistenceFailure):
            self.store.update_progress("t-1", 1, 50, TreatmentStatus.ACTIVE, 1, entry)
        current = self.store.get_treatment("t-1")
        self.assertEqual((current.version, current.tasks_completed), (1, 0))

class TestLocalMediaStorage(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmp, True)

    def test_01_save_returns_url(self):
        media = LocalMediaStorage(os.path.join(self.tmp, "media"))
        url = media.save(b"\x89PNG fake", "Before After.PNG")
        self.assertTrue(url.startswith("file://"))
        self.assertTrue(url.endswith(".png"))
        with open(url[len("file://"):], "rb") as fh:
            self.assertEqual(fh.read(), b"\x89PNG fake")

    def test_02_io_error_wrapped(self):
        blocker = os.path.join(self.tmp, "not-a-dir")
        with open(blocker, "w") as fh:
            fh.write("x")
        with self.assertRaises(PersistenceFailure):
            LocalMediaStorage(blocker).save(b"data", "x.jpg")

    def test_03_discard_removes_file(self):
        media = LocalMediaStorage(self.tmp)
        url = media.save(b"jpeg", "x.jpg")
        media.discard(url)
        self.assertEqual(os.listdir(self.tmp), [])
        media.discard(url)  # already gone

if __name__ == '__main__':
    unittest.main()
