"""
FollowFlow: Storage Adapters
============================
Repository interfaces the engine talks to, plus two implementations:
InMemoryStore (tests, demos) and SQLiteStore (single-clinic deployments).

Every treatment write is a compare-and-set on `version`; a mismatch raises
ConcurrentModificationError and leaves the stored row untouched.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional

from models import (
    AuditEntry,
    ConcurrentModificationError,
    DuplicateActiveTreatment,
    Patient,
    PersistenceFailure,
    Procedure,
    StageData,
    Survey,
    Treatment,
    TreatmentStatus,
    _dt_from_str,
    _dt_to_str,
    scripts_from_list,
)

logger = logging.getLogger(__name__)

# --- 1. INTERFACES ---

class PatientStore:
    def get_patient(self, patient_id: str) -> Optional[Patient]:
        raise NotImplementedError

    def list_patients(self) -> List[Patient]:
        raise NotImplementedError

class ProcedureStore:
    def get_procedure(self, procedure_id: str) -> Optional[Procedure]:
        raise NotImplementedError

class TreatmentStore:
    def insert_treatment(self, treatment: Treatment) -> Treatment:
        raise NotImplementedError

    def get_treatment(self, treatment_id: str) -> Optional[Treatment]:
        raise NotImplementedError

    def list_treatments_for_patient(self, patient_id: str) -> List[Treatment]:
        raise NotImplementedError

    def list_active_treatments(self) -> List[Treatment]:
        raise NotImplementedError

    # `audit`, when given, is committed with the write or not at all
    def update_stage_data(self, treatment_id: str, stage_data: Dict[str, StageData],
                          expected_version: int, audit: Optional[AuditEntry] = None) -> Treatment:
        raise NotImplementedError

    def update_progress(self, treatment_id: str, tasks_completed: int, progress: int,
                        status: TreatmentStatus, expected_version: int,
                        audit: Optional[AuditEntry] = None) -> Treatment:
        raise NotImplementedError

    def update_survey(self, treatment_id: str, survey: Survey, expected_version: int) -> Treatment:
        raise NotImplementedError

    def delete_treatment(self, treatment_id: str) -> bool:
        raise NotImplementedError

class AuditLogSink:
    def append(self, entry: AuditEntry) -> None:
        raise NotImplementedError

    def list_audit_entries(self, treatment_id: str) -> List[AuditEntry]:
        raise NotImplementedError

    def delete_audit_entries(self, treatment_id: str) -> None:
        raise NotImplementedError

class MediaStorage:
    def save(self, content: bytes, filename: str) -> str:
        """Stores the upload and returns a durable URL."""
        raise NotImplementedError

    def discard(self, url: str) -> None:
        """Removes an upload that never got attached to a stage."""
        raise NotImplementedError

# --- 2. IN-MEMORY ---

class InMemoryStore(PatientStore, ProcedureStore, TreatmentStore, AuditLogSink):
    """All four stores in one process-local object, guarded by one lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._patients: Dict[str, Patient] = {}
        self._procedures: Dict[str, Procedure] = {}
        self._treatments: Dict[str, Treatment] = {}
        self._logs: Dict[str, List[AuditEntry]] = {}

    # Patients / procedures are reference data: frozen, shared as-is
    def upsert_patient(self, patient: Patient) -> None:
        with self._lock:
            self._patients[patient.id] = patient

    def get_patient(self, patient_id: str) -> Optional[Patient]:
        return self._patients.get(patient_id)

    def list_patients(self) -> List[Patient]:
        return list(self._patients.values())

    def upsert_procedure(self, procedure: Procedure) -> None:
        with self._lock:
            self._procedures[procedure.id] = procedure

    def get_procedure(self, procedure_id: str) -> Optional[Procedure]:
        return self._procedures.get(procedure_id)

    def insert_treatment(self, treatment: Treatment) -> Treatment:
        with self._lock:
            if treatment.id in self._treatments:
                raise PersistenceFailure(f"Treatment {treatment.id} already exists")
            for other in self._treatments.values():
                if (other.patient_id == treatment.patient_id and other.procedure_id == treatment.procedure_id
                        and other.status == TreatmentStatus.ACTIVE):
                    raise DuplicateActiveTreatment(treatment.procedure_name)
            stored = replace(treatment, version=1)
            self._treatments[stored.id] = copy.deepcopy(stored)
            return stored

    def get_treatment(self, treatment_id: str) -> Optional[Treatment]:
        with self._lock:
            found = self._treatments.get(treatment_id)
            return copy.deepcopy(found) if found else None

    def list_treatments_for_patient(self, patient_id: str) -> List[Treatment]:
        with self._lock:
            rows = [copy.deepcopy(t) for t in self._treatments.values() if t.patient_id == patient_id]
        return sorted(rows, key=lambda t: t.started_at, reverse=True)

    def list_active_treatments(self) -> List[Treatment]:
        with self._lock:
            rows = [copy.deepcopy(t) for t in self._treatments.values() if t.status == TreatmentStatus.ACTIVE]
        return sorted(rows, key=lambda t: t.started_at, reverse=True)

    def _compare_and_set(self, treatment_id: str, expected_version: int,
                         audit: Optional[AuditEntry] = None, **changes) -> Treatment:
        with self._lock:
            current = self._treatments.get(treatment_id)
            if current is None:
                raise PersistenceFailure(f"Treatment {treatment_id} does not exist")
            if current.version != expected_version:
                raise ConcurrentModificationError(
                    f"Treatment {treatment_id} changed (expected v{expected_version}, found v{current.version})"
                )
            updated = replace(current, version=current.version + 1, **changes)
            # Log first: a failed append leaves the treatment at its old version
            if audit is not None:
                self._write_entry(audit)
            self._treatments[treatment_id] = updated
            return copy.deepcopy(updated)

    def update_stage_data(self, treatment_id, stage_data, expected_version, audit=None):
        return self._compare_and_set(treatment_id, expected_version, audit, stage_data=copy.deepcopy(stage_data))

    def update_progress(self, treatment_id, tasks_completed, progress, status, expected_version, audit=None):
        return self._compare_and_set(
            treatment_id, expected_version, audit,
            tasks_completed=tasks_completed, progress=progress, status=status,
        )

    def update_survey(self, treatment_id, survey, expected_version):
        return self._compare_and_set(treatment_id, expected_version, survey=survey)

    def delete_treatment(self, treatment_id: str) -> bool:
        with self._lock:
            return self._treatments.pop(treatment_id, None) is not None

    def _write_entry(self, entry: AuditEntry) -> None:
        # Caller holds the lock
        self._logs.setdefault(entry.treatment_id, []).append(entry)

    def append(self, entry: AuditEntry) -> None:
        with self._lock:
            self._write_entry(entry)

    def list_audit_entries(self, treatment_id: str) -> List[AuditEntry]:
        with self._lock:
            return sorted(self._logs.get(treatment_id, []), key=lambda e: e.timestamp, reverse=True)

    def delete_audit_entries(self, treatment_id: str) -> None:
        with self._lock:
            self._logs.pop(treatment_id, None)

# --- 3. SQLITE ---

def _patient_from_row(row: sqlite3.Row) -> Patient:
    return Patient(
        id=row["id"],
        name=row["name"],
        phone=row["phone"] or "",
        procedure_date=_dt_from_str(row["procedure_date"]),
    )

def _procedure_from_row(row: sqlite3.Row) -> Procedure:
    return Procedure(
        id=row["id"],
        name=row["name"],
        scripts=scripts_from_list(json.loads(row["scripts_json"] or "[]")),
        has_survey=bool(row["has_survey"]),
    )

def _treatment_from_row(row: sqlite3.Row) -> Treatment:
    return Treatment(
        id=row["id"],
        patient_id=row["patient_id"],
        procedure_id=row["procedure_id"],
        procedure_name=row["procedure_name"] or "",
        started_at=_dt_from_str(row["started_at"]),
        scripts=scripts_from_list(json.loads(row["scripts_json"] or "[]")),
        has_survey=bool(row["has_survey"]),
        status=TreatmentStatus(row["status"]),
        tasks_completed=int(row["tasks_completed"]),
        total_tasks=int(row["total_tasks"]),
        progress=int(row["progress"]),
        stage_data={k: StageData.from_dict(v) for k, v in json.loads(row["stage_data_json"] or "{}").items()},
        survey=Survey.from_dict(json.loads(row["survey_json"] or "{}")),
        version=int(row["version"]),
    )

class SQLiteStore(PatientStore, ProcedureStore, TreatmentStore, AuditLogSink):
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        self._shared: Optional[sqlite3.Connection] = None
        if db_path in (":memory:", ""):
            # One connection for the life of the store, or the database vanishes
            self._shared = self._open()

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path or ":memory:", check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = None
            try:
                conn = self._shared or self._open()
                with conn:
                    yield conn
            except sqlite3.Error as exc:
                logger.error("SQLite error in %s: %s", operation, exc)
                raise PersistenceFailure(f"SQLite error in {operation}: {exc}") from exc
            finally:
                if conn is not None and conn is not self._shared:
                    conn.close()

    def init_db(self) -> None:
        if self.db_path not in (":memory:", ""):
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
        with self._transaction("init_db") as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS patients (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    phone TEXT,
                    procedure_date TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS procedures (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    scripts_json TEXT NOT NULL,
                    has_survey INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS treatments (
                    id TEXT PRIMARY KEY,
                    patient_id TEXT NOT NULL,
                    procedure_id TEXT NOT NULL,
                    procedure_name TEXT,
                    started_at TEXT NOT NULL,
                    status TEXT NOT NULL,
                    tasks_completed INTEGER NOT NULL,
                    total_tasks INTEGER NOT NULL,
                    progress INTEGER NOT NULL,
                    scripts_json TEXT NOT NULL,
                    has_survey INTEGER NOT NULL DEFAULT 0,
                    stage_data_json TEXT NOT NULL,
                    survey_json TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    updated_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS treatment_logs (
                    id TEXT PRIMARY KEY,
                    treatment_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    description TEXT NOT NULL,
                    metadata_json TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_treatments_patient ON treatments(patient_id, started_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_treatments_status ON treatments(status)"
            )
            # At most one active protocol per (patient, procedure)
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS uq_treatments_active
                ON treatments(patient_id, procedure_id) WHERE status = 'active'
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_treatment_logs_treatment ON treatment_logs(treatment_id, created_at)"
            )

    # --- patients / procedures ---

    def upsert_patient(self, patient: Patient) -> None:
        with self._transaction("upsert_patient") as conn:
            conn.execute(
                """
                INSERT INTO patients (id, name, phone, procedure_date)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name=excluded.name,
                    phone=excluded.phone,
                    procedure_date=excluded.procedure_date
                """,
                (patient.id, patient.name, patient.phone, _dt_to_str(patient.procedure_date)),
            )

    def get_patient(self, patient_id: str) -> Optional[Patient]:
        with self._transaction("get_patient") as conn:
            row = conn.execute("SELECT * FROM patients WHERE id = ?", (patient_id,)).fetchone()
        return _patient_from_row(row) if row else None

    def list_patients(self) -> List[Patient]:
        with self._transaction("list_patients") as conn:
            rows = conn.execute("SELECT * FROM patients ORDER BY name").fetchall()
        return [_patient_from_row(r) for r in rows]

    def upsert_procedure(self, procedure: Procedure) -> None:
        with self._transaction("upsert_procedure") as conn:
            conn.execute(
                """
                INSERT INTO procedures (id, name, scripts_json, has_survey)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name=excluded.name,
                    scripts_json=excluded.scripts_json,
                    has_survey=excluded.has_survey
                """,
                (
                    procedure.id,
                    procedure.name,
                    json.dumps([s.to_dict() for s in procedure.scripts]),
                    int(procedure.has_survey),
                ),
            )

    def get_procedure(self, procedure_id: str) -> Optional[Procedure]:
        with self._transaction("get_procedure") as conn:
            row = conn.execute("SELECT * FROM procedures WHERE id = ?", (procedure_id,)).fetchone()
        return _procedure_from_row(row) if row else None

    # --- treatments ---

    def insert_treatment(self, treatment: Treatment) -> Treatment:
        stored = replace(treatment, version=1)
        data = stored.to_dict()
        with self._transaction("insert_treatment") as conn:
            try:
                self._insert_treatment_row(conn, stored, data)
            except sqlite3.IntegrityError as exc:
                if "patient_id" in str(exc):
                    raise DuplicateActiveTreatment(stored.procedure_name) from exc
                raise
        return stored

    def _insert_treatment_row(self, conn: sqlite3.Connection, stored: Treatment, data: Dict) -> None:
        conn.execute(
            """
            INSERT INTO treatments
            (id, patient_id, procedure_id, procedure_name, started_at, status,
             tasks_completed, total_tasks, progress, scripts_json, has_survey,
             stage_data_json, survey_json, version, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                stored.id,
                stored.patient_id,
                stored.procedure_id,
                stored.procedure_name,
                data["started_at"],
                stored.status.value,
                stored.tasks_completed,
                stored.total_tasks,
                stored.progress,
                json.dumps(data["scripts"]),
                int(stored.has_survey),
                json.dumps(data["stage_data"]),
                json.dumps(data["survey"]),
                stored.version,
                datetime.now(timezone.utc).isoformat(),
            ),
        )

    def get_treatment(self, treatment_id: str) -> Optional[Treatment]:
        with self._transaction("get_treatment") as conn:
            row = conn.execute("SELECT * FROM treatments WHERE id = ?", (treatment_id,)).fetchone()
        return _treatment_from_row(row) if row else None

    # started_at keeps its original offset, so order by instant rather than by text
    def list_treatments_for_patient(self, patient_id: str) -> List[Treatment]:
        with self._transaction("list_treatments_for_patient") as conn:
            rows = conn.execute("SELECT * FROM treatments WHERE patient_id = ?", (patient_id,)).fetchall()
        return sorted((_treatment_from_row(r) for r in rows), key=lambda t: t.started_at, reverse=True)

    def list_active_treatments(self) -> List[Treatment]:
        with self._transaction("list_active_treatments") as conn:
            rows = conn.execute(
                "SELECT * FROM treatments WHERE status = ?", (TreatmentStatus.ACTIVE.value,),
            ).fetchall()
        return sorted((_treatment_from_row(r) for r in rows), key=lambda t: t.started_at, reverse=True)

    def _compare_and_set(self, operation: str, treatment_id: str, expected_version: int,
                         assignments: Dict[str, object], audit: Optional[AuditEntry] = None) -> Treatment:
        columns = ", ".join(f"{name} = ?" for name in assignments)
        params = list(assignments.values()) + [
            datetime.now(timezone.utc).isoformat(), treatment_id, expected_version,
        ]
        with self._transaction(operation) as conn:
            cursor = conn.execute(
                f"UPDATE treatments SET {columns}, version = version + 1, updated_at = ? "
                "WHERE id = ? AND version = ?",
                params,
            )
            if cursor.rowcount == 0:
                row = conn.execute("SELECT version FROM treatments WHERE id = ?", (treatment_id,)).fetchone()
                if row is None:
                    raise PersistenceFailure(f"Treatment {treatment_id} does not exist")
                raise ConcurrentModificationError(
                    f"Treatment {treatment_id} changed (expected v{expected_version}, found v{row['version']})"
                )
            if audit is not None:
                self._insert_log_row(conn, audit)
            row = conn.execute("SELECT * FROM treatments WHERE id = ?", (treatment_id,)).fetchone()
        return _treatment_from_row(row)

    def update_stage_data(self, treatment_id, stage_data, expected_version, audit=None):
        payload = json.dumps({k: v.to_dict() for k, v in stage_data.items()})
        return self._compare_and_set("update_stage_data", treatment_id, expected_version,
                                     {"stage_data_json": payload}, audit)

    def update_progress(self, treatment_id, tasks_completed, progress, status, expected_version, audit=None):
        return self._compare_and_set(
            "update_progress", treatment_id, expected_version,
            {"tasks_completed": tasks_completed, "progress": progress, "status": status.value},
            audit,
        )

    def update_survey(self, treatment_id, survey, expected_version):
        return self._compare_and_set("update_survey", treatment_id, expected_version,
                                     {"survey_json": json.dumps(survey.to_dict())})

    def delete_treatment(self, treatment_id: str) -> bool:
        # Treatment and its history go together
        with self._transaction("delete_treatment") as conn:
            conn.execute("DELETE FROM treatment_logs WHERE treatment_id = ?", (treatment_id,))
            deleted = conn.execute("DELETE FROM treatments WHERE id = ?", (treatment_id,)).rowcount
        return deleted > 0

    # --- audit log ---

    def _insert_log_row(self, conn: sqlite3.Connection, entry: AuditEntry) -> None:
        conn.execute(
            """
            INSERT INTO treatment_logs (id, treatment_id, action, description, metadata_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                uuid.uuid4().hex,
                entry.treatment_id,
                entry.action,
                entry.description,
                json.dumps(entry.metadata),
                _dt_to_str(entry.timestamp),
            ),
        )

    def append(self, entry: AuditEntry) -> None:
        with self._transaction("append_log") as conn:
            self._insert_log_row(conn, entry)

    def list_audit_entries(self, treatment_id: str) -> List[AuditEntry]:
        with self._transaction("list_audit_entries") as conn:
            rows = conn.execute("SELECT * FROM treatment_logs WHERE treatment_id = ?", (treatment_id,)).fetchall()
        entries = [
            AuditEntry(
                treatment_id=r["treatment_id"],
                action=r["action"],
                description=r["description"],
                timestamp=_dt_from_str(r["created_at"]),
                metadata=json.loads(r["metadata_json"] or "{}"),
            )
            for r in rows
        ]
        return sorted(entries, key=lambda e: e.timestamp, reverse=True)

    def delete_audit_entries(self, treatment_id: str) -> None:
        with self._transaction("delete_audit_entries") as conn:
            conn.execute("DELETE FROM treatment_logs WHERE treatment_id = ?", (treatment_id,))

# --- 4. MEDIA ---

class LocalMediaStorage(MediaStorage):
    """Writes uploads under a directory and hands back file:// URLs."""

    def __init__(self, root_dir: str) -> None:
        self.root_dir = root_dir

    def save(self, content: bytes, filename: str) -> str:
        _, ext = os.path.splitext(os.path.basename(filename or ""))
        name = f"{uuid.uuid4().hex}{ext.lower()}"
        path = os.path.abspath(os.path.join(self.root_dir, name))
        try:
            os.makedirs(self.root_dir, exist_ok=True)
            with open(path, "wb") as fh:
                fh.write(content)
        except OSError as exc:
            logger.error("Media upload failed for %s: %s", filename, exc)
            raise PersistenceFailure(f"Could not store upload {filename!r}: {exc}") from exc
        return f"file://{path}"

    def discard(self, url: str) -> None:
        path = url[len("file://"):] if url.startswith("file://") else url
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove orphaned upload %s: %s", url, exc)
