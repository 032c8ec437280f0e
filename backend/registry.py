"""
FollowFlow: Treatment Registry
==============================
The only entry point that mutates treatments. Each intent-named operation
is one read-modify-write: load, apply a pure transition from
stage_gate.py / protocol.py, then compare-and-set against the loaded version.

"Now" is always read from the injected clock, never from the caller.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import dashboard
from constants import AUDIT_ACTIONS, Settings
from messages import format_script, survey_invitation
from models import (
    AuditEntry,
    ConcurrentModificationError,
    ConfirmationRequired,
    DuplicateActiveTreatment,
    DashboardRow,
    DashboardStats,
    FollowUpError,
    InvalidStageMutation,
    InvalidSurveyTransition,
    PatientNotFound,
    PatientStatus,
    PersistenceFailure,
    ProcedureNotFound,
    StageData,
    StageGateNotSatisfied,
    StageLocked,
    StageState,
    StageView,
    Survey,
    Treatment,
    TreatmentNotFound,
    TreatmentStatus,
)
from protocol import ProtocolStateMachine, stage_key
from stage_gate import StageGate
from store import AuditLogSink, MediaStorage, PatientStore, ProcedureStore, TreatmentStore

logger = logging.getLogger(__name__)

class TreatmentRegistry:
    def __init__(self, patients: PatientStore, procedures: ProcedureStore, treatments: TreatmentStore,
                 audit: AuditLogSink, media: Optional[MediaStorage] = None,
                 settings: Optional[Settings] = None, clock: Optional[Callable[[], datetime]] = None):
        self.patients = patients
        self.procedures = procedures
        self.treatments = treatments
        self.audit = audit
        self.media = media
        self.settings = settings or Settings()
        self._clock = clock or (lambda: datetime.now(self.settings.tz))

    # --- 1. HELPERS ---

    def now(self) -> datetime:
        return self._clock()

    def _localize(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=self.settings.tz)
        return value

    def _load(self, treatment_id: str, expected_version: Optional[int] = None) -> Treatment:
        treatment = self.treatments.get_treatment(treatment_id)
        if treatment is None:
            raise TreatmentNotFound(f"Treatment {treatment_id} not found")
        if expected_version is not None and expected_version != treatment.version:
            raise ConcurrentModificationError(
                f"Treatment {treatment_id} changed (expected v{expected_version}, found v{treatment.version})"
            )
        return treatment

    def _patient(self, patient_id: str):
        patient = self.patients.get_patient(patient_id)
        if patient is None:
            raise PatientNotFound(f"Patient {patient_id} not found")
        return patient

    def _stage(self, treatment: Treatment, stage_number: int):
        try:
            return ProtocolStateMachine.get_stage(treatment, stage_number)
        except IndexError as exc:
            raise InvalidStageMutation(str(exc)) from exc

    def _mutate_stage(self, treatment_id: str, stage_number: int,
                      mutate: Callable[[StageData], StageData],
                      expected_version: Optional[int] = None,
                      audit: Optional[AuditEntry] = None) -> Tuple[Treatment, StageData]:
        treatment = self._load(treatment_id, expected_version)
        self._stage(treatment, stage_number)
        updated, data = ProtocolStateMachine.apply_stage_mutation(treatment, stage_number, mutate)
        stored = self.treatments.update_stage_data(treatment.id, updated.stage_data, treatment.version, audit)
        return stored, data

    @staticmethod
    def _entry(treatment_id: str, action: str, description: str, at: datetime, **metadata) -> AuditEntry:
        # Written by the treatment store in the same commit as the change it describes
        return AuditEntry(
            treatment_id=treatment_id,
            action=action,
            description=description,
            timestamp=at,
            metadata=metadata,
        )

    # --- 2. LIFECYCLE ---

    def create_treatment(self, patient_id: str, procedure_id: str,
                         started_at: Optional[datetime] = None) -> Treatment:
        self._patient(patient_id)
        procedure = self.procedures.get_procedure(procedure_id)
        if procedure is None:
            raise ProcedureNotFound(f"Procedure {procedure_id} not found")
        if not procedure.scripts:
            raise ValueError(f'Procedure "{procedure.name}" has no follow-up stages configured')

        for existing in self.treatments.list_treatments_for_patient(patient_id):
            if existing.procedure_id == procedure_id and existing.is_active:
                logger.warning("Duplicate active protocol for patient %s / %s", patient_id, procedure.name)
                raise DuplicateActiveTreatment(procedure.name)

        treatment = Treatment(
            id=uuid.uuid4().hex,
            patient_id=patient_id,
            procedure_id=procedure.id,
            procedure_name=procedure.name,
            started_at=self._localize(started_at or self.now()),
            scripts=tuple(procedure.scripts),
            has_survey=procedure.has_survey,
            total_tasks=len(procedure.scripts),
            stage_data={stage_key(n): StageData() for n in range(1, len(procedure.scripts) + 1)},
            survey=Survey(),
        )
        stored = self.treatments.insert_treatment(treatment)
        logger.info("Treatment %s created: patient=%s procedure=%s stages=%d",
                    stored.id, patient_id, procedure.name, stored.total_tasks)
        return stored

    def delete_treatment(self, treatment_id: str, confirmed: bool = False) -> None:
        if not confirmed:
            raise ConfirmationRequired("Deleting a treatment requires explicit confirmation")
        self._load(treatment_id)
        self.treatments.delete_treatment(treatment_id)
        self.audit.delete_audit_entries(treatment_id)
        logger.info("Treatment %s deleted with its audit log", treatment_id)

    # --- 3. QUERIES ---

    def get_treatment(self, treatment_id: str) -> Treatment:
        return self._load(treatment_id)

    def list_patient_treatments(self, patient_id: str) -> List[Treatment]:
        return self.treatments.list_treatments_for_patient(patient_id)

    def list_active_treatments(self) -> List[Treatment]:
        return self.treatments.list_active_treatments()

    def get_audit_log(self, treatment_id: str) -> List[AuditEntry]:
        self._load(treatment_id)
        return self.audit.list_audit_entries(treatment_id)

    def stage_views(self, treatment_id: str) -> List[StageView]:
        treatment = self._load(treatment_id)
        patient = self.patients.get_patient(treatment.patient_id)
        reference = ProtocolStateMachine.reference_date(treatment, patient)
        return ProtocolStateMachine.stage_views(treatment, reference, self.now(), self.settings.tz)

    def dashboard_overview(self, status: Optional[PatientStatus] = None) -> Tuple[List[DashboardRow], DashboardStats]:
        """Rows for the control panel (optionally filtered) and the unfiltered stats."""
        patients: Dict = {p.id: p for p in self.patients.list_patients()}
        rows = dashboard.build_rows(self.list_active_treatments(), patients, self.now(), self.settings.tz)
        stats = dashboard.compute_stats(rows, total_patients=len(patients))
        return dashboard.filter_rows(rows, status), stats

    # --- 4. MESSAGES (manual delivery) ---

    def render_stage_message(self, treatment_id: str, stage_number: int) -> str:
        treatment = self._load(treatment_id)
        stage = self._stage(treatment, stage_number)
        patient = self._patient(treatment.patient_id)
        return format_script(stage.template, patient.name, self.settings.clinic_name)

    def render_survey_message(self, treatment_id: str) -> str:
        treatment = self._load(treatment_id)
        if not treatment.has_survey:
            raise InvalidSurveyTransition(f'Procedure "{treatment.procedure_name}" has no survey')
        return survey_invitation(self._patient(treatment.patient_id).name)

    # --- 5. STAGE INTENTS ---

    def toggle_checklist_item(self, treatment_id: str, stage_number: int, action_id: str, checked: bool,
                              expected_version: Optional[int] = None) -> Treatment:
        treatment = self._load(treatment_id, expected_version)
        stage = self._stage(treatment, stage_number)
        if action_id not in {a.id for a in StageGate.checklist_actions(stage)}:
            raise InvalidStageMutation(f"Stage {stage_number} has no checklist item {action_id!r}")
        stored, _ = self._mutate_stage(
            treatment_id, stage_number,
            lambda data: StageGate.toggle_checklist(data, action_id, checked),
            expected_version=treatment.version,
        )
        return stored

    def register_message_sent(self, treatment_id: str, stage_number: int,
                              expected_version: Optional[int] = None) -> Treatment:
        at = self.now()
        stored, _ = self._mutate_stage(
            treatment_id, stage_number,
            lambda data: StageGate.register_message_sent(data, at),
            expected_version,
            self._entry(treatment_id, AUDIT_ACTIONS.MANUAL_MESSAGE_REGISTERED,
                        f"Registered manual message for stage {stage_number}", at, stage=stage_number),
        )
        return stored

    def begin_response_registration(self, treatment_id: str, stage_number: int,
                                    expected_version: Optional[int] = None) -> Treatment:
        stored, _ = self._mutate_stage(treatment_id, stage_number, StageGate.begin_response, expected_version)
        return stored

    def confirm_response(self, treatment_id: str, stage_number: int, responded: bool,
                         expected_version: Optional[int] = None) -> Treatment:
        at = self.now()
        stored, _ = self._mutate_stage(
            treatment_id, stage_number,
            lambda data: StageGate.confirm_response(data, responded, at),
            expected_version,
        )
        return stored

    def save_response_content(self, treatment_id: str, stage_number: int, content: str,
                              expected_version: Optional[int] = None) -> Treatment:
        at = self.now()
        stored, _ = self._mutate_stage(
            treatment_id, stage_number,
            lambda data: StageGate.save_response_content(data, content, at),
            expected_version,
        )
        return stored

    def register_photo_request(self, treatment_id: str, stage_number: int,
                               expected_version: Optional[int] = None) -> Treatment:
        at = self.now()
        stored, _ = self._mutate_stage(
            treatment_id, stage_number,
            lambda data: StageGate.register_photo_request(data, at),
            expected_version,
            self._entry(treatment_id, AUDIT_ACTIONS.PHOTO_REQUEST_REGISTERED,
                        f"Registered photo request for stage {stage_number}", at, stage=stage_number),
        )
        return stored

    def register_photo_response(self, treatment_id: str, stage_number: int, received: bool,
                                photo_url: Optional[str] = None,
                                expected_version: Optional[int] = None) -> Treatment:
        at = self.now()
        stored, _ = self._mutate_stage(
            treatment_id, stage_number,
            lambda data: StageGate.register_photo_response(data, received, at, photo_url),
            expected_version,
        )
        return stored

    def upload_stage_photo(self, treatment_id: str, stage_number: int, content: bytes, filename: str,
                           expected_version: Optional[int] = None) -> Treatment:
        """Stores the file first; only a durable URL is ever written to the stage."""
        if self.media is None:
            raise PersistenceFailure("No media storage configured")
        if not content:
            raise InvalidStageMutation("Uploaded photo is empty")

        treatment = self._load(treatment_id, expected_version)
        self._stage(treatment, stage_number)
        state = ProtocolStateMachine.stage_state(treatment, stage_number)
        if state != StageState.ACTIVE:
            raise StageLocked(f"Stage {stage_number} is {state.value} and cannot be edited")

        url = self.media.save(content, filename)
        try:
            return self.register_photo_response(
                treatment_id, stage_number, received=True, photo_url=url, expected_version=treatment.version,
            )
        except FollowUpError:
            logger.warning("Treatment %s: stage %d photo not recorded, discarding %s",
                           treatment_id, stage_number, url)
            self.media.discard(url)
            raise

    def complete_stage(self, treatment_id: str, expected_version: Optional[int] = None) -> Treatment:
        treatment = self._load(treatment_id, expected_version)
        number = ProtocolStateMachine.active_stage_number(treatment)
        try:
            advanced = ProtocolStateMachine.advance(treatment)
        except StageGateNotSatisfied as exc:
            logger.warning("Treatment %s: advance rejected (%s)", treatment_id, ", ".join(exc.missing))
            raise

        stage = ProtocolStateMachine.get_stage(treatment, number)
        entry = self._entry(treatment_id, AUDIT_ACTIONS.TASK_COMPLETED, f"Completed stage {number}: {stage.title}",
                            self.now(), stage=number, task_index=number - 1)
        stored = self.treatments.update_progress(
            treatment.id, advanced.tasks_completed, advanced.progress, advanced.status, treatment.version, entry,
        )

        if stored.status == TreatmentStatus.COMPLETED:
            logger.info("Treatment %s completed (%d/%d)", treatment_id, stored.tasks_completed, stored.total_tasks)
        else:
            logger.info("Treatment %s advanced to stage %d (%d%%)", treatment_id, number + 1, stored.progress)
        return stored

    # --- 6. SURVEY ---

    def send_survey(self, treatment_id: str, expected_version: Optional[int] = None) -> Treatment:
        treatment = self._load(treatment_id, expected_version)
        updated = ProtocolStateMachine.send_survey(treatment, self.now())
        stored = self.treatments.update_survey(treatment.id, updated.survey, treatment.version)
        logger.info("Treatment %s: survey sent", treatment_id)
        return stored

    def register_survey_response(self, treatment_id: str, rating: Optional[int] = None,
                                 comment: Optional[str] = None,
                                 expected_version: Optional[int] = None) -> Treatment:
        treatment = self._load(treatment_id, expected_version)
        updated = ProtocolStateMachine.register_survey_response(treatment, self.now(), rating, comment)
        stored = self.treatments.update_survey(treatment.id, updated.survey, treatment.version)
        logger.info("Treatment %s: survey response registered", treatment_id)
        return stored
