# main.py

import base64
import logging
from typing import Any, Dict, Optional
from datetime import datetime
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from constants import VERSION, Settings
from models import (
    ConcurrentModificationError,
    ConfirmationRequired,
    DashboardRow,
    DuplicateActiveTreatment,
    FollowUpError,
    InvalidSurveyTransition,
    NotFoundError,
    PatientStatus,
    PersistenceFailure,
    StageGateNotSatisfied,
    StageLocked,
    StageView,
    Treatment,
)
from protocol import ProtocolStateMachine
from registry import TreatmentRegistry
from store import LocalMediaStorage, SQLiteStore

# --- 1. CONFIGURATION & LOGGING ---
settings = Settings.from_env()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger("followflow-api")

app = FastAPI(
    title="FollowFlow API",
    version=VERSION,
    description="Post-procedure follow-up tracker for aesthetic clinics. \n\n"
                "Messages are delivered manually by the operator; this API only tracks "
                "protocol progress, deadlines and patient responses.",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_registry: Optional[TreatmentRegistry] = None

def build_registry(config: Settings) -> TreatmentRegistry:
    store = SQLiteStore(config.db_path)
    store.init_db()
    return TreatmentRegistry(
        patients=store,
        procedures=store,
        treatments=store,
        audit=store,
        media=LocalMediaStorage(config.media_dir),
        settings=config,
    )

def get_registry() -> TreatmentRegistry:
    """Built on first use so importing the app never touches the database."""
    global _registry
    if _registry is None:
        _registry = build_registry(settings)
        logger.info("Registry ready (db=%s, tz=%s)", settings.db_path, settings.timezone)
    return _registry

# --- 2. ERROR MAPPING ---
# Order matters: subclasses before their bases
ERROR_STATUS = (
    (NotFoundError, 404),
    (ConcurrentModificationError, 409),
    (DuplicateActiveTreatment, 409),
    (StageGateNotSatisfied, 409),
    (StageLocked, 409),
    (InvalidSurveyTransition, 409),
    (ConfirmationRequired, 428),
    (PersistenceFailure, 503),
    (ValueError, 422),
)

def status_for(exc: Exception) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 400

@app.exception_handler(FollowUpError)
async def follow_up_error_handler(request: Request, exc: FollowUpError):
    status_code = status_for(exc)
    body: Dict[str, Any] = {"detail": str(exc)}
    if isinstance(exc, StageGateNotSatisfied):
        body["missing"] = exc.missing
    if isinstance(exc, PersistenceFailure):
        body["retryable"] = exc.retryable
        if status_code == 503:
            logger.error(f"Persistence failure on {request.url.path}: {exc}")
    else:
        logger.warning(f"Rejected {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=status_code, content=body)

@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    # Validation errors raised by the engine (bad rating, bad base64, empty template...)
    logger.warning(f"Validation Error on {request.url.path}: {str(exc)}")
    return JSONResponse(status_code=422, content={"detail": f"Validation Error: {str(exc)}"})

@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"Internal Engine Failure: {str(exc)}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal Follow-up Engine Error"})

# --- 3. STRICT INPUT SCHEMA ---
class VersionedRequest(BaseModel):
    # Optimistic concurrency: send back the version you loaded
    expected_version: Optional[int] = Field(None, ge=1, description="Treatment version the client last saw")

class CreateTreatmentRequest(BaseModel):
    patient_id: str = Field(..., min_length=1)
    procedure_id: str = Field(..., min_length=1)
    started_at: Optional[datetime] = Field(None, description="Defaults to the server clock")

    model_config = ConfigDict(json_schema_extra={
        "example": {"patient_id": "pat-001", "procedure_id": "proc-botox"}
    })

class ChecklistToggleRequest(VersionedRequest):
    action_id: str = Field(..., min_length=1)
    checked: bool = True

class ResponseConfirmationRequest(VersionedRequest):
    responded: bool = Field(..., description="Did the patient answer the follow-up message?")

class ResponseContentRequest(VersionedRequest):
    content: str = Field(..., min_length=1, max_length=4000)

class PhotoResponseRequest(VersionedRequest):
    received: bool
    photo_url: Optional[str] = Field(None, description="Required when received is true")

class PhotoUploadRequest(VersionedRequest):
    filename: str = Field(..., min_length=1, max_length=255)
    content_base64: str = Field(..., min_length=1)

class SurveyResponseRequest(VersionedRequest):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)

# --- 4. RESPONSE SHAPES ---
def treatment_payload(treatment: Treatment) -> Dict[str, Any]:
    data = treatment.to_dict()
    data["active_stage"] = ProtocolStateMachine.active_stage_number(treatment)
    data["can_advance"] = ProtocolStateMachine.can_advance(treatment)
    data["survey_available"] = ProtocolStateMachine.survey_available(treatment)
    return data

def stage_view_payload(view: StageView) -> Dict[str, Any]:
    return {
        "number": view.number,
        "title": view.stage.title,
        "state": view.state.value,
        "stage": view.stage.to_dict(),
        "data": view.data.to_dict(),
        "due_date": view.due_date.isoformat() if view.due_date else None,
        "sla": view.sla.value if view.sla else None,
        "due_today": view.due_today,
        "due_label": view.due_label,
        "error": view.error,
        "can_advance": view.can_advance,
        "missing": view.missing,
    }

def dashboard_row_payload(row: DashboardRow) -> Dict[str, Any]:
    return {
        "treatment_id": row.treatment.id,
        "patient_id": row.patient.id,
        "patient_name": row.patient.name,
        "procedure_name": row.treatment.procedure_name,
        "active_stage": ProtocolStateMachine.active_stage_number(row.treatment),
        "progress": row.treatment.progress,
        "status": row.status.value,
        "due_date": row.due_date.isoformat() if row.due_date else None,
    }

# --- 5. ENDPOINTS ---

@app.get("/")
def read_root():
    return {"status": "active", "message": "FollowFlow API is running successfully!"}

@app.get("/health")
def health_check():
    """Load balancer health probe"""
    return {"status": "active", "version": VERSION, "module": "followflow-protocol-engine"}

@app.post("/treatments", status_code=201)
def create_treatment(request: CreateTreatmentRequest, registry: TreatmentRegistry = Depends(get_registry)):
    logger.info(f"Starting protocol {request.procedure_id} for patient {request.patient_id}")
    treatment = registry.create_treatment(request.patient_id, request.procedure_id, request.started_at)
    return treatment_payload(treatment)

@app.get("/treatments/{treatment_id}")
def get_treatment(treatment_id: str, registry: TreatmentRegistry = Depends(get_registry)):
    return treatment_payload(registry.get_treatment(treatment_id))

@app.delete("/treatments/{treatment_id}")
def delete_treatment(treatment_id: str, confirmed: bool = False,
                     registry: TreatmentRegistry = Depends(get_registry)):
    registry.delete_treatment(treatment_id, confirmed=confirmed)
    return {"deleted": treatment_id}

@app.get("/patients/{patient_id}/treatments")
def list_patient_treatments(patient_id: str, registry: TreatmentRegistry = Depends(get_registry)):
    return [treatment_payload(t) for t in registry.list_patient_treatments(patient_id)]

@app.get("/treatments/{treatment_id}/stages")
def list_stages(treatment_id: str, registry: TreatmentRegistry = Depends(get_registry)):
    return [stage_view_payload(v) for v in registry.stage_views(treatment_id)]

@app.get("/treatments/{treatment_id}/stages/{stage_number}/message")
def stage_message(treatment_id: str, stage_number: int, registry: TreatmentRegistry = Depends(get_registry)):
    return {"stage": stage_number, "text": registry.render_stage_message(treatment_id, stage_number)}

@app.post("/treatments/{treatment_id}/stages/{stage_number}/checklist")
def toggle_checklist(treatment_id: str, stage_number: int, request: ChecklistToggleRequest,
                     registry: TreatmentRegistry = Depends(get_registry)):
    treatment = registry.toggle_checklist_item(
        treatment_id, stage_number, request.action_id, request.checked, request.expected_version,
    )
    return treatment_payload(treatment)

@app.post("/treatments/{treatment_id}/stages/{stage_number}/message-sent")
def register_message_sent(treatment_id: str, stage_number: int, request: Optional[VersionedRequest] = None,
                          registry: TreatmentRegistry = Depends(get_registry)):
    version = request.expected_version if request else None
    return treatment_payload(registry.register_message_sent(treatment_id, stage_number, version))

@app.post("/treatments/{treatment_id}/stages/{stage_number}/response/begin")
def begin_response(treatment_id: str, stage_number: int, request: Optional[VersionedRequest] = None,
                   registry: TreatmentRegistry = Depends(get_registry)):
    version = request.expected_version if request else None
    return treatment_payload(registry.begin_response_registration(treatment_id, stage_number, version))

@app.post("/treatments/{treatment_id}/stages/{stage_number}/response/confirm")
def confirm_response(treatment_id: str, stage_number: int, request: ResponseConfirmationRequest,
                     registry: TreatmentRegistry = Depends(get_registry)):
    treatment = registry.confirm_response(treatment_id, stage_number, request.responded, request.expected_version)
    return treatment_payload(treatment)

@app.post("/treatments/{treatment_id}/stages/{stage_number}/response/content")
def save_response_content(treatment_id: str, stage_number: int, request: ResponseContentRequest,
                          registry: TreatmentRegistry = Depends(get_registry)):
    treatment = registry.save_response_content(
        treatment_id, stage_number, request.content, request.expected_version,
    )
    return treatment_payload(treatment)

@app.post("/treatments/{treatment_id}/stages/{stage_number}/photo-request")
def register_photo_request(treatment_id: str, stage_number: int, request: Optional[VersionedRequest] = None,
                           registry: TreatmentRegistry = Depends(get_registry)):
    version = request.expected_version if request else None
    return treatment_payload(registry.register_photo_request(treatment_id, stage_number, version))

@app.post("/treatments/{treatment_id}/stages/{stage_number}/photo-response")
def register_photo_response(treatment_id: str, stage_number: int, request: PhotoResponseRequest,
                            registry: TreatmentRegistry = Depends(get_registry)):
    treatment = registry.register_photo_response(
        treatment_id, stage_number, request.received, request.photo_url, request.expected_version,
    )
    return treatment_payload(treatment)

@app.post("/treatments/{treatment_id}/stages/{stage_number}/photo-upload")
def upload_photo(treatment_id: str, stage_number: int, request: PhotoUploadRequest,
                 registry: TreatmentRegistry = Depends(get_registry)):
    # binascii.Error is a ValueError -> 422
    content = base64.b64decode(request.content_base64, validate=True)
    logger.info(f"Photo upload for treatment {treatment_id} stage {stage_number}: {len(content)} bytes")
    treatment = registry.upload_stage_photo(
        treatment_id, stage_number, content, request.filename, request.expected_version,
    )
    return treatment_payload(treatment)

@app.post("/treatments/{treatment_id}/advance")
def advance(treatment_id: str, request: Optional[VersionedRequest] = None,
            registry: TreatmentRegistry = Depends(get_registry)):
    version = request.expected_version if request else None
    return treatment_payload(registry.complete_stage(treatment_id, version))

@app.get("/treatments/{treatment_id}/survey/message")
def survey_message(treatment_id: str, registry: TreatmentRegistry = Depends(get_registry)):
    return {"text": registry.render_survey_message(treatment_id)}

@app.post("/treatments/{treatment_id}/survey/send")
def send_survey(treatment_id: str, request: Optional[VersionedRequest] = None,
                registry: TreatmentRegistry = Depends(get_registry)):
    version = request.expected_version if request else None
    return treatment_payload(registry.send_survey(treatment_id, version))

@app.post("/treatments/{treatment_id}/survey/response")
def register_survey_response(treatment_id: str, request: SurveyResponseRequest,
                             registry: TreatmentRegistry = Depends(get_registry)):
    treatment = registry.register_survey_response(
        treatment_id, request.rating, request.comment, request.expected_version,
    )
    return treatment_payload(treatment)

@app.get("/treatments/{treatment_id}/logs")
def treatment_logs(treatment_id: str, registry: TreatmentRegistry = Depends(get_registry)):
    return [entry.to_dict() for entry in registry.get_audit_log(treatment_id)]

@app.get("/dashboard")
def dashboard(status: Optional[PatientStatus] = None, registry: TreatmentRegistry = Depends(get_registry)):
    rows, stats = registry.dashboard_overview(status)
    return {
        "stats": {
            "total_patients": stats.total_patients,
            "total_open_protocols": stats.total_open_protocols,
            "due_today": stats.due_today,
            "overdue": stats.overdue,
        },
        "rows": [dashboard_row_payload(r) for r in rows],
    }
