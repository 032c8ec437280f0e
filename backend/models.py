"""
FollowFlow: Data Dictionary for the Treatment Protocol Engine
=============================================================
This module defines the records the protocol engine works on: the read-only
templates (Procedure / ScriptStage), the mutable per-treatment state
(Treatment / StageData / Survey) and the derived views handed to the UI.

NO LOGIC is implemented here beyond (de)serialisation. Timing lives in
timing.py, gates in stage_gate.py, transitions in protocol.py.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from constants import ActionType, TimingUnit

# --- 1. ERRORS ---

class FollowUpError(Exception):
    """Base class for every error raised by the protocol engine."""
    pass

class InvalidTimingRule(FollowUpError, ValueError):
    """Malformed or unrecognised timing configuration on a stage."""
    pass

class DuplicateActiveTreatment(FollowUpError):
    """The patient already runs an active protocol for this procedure."""

    def __init__(self, procedure_name: str):
        self.procedure_name = procedure_name
        super().__init__(
            f'Patient already has an active protocol for "{procedure_name}". '
            "Finish the current one before starting a new one."
        )

class StageGateNotSatisfied(FollowUpError):
    """Advance requested while the active stage's gate is still closed."""

    def __init__(self, stage_number: int, missing: List[str]):
        self.stage_number = stage_number
        self.missing = list(missing)
        super().__init__(f"Stage {stage_number} cannot be completed yet: {', '.join(self.missing)}")

class StageLocked(FollowUpError):
    """Completed and future stages are read-only."""
    pass

class InvalidStageMutation(FollowUpError, ValueError):
    """A stage mutation was called with inconsistent arguments."""
    pass

class InvalidSurveyTransition(FollowUpError):
    pass

class ConfirmationRequired(FollowUpError):
    """Destructive operation called without the operator's explicit confirmation."""
    pass

class NotFoundError(FollowUpError):
    pass

class TreatmentNotFound(NotFoundError):
    pass

class PatientNotFound(NotFoundError):
    pass

class ProcedureNotFound(NotFoundError):
    pass

class PersistenceFailure(FollowUpError):
    """Storage I/O failed; the previously committed state is untouched."""
    retryable = True

class ConcurrentModificationError(PersistenceFailure):
    """Optimistic concurrency check failed: someone else wrote first."""
    pass

# --- 2. ENUMS ---

class PhotoStatus(Enum):
    PENDING = "pending"
    RECEIVED = "received"
    REFUSED = "refused"

class SurveyStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    RESPONDED = "responded"

class TreatmentStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"

class ResponseState(Enum):
    """
    Contact outcome for a stage. Replaces the stored tri-state flag:
    missing -> NOT_ASKED, null -> AWAITING_DECISION, true/false -> (NOT_)RESPONDED.
    """
    NOT_ASKED = "not_asked"
    AWAITING_DECISION = "awaiting_decision"
    RESPONDED = "responded"
    NOT_RESPONDED = "not_responded"

    @property
    def is_resolved(self) -> bool:
        return self in (ResponseState.RESPONDED, ResponseState.NOT_RESPONDED)

class SLAStatus(Enum):
    ONTIME = "ontime"
    WARNING = "warning"
    LATE = "late"

class StageState(Enum):
    COMPLETED = "completed"
    ACTIVE = "active"
    FUTURE = "future"

class PatientStatus(Enum):
    """Dashboard rollup of a treatment's active stage."""
    DUE_TODAY = "due_today"
    LATE = "late"
    ON_TIME = "on_time"

# --- 3. SERIALISATION HELPERS ---

def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None

def _dt_from_str(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))

# --- 4. TEMPLATE LAYER (read-only, shared) ---

@dataclass(frozen=True)
class TimingRule:
    """
    Tagged union: kind 'delay' uses value/unit, kind 'specific' uses days_after/time.
    Kept permissive on load so one bad stage never blocks a whole template;
    timing.resolve_due_date rejects what it cannot interpret.
    """
    kind: str
    value: Optional[int] = None       # delay
    unit: Optional[str] = None        # delay: minutes|hours|days|weeks
    days_after: Optional[int] = None  # specific
    time: Optional[str] = None        # specific: "HH:MM"

    @classmethod
    def delay(cls, value: int, unit) -> "TimingRule":
        unit_value = unit.value if isinstance(unit, TimingUnit) else unit
        return cls(kind="delay", value=value, unit=unit_value)

    @classmethod
    def specific(cls, days_after: int, time: str) -> "TimingRule":
        return cls(kind="specific", days_after=days_after, time=time)

    def to_dict(self) -> Dict[str, Any]:
        if self.kind == "delay":
            return {"type": "delay", "delay": {"value": self.value, "unit": self.unit}}
        if self.kind == "specific":
            return {"type": "specific", "specific": {"daysAfter": self.days_after, "time": self.time}}
        return {"type": self.kind}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimingRule":
        kind = str(data.get("type", ""))
        delay = data.get("delay") or {}
        specific = data.get("specific") or {}
        return cls(
            kind=kind,
            value=delay.get("value"),
            unit=delay.get("unit"),
            days_after=specific.get("daysAfter", specific.get("days_after")),
            time=specific.get("time"),
        )

@dataclass(frozen=True)
class Action:
    id: str
    description: str
    type: ActionType = ActionType.CHECKLIST

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "description": self.description, "type": self.type.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Action":
        raw_type = data.get("type", ActionType.CHECKLIST.value)
        try:
            action_type = ActionType(raw_type)
        except ValueError:
            action_type = ActionType.CUSTOM  # Unknown kinds are still ticked off by hand
        return cls(id=str(data["id"]), description=data.get("description", ""), type=action_type)

@dataclass(frozen=True)
class ScriptStage:
    """One scripted check-in of a procedure's follow-up protocol."""
    index: int                        # 1-based position, fixed at creation
    title: str
    template: str = ""                # Message with #NomePaciente / #NomeClinica tokens
    actions: Tuple[Action, ...] = ()
    timing: Optional[TimingRule] = None
    request_media: bool = False
    id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "index": self.index,
            "title": self.title,
            "template": self.template,
            "actions": [a.to_dict() for a in self.actions],
            "timing": self.timing.to_dict() if self.timing else None,
            "requestMedia": self.request_media,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: Optional[int] = None) -> "ScriptStage":
        timing = data.get("timing")
        return cls(
            index=int(data.get("index") or index or 1),
            title=data.get("title", ""),
            template=data.get("template", ""),
            actions=tuple(Action.from_dict(a) for a in data.get("actions") or []),
            timing=TimingRule.from_dict(timing) if timing else None,
            request_media=bool(data.get("requestMedia", data.get("request_media", False))),
            id=str(data.get("id", "")),
        )

def scripts_from_list(items: List[Dict[str, Any]]) -> Tuple[ScriptStage, ...]:
    # Position in the stored array is the stage order
    return tuple(ScriptStage.from_dict(item, index=i) for i, item in enumerate(items, start=1))

@dataclass(frozen=True)
class Procedure:
    id: str
    name: str
    scripts: Tuple[ScriptStage, ...] = ()
    has_survey: bool = False

@dataclass(frozen=True)
class Patient:
    """Owned by the patient registry; the engine only reads it."""
    id: str
    name: str
    procedure_date: Optional[datetime] = None  # SLA reference date
    phone: str = ""

# --- 5. MUTABLE TREATMENT STATE ---

@dataclass(frozen=True)
class StageData:
    """Operator-recorded progress for one stage of one treatment."""
    checklist: Dict[str, bool] = field(default_factory=dict)

    # Contact sub-state
    message_sent_at: Optional[datetime] = None
    response_state: ResponseState = ResponseState.NOT_ASKED
    message_responded_at: Optional[datetime] = None
    response_content: Optional[str] = None

    # Photo sub-state
    photo_request_sent_at: Optional[datetime] = None
    photo_status: Optional[PhotoStatus] = None
    photo_received_at: Optional[datetime] = None
    photo_url: Optional[str] = None

    @property
    def has_responded(self) -> Optional[bool]:
        if self.response_state == ResponseState.RESPONDED:
            return True
        if self.response_state == ResponseState.NOT_RESPONDED:
            return False
        return None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "checklist": dict(self.checklist),
            "message_sent_at": _dt_to_str(self.message_sent_at),
            "message_responded_at": _dt_to_str(self.message_responded_at),
            "response_content": self.response_content,
            "photo_request_sent_at": _dt_to_str(self.photo_request_sent_at),
            "photo_status": self.photo_status.value if self.photo_status else None,
            "photo_received_at": _dt_to_str(self.photo_received_at),
            "photo_url": self.photo_url,
        }
        # Absent key means "not asked yet"; null is the undecided intermediate state
        if self.response_state != ResponseState.NOT_ASKED:
            data["has_responded"] = self.has_responded
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StageData":
        if not data:
            return cls()
        if "has_responded" not in data:
            state = ResponseState.NOT_ASKED
        elif data["has_responded"] is None:
            state = ResponseState.AWAITING_DECISION
        elif data["has_responded"]:
            state = ResponseState.RESPONDED
        else:
            state = ResponseState.NOT_RESPONDED
        photo_status = data.get("photo_status")
        return cls(
            checklist={str(k): bool(v) for k, v in (data.get("checklist") or {}).items()},
            message_sent_at=_dt_from_str(data.get("message_sent_at")),
            response_state=state,
            message_responded_at=_dt_from_str(data.get("message_responded_at")),
            response_content=data.get("response_content"),
            photo_request_sent_at=_dt_from_str(data.get("photo_request_sent_at")),
            photo_status=PhotoStatus(photo_status) if photo_status else None,
            photo_received_at=_dt_from_str(data.get("photo_received_at")),
            photo_url=data.get("photo_url"),
        )

@dataclass(frozen=True)
class Survey:
    status: SurveyStatus = SurveyStatus.PENDING
    sent_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    rating: Optional[int] = None   # 1..5
    comment: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "sent_at": _dt_to_str(self.sent_at),
            "responded_at": _dt_to_str(self.responded_at),
            "rating": self.rating,
            "comment": self.comment,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Survey":
        if not data:
            return cls()
        return cls(
            status=SurveyStatus(data.get("status", SurveyStatus.PENDING.value)),
            sent_at=_dt_from_str(data.get("sent_at")),
            responded_at=_dt_from_str(data.get("responded_at")),
            rating=data.get("rating"),
            comment=data.get("comment"),
        )

@dataclass
class Treatment:
    """
    One patient walking through one procedure's protocol.
    Owns its scripts snapshot and stage data exclusively.
    """
    id: str
    patient_id: str
    procedure_id: str
    procedure_name: str
    started_at: datetime
    scripts: Tuple[ScriptStage, ...] = ()  # Snapshot taken at creation
    has_survey: bool = False               # Snapshot taken at creation
    status: TreatmentStatus = TreatmentStatus.ACTIVE
    tasks_completed: int = 0
    total_tasks: int = 0
    progress: int = 0                      # 0..100
    stage_data: Dict[str, StageData] = field(default_factory=dict)
    survey: Survey = field(default_factory=Survey)
    version: int = 1                       # Optimistic concurrency token

    @property
    def survey_status(self) -> SurveyStatus:
        return self.survey.status

    @property
    def is_active(self) -> bool:
        return self.status == TreatmentStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "procedure_id": self.procedure_id,
            "procedure_name": self.procedure_name,
            "started_at": _dt_to_str(self.started_at),
            "scripts": [s.to_dict() for s in self.scripts],
            "has_survey": self.has_survey,
            "status": self.status.value,
            "tasks_completed": self.tasks_completed,
            "total_tasks": self.total_tasks,
            "progress": self.progress,
            "stage_data": {k: v.to_dict() for k, v in self.stage_data.items()},
            "survey": self.survey.to_dict(),
            "version": self.version,
        }

@dataclass(frozen=True)
class AuditEntry:
    treatment_id: str
    action: str
    description: str
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "treatment_id": self.treatment_id,
            "action": self.action,
            "description": self.description,
            "metadata": dict(self.metadata),
            "timestamp": _dt_to_str(self.timestamp),
        }

# --- 6. OUTPUT LAYER (derived, never stored) ---

@dataclass
class StageView:
    """A stage as the operator sees it: state plus SLA annotation."""
    number: int
    stage: ScriptStage
    state: StageState
    data: StageData
    due_date: Optional[datetime] = None
    sla: Optional[SLAStatus] = None
    due_today: bool = False
    due_label: str = ""
    error: Optional[str] = None       # e.g. "invalid date" for a broken timing rule
    can_advance: bool = False         # Only ever True on the active stage
    missing: List[str] = field(default_factory=list)

@dataclass
class DashboardRow:
    treatment: Treatment
    patient: Patient
    status: PatientStatus
    due_date: Optional[datetime] = None

@dataclass
class DashboardStats:
    total_patients: int = 0
    total_open_protocols: int = 0
    due_today: int = 0
    overdue: int = 0

__all__ = [
    "FollowUpError", "InvalidTimingRule", "DuplicateActiveTreatment", "StageGateNotSatisfied",
    "StageLocked", "InvalidStageMutation", "InvalidSurveyTransition", "ConfirmationRequired",
    "NotFoundError", "TreatmentNotFound", "PatientNotFound", "ProcedureNotFound",
    "PersistenceFailure", "ConcurrentModificationError",
    "PhotoStatus", "SurveyStatus", "TreatmentStatus", "ResponseState", "SLAStatus",
    "StageState", "PatientStatus",
    "TimingRule", "Action", "ScriptStage", "Procedure", "Patient", "scripts_from_list",
    "StageData", "Survey", "Treatment", "AuditEntry",
    "StageView", "DashboardRow", "DashboardStats",
]
