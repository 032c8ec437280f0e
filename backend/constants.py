import os
from enum import Enum
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List
from zoneinfo import ZoneInfo

VERSION = "1.0.0"

class TimingUnit(Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"

    @classmethod
    def from_value(cls, value):
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip().lower()
            for unit in cls:
                if unit.value == key or unit.name.lower() == key:
                    return unit
            # Templates saved by the Portuguese editor
            legacy = UNIT_ALIASES.get(key)
            if legacy is not None:
                return legacy
        raise ValueError(f"Unknown timing unit: {value!r}")

UNIT_ALIASES = {
    "minutos": TimingUnit.MINUTES,
    "horas": TimingUnit.HOURS,
    "dias": TimingUnit.DAYS,
    "semanas": TimingUnit.WEEKS,
}

class ActionType(Enum):
    CHECKLIST = "checklist"
    MESSAGE = "message"             # Covered by the contact sub-state, not the checklist
    PHOTO_REQUEST = "photo_request" # Covered by the photo sub-state, not the checklist
    CALL = "call"
    APPOINTMENT = "appointment"
    CUSTOM = "custom"

# Action types that are never ticked in the checklist
NON_CHECKLIST_ACTIONS = (ActionType.MESSAGE, ActionType.PHOTO_REQUEST)

class SLA_CONSTANTS:
    # Fixed in the clinic workflow; not configurable per clinic
    WARNING_THRESHOLD = timedelta(minutes=15)
    INVALID_DATE_LABEL = "invalid date"

class MESSAGE_CONSTANTS:
    # Placeholder tokens accepted in stage templates
    PATIENT_TOKENS = ("#NomePaciente", "[Nome]")
    CLINIC_TOKENS = ("#NomeClinica", "[NomeClinica]")
    NO_RESPONSE_CONTENT = "Patient did not respond or there was no effective contact."
    SURVEY_INVITATION = (
        "Hello {first_name}! We would love to know what you thought of your "
        "treatment. Could you answer our quick survey?"
    )

class AUDIT_ACTIONS:
    TASK_COMPLETED = "task_completed"
    MANUAL_MESSAGE_REGISTERED = "manual_message_registered"
    PHOTO_REQUEST_REGISTERED = "photo_request_registered"

@dataclass
class Settings:
    """
    Runtime configuration, read once from the environment.
    """
    db_path: str = "followflow.db"
    timezone: str = "America/Sao_Paulo"  # Operator's local zone (due-today, server clock)
    clinic_name: str = "Aesthetic Clinic"
    media_dir: str = "media"
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("FOLLOWFLOW_CORS_ORIGINS", "*")
        return cls(
            db_path=os.getenv("FOLLOWFLOW_DB_PATH", cls.db_path),
            timezone=os.getenv("FOLLOWFLOW_TIMEZONE", cls.timezone),
            clinic_name=os.getenv("FOLLOWFLOW_CLINIC_NAME", cls.clinic_name),
            media_dir=os.getenv("FOLLOWFLOW_MEDIA_DIR", cls.media_dir),
            log_level=os.getenv("FOLLOWFLOW_LOG_LEVEL", cls.log_level).upper(),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        )
