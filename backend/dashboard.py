# dashboard.py
import logging
from datetime import datetime, tzinfo
from typing import Dict, Iterable, List, Optional, Tuple

from models import (
    DashboardRow,
    DashboardStats,
    InvalidTimingRule,
    Patient,
    PatientStatus,
    SLAStatus,
    Treatment,
)
from protocol import ProtocolStateMachine
from sla import classify, is_due_today
from timing import resolve_due_date

logger = logging.getLogger(__name__)

def active_stage_due(treatment: Treatment, patient: Optional[Patient]) -> Optional[datetime]:
    """Due date of the active stage, or None when there is nothing to time."""
    stage = ProtocolStateMachine.active_stage(treatment)
    reference = ProtocolStateMachine.reference_date(treatment, patient)
    if stage is None or stage.timing is None or reference is None:
        return None
    try:
        return resolve_due_date(reference, stage.timing)
    except InvalidTimingRule as exc:
        logger.warning("Treatment %s: active stage has %s", treatment.id, exc)
        return None

def patient_status(treatment: Treatment, patient: Optional[Patient], now: datetime,
                   tz: Optional[tzinfo] = None) -> Tuple[PatientStatus, Optional[datetime]]:
    """
    LATE      -> active stage is late
    DUE_TODAY -> warning, or ontime but due on today's date
    ON_TIME   -> everything else (no timing, invalid timing, later days)
    """
    due = active_stage_due(treatment, patient)
    if due is None:
        return PatientStatus.ON_TIME, None

    sla = classify(due, now)
    if sla == SLAStatus.LATE:
        return PatientStatus.LATE, due
    if sla == SLAStatus.WARNING or is_due_today(due, now, tz):
        return PatientStatus.DUE_TODAY, due
    return PatientStatus.ON_TIME, due

def build_rows(treatments: Iterable[Treatment], patients: Dict[str, Patient], now: datetime,
               tz: Optional[tzinfo] = None) -> List[DashboardRow]:
    rows = []
    for treatment in treatments:
        if not treatment.is_active:
            continue
        patient = patients.get(treatment.patient_id)
        if patient is None:
            # Orphaned treatment; keep the panel usable
            logger.warning("Treatment %s references unknown patient %s", treatment.id, treatment.patient_id)
            continue
        status, due = patient_status(treatment, patient, now, tz)
        rows.append(DashboardRow(treatment=treatment, patient=patient, status=status, due_date=due))
    return rows

def compute_stats(rows: List[DashboardRow], total_patients: int) -> DashboardStats:
    return DashboardStats(
        total_patients=total_patients,
        total_open_protocols=len(rows),
        due_today=sum(1 for r in rows if r.status == PatientStatus.DUE_TODAY),
        overdue=sum(1 for r in rows if r.status == PatientStatus.LATE),
    )

def filter_rows(rows: List[DashboardRow], status: Optional[PatientStatus] = None) -> List[DashboardRow]:
    if status is None:
        return list(rows)
    return [r for r in rows if r.status == status]
