"""
FollowFlow: Protocol State Machine
==================================
Sequences the stages of one treatment:

    Stage(1) -> Stage(2) -> ... -> Stage(N) -> Completed
                                                  |
                              Survey: pending -> sent -> responded

The active stage is ALWAYS tasks_completed + 1; every view asks
active_stage_number() instead of recomputing it.
"""

import logging
from dataclasses import replace
from datetime import datetime, tzinfo
from typing import Callable, List, Optional, Tuple

from constants import SLA_CONSTANTS
from models import (
    InvalidSurveyTransition,
    InvalidTimingRule,
    Patient,
    ScriptStage,
    StageData,
    StageGateNotSatisfied,
    StageLocked,
    StageState,
    StageView,
    SurveyStatus,
    Treatment,
    TreatmentStatus,
)
from sla import classify, format_due_date, is_due_today
from stage_gate import StageGate
from timing import resolve_due_date

logger = logging.getLogger(__name__)

def stage_key(number: int) -> str:
    return f"stage{number}"

def compute_progress(tasks_completed: int, total_tasks: int) -> int:
    """Percentage rounded half-up (12.5 -> 13), 0 for an empty protocol."""
    if total_tasks <= 0:
        return 0
    return (200 * tasks_completed + total_tasks) // (2 * total_tasks)

class ProtocolStateMachine:

    # --- 1. DERIVED STATE (single source of truth) ---

    @staticmethod
    def active_stage_number(treatment: Treatment) -> Optional[int]:
        if treatment.status == TreatmentStatus.COMPLETED or treatment.tasks_completed >= treatment.total_tasks:
            return None
        return treatment.tasks_completed + 1

    @staticmethod
    def stage_state(treatment: Treatment, number: int) -> StageState:
        if number <= treatment.tasks_completed:
            return StageState.COMPLETED
        if number == treatment.tasks_completed + 1 and treatment.status == TreatmentStatus.ACTIVE:
            return StageState.ACTIVE
        return StageState.FUTURE

    @staticmethod
    def get_stage(treatment: Treatment, number: int) -> ScriptStage:
        if not 1 <= number <= len(treatment.scripts):
            raise IndexError(f"Treatment {treatment.id} has no stage {number}")
        return treatment.scripts[number - 1]

    @staticmethod
    def stage_data(treatment: Treatment, number: int) -> StageData:
        return treatment.stage_data.get(stage_key(number), StageData())

    @staticmethod
    def active_stage(treatment: Treatment) -> Optional[ScriptStage]:
        number = ProtocolStateMachine.active_stage_number(treatment)
        return ProtocolStateMachine.get_stage(treatment, number) if number else None

    @staticmethod
    def can_advance(treatment: Treatment) -> bool:
        number = ProtocolStateMachine.active_stage_number(treatment)
        if number is None:
            return False
        stage = ProtocolStateMachine.get_stage(treatment, number)
        return StageGate.can_advance(stage, ProtocolStateMachine.stage_data(treatment, number))

    # --- 2. TRANSITIONS ---

    @staticmethod
    def apply_stage_mutation(treatment: Treatment, number: int,
                             mutate: Callable[[StageData], StageData]) -> Tuple[Treatment, StageData]:
        """
        Runs one StageData mutation on the active stage. Completed and future
        stages are read-only. Never touches tasks_completed.
        """
        state = ProtocolStateMachine.stage_state(treatment, number)
        if state != StageState.ACTIVE:
            raise StageLocked(f"Stage {number} is {state.value} and cannot be edited")
        updated = mutate(ProtocolStateMachine.stage_data(treatment, number))
        stage_data = dict(treatment.stage_data)
        stage_data[stage_key(number)] = updated
        return replace(treatment, stage_data=stage_data), updated

    @staticmethod
    def advance(treatment: Treatment) -> Treatment:
        """Stage(k) -> Stage(k+1), or -> Completed after the last stage."""
        number = ProtocolStateMachine.active_stage_number(treatment)
        if number is None:
            raise StageGateNotSatisfied(treatment.tasks_completed, ["protocol already completed"])

        stage = ProtocolStateMachine.get_stage(treatment, number)
        data = ProtocolStateMachine.stage_data(treatment, number)
        if not StageGate.can_advance(stage, data):
            raise StageGateNotSatisfied(number, StageGate.missing_requirements(stage, data))

        tasks_completed = treatment.tasks_completed + 1
        status = TreatmentStatus.COMPLETED if tasks_completed == treatment.total_tasks else TreatmentStatus.ACTIVE
        return replace(
            treatment,
            tasks_completed=tasks_completed,
            progress=compute_progress(tasks_completed, treatment.total_tasks),
            status=status,
        )

    # --- 3. SURVEY SUB-MACHINE (inert until Completed) ---

    @staticmethod
    def survey_available(treatment: Treatment) -> bool:
        return treatment.has_survey and treatment.status == TreatmentStatus.COMPLETED

    @staticmethod
    def send_survey(treatment: Treatment, at: datetime) -> Treatment:
        if not ProtocolStateMachine.survey_available(treatment):
            raise InvalidSurveyTransition("Survey is only available once a protocol with a survey is completed")
        if treatment.survey.status != SurveyStatus.PENDING:
            raise InvalidSurveyTransition(f"Survey already {treatment.survey.status.value}")
        survey = replace(treatment.survey, status=SurveyStatus.SENT, sent_at=at)
        return replace(treatment, survey=survey)

    @staticmethod
    def register_survey_response(treatment: Treatment, at: datetime,
                                 rating: Optional[int] = None, comment: Optional[str] = None) -> Treatment:
        if not ProtocolStateMachine.survey_available(treatment):
            raise InvalidSurveyTransition("Survey is only available once a protocol with a survey is completed")
        if treatment.survey.status != SurveyStatus.SENT:
            raise InvalidSurveyTransition(
                f"Survey response can only follow a sent survey (current: {treatment.survey.status.value})"
            )
        if rating is not None and not 1 <= rating <= 5:
            raise ValueError(f"Invalid survey rating: {rating}")
        survey = replace(
            treatment.survey,
            status=SurveyStatus.RESPONDED,
            responded_at=at,
            rating=rating,
            comment=comment,
        )
        return replace(treatment, survey=survey)

    # --- 4. VIEWS ---

    @staticmethod
    def reference_date(treatment: Treatment, patient: Optional[Patient]) -> Optional[datetime]:
        """SLA anchor: the patient's procedure date, else the treatment start."""
        if patient is not None and patient.procedure_date is not None:
            return patient.procedure_date
        return treatment.started_at

    @staticmethod
    def stage_views(treatment: Treatment, reference_date: Optional[datetime], now: datetime,
                    tz: Optional[tzinfo] = None) -> List[StageView]:
        """
        Every stage with its state and SLA annotation. A broken timing rule
        marks its own stage as 'invalid date' and leaves the others intact.
        """
        views = []
        for number, stage in enumerate(treatment.scripts, start=1):
            data = ProtocolStateMachine.stage_data(treatment, number)
            state = ProtocolStateMachine.stage_state(treatment, number)
            view = StageView(number=number, stage=stage, state=state, data=data)

            if reference_date is not None and stage.timing is not None:
                try:
                    due = resolve_due_date(reference_date, stage.timing)
                except InvalidTimingRule as exc:
                    logger.warning("Treatment %s stage %s: %s", treatment.id, number, exc)
                    view.error = SLA_CONSTANTS.INVALID_DATE_LABEL
                    view.due_label = SLA_CONSTANTS.INVALID_DATE_LABEL
                else:
                    view.due_date = due
                    view.sla = classify(due, now)
                    view.due_today = is_due_today(due, now, tz)
                    view.due_label = format_due_date(due, now, tz)

            if state == StageState.ACTIVE:
                view.can_advance = StageGate.can_advance(stage, data)
                view.missing = StageGate.missing_requirements(stage, data)
            views.append(view)
        return views
