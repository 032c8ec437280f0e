# stage_gate.py
from dataclasses import replace
from datetime import datetime
from typing import List, Optional

from constants import ActionType, MESSAGE_CONSTANTS, NON_CHECKLIST_ACTIONS
from models import (
    InvalidStageMutation,
    PhotoStatus,
    ResponseState,
    ScriptStage,
    StageData,
)

class StageGate:
    """
    Completion predicates for a single stage.
    Two checks exist side by side: is_stage_complete() (checklist + photo) and
    the stricter can_advance(), which also needs the contact outcome recorded.
    """

    @staticmethod
    def checklist_actions(stage: ScriptStage) -> list:
        return [a for a in stage.actions if a.type not in NON_CHECKLIST_ACTIONS]

    @staticmethod
    def is_checklist_complete(stage: ScriptStage, data: StageData) -> bool:
        return all(data.checklist.get(a.id) is True for a in StageGate.checklist_actions(stage))

    @staticmethod
    def needs_photo(stage: ScriptStage) -> bool:
        return stage.request_media or any(a.type == ActionType.PHOTO_REQUEST for a in stage.actions)

    @staticmethod
    def is_photo_complete(stage: ScriptStage, data: StageData) -> bool:
        if not StageGate.needs_photo(stage):
            return True
        return data.photo_status in (PhotoStatus.RECEIVED, PhotoStatus.REFUSED)

    @staticmethod
    def is_stage_complete(stage: ScriptStage, data: StageData) -> bool:
        return StageGate.is_checklist_complete(stage, data) and StageGate.is_photo_complete(stage, data)

    @staticmethod
    def is_contact_complete(data: StageData) -> bool:
        """Resolved outcome; a positive response also needs its content written down."""
        if not data.response_state.is_resolved or data.message_responded_at is None:
            return False
        if data.response_state == ResponseState.RESPONDED:
            return bool(data.response_content and data.response_content.strip())
        return True

    @staticmethod
    def can_advance(stage: ScriptStage, data: StageData) -> bool:
        # Sent-state alone is not enough: the response (or its absence) must be recorded
        return StageGate.is_stage_complete(stage, data) and data.message_responded_at is not None

    @staticmethod
    def missing_requirements(stage: ScriptStage, data: StageData) -> List[str]:
        missing = []
        for action in StageGate.checklist_actions(stage):
            if data.checklist.get(action.id) is not True:
                missing.append(f"checklist item '{action.description or action.id}' not done")
        if not StageGate.is_photo_complete(stage, data):
            missing.append("photo outcome not recorded")
        if data.message_responded_at is None:
            missing.append("patient response not recorded")
        return missing

    # --- MUTATIONS (each returns a new StageData) ---

    @staticmethod
    def toggle_checklist(data: StageData, action_id: str, checked: bool) -> StageData:
        checklist = dict(data.checklist)
        checklist[action_id] = bool(checked)
        return replace(data, checklist=checklist)

    @staticmethod
    def register_message_sent(data: StageData, at: datetime) -> StageData:
        return replace(data, message_sent_at=at)

    @staticmethod
    def _ensure_response_open(data: StageData) -> None:
        # A recorded outcome is final for the stage
        if data.response_state.is_resolved and data.message_responded_at is not None:
            raise InvalidStageMutation("Response already recorded for this stage")

    @staticmethod
    def begin_response(data: StageData) -> StageData:
        """Operator opened the 'did the patient answer?' prompt."""
        StageGate._ensure_response_open(data)
        return replace(data, response_state=ResponseState.AWAITING_DECISION)

    @staticmethod
    def confirm_response(data: StageData, responded: bool, at: datetime) -> StageData:
        StageGate._ensure_response_open(data)
        if responded:
            # Content follows in save_response_content()
            return replace(data, response_state=ResponseState.RESPONDED)
        return replace(
            data,
            response_state=ResponseState.NOT_RESPONDED,
            message_responded_at=at,
            response_content=MESSAGE_CONSTANTS.NO_RESPONSE_CONTENT,
        )

    @staticmethod
    def save_response_content(data: StageData, content: str, at: datetime) -> StageData:
        StageGate._ensure_response_open(data)
        if not content or not content.strip():
            raise InvalidStageMutation("Response content must not be empty")
        return replace(
            data,
            response_state=ResponseState.RESPONDED,
            message_responded_at=at,
            response_content=content.strip(),
        )

    @staticmethod
    def register_photo_request(data: StageData, at: datetime) -> StageData:
        return replace(data, photo_request_sent_at=at, photo_status=PhotoStatus.PENDING)

    @staticmethod
    def register_photo_response(data: StageData, received: bool, at: datetime,
                                photo_url: Optional[str] = None) -> StageData:
        if received:
            if not photo_url:
                raise InvalidStageMutation("A received photo needs the stored photo URL")
            return replace(data, photo_status=PhotoStatus.RECEIVED, photo_received_at=at, photo_url=photo_url)
        return replace(data, photo_status=PhotoStatus.REFUSED, photo_received_at=at)
