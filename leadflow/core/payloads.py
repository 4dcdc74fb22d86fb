"""Payload schemas, one per message type."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from leadflow.core.errors import MessageValidationError
from leadflow.core.models import LeadStage, MessageType


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")


class TaskRequestPayload(_Payload):
    task: str
    lead_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    fallback_from: Optional[str] = None


class TaskResponsePayload(_Payload):
    task: str
    success: bool
    result: Any = None
    error: Optional[str] = None


class DataSharePayload(_Payload):
    key: str
    data: Any = None


class DecisionRequestPayload(_Payload):
    question: str
    options: list[str] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict)


class DecisionResponsePayload(_Payload):
    decision: str
    reasoning: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class StatusUpdatePayload(_Payload):
    stage: str
    lead_id: Optional[str] = None
    agent_name: Optional[str] = None
    message: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def lead_stage(self) -> Optional[LeadStage]:
        try:
            return LeadStage(self.stage)
        except ValueError:
            return None


class ErrorReportPayload(_Payload):
    error: str
    original_message_id: str
    agent_name: Optional[str] = None
    lead_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


PAYLOAD_SCHEMAS: Dict[MessageType, Type[BaseModel]] = {
    MessageType.TASK_REQUEST: TaskRequestPayload,
    MessageType.TASK_RESPONSE: TaskResponsePayload,
    MessageType.DATA_SHARE: DataSharePayload,
    MessageType.DECISION_REQUEST: DecisionRequestPayload,
    MessageType.DECISION_RESPONSE: DecisionResponsePayload,
    MessageType.STATUS_UPDATE: StatusUpdatePayload,
    MessageType.ERROR_REPORT: ErrorReportPayload,
}


def validate_payload(message_type: MessageType, payload: Union[BaseModel, Mapping[str, Any]]) -> BaseModel:
    """Coerce ``payload`` into the schema registered for ``message_type``."""
    schema = PAYLOAD_SCHEMAS[message_type]
    if isinstance(payload, BaseModel):
        if not isinstance(payload, schema):
            raise MessageValidationError(
                f"{message_type.value} expects {schema.__name__}, got {type(payload).__name__}"
            )
        return payload
    try:
        return schema.model_validate(dict(payload))
    except ValidationError as exc:
        raise MessageValidationError(
            f"Invalid {message_type.value} payload",
            details={"errors": exc.errors()},
            cause=exc,
        ) from exc
