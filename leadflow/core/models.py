"""Core data models shared across orchestrator components."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel

from leadflow.core.errors import MessageValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentName(str, Enum):
    """Registered agent names; also the values the coordinator may route to."""

    COORDINATOR = "Coordenador"
    QUALIFIER = "Qualificador"
    LEGAL = "Juridico"
    COMMERCIAL = "Comercial"
    ANALYST = "Analista"
    COMMUNICATOR = "Comunicador"
    CUSTOMER_SUCCESS = "CustomerSuccess"


SYSTEM_SENDER = "System"


class AgentState(Enum):
    """Lifecycle states for an agent managed by the orchestrator."""

    SPAWNING = auto()
    RUNNING = auto()
    STOPPING = auto()
    STOPPED = auto()
    FAILED = auto()


class MessageType(str, Enum):
    TASK_REQUEST = "task_request"
    TASK_RESPONSE = "task_response"
    DATA_SHARE = "data_share"
    DECISION_REQUEST = "decision_request"
    DECISION_RESPONSE = "decision_response"
    STATUS_UPDATE = "status_update"
    ERROR_REPORT = "error_report"

    @property
    def is_request(self) -> bool:
        return self.value.endswith("_request")


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class LeadStage(str, Enum):
    NEW = "new"
    ANALYZING = "analyzing"
    QUALIFIED = "qualified"
    LEGAL_VALIDATION = "legal_validation"
    PROPOSAL_CREATED = "proposal_created"
    PROPOSAL_SENT = "proposal_sent"
    NEGOTIATION = "negotiation"
    CLOSED_WON = "closed_won"
    CLOSED_LOST = "closed_lost"


class Channel(str, Enum):
    WHATSAPP = "whatsapp"
    EMAIL = "email"
    CHAT = "chat"
    PHONE = "phone"
    PLAYGROUND = "playground"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.TIMEOUT}
)


@dataclass(slots=True)
class AgentDescriptor:
    """Descriptor kept by the orchestrator for each registered agent."""

    name: str
    specialization: str
    state: AgentState = AgentState.SPAWNING
    task_count: int = 0
    last_error: Optional[str] = None


@dataclass(frozen=True, slots=True)
class AgentMessage:
    """Canonical message exchanged between agents.

    Instances are immutable; once routed, the message belongs to the
    recipient's mailbox. ``payload`` is the pydantic model registered for
    ``type`` in :mod:`leadflow.core.payloads`.
    """

    sender: str
    recipient: str
    type: MessageType
    payload: BaseModel
    execution_id: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    requires_response: bool = False
    id: str = field(default_factory=lambda: f"msg_{uuid.uuid4().hex[:16]}")
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        sender: str,
        recipient: str,
        type: MessageType,
        payload: Union[BaseModel, Mapping[str, Any]],
        *,
        execution_id: Optional[str] = None,
        priority: Priority = Priority.MEDIUM,
        requires_response: Optional[bool] = None,
    ) -> "AgentMessage":
        """Build a message whose payload is validated against its type."""
        from leadflow.core.payloads import validate_payload

        if isinstance(recipient, AgentName):
            recipient = recipient.value
        if isinstance(sender, AgentName):
            sender = sender.value
        return cls(
            sender=sender,
            recipient=recipient,
            type=type,
            payload=validate_payload(type, payload),
            execution_id=execution_id,
            priority=priority,
            requires_response=type.is_request if requires_response is None else requires_response,
        )


@dataclass(frozen=True, slots=True)
class DecisionRecord:
    decision_maker: str
    decision: str
    reasoning: str
    confidence: float
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class ConversationEntry:
    role: str
    content: str
    agent_name: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class ContextMetadata:
    channel: Channel
    execution_id: str
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SharedContext:
    """Per-run state visible to every agent handling that run."""

    lead_id: str
    lead_data: Dict[str, Any]
    metadata: ContextMetadata
    current_stage: LeadStage = LeadStage.NEW
    decisions: Dict[str, DecisionRecord] = field(default_factory=dict)
    conversation_history: List[ConversationEntry] = field(default_factory=list)

    @property
    def tenant_id(self) -> Optional[str]:
        return self.metadata.tenant_id

    @property
    def execution_id(self) -> str:
        return self.metadata.execution_id

    def advance(self, stage: LeadStage, **updates: Any) -> None:
        self.current_stage = stage
        self.metadata.extra.update(updates)

    def record_decision(self, record: DecisionRecord) -> None:
        self.decisions[record.decision_maker] = record

    def add_conversation(self, role: str, content: str, agent_name: Optional[str] = None) -> None:
        self.conversation_history.append(ConversationEntry(role=role, content=content, agent_name=agent_name))


@dataclass(frozen=True, slots=True)
class StageResult:
    stage_name: str
    agent_name: str
    result: Any
    tokens: int
    started_at: datetime
    completed_at: datetime
    success: bool = True
    error: Optional[str] = None

    @property
    def duration_ms(self) -> float:
        return (self.completed_at - self.started_at).total_seconds() * 1000


@dataclass(slots=True)
class ExecutionResult:
    """Aggregate handed back to ``process_lead`` callers."""

    execution_id: str
    lead_id: str
    tenant_id: Optional[str]
    status: ExecutionStatus
    stages: List[StageResult]
    total_tokens: int
    estimated_cost: float
    started_at: datetime
    qualification_result: Any = None
    legal_validation: Any = None
    proposal: Any = None
    formatted_messages: Optional[str] = None
    final_result: Any = None
    completed_at: Optional[datetime] = None
    total_duration_ms: Optional[float] = None
    error: Optional[str] = None


def ensure_valid_message(message: AgentMessage) -> None:
    """Reject messages that were built without going through ``create``."""
    from leadflow.core.payloads import PAYLOAD_SCHEMAS

    expected = PAYLOAD_SCHEMAS[message.type]
    if not isinstance(message.payload, expected):
        raise MessageValidationError(
            f"{message.type.value} expects {expected.__name__}, got {type(message.payload).__name__}",
            details={"message_id": message.id},
        )
