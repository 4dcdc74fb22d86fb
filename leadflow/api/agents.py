"""HTTP API exposing the agents and their message traffic."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from leadflow.core.models import AgentDescriptor, AgentMessage
from leadflow.orchestration.orchestrator import MultiAgentSystem
from leadflow.runtime import get_system

router = APIRouter(prefix="/agents", tags=["agents"])


class AgentResponse(BaseModel):
    name: str
    specialization: str
    state: str
    task_count: int
    last_error: Optional[str]

    @classmethod
    def from_descriptor(cls, descriptor: AgentDescriptor) -> "AgentResponse":
        return cls(
            name=descriptor.name,
            specialization=descriptor.specialization,
            state=descriptor.state.name,
            task_count=descriptor.task_count,
            last_error=descriptor.last_error,
        )


class MessageResponse(BaseModel):
    id: str
    sender: str
    recipient: str
    type: str
    priority: str
    execution_id: Optional[str]
    payload: Dict[str, Any]
    timestamp: datetime

    @classmethod
    def from_message(cls, message: AgentMessage) -> "MessageResponse":
        return cls(
            id=message.id,
            sender=message.sender,
            recipient=message.recipient,
            type=message.type.value,
            priority=message.priority.value,
            execution_id=message.execution_id,
            payload=message.payload.model_dump(mode="json"),
            timestamp=message.timestamp,
        )


@router.get("", response_model=List[AgentResponse])
async def list_agents(system: MultiAgentSystem = Depends(get_system)) -> List[AgentResponse]:
    return [AgentResponse.from_descriptor(desc) for desc in system.list_agents()]


@router.get("/stats")
async def get_stats(system: MultiAgentSystem = Depends(get_system)) -> Dict[str, Any]:
    return system.get_system_stats()


@router.get("/messages", response_model=List[MessageResponse])
async def get_messages(
    limit: int = Query(default=50, ge=1, le=1000),
    system: MultiAgentSystem = Depends(get_system),
) -> List[MessageResponse]:
    return [MessageResponse.from_message(message) for message in system.get_message_history(limit)]
