"""HTTP entry point for processing leads and looking up executions."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from leadflow.core.errors import RoutingError
from leadflow.core.models import Channel, ExecutionResult, StageResult
from leadflow.orchestration.orchestrator import MultiAgentSystem
from leadflow.runtime import get_system

router = APIRouter(tags=["leads"])


class LeadRequest(BaseModel):
    message: str = Field(..., min_length=1, description="What the lead wrote")
    lead: Dict[str, Any] = Field(default_factory=dict, description="Lead attributes (name, phone, tenant_id, ...)")
    channel: Channel = Channel.WHATSAPP
    wait_for_completion: bool = True
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    user_id: Optional[str] = None


class StageResponse(BaseModel):
    stage_name: str
    agent_name: str
    result: Any = None
    tokens: int
    success: bool
    error: Optional[str] = None
    duration_ms: float

    @classmethod
    def from_stage(cls, stage: StageResult) -> "StageResponse":
        return cls(
            stage_name=stage.stage_name,
            agent_name=stage.agent_name,
            result=stage.result,
            tokens=stage.tokens,
            success=stage.success,
            error=stage.error,
            duration_ms=stage.duration_ms,
        )


class ExecutionResponse(BaseModel):
    execution_id: str
    lead_id: Optional[str]
    tenant_id: Optional[str]
    status: str
    stages: List[StageResponse] = Field(default_factory=list)
    total_tokens: int
    estimated_cost: float
    qualification_result: Any = None
    legal_validation: Any = None
    proposal: Any = None
    formatted_messages: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    total_duration_ms: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def from_result(cls, result: ExecutionResult) -> "ExecutionResponse":
        return cls(
            execution_id=result.execution_id,
            lead_id=result.lead_id,
            tenant_id=result.tenant_id,
            status=result.status.value,
            stages=[StageResponse.from_stage(stage) for stage in result.stages],
            total_tokens=result.total_tokens,
            estimated_cost=result.estimated_cost,
            qualification_result=result.qualification_result,
            legal_validation=result.legal_validation,
            proposal=result.proposal,
            formatted_messages=result.formatted_messages,
            started_at=result.started_at,
            completed_at=result.completed_at,
            total_duration_ms=result.total_duration_ms,
            error=result.error,
        )


@router.post("/leads", response_model=ExecutionResponse)
async def process_lead(
    request: LeadRequest,
    system: MultiAgentSystem = Depends(get_system),
) -> ExecutionResponse:
    try:
        result = await system.process_lead(
            request.lead,
            request.message,
            request.channel,
            wait_for_completion=request.wait_for_completion,
            timeout_ms=request.timeout_ms,
            user_id=request.user_id,
        )
    except RoutingError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ExecutionResponse.from_result(result)


@router.get("/executions/{execution_id}", response_model=ExecutionResponse)
async def get_execution(
    execution_id: str,
    system: MultiAgentSystem = Depends(get_system),
) -> ExecutionResponse:
    tracker = system.get_tracker(execution_id)
    if tracker is not None:
        return ExecutionResponse.from_result(tracker.get_result())

    record = await system.store.get_execution(execution_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown execution")
    final = record.final_result or {}
    return ExecutionResponse(
        execution_id=record.execution_id,
        lead_id=record.lead_id,
        tenant_id=record.tenant_id,
        status=record.status.value,
        total_tokens=record.total_tokens,
        estimated_cost=record.estimated_cost_usd,
        qualification_result=final.get("qualification_result"),
        legal_validation=final.get("legal_validation"),
        proposal=final.get("proposal"),
        formatted_messages=final.get("formatted_messages"),
        started_at=record.started_at,
        completed_at=record.completed_at,
        total_duration_ms=record.total_duration_ms,
        error=record.error_message,
    )
