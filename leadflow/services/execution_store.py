"""Persistence adapter for execution records.

Every method is keyed by ``execution_id`` and safe to call repeatedly.
Scalar fields are last-write-wins; token counters and the list of agents
involved accumulate across stage writes.
"""
from __future__ import annotations

import asyncio
import copy
import logging
from contextlib import AbstractAsyncContextManager, nullcontext
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from leadflow.core.models import ExecutionStatus, StageResult, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ExecutionRecord:
    execution_id: str
    lead_id: Optional[str]
    tenant_id: Optional[str]
    user_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_agent: Optional[str] = None
    current_stage: Optional[str] = "new"
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    total_duration_ms: Optional[float] = None
    agents_involved: List[str] = field(default_factory=list)
    total_tokens: int = 0
    estimated_cost_usd: float = 0.0
    final_result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_agents_used(self) -> int:
        return len(self.agents_involved)


class ExecutionStore(Protocol):
    async def create_execution(
        self,
        execution_id: str,
        lead_id: Optional[str],
        tenant_id: Optional[str],
        user_id: Optional[str] = None,
    ) -> Optional[str]: ...

    async def update_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        current_agent: Optional[str] = None,
        current_stage: Optional[str] = None,
    ) -> None: ...

    async def record_stage(self, execution_id: str, stage: StageResult) -> None: ...

    async def complete(self, execution_id: str, final_result: Dict[str, Any], total_tokens: int) -> None: ...

    async def fail(
        self,
        execution_id: str,
        error_message: str,
        status: ExecutionStatus = ExecutionStatus.FAILED,
    ) -> None: ...

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]: ...


class InMemoryExecutionStore:
    """Dictionary-backed store; one lock per execution id while it is running."""

    def __init__(self, cost_per_1k_tokens: float = 0.01) -> None:
        self._records: Dict[str, ExecutionRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._cost_per_1k_tokens = cost_per_1k_tokens

    def _cost(self, tokens: int) -> float:
        return tokens / 1000 * self._cost_per_1k_tokens

    def _guard(self, execution_id: str) -> AbstractAsyncContextManager:
        # finished or unknown executions have no lock
        return self._locks.get(execution_id) or nullcontext()

    async def create_execution(
        self,
        execution_id: str,
        lead_id: Optional[str],
        tenant_id: Optional[str],
        user_id: Optional[str] = None,
    ) -> Optional[str]:
        if execution_id not in self._records:
            self._records[execution_id] = ExecutionRecord(
                execution_id=execution_id,
                lead_id=lead_id,
                tenant_id=tenant_id,
                user_id=user_id,
            )
            self._locks[execution_id] = asyncio.Lock()
        return execution_id

    async def update_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        current_agent: Optional[str] = None,
        current_stage: Optional[str] = None,
    ) -> None:
        async with self._guard(execution_id):
            record = self._lookup(execution_id)
            if record is None:
                return
            record.status = status
            if current_agent:
                record.current_agent = current_agent
            if current_stage:
                record.current_stage = current_stage

    async def record_stage(self, execution_id: str, stage: StageResult) -> None:
        async with self._guard(execution_id):
            record = self._lookup(execution_id)
            if record is None:
                return
            if stage.agent_name not in record.agents_involved:
                record.agents_involved.append(stage.agent_name)
            record.current_agent = stage.agent_name
            record.current_stage = stage.stage_name
            record.total_tokens += stage.tokens
            record.estimated_cost_usd = self._cost(record.total_tokens)

    async def complete(self, execution_id: str, final_result: Dict[str, Any], total_tokens: int) -> None:
        async with self._guard(execution_id):
            record = self._lookup(execution_id)
            if record is None:
                return
            record.status = ExecutionStatus.COMPLETED
            record.completed_at = utcnow()
            record.total_duration_ms = (record.completed_at - record.started_at).total_seconds() * 1000
            record.total_tokens = total_tokens
            record.estimated_cost_usd = self._cost(total_tokens)
            record.final_result = final_result
        self._locks.pop(execution_id, None)

    async def fail(
        self,
        execution_id: str,
        error_message: str,
        status: ExecutionStatus = ExecutionStatus.FAILED,
    ) -> None:
        async with self._guard(execution_id):
            record = self._lookup(execution_id)
            if record is None:
                return
            record.status = status
            record.completed_at = utcnow()
            record.total_duration_ms = (record.completed_at - record.started_at).total_seconds() * 1000
            record.error_message = error_message
        self._locks.pop(execution_id, None)

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        record = self._records.get(execution_id)
        return copy.deepcopy(record) if record is not None else None

    def list_executions(self, tenant_id: Optional[str] = None) -> List[ExecutionRecord]:
        return [
            copy.deepcopy(record)
            for record in self._records.values()
            if tenant_id is None or record.tenant_id == tenant_id
        ]

    def _lookup(self, execution_id: str) -> Optional[ExecutionRecord]:
        record = self._records.get(execution_id)
        if record is None:
            logger.warning(f"Update for unknown execution {execution_id} ignored")
        return record
