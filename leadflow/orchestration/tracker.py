"""Per-execution state machine with an awaitable completion.

    pending -> processing -> completed | failed | timeout

Terminal states are absorbing: once reached, further transitions and stage
writes are ignored. Any agent may finish the run; the tracker does not know
the shape of the pipeline.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Dict, Optional

from leadflow.core.errors import ExecutionFailedError, ExecutionTimeoutError
from leadflow.core.models import ExecutionResult, ExecutionStatus, StageResult, utcnow
from leadflow.observability import metrics
from leadflow.services.execution_store import ExecutionStore

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 60_000
COST_PER_1K_TOKENS = 0.01

# Stage names surfaced as typed fields on ExecutionResult.
QUALIFICATION_STAGE = "qualification"
LEGAL_VALIDATION_STAGE = "legal_validation"
PROPOSAL_STAGE = "proposal"
MESSAGE_SENT_STAGE = "message_sent"

_STATUS_RANK = {
    ExecutionStatus.PENDING: 0,
    ExecutionStatus.PROCESSING: 1,
    ExecutionStatus.COMPLETED: 2,
    ExecutionStatus.FAILED: 2,
    ExecutionStatus.TIMEOUT: 2,
}


def new_execution_id() -> str:
    return f"exec_{uuid.uuid4().hex}"


def _consume_exception(future: asyncio.Future) -> None:
    # Rejections are part of the contract; nobody may be awaiting them.
    if not future.cancelled():
        future.exception()


class ExecutionTracker:
    """Tracks one run: its stages, token usage and terminal outcome."""

    def __init__(
        self,
        execution_id: str,
        lead_id: str,
        tenant_id: Optional[str],
        *,
        store: ExecutionStore,
        timeout_ms: Optional[int] = DEFAULT_TIMEOUT_MS,
        cost_per_1k_tokens: float = COST_PER_1K_TOKENS,
        on_terminal: Optional[Callable[["ExecutionTracker"], None]] = None,
    ) -> None:
        self.execution_id = execution_id
        self.lead_id = lead_id
        self.tenant_id = tenant_id
        self._store = store
        self._timeout_ms = timeout_ms
        self._cost_per_1k_tokens = cost_per_1k_tokens
        self._on_terminal = on_terminal

        self._status = ExecutionStatus.PENDING
        self._stages: Dict[str, StageResult] = {}
        self._total_tokens = 0
        self.started_at = utcnow()
        self.completed_at = None
        self.error: Optional[str] = None

        loop = asyncio.get_running_loop()
        self._completion: asyncio.Future[ExecutionResult] = loop.create_future()
        self._completion.add_done_callback(_consume_exception)
        self._timer: Optional[asyncio.TimerHandle] = None
        self._timeout_task: Optional[asyncio.Task[None]] = None

    @classmethod
    async def create(
        cls,
        store: ExecutionStore,
        lead_id: str,
        tenant_id: Optional[str],
        user_id: Optional[str] = None,
        *,
        timeout_ms: Optional[int] = DEFAULT_TIMEOUT_MS,
        cost_per_1k_tokens: float = COST_PER_1K_TOKENS,
        on_terminal: Optional[Callable[["ExecutionTracker"], None]] = None,
    ) -> ExecutionTracker:
        """Persist a pending record and start the execution deadline."""
        execution_id = new_execution_id()
        tracker = cls(
            execution_id,
            lead_id,
            tenant_id,
            store=store,
            timeout_ms=timeout_ms,
            cost_per_1k_tokens=cost_per_1k_tokens,
            on_terminal=on_terminal,
        )
        await tracker._persist(store.create_execution(execution_id, lead_id, tenant_id, user_id))
        tracker._start_timeout()
        logger.info(f"Execution {execution_id} created for lead {lead_id}")
        return tracker

    # -- state -------------------------------------------------------------

    @property
    def status(self) -> ExecutionStatus:
        return self._status

    @property
    def total_tokens(self) -> int:
        return self._total_tokens

    @property
    def estimated_cost(self) -> float:
        return self._total_tokens / 1000 * self._cost_per_1k_tokens

    @property
    def is_complete(self) -> bool:
        return self._status.is_terminal

    def get_stage(self, stage_name: str) -> Optional[StageResult]:
        return self._stages.get(stage_name)

    # -- timeout -----------------------------------------------------------

    def _start_timeout(self) -> None:
        if self._timeout_ms and self._timeout_ms > 0:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self._timeout_ms / 1000, self._on_deadline)

    def _cancel_timeout(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_deadline(self) -> None:
        self._timer = None
        if not self.is_complete:
            self._timeout_task = asyncio.ensure_future(self._mark_timeout())

    # -- transitions -------------------------------------------------------

    def _can_move_to(self, status: ExecutionStatus) -> bool:
        if self.is_complete:
            return False
        return _STATUS_RANK[status] > _STATUS_RANK[self._status]

    async def mark_processing(self) -> bool:
        if not self._can_move_to(ExecutionStatus.PROCESSING):
            return False
        self._status = ExecutionStatus.PROCESSING
        await self._persist(self._store.update_status(self.execution_id, ExecutionStatus.PROCESSING))
        return True

    async def record_stage_result(
        self,
        stage_name: str,
        agent_name: str,
        result: Any,
        tokens: int = 0,
        success: bool = True,
        error: Optional[str] = None,
    ) -> Optional[StageResult]:
        """Merge a stage outcome; ignored once the run is terminal."""
        if self.is_complete:
            logger.info(
                f"Execution {self.execution_id} is {self._status.value}; "
                f"ignoring late stage {stage_name!r} from {agent_name}"
            )
            return None

        now = utcnow()
        previous = self._stages.get(stage_name)
        stage = StageResult(
            stage_name=stage_name,
            agent_name=agent_name,
            result=result,
            tokens=tokens,
            started_at=previous.started_at if previous else now,
            completed_at=now,
            success=success,
            error=error,
        )
        self._stages[stage_name] = stage
        self._total_tokens += tokens
        await self._persist(self._store.record_stage(self.execution_id, stage))
        return stage

    async def mark_completed(self) -> bool:
        if not self._can_move_to(ExecutionStatus.COMPLETED):
            logger.warning(f"Execution {self.execution_id} already {self._status.value}; completion ignored")
            return False
        self._enter_terminal(ExecutionStatus.COMPLETED)
        result = self.build_result()
        await self._persist(
            self._store.complete(self.execution_id, self._final_payload(result), self._total_tokens)
        )
        if not self._completion.done():
            self._completion.set_result(result)
        self._notify_terminal()
        logger.info(
            f"Execution {self.execution_id} completed: {len(self._stages)} stages, "
            f"{self._total_tokens} tokens"
        )
        return True

    async def mark_failed(self, reason: str) -> bool:
        if not self._can_move_to(ExecutionStatus.FAILED):
            logger.warning(f"Execution {self.execution_id} already {self._status.value}; failure ignored")
            return False
        self._enter_terminal(ExecutionStatus.FAILED, reason)
        await self._persist(self._store.fail(self.execution_id, reason, ExecutionStatus.FAILED))
        if not self._completion.done():
            self._completion.set_exception(ExecutionFailedError(reason, details={"execution_id": self.execution_id}))
        self._notify_terminal()
        logger.warning(f"Execution {self.execution_id} failed: {reason}")
        return True

    async def expire(self) -> None:
        """Move a still-running execution to ``timeout`` now."""
        self._cancel_timeout()
        await self._mark_timeout()

    async def _mark_timeout(self) -> None:
        if not self._can_move_to(ExecutionStatus.TIMEOUT):
            return
        reason = "Execution timeout"
        self._enter_terminal(ExecutionStatus.TIMEOUT, reason)
        await self._persist(self._store.fail(self.execution_id, reason, ExecutionStatus.TIMEOUT))
        if not self._completion.done():
            self._completion.set_exception(
                ExecutionTimeoutError(reason, details={"execution_id": self.execution_id})
            )
        self._notify_terminal()
        logger.warning(f"Execution {self.execution_id} timed out after {self._timeout_ms}ms")

    def _enter_terminal(self, status: ExecutionStatus, error: Optional[str] = None) -> None:
        self._cancel_timeout()
        self._status = status
        self.completed_at = utcnow()
        if error is not None:
            self.error = error
        metrics.record_execution(status.value)

    def _notify_terminal(self) -> None:
        if self._on_terminal is not None:
            self._on_terminal(self)

    # -- waiting & results -------------------------------------------------

    async def wait_for_completion(self, timeout_ms: Optional[int] = None) -> ExecutionResult:
        """Await the terminal result, bounded by ``timeout_ms`` (or the tracker's own)."""
        timeout = timeout_ms if timeout_ms is not None else (self._timeout_ms or DEFAULT_TIMEOUT_MS)
        try:
            return await asyncio.wait_for(asyncio.shield(self._completion), timeout / 1000)
        except asyncio.TimeoutError as exc:
            raise ExecutionTimeoutError(
                f"Execution timeout after {timeout}ms",
                details={"execution_id": self.execution_id},
            ) from exc

    def build_result(self) -> ExecutionResult:
        stages = list(self._stages.values())

        def _result_of(name: str) -> Any:
            stage = self._stages.get(name)
            return stage.result if stage is not None else None

        message = _result_of(MESSAGE_SENT_STAGE)
        return ExecutionResult(
            execution_id=self.execution_id,
            lead_id=self.lead_id,
            tenant_id=self.tenant_id,
            status=self._status,
            stages=stages,
            total_tokens=self._total_tokens,
            estimated_cost=self.estimated_cost,
            started_at=self.started_at,
            qualification_result=_result_of(QUALIFICATION_STAGE),
            legal_validation=_result_of(LEGAL_VALIDATION_STAGE),
            proposal=_result_of(PROPOSAL_STAGE),
            formatted_messages=str(message) if message is not None else None,
            final_result=stages[-1].result if stages else None,
            completed_at=self.completed_at,
            total_duration_ms=(
                (self.completed_at - self.started_at).total_seconds() * 1000 if self.completed_at else None
            ),
            error=self.error,
        )

    def get_result(self) -> ExecutionResult:
        """Current aggregate, complete or not."""
        return self.build_result()

    @staticmethod
    def _final_payload(result: ExecutionResult) -> Dict[str, Any]:
        return {
            "qualification_result": result.qualification_result,
            "legal_validation": result.legal_validation,
            "proposal": result.proposal,
            "formatted_messages": result.formatted_messages,
            "stages": [asdict(stage) for stage in result.stages],
        }

    async def _persist(self, call: Awaitable[Any]) -> None:
        try:
            await call
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Persisting execution {self.execution_id} failed: {exc}", exc_info=True)

    def close(self) -> None:
        """Drop the deadline without changing state (used on shutdown)."""
        self._cancel_timeout()
        if self._timeout_task is not None and not self._timeout_task.done():
            self._timeout_task.cancel()
