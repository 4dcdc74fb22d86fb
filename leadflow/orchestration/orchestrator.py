"""Registry and router for the lead-processing agents."""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional, Type, Union

from leadflow.agents.analyst import AnalystAgent
from leadflow.agents.base import AgentServices, AgentSettings, BaseAgent
from leadflow.agents.commercial import CommercialAgent
from leadflow.agents.communicator import CommunicatorAgent
from leadflow.agents.coordinator import CoordinatorAgent
from leadflow.agents.customer_success import CustomerSuccessAgent
from leadflow.agents.legal import LegalAgent
from leadflow.agents.qualifier import QualifierAgent
from leadflow.config import OrchestrationConfig
from leadflow.core.errors import (
    ExecutionFailedError,
    ExecutionTimeoutError,
    MessageValidationError,
    RoutingError,
)
from leadflow.core.message_bus import A2AMessageBus
from leadflow.core.models import (
    SYSTEM_SENDER,
    AgentDescriptor,
    AgentMessage,
    AgentName,
    AgentState,
    Channel,
    ContextMetadata,
    ExecutionResult,
    MessageType,
    Priority,
    SharedContext,
)
from leadflow.core.payloads import TaskRequestPayload
from leadflow.observability import metrics
from leadflow.orchestration.run import ExecutionRun
from leadflow.orchestration.tracker import ExecutionTracker
from leadflow.services.execution_store import ExecutionStore, InMemoryExecutionStore

logger = logging.getLogger(__name__)

DEFAULT_AGENT_CATALOG: Dict[str, Type[BaseAgent]] = {
    AgentName.COORDINATOR.value: CoordinatorAgent,
    AgentName.QUALIFIER.value: QualifierAgent,
    AgentName.LEGAL.value: LegalAgent,
    AgentName.COMMERCIAL.value: CommercialAgent,
    AgentName.ANALYST.value: AnalystAgent,
    AgentName.COMMUNICATOR.value: CommunicatorAgent,
    AgentName.CUSTOMER_SUCCESS.value: CustomerSuccessAgent,
}


class MultiAgentSystem:
    """Owns the agents, routes their messages and keeps one run per execution."""

    def __init__(
        self,
        *,
        services: AgentServices,
        settings: Optional[OrchestrationConfig] = None,
        store: Optional[ExecutionStore] = None,
        bus: Optional[A2AMessageBus] = None,
        agent_catalog: Optional[Mapping[str, Type[BaseAgent]]] = None,
    ) -> None:
        self.settings = settings or OrchestrationConfig()
        self._services = services
        self._store = store or InMemoryExecutionStore(self.settings.cost_per_1k_tokens)
        self._bus = bus or A2AMessageBus(self.settings.message_history_size)
        self._agent_catalog = dict(agent_catalog or DEFAULT_AGENT_CATALOG)
        self._agents: Dict[str, BaseAgent] = {}
        self._runs: Dict[str, ExecutionRun] = {}
        self._evictions: Dict[str, asyncio.TimerHandle] = {}
        self._lock = asyncio.Lock()
        self._initialized = False

    @property
    def store(self) -> ExecutionStore:
        return self._store

    def agent_settings(self) -> AgentSettings:
        return AgentSettings(
            model=self.settings.default_model,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
            max_retries=self.settings.max_ai_retries,
        )

    # -- lifecycle ---------------------------------------------------------

    async def initialize(self) -> None:
        """Create, register and start every agent in the catalog (once)."""
        async with self._lock:
            if self._initialized:
                return
            settings = self.agent_settings()
            for name, agent_cls in self._agent_catalog.items():
                agent = agent_cls(self, self._services, settings)
                self._agents[name] = agent
                self._bus.register(agent)
            await asyncio.gather(*(agent.start() for agent in self._agents.values()))
            self._initialized = True
        logger.info(f"Multi-agent system ready with {len(self._agents)} agents")

    def is_ready(self) -> bool:
        return self._initialized and all(agent.is_running for agent in self._agents.values())

    async def shutdown(self) -> None:
        """Stop every agent; runs and history are kept."""
        async with self._lock:
            agents = list(self._agents.values())
        await asyncio.gather(*(agent.stop() for agent in agents), return_exceptions=True)
        logger.info("Multi-agent system stopped")

    async def reset(self) -> None:
        """Stop and drop all agents, runs and history, then start afresh."""
        await self.shutdown()
        async with self._lock:
            for handle in self._evictions.values():
                handle.cancel()
            self._evictions.clear()
            for run in self._runs.values():
                run.tracker.close()
            self._runs.clear()
            self._agents.clear()
            self._bus.clear()
            self._initialized = False
        await self.initialize()

    # -- routing -----------------------------------------------------------

    async def route_message(self, message: AgentMessage) -> None:
        await self._bus.send(message)

    def has_agent(self, name: str) -> bool:
        return name in self._bus

    def get_run(self, execution_id: Optional[str]) -> Optional[ExecutionRun]:
        if execution_id is None:
            return None
        return self._runs.get(execution_id)

    def get_tracker(self, execution_id: str) -> Optional[ExecutionTracker]:
        run = self._runs.get(execution_id)
        return run.tracker if run is not None else None

    def get_agent(self, name: str) -> Optional[BaseAgent]:
        return self._agents.get(name)

    def list_agents(self) -> Iterable[AgentDescriptor]:
        return (agent.descriptor for agent in self._agents.values())

    # -- executions ----------------------------------------------------------

    async def process_lead(
        self,
        lead_data: Mapping[str, Any],
        message: str,
        channel: Union[str, Channel] = Channel.WHATSAPP,
        *,
        wait_for_completion: bool = True,
        timeout_ms: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> ExecutionResult:
        """Run a lead through the agents and return the aggregated result.

        Business failures and timeouts come back as a result with the
        matching status and whatever stages completed; they are not raised.
        """
        if not self._initialized:
            await self.initialize()

        try:
            lead_channel = Channel(channel)
        except ValueError as exc:
            raise MessageValidationError(f"Unsupported channel: {channel}", details={"channel": channel}) from exc

        timeout_ms = timeout_ms if timeout_ms is not None else self.settings.execution_timeout_ms
        lead = dict(lead_data)
        lead_id = str(lead.get("id") or lead.get("lead_id") or f"lead_{uuid.uuid4().hex[:12]}")
        tenant_id = lead.get("tenant_id")

        tracker = await ExecutionTracker.create(
            self._store,
            lead_id,
            tenant_id,
            user_id,
            timeout_ms=timeout_ms,
            cost_per_1k_tokens=self.settings.cost_per_1k_tokens,
            on_terminal=self._schedule_eviction,
        )
        context = SharedContext(
            lead_id=lead_id,
            lead_data=lead,
            metadata=ContextMetadata(
                channel=lead_channel,
                execution_id=tracker.execution_id,
                tenant_id=tenant_id,
                user_id=user_id,
            ),
        )
        context.add_conversation("user", message)
        run = ExecutionRun(context=context, tracker=tracker)
        self._runs[tracker.execution_id] = run

        await tracker.mark_processing()
        initial = AgentMessage.create(
            SYSTEM_SENDER,
            AgentName.COORDINATOR,
            MessageType.TASK_REQUEST,
            TaskRequestPayload(task="plan_execution", lead_id=lead_id, data={"message": message, "lead_data": lead}),
            execution_id=tracker.execution_id,
            priority=Priority.HIGH,
            requires_response=False,
        )
        try:
            await self.route_message(initial)
        except RoutingError as exc:
            await tracker.mark_failed(str(exc))
            raise

        if not wait_for_completion:
            return tracker.get_result()

        try:
            return await tracker.wait_for_completion(timeout_ms)
        except ExecutionTimeoutError:
            await tracker.expire()
            logger.warning(f"Execution {tracker.execution_id} timed out; returning partial result")
        except ExecutionFailedError as exc:
            logger.warning(f"Execution {tracker.execution_id} failed: {exc}")
        return tracker.get_result()

    def _schedule_eviction(self, tracker: ExecutionTracker) -> None:
        execution_id = tracker.execution_id
        loop = asyncio.get_running_loop()
        self._evictions[execution_id] = loop.call_later(
            self.settings.tracker_retention_seconds, self._evict, execution_id
        )

    def _evict(self, execution_id: str) -> None:
        self._evictions.pop(execution_id, None)
        run = self._runs.pop(execution_id, None)
        if run is not None:
            run.tracker.close()
            logger.debug(f"Execution {execution_id} evicted")

    # -- introspection -------------------------------------------------------

    def get_system_stats(self) -> Dict[str, Any]:
        last_activity = self._bus.last_activity
        return {
            "total_agents": len(self._agents),
            "messages_processed": self._bus.delivered_count,
            "active_agents": [
                name for name, agent in self._agents.items() if agent.descriptor.state is AgentState.RUNNING
            ],
            "last_activity": last_activity.isoformat() if last_activity else None,
            "executions_in_flight": sum(1 for run in self._runs.values() if run.is_live),
            "tracked_executions": len(self._runs),
            "fallbacks": metrics.get_summary(),
        }

    def get_message_history(self, limit: int = 50) -> List[AgentMessage]:
        return self._bus.history(limit)

    def clear_history(self) -> None:
        self._bus.clear_history()
