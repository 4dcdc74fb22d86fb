"""Test doubles for the completion service and agent wiring."""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from leadflow.core.models import AgentMessage, AgentName, Channel, ContextMetadata, SharedContext
from leadflow.orchestration.run import ExecutionRun
from leadflow.orchestration.tracker import ExecutionTracker
from leadflow.services.completion import Completion, TokenUsage
from leadflow.services.execution_store import InMemoryExecutionStore

# Opening line of each agent's system prompt.
ROLE_MARKERS: Dict[str, str] = {
    AgentName.COORDINATOR.value: "You are the coordinator",
    AgentName.QUALIFIER.value: "You are the qualification agent",
    AgentName.LEGAL.value: "You are the legal analyst",
    AgentName.COMMERCIAL.value: "You are the commercial agent",
    AgentName.COMMUNICATOR.value: "You are the communication agent",
    AgentName.ANALYST.value: "You are the data analyst",
    AgentName.CUSTOMER_SUCCESS.value: "You are the customer success agent",
}

Reply = Union[str, Exception, Callable[[str], Any]]


def _usage(tokens: int) -> TokenUsage:
    return TokenUsage(prompt_tokens=tokens // 2, completion_tokens=tokens - tokens // 2, total_tokens=tokens)


class StubCompletion:
    """Answers by agent name; a list of replies is consumed one per call."""

    def __init__(self, replies: Dict[str, Union[Reply, List[Reply]]], tokens: int = 100) -> None:
        self._replies = {name: list(value) if isinstance(value, list) else value for name, value in replies.items()}
        self.tokens = tokens
        self.calls: List[Tuple[str, str]] = []

    def _agent_for(self, system_prompt: str) -> str:
        for name, marker in ROLE_MARKERS.items():
            if system_prompt.startswith(marker):
                return name
        raise AssertionError(f"unexpected system prompt: {system_prompt[:40]!r}")

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> Completion:
        agent = self._agent_for(system_prompt)
        self.calls.append((agent, user_prompt))
        reply = self._replies.get(agent, "{}")
        if isinstance(reply, list):
            reply = reply.pop(0) if len(reply) > 1 else reply[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(user_prompt)
        if asyncio.iscoroutine(reply):
            reply = await reply
        return Completion(text=reply, usage=_usage(self.tokens), model=model)

    def calls_for(self, agent: str) -> List[str]:
        return [prompt for name, prompt in self.calls if name == agent]


class HangingCompletion:
    """Never answers."""

    async def complete(self, system_prompt: str, user_prompt: str, **_: Any) -> Completion:
        await asyncio.Event().wait()
        raise AssertionError("unreachable")


class RecordingRouter:
    """Router that keeps messages instead of delivering them."""

    def __init__(self, runs: Optional[Dict[str, Any]] = None, agents: Optional[List[str]] = None) -> None:
        self.sent: List[AgentMessage] = []
        self.runs = runs or {}
        self.agents = set(agents or [name.value for name in AgentName])

    async def route_message(self, message: AgentMessage) -> None:
        self.sent.append(message)

    def get_run(self, execution_id: Optional[str]):
        if execution_id is None:
            return None
        return self.runs.get(execution_id)

    def has_agent(self, name: str) -> bool:
        return name in self.agents


class RecordedSleeps:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


async def make_run(
    lead_data: Optional[Dict[str, Any]] = None,
    *,
    tenant_id: Optional[str] = None,
    channel: str = "whatsapp",
    store: Any = None,
) -> ExecutionRun:
    """A processing run registered nowhere; pair it with ``RecordingRouter``."""
    tracker = await ExecutionTracker.create(store or InMemoryExecutionStore(), "lead-1", tenant_id, timeout_ms=None)
    await tracker.mark_processing()
    context = SharedContext(
        lead_id="lead-1",
        lead_data=dict(lead_data or {}),
        metadata=ContextMetadata(channel=Channel(channel), execution_id=tracker.execution_id, tenant_id=tenant_id),
    )
    return ExecutionRun(context=context, tracker=tracker)
