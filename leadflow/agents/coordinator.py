"""Coordinator: routes leads between specialists and watches their progress."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from leadflow.agents.base import BaseAgent
from leadflow.core.errors import CompletionError
from leadflow.core.models import (
    AgentMessage,
    AgentName,
    DecisionRecord,
    LeadStage,
    MessageType,
    Priority,
)
from leadflow.core.payloads import ErrorReportPayload, StatusUpdatePayload, TaskRequestPayload
from leadflow.observability import metrics
from leadflow.orchestration.run import ExecutionRun

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_PER_AGENT = 2
HUMAN_ESCALATION_STAGE = "human_escalation"
ESCALATE_HUMAN = "ESCALATE_HUMAN"

ROUTABLE_AGENTS = frozenset(
    name.value for name in AgentName if name is not AgentName.COORDINATOR
)

TASK_FOR_AGENT: Dict[str, str] = {
    AgentName.QUALIFIER.value: "analyze_lead",
    AgentName.LEGAL.value: "validate_case",
    AgentName.COMMERCIAL.value: "create_proposal",
    AgentName.COMMUNICATOR.value: "send_proposal",
    AgentName.CUSTOMER_SUCCESS.value: "onboard_client",
    AgentName.ANALYST.value: "generate_report",
}

FALLBACK_MAP: Dict[str, str] = {
    AgentName.QUALIFIER.value: AgentName.LEGAL.value,
    AgentName.LEGAL.value: AgentName.COMMERCIAL.value,
    AgentName.COMMERCIAL.value: AgentName.COMMUNICATOR.value,
    AgentName.COMMUNICATOR.value: ESCALATE_HUMAN,
}

# Status updates that move the lead to the next specialist.
PROGRESS_ROUTES: Dict[str, str] = {
    LeadStage.QUALIFIED.value: AgentName.LEGAL.value,
    "validated": AgentName.COMMERCIAL.value,
}

_PRIORITIES = {
    "critica": Priority.CRITICAL,
    "critical": Priority.CRITICAL,
    "alta": Priority.HIGH,
    "high": Priority.HIGH,
    "media": Priority.MEDIUM,
    "medium": Priority.MEDIUM,
    "baixa": Priority.LOW,
    "low": Priority.LOW,
}

_FIELD_PATTERNS = {
    key: re.compile(rf"""["']?{key}["']?\s*[:=]\s*["']([^"'\n]+)["']""", re.IGNORECASE)
    for key in ("next_agent", "task", "reason", "priority")
}


def extract_routing_fields(text: str) -> Dict[str, str]:
    """Pull routing keys out of text that is not valid JSON."""
    fields: Dict[str, str] = {}
    for key, pattern in _FIELD_PATTERNS.items():
        match = pattern.search(text or "")
        if match:
            fields[key] = match.group(1).strip()
    return fields


@dataclass(frozen=True)
class RoutingDecision:
    next_agent: str
    task: str
    reason: str
    priority: Priority = Priority.HIGH
    from_model: bool = True


DEFAULT_DECISION = RoutingDecision(
    next_agent=AgentName.QUALIFIER.value,
    task=TASK_FOR_AGENT[AgentName.QUALIFIER.value],
    reason="Fallback to initial qualification",
    from_model=False,
)


class CoordinatorAgent(BaseAgent):
    name = AgentName.COORDINATOR.value
    specialization = "Orchestration"

    def system_prompt(self) -> str:
        return """You are the coordinator of a law firm's lead pipeline.
Read each request and route it to the right specialist.

Agents:
- Qualificador: new leads, missing basic information (area, urgency, documents)
- Juridico: viability questions, limitation periods, technical case analysis
- Comercial: fees, quotes, proposals, closing
- Comunicador: formatted messages, follow-ups, meeting confirmations
- Analista: reports and pipeline metrics
- CustomerSuccess: clients who already signed, onboarding

Standard flow: Qualificador -> Juridico -> Comercial -> Comunicador.
Always route somewhere; when in doubt, route to Qualificador.

Answer ONLY with JSON:
{
  "next_agent": "Qualificador" | "Juridico" | "Comercial" | "Comunicador" | "Analista" | "CustomerSuccess",
  "task": "analyze_lead" | "validate_case" | "create_proposal" | "send_proposal" | "generate_report" | "onboard_client",
  "priority": "critica" | "alta" | "media" | "baixa",
  "reason": "why this agent"
}"""

    async def handle_message(self, message: AgentMessage, run: Optional[ExecutionRun]) -> None:
        if message.type is MessageType.TASK_REQUEST:
            await self.plan_execution(message.payload, self.require_run(run, message))
        elif message.type is MessageType.STATUS_UPDATE:
            await self.monitor_progress(message.payload, self.require_run(run, message))
        elif message.type is MessageType.ERROR_REPORT:
            await self.handle_agent_error(message, run)
        else:
            logger.debug(f"{self.name} ignoring {message.type.value} from {message.sender}")

    # -- planning ----------------------------------------------------------

    async def plan_execution(self, task: TaskRequestPayload, run: ExecutionRun) -> None:
        lead_message = task.data.get("message", "")
        prompt = (
            "Analyse this lead and decide the next step.\n"
            f"Lead: {lead_message}\n\n"
            "- Contract requests, legal review or legal questions -> Juridico\n"
            "- Quotes, prices or proposals -> Comercial\n"
            "- Vague requests or missing data -> Qualificador"
        )
        try:
            completion = await self.process_with_ai_retry(prompt, run, context=task.data.get("lead_data"))
        except CompletionError as exc:
            logger.warning(f"{self.name}: routing model unavailable for lead {run.lead_id}: {exc}")
            metrics.record_routing_fallback("model_unavailable")
            decision = DEFAULT_DECISION
        else:
            decision = self.parse_decision(completion.text)

        run.context.record_decision(
            DecisionRecord(
                decision_maker=self.name,
                decision=decision.next_agent,
                reasoning=decision.reason,
                confidence=1.0 if decision.from_model else 0.0,
            )
        )
        run.context.advance(LeadStage.ANALYZING, next_agent=decision.next_agent, task=decision.task)
        logger.info(f"{self.name}: lead {run.lead_id} -> {decision.next_agent} ({decision.task}): {decision.reason}")

        await self.route_with_fallback(run, decision.next_agent, decision.task, dict(task.data), decision.priority)

    def parse_decision(self, text: str) -> RoutingDecision:
        """Routing decision from model output; unknown or missing agents go to qualification."""
        parsed = self.parse_object(text) or extract_routing_fields(text)
        next_agent = parsed.get("next_agent")
        if not isinstance(next_agent, str) or not next_agent:
            metrics.record_routing_fallback("unparseable")
            return DEFAULT_DECISION
        if next_agent not in ROUTABLE_AGENTS or not self._router.has_agent(next_agent):
            logger.warning(f"{self.name}: model chose unknown agent {next_agent!r}; using default")
            metrics.record_routing_fallback("unknown_agent")
            return DEFAULT_DECISION

        task = parsed.get("task")
        if task not in TASK_FOR_AGENT.values():
            task = TASK_FOR_AGENT[next_agent]
        return RoutingDecision(
            next_agent=next_agent,
            task=task,
            reason=str(parsed.get("reason") or "Model decision"),
            priority=_PRIORITIES.get(str(parsed.get("priority", "")).lower(), Priority.HIGH),
        )

    # -- routing with fallback ----------------------------------------------

    async def route_with_fallback(
        self,
        run: ExecutionRun,
        target: str,
        task: str,
        data: Dict[str, Any],
        priority: Priority = Priority.HIGH,
        fallback_from: Optional[str] = None,
    ) -> None:
        if run.attempts_for(target) >= MAX_ATTEMPTS_PER_AGENT:
            await self.apply_fallback(run, target, data)
            return
        run.count_attempt(target)
        await self.send_message(
            target,
            MessageType.TASK_REQUEST,
            TaskRequestPayload(task=task, lead_id=run.lead_id, data=data, fallback_from=fallback_from),
            priority,
            execution_id=run.execution_id,
        )

    async def apply_fallback(self, run: ExecutionRun, failed_agent: str, data: Dict[str, Any]) -> None:
        fallback = FALLBACK_MAP.get(failed_agent, ESCALATE_HUMAN)
        metrics.record_routing_fallback("agent_failure")
        if fallback == ESCALATE_HUMAN:
            await self.escalate_to_human(run, failed_agent)
            return
        logger.warning(f"{self.name}: {failed_agent} unavailable for lead {run.lead_id}; falling back to {fallback}")
        await self.route_with_fallback(
            run,
            fallback,
            TASK_FOR_AGENT[fallback],
            data,
            fallback_from=failed_agent,
        )

    async def escalate_to_human(self, run: ExecutionRun, last_failed_agent: str) -> None:
        await self.record_stage_result(
            run,
            HUMAN_ESCALATION_STAGE,
            {
                "lead_id": run.lead_id,
                "last_failed_agent": last_failed_agent,
                "reason": "All agents failed or reached their attempt limit",
            },
            success=False,
            error="Human escalation required",
        )
        await self.mark_execution_failed(run, f"Human escalation required - last agent: {last_failed_agent}")
        run.reset_attempts()

    # -- monitoring ----------------------------------------------------------

    async def monitor_progress(self, status: StatusUpdatePayload, run: ExecutionRun) -> None:
        if status.stage == LeadStage.PROPOSAL_SENT.value:
            run.reset_attempts()
            return
        target = PROGRESS_ROUTES.get(status.stage)
        if target is None:
            logger.debug(f"{self.name}: no route for status {status.stage!r}")
            return
        if not run.is_live:
            logger.info(f"{self.name}: execution {run.execution_id} already {run.tracker.status.value}")
            return
        await self.route_with_fallback(run, target, TASK_FOR_AGENT[target], dict(status.data))

    async def handle_agent_error(self, message: AgentMessage, run: Optional[ExecutionRun]) -> None:
        report: ErrorReportPayload = message.payload
        if run is None or not run.is_live:
            logger.info(f"{self.name}: error from {message.sender} for a finished execution ignored: {report.error}")
            return
        failed_agent = report.agent_name or message.sender
        logger.warning(f"{self.name}: {failed_agent} reported an error for lead {run.lead_id}: {report.error}")
        await self.apply_fallback(run, failed_agent, dict(report.context))
