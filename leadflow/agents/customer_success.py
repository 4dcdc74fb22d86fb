"""Onboarding for clients who signed."""
from __future__ import annotations

import json
import logging
from typing import Optional

from leadflow.agents.base import BaseAgent
from leadflow.core.models import AgentMessage, AgentName, LeadStage, MessageType
from leadflow.core.payloads import TaskRequestPayload
from leadflow.orchestration.run import ExecutionRun

logger = logging.getLogger(__name__)

ONBOARDING_PLAN_STAGE = "onboarding_plan"


class CustomerSuccessAgent(BaseAgent):
    name = AgentName.CUSTOMER_SUCCESS.value
    specialization = "Customer success"

    def system_prompt(self) -> str:
        return """You are the customer success agent of a law firm.
Build an onboarding plan for a client who just hired the firm: documents
to send, next milestones, communication cadence and who to contact.

Answer ONLY with JSON:
{
  "boas_vindas": "welcome text",
  "documentos": ["documents to send"],
  "etapas": [{"etapa": "name", "prazo": "when"}],
  "contato": "who to reach and how"
}"""

    async def handle_message(self, message: AgentMessage, run: Optional[ExecutionRun]) -> None:
        payload = message.payload
        if message.type is MessageType.TASK_REQUEST and payload.task == "onboard_client":
            await self.onboard_client(payload, self.require_run(run, message))
        else:
            logger.debug(f"{self.name} ignoring {message.type.value} from {message.sender}")

    async def onboard_client(self, task: TaskRequestPayload, run: ExecutionRun) -> None:
        try:
            completion = await self.process_with_ai_retry(
                f"Create an onboarding plan for: {json.dumps(task.data, ensure_ascii=False, default=str)}",
                run,
            )
            plan = self.parse_object(completion.text) or {"raw_plan": completion.text}

            run.context.advance(LeadStage.CLOSED_WON, onboarding_plan=plan)
            await self.record_stage_result(run, ONBOARDING_PLAN_STAGE, plan, completion.usage.total_tokens)
            await self.send_message(
                AgentName.COMMUNICATOR,
                MessageType.TASK_REQUEST,
                TaskRequestPayload(
                    task="send_onboarding",
                    lead_id=run.lead_id,
                    data={"plan": plan, "client_data": run.context.lead_data},
                ),
                execution_id=run.execution_id,
            )
        except Exception as exc:
            raise await self.fail_stage(run, ONBOARDING_PLAN_STAGE, exc) from exc
