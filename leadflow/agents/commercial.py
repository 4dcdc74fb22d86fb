"""Commercial proposals for viable cases."""
from __future__ import annotations

import json
import logging
from typing import Optional

from leadflow.agents.base import BaseAgent
from leadflow.core.models import AgentMessage, AgentName, LeadStage, MessageType
from leadflow.core.payloads import TaskRequestPayload
from leadflow.orchestration.run import ExecutionRun

logger = logging.getLogger(__name__)

PROPOSAL_STAGE = "proposal"


class CommercialAgent(BaseAgent):
    name = AgentName.COMMERCIAL.value
    specialization = "Sales"

    def system_prompt(self) -> str:
        return """You are the commercial agent of a law firm.
Write a personalised fee proposal for the case: fixed, success-based or
hybrid billing, instalments and validity. Never promise a court outcome;
court costs are charged separately.

Answer ONLY with JSON:
{
  "proposta": {
    "valor_total": "R$ X.XXX,XX",
    "modelo_cobranca": "fixo" | "exito" | "hibrido",
    "entrada": "R$ X.XXX,XX",
    "parcelas": "Nx de R$ XXX,XX",
    "validade": "DD/MM/AAAA"
  },
  "servicos_inclusos": ["services"],
  "prazo_estimado": "X meses",
  "proximos_passos": "how to close",
  "mensagem_cliente": "persuasive text for the client"
}"""

    async def handle_message(self, message: AgentMessage, run: Optional[ExecutionRun]) -> None:
        payload = message.payload
        if message.type is MessageType.TASK_REQUEST and payload.task == "create_proposal":
            await self.create_proposal(payload, self.require_run(run, message))
        else:
            logger.debug(f"{self.name} ignoring {message.type.value} from {message.sender}")

    async def create_proposal(self, task: TaskRequestPayload, run: ExecutionRun) -> None:
        try:
            completion = await self.process_with_ai_retry(
                "Create a commercial proposal including price, timeline and payment terms for: "
                f"{json.dumps(task.data, ensure_ascii=False, default=str)}",
                run,
            )
            proposal = self.parse_object(completion.text) or {
                "raw_proposal": completion.text,
                "mensagem_cliente": completion.text,
            }

            run.context.advance(LeadStage.PROPOSAL_CREATED, proposal=proposal)
            await self.record_stage_result(run, PROPOSAL_STAGE, proposal, completion.usage.total_tokens)

            await self.send_message(
                AgentName.COMMUNICATOR,
                MessageType.TASK_REQUEST,
                TaskRequestPayload(task="send_proposal", lead_id=run.lead_id, data={"proposal": proposal}),
                execution_id=run.execution_id,
            )
        except Exception as exc:
            raise await self.fail_stage(run, PROPOSAL_STAGE, exc) from exc
