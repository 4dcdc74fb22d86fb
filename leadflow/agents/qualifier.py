"""Lead qualification using a BANT-style assessment."""
from __future__ import annotations

import json
import logging
from typing import Optional

from leadflow.agents.base import BaseAgent
from leadflow.core.models import AgentMessage, AgentName, LeadStage, MessageType, Priority
from leadflow.core.payloads import StatusUpdatePayload, TaskRequestPayload
from leadflow.orchestration.run import ExecutionRun

logger = logging.getLogger(__name__)

QUALIFICATION_STAGE = "qualification"
DEFAULT_LEGAL_AREA = "trabalhista"


class QualifierAgent(BaseAgent):
    name = AgentName.QUALIFIER.value
    specialization = "Lead qualification"

    def system_prompt(self) -> str:
        return """You are the qualification agent of a law firm's intake pipeline.
Assess the lead with BANT (budget, authority, need, timeline) and decide
whether the case is worth pursuing. Practice areas: trabalhista, civil,
familia, consumidor. Never promise outcomes or give legal advice.

Answer ONLY with JSON:
{
  "qualificado": true | false,
  "score": 0-100,
  "area_juridica": "trabalhista" | "civil" | "familia" | "consumidor" | "outro",
  "urgencia": "critica" | "alta" | "media" | "baixa",
  "proximo_passo": "agendar_consulta" | "enviar_proposta" | "coletar_documentos" | "descartar",
  "motivo": "short justification",
  "perguntas_pendentes": ["missing information"]
}"""

    async def handle_message(self, message: AgentMessage, run: Optional[ExecutionRun]) -> None:
        payload = message.payload
        if message.type is MessageType.TASK_REQUEST and payload.task == "analyze_lead":
            await self.analyze_lead(payload, self.require_run(run, message))
        else:
            logger.debug(f"{self.name} ignoring {message.type.value} from {message.sender}")

    async def analyze_lead(self, task: TaskRequestPayload, run: ExecutionRun) -> None:
        logger.info(f"{self.name} analysing lead {run.lead_id}")
        try:
            completion = await self.process_with_ai_retry(
                "Analyse this lead and determine legal area, urgency and viability: "
                f"{json.dumps(task.data, ensure_ascii=False, default=str)}",
                run,
            )
            analysis = self.parse_object(completion.text) or {"raw_analysis": completion.text}
            qualified = analysis.get("qualificado") is not False

            await self.record_stage_result(run, QUALIFICATION_STAGE, analysis, completion.usage.total_tokens)

            if not qualified:
                run.context.advance(LeadStage.CLOSED_LOST, analysis=analysis)
                logger.info(f"{self.name}: lead {run.lead_id} disqualified ({analysis.get('motivo')})")
                await self.mark_execution_completed(run)
                return

            run.context.advance(
                LeadStage.QUALIFIED,
                analysis=analysis,
                legal_area=analysis.get("area_juridica") or DEFAULT_LEGAL_AREA,
            )
            await self.send_message(
                AgentName.COORDINATOR,
                MessageType.STATUS_UPDATE,
                StatusUpdatePayload(
                    stage=LeadStage.QUALIFIED.value,
                    lead_id=run.lead_id,
                    agent_name=self.name,
                    data={**task.data, "analysis": analysis},
                ),
                Priority.HIGH,
                execution_id=run.execution_id,
            )
        except Exception as exc:
            raise await self.fail_stage(run, QUALIFICATION_STAGE, exc) from exc
