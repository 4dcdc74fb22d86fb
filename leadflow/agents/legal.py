"""Legal viability check for qualified leads."""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional

from leadflow.agents.base import BaseAgent
from leadflow.core.models import AgentMessage, AgentName, LeadStage, MessageType, Priority
from leadflow.core.payloads import StatusUpdatePayload, TaskRequestPayload
from leadflow.orchestration.run import ExecutionRun

logger = logging.getLogger(__name__)

LEGAL_VALIDATION_STAGE = "legal_validation"
VALIDATED_STATUS = "validated"

_VIABLE = re.compile(r"\bviável\b")
_NEGATED_VIABLE = re.compile(r"\b(?:não|nao|not)\s+(?:\w+\s+){0,3}viável\b")


def is_viable(validation: Optional[Dict[str, Any]], text: str) -> bool:
    """``viavel`` from the structured answer, else an unnegated "viável" in the text."""
    if validation is not None and isinstance(validation.get("viavel"), bool):
        return validation["viavel"]
    lowered = text.lower()
    return bool(_VIABLE.search(lowered)) and not _NEGATED_VIABLE.search(lowered)


class LegalAgent(BaseAgent):
    name = AgentName.LEGAL.value
    specialization = "Legal analysis"

    def system_prompt(self) -> str:
        return """You are the legal analyst of a law firm's intake pipeline.
Check whether the case is legally viable: merit, limitation periods,
evidence, complexity and a suggested strategy. Be conservative.

Answer ONLY with JSON:
{
  "viavel": true | false,
  "complexidade": "baixa" | "media" | "alta",
  "prazo_prescricional": "status of the limitation period",
  "fundamentacao": "legal basis",
  "estrategia": "suggested strategy",
  "documentos_necessarios": ["documents"],
  "riscos": ["risks"]
}"""

    async def handle_message(self, message: AgentMessage, run: Optional[ExecutionRun]) -> None:
        payload = message.payload
        if message.type is MessageType.TASK_REQUEST and payload.task == "validate_case":
            await self.validate_case(payload, self.require_run(run, message))
        else:
            logger.debug(f"{self.name} ignoring {message.type.value} from {message.sender}")

    async def validate_case(self, task: TaskRequestPayload, run: ExecutionRun) -> None:
        try:
            completion = await self.process_with_ai_retry(
                "Validate this case legally. Assess viability, complexity and strategy: "
                f"{json.dumps(task.data, ensure_ascii=False, default=str)}",
                run,
            )
            parsed = self.parse_object(completion.text)
            viable = is_viable(parsed, completion.text)
            validation = parsed if parsed is not None else {"raw_validation": completion.text}
            validation.setdefault("viavel", viable)

            await self.record_stage_result(run, LEGAL_VALIDATION_STAGE, validation, completion.usage.total_tokens)

            if not viable:
                run.context.advance(LeadStage.CLOSED_LOST, validation=validation, viable=False)
                logger.info(f"{self.name}: case for lead {run.lead_id} is not viable")
                await self.mark_execution_completed(run)
                return

            run.context.advance(LeadStage.LEGAL_VALIDATION, validation=validation, viable=True)
            await self.send_message(
                AgentName.COORDINATOR,
                MessageType.STATUS_UPDATE,
                StatusUpdatePayload(
                    stage=VALIDATED_STATUS,
                    lead_id=run.lead_id,
                    agent_name=self.name,
                    data={**task.data, "validation": validation, "viable": True},
                ),
                Priority.HIGH,
                execution_id=run.execution_id,
            )
        except Exception as exc:
            raise await self.fail_stage(run, LEGAL_VALIDATION_STAGE, exc) from exc
