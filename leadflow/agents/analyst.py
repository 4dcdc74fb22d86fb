"""Pipeline reporting."""
from __future__ import annotations

import json
import logging
from typing import Optional

from leadflow.agents.base import BaseAgent
from leadflow.core.models import AgentMessage, AgentName, MessageType
from leadflow.core.payloads import TaskRequestPayload
from leadflow.orchestration.run import ExecutionRun

logger = logging.getLogger(__name__)

ANALYSIS_STAGE = "analysis"


class AnalystAgent(BaseAgent):
    name = AgentName.ANALYST.value
    specialization = "Data analysis"

    def system_prompt(self) -> str:
        return """You are the data analyst of a law firm's sales pipeline.
Produce reports on conversion, lead sources, practice areas and response
times, with concrete recommendations.

Answer ONLY with JSON:
{
  "resumo": "executive summary",
  "metricas": {"nome": "valor"},
  "insights": ["observations"],
  "recomendacoes": ["actions"]
}"""

    async def handle_message(self, message: AgentMessage, run: Optional[ExecutionRun]) -> None:
        payload = message.payload
        if message.type is MessageType.TASK_REQUEST and payload.task == "generate_report":
            await self.generate_report(payload, self.require_run(run, message))
        else:
            logger.debug(f"{self.name} ignoring {message.type.value} from {message.sender}")

    async def generate_report(self, task: TaskRequestPayload, run: ExecutionRun) -> None:
        try:
            completion = await self.process_with_ai_retry(
                f"Generate a report for: {json.dumps(task.data, ensure_ascii=False, default=str)}",
                run,
            )
            report = self.parse_object(completion.text) or {"raw_report": completion.text}
            await self.record_stage_result(run, ANALYSIS_STAGE, report, completion.usage.total_tokens)
            await self.mark_execution_completed(run)
        except Exception as exc:
            raise await self.fail_stage(run, ANALYSIS_STAGE, exc) from exc
