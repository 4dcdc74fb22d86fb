"""Formats client-facing messages and closes the run.

This is the last agent of the standard pipeline: it marks the execution
completed once the proposal (or onboarding plan) has been formatted.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Optional

from leadflow.agents.base import BaseAgent
from leadflow.core.models import AgentMessage, AgentName, Channel, LeadStage, MessageType
from leadflow.core.payloads import StatusUpdatePayload, TaskRequestPayload
from leadflow.orchestration.run import ExecutionRun

logger = logging.getLogger(__name__)

MESSAGE_SENT_STAGE = "message_sent"
ONBOARDING_SENT_STAGE = "onboarding_sent"

_CONTACT_FIELDS = {
    Channel.WHATSAPP: ("telefone", "phone"),
    Channel.PHONE: ("telefone", "phone"),
    Channel.EMAIL: ("email",),
}


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


class CommunicatorAgent(BaseAgent):
    name = AgentName.COMMUNICATOR.value
    specialization = "Communication"

    def system_prompt(self) -> str:
        return """You are the communication agent of a law firm.
Format messages for the client's channel. WhatsApp: short blocks, at most
two emojis, *bold* for emphasis. Email: clear subject, formal greeting,
short paragraphs and a call to action. Always personalise with the
client's name and avoid legal jargon.

Answer ONLY with JSON:
{
  "canal": "whatsapp" | "email" | "chat",
  "mensagem_formatada": "ready-to-send text",
  "assunto": "email only",
  "horario_sugerido": "best time to send",
  "tom_usado": "formal" | "semiformal" | "casual"
}"""

    async def handle_message(self, message: AgentMessage, run: Optional[ExecutionRun]) -> None:
        payload = message.payload
        if message.type is not MessageType.TASK_REQUEST:
            logger.debug(f"{self.name} ignoring {message.type.value} from {message.sender}")
            return
        if payload.task == "send_proposal":
            await self.send_proposal(payload, self.require_run(run, message))
        elif payload.task == "send_onboarding":
            await self.send_onboarding(payload, self.require_run(run, message))

    def formatted_message(self, text: str) -> str:
        parsed = self.parse_object(text)
        if parsed is None:
            return text
        return parsed.get("mensagem_formatada") or parsed.get("message") or text

    async def send_proposal(self, task: TaskRequestPayload, run: ExecutionRun) -> None:
        try:
            proposal = task.data.get("proposal", task.data)
            channel = run.context.metadata.channel
            completion = await self.process_with_ai_retry(
                f"Format this proposal for {channel.value} in a professional tone: {_as_text(proposal)}",
                run,
            )
            message = self.formatted_message(completion.text)

            await self.deliver(run, message)

            run.context.advance(LeadStage.PROPOSAL_SENT, formatted_message=message)
            await self.record_stage_result(run, MESSAGE_SENT_STAGE, message, completion.usage.total_tokens)
            await self.send_message(
                AgentName.COORDINATOR,
                MessageType.STATUS_UPDATE,
                StatusUpdatePayload(stage=LeadStage.PROPOSAL_SENT.value, lead_id=run.lead_id, agent_name=self.name),
                execution_id=run.execution_id,
            )
            await self.mark_execution_completed(run)
            logger.info(f"{self.name}: proposal sent for lead {run.lead_id}")
        except Exception as exc:
            raise await self.fail_stage(run, MESSAGE_SENT_STAGE, exc) from exc

    async def send_onboarding(self, task: TaskRequestPayload, run: ExecutionRun) -> None:
        try:
            completion = await self.process_with_ai_retry(
                "Format this onboarding plan for the client. Be welcoming and clear, "
                f"and organise the information visually.\n\nPlan: {_as_text(task.data.get('plan'))}",
                run,
                context=task.data.get("client_data"),
            )
            message = self.formatted_message(completion.text)
            await self.deliver(run, message)
            await self.record_stage_result(run, ONBOARDING_SENT_STAGE, message, completion.usage.total_tokens)
            await self.mark_execution_completed(run)
        except Exception as exc:
            raise await self.fail_stage(run, ONBOARDING_SENT_STAGE, exc) from exc

    async def deliver(self, run: ExecutionRun, text: str) -> bool:
        """Push ``text`` through the outbound channel; never fails the run."""
        outbound = self._services.outbound
        if outbound is None:
            return False
        channel = run.context.metadata.channel
        lead_data = run.context.lead_data
        contact = next(
            (lead_data[key] for key in _CONTACT_FIELDS.get(channel, ()) if lead_data.get(key)),
            None,
        )
        if contact is None:
            logger.info(f"{self.name}: no {channel.value} contact for lead {run.lead_id}; delivery skipped")
            return False
        try:
            sent = await outbound.send(str(contact), text, channel=channel, lead_id=run.lead_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"{self.name}: {channel.value} delivery failed for lead {run.lead_id}: {exc}")
            return False
        if not sent:
            logger.warning(f"{self.name}: {channel.value} delivery rejected for lead {run.lead_id}")
        return sent
