"""Tests for routing decisions, progress monitoring and fallbacks."""
from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from leadflow.agents.base import AgentServices, AgentSettings
from leadflow.agents.coordinator import CoordinatorAgent, extract_routing_fields
from leadflow.core.errors import CompletionUnavailableError
from leadflow.core.models import AgentMessage, AgentName, ExecutionStatus, MessageType, Priority
from stubs import RecordedSleeps, RecordingRouter, StubCompletion, make_run


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _fallbacks(reason: str) -> float:
    return REGISTRY.get_sample_value("leadflow_routing_fallbacks_total", {"reason": reason}) or 0.0


async def _coordinator(reply):
    run = await make_run({"nome": "Ana"})
    router = RecordingRouter(runs={run.execution_id: run})
    agent = CoordinatorAgent(
        router,
        AgentServices(completion=StubCompletion({AgentName.COORDINATOR.value: reply}), sleep=RecordedSleeps()),
        AgentSettings(max_retries=2),
    )
    return agent, router, run


def _plan_request(run) -> AgentMessage:
    return AgentMessage.create(
        "System",
        AgentName.COORDINATOR,
        MessageType.TASK_REQUEST,
        {"task": "plan_execution", "data": {"message": "Quanto custa?", "lead_data": {"nome": "Ana"}}},
        execution_id=run.execution_id,
        requires_response=False,
    )


def _status(run, stage: str, **data) -> AgentMessage:
    return AgentMessage.create(
        AgentName.QUALIFIER,
        AgentName.COORDINATOR,
        MessageType.STATUS_UPDATE,
        {"stage": stage, "lead_id": run.lead_id, "data": data},
        execution_id=run.execution_id,
    )


@pytest.mark.anyio
async def test_model_choice_is_followed() -> None:
    agent, router, run = await _coordinator(
        '{"next_agent": "Comercial", "task": "create_proposal", "priority": "alta", "reason": "asked for price"}'
    )

    await agent.handle_message(_plan_request(run), run)

    [sent] = router.sent
    assert sent.recipient == AgentName.COMMERCIAL.value
    assert sent.payload.task == "create_proposal"
    assert sent.payload.data["message"] == "Quanto custa?"
    assert sent.priority is Priority.HIGH
    assert sent.requires_response
    decision = run.context.decisions[AgentName.COORDINATOR.value]
    assert decision.decision == AgentName.COMMERCIAL.value
    assert decision.reasoning == "asked for price"
    assert run.tracker.get_result().stages == []


@pytest.mark.anyio
async def test_unknown_agent_falls_back_to_qualifier() -> None:
    before = _fallbacks("unknown_agent")
    agent, router, run = await _coordinator('{"next_agent": "DoesNotExist", "task": "x"}')

    await agent.handle_message(_plan_request(run), run)

    [sent] = router.sent
    assert sent.recipient == AgentName.QUALIFIER.value
    assert sent.payload.task == "analyze_lead"
    assert run.context.decisions[AgentName.COORDINATOR.value].confidence == 0.0
    assert _fallbacks("unknown_agent") == before + 1


@pytest.mark.anyio
async def test_unregistered_agent_falls_back_to_qualifier() -> None:
    agent, router, run = await _coordinator('{"next_agent": "Analista"}')
    router.agents.discard(AgentName.ANALYST.value)

    await agent.handle_message(_plan_request(run), run)

    assert router.sent[0].recipient == AgentName.QUALIFIER.value


@pytest.mark.anyio
async def test_routing_keys_recovered_from_loose_text() -> None:
    agent, router, run = await _coordinator("Routing -> next_agent: 'Juridico', task: 'validate_case'")

    await agent.handle_message(_plan_request(run), run)

    assert router.sent[0].recipient == AgentName.LEGAL.value
    assert router.sent[0].payload.task == "validate_case"


def test_extract_routing_fields() -> None:
    fields = extract_routing_fields('next_agent = "Comercial"\nreason: "quer orçamento"')
    assert fields == {"next_agent": "Comercial", "reason": "quer orçamento"}
    assert extract_routing_fields("nothing useful") == {}


@pytest.mark.anyio
async def test_unavailable_model_routes_to_qualifier() -> None:
    before = _fallbacks("model_unavailable")
    agent, router, run = await _coordinator(CompletionUnavailableError("down"))

    await agent.handle_message(_plan_request(run), run)

    assert router.sent[0].recipient == AgentName.QUALIFIER.value
    assert _fallbacks("model_unavailable") == before + 1


@pytest.mark.anyio
async def test_status_updates_advance_the_pipeline() -> None:
    agent, router, run = await _coordinator("{}")

    await agent.handle_message(_status(run, "qualified", analysis={"score": 80}), run)
    await agent.handle_message(_status(run, "validated", viable=True), run)

    assert [(m.recipient, m.payload.task) for m in router.sent] == [
        (AgentName.LEGAL.value, "validate_case"),
        (AgentName.COMMERCIAL.value, "create_proposal"),
    ]
    assert router.sent[0].payload.data == {"analysis": {"score": 80}}

    # the commercial agent hands its proposal to the communicator itself
    await agent.handle_message(_status(run, "proposal_created"), run)
    assert len(router.sent) == 2

    await agent.handle_message(_status(run, "proposal_sent"), run)
    assert run.routing_attempts == {}


@pytest.mark.anyio
async def test_repeated_routing_moves_to_fallback_agent() -> None:
    agent, router, run = await _coordinator("{}")

    for _ in range(3):
        await agent.handle_message(_status(run, "qualified"), run)

    assert [m.recipient for m in router.sent] == [
        AgentName.LEGAL.value,
        AgentName.LEGAL.value,
        AgentName.COMMERCIAL.value,
    ]
    assert router.sent[-1].payload.fallback_from == AgentName.LEGAL.value


@pytest.mark.anyio
async def test_exhausted_communicator_escalates_to_human() -> None:
    agent, router, run = await _coordinator("{}")
    run.count_attempt(AgentName.COMMUNICATOR.value)
    run.count_attempt(AgentName.COMMUNICATOR.value)

    report = AgentMessage.create(
        AgentName.COMMERCIAL,
        AgentName.COORDINATOR,
        MessageType.ERROR_REPORT,
        {"error": "quota", "original_message_id": "msg_1", "agent_name": AgentName.COMMERCIAL.value},
        execution_id=run.execution_id,
    )

    await agent.handle_message(report, run)

    assert router.sent == []
    assert run.tracker.status is ExecutionStatus.FAILED
    stage = run.tracker.get_stage("human_escalation")
    assert stage.success is False
    assert stage.result["last_failed_agent"] == AgentName.COMMUNICATOR.value
    assert "Human escalation required" in run.tracker.error
    assert run.routing_attempts == {}


@pytest.mark.anyio
async def test_error_report_triggers_fallback_while_live() -> None:
    agent, router, run = await _coordinator("{}")
    report = AgentMessage.create(
        AgentName.QUALIFIER,
        AgentName.COORDINATOR,
        MessageType.ERROR_REPORT,
        {"error": "boom", "original_message_id": "msg_1", "agent_name": AgentName.QUALIFIER.value},
        execution_id=run.execution_id,
    )

    await agent.handle_message(report, run)
    assert router.sent[0].recipient == AgentName.LEGAL.value
    assert router.sent[0].payload.fallback_from == AgentName.QUALIFIER.value

    await run.tracker.mark_failed("qualifier crashed")
    await agent.handle_message(report, run)
    assert len(router.sent) == 1
