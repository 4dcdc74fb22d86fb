"""End-to-end tests for the multi-agent system."""
from __future__ import annotations

import asyncio

import pytest

from leadflow.agents.base import AgentServices
from leadflow.config import OrchestrationConfig
from leadflow.core.errors import AgentNotFoundError, MessageValidationError
from leadflow.core.models import AgentMessage, AgentName, AgentState, ExecutionStatus, MessageType
from leadflow.orchestration.orchestrator import MultiAgentSystem
from leadflow.services.execution_store import InMemoryExecutionStore
from leadflow.services.outbound import RecordingOutbound
from stubs import HangingCompletion, RecordedSleeps, StubCompletion

PIPELINE_REPLIES = {
    AgentName.COORDINATOR.value: '{"next_agent": "Qualificador", "task": "analyze_lead", "reason": "novo lead"}',
    AgentName.QUALIFIER.value: '{"qualificado": true, "area_juridica": "trabalhista", "score": 85}',
    AgentName.LEGAL.value: '{"viavel": true, "complexidade": "media"}',
    AgentName.COMMERCIAL.value: '{"proposta": {"valor_total": "R$ 5.000,00"}, "mensagem_cliente": "Proposta"}',
    AgentName.COMMUNICATOR.value: '{"mensagem_formatada": "Olá! Preparamos sua proposta."}',
}


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _system(completion, **settings) -> MultiAgentSystem:
    return MultiAgentSystem(
        services=AgentServices(completion=completion, outbound=RecordingOutbound(), sleep=RecordedSleeps()),
        settings=OrchestrationConfig(**settings),
        store=InMemoryExecutionStore(),
    )


@pytest.mark.anyio
async def test_initialize_registers_all_agents_once() -> None:
    system = _system(StubCompletion({}))
    await system.initialize()
    await system.initialize()

    names = sorted(desc.name for desc in system.list_agents())
    assert names == sorted(name.value for name in AgentName)
    assert system.is_ready()
    assert all(desc.state is AgentState.RUNNING for desc in system.list_agents())

    await system.shutdown()
    assert all(desc.state is AgentState.STOPPED for desc in system.list_agents())


@pytest.mark.anyio
async def test_lead_runs_through_the_whole_pipeline() -> None:
    completion = StubCompletion(PIPELINE_REPLIES, tokens=100)
    system = _system(completion)
    await system.initialize()

    result = await system.process_lead(
        {"nome": "Ana", "telefone": "+5511999999999"},
        "Fui demitido sem justa causa",
        wait_for_completion=True,
        timeout_ms=5000,
    )

    assert result.status is ExecutionStatus.COMPLETED
    assert result.qualification_result["area_juridica"] == "trabalhista"
    assert result.legal_validation["viavel"] is True
    assert result.proposal is not None
    assert result.formatted_messages == "Olá! Preparamos sua proposta."
    assert [stage.stage_name for stage in result.stages] == [
        "qualification",
        "legal_validation",
        "proposal",
        "message_sent",
    ]
    assert len(result.stages) == 4
    assert result.total_tokens == 400
    assert result.estimated_cost == pytest.approx(0.004)

    record = await system.store.get_execution(result.execution_id)
    assert record.status is ExecutionStatus.COMPLETED
    assert record.agents_involved == [
        AgentName.QUALIFIER.value,
        AgentName.LEGAL.value,
        AgentName.COMMERCIAL.value,
        AgentName.COMMUNICATOR.value,
    ]
    assert system.get_run(result.execution_id).context.decisions[AgentName.COORDINATOR.value].decision == (
        AgentName.QUALIFIER.value
    )
    await system.shutdown()


@pytest.mark.anyio
async def test_concurrent_leads_keep_separate_contexts() -> None:
    system = _system(StubCompletion(PIPELINE_REPLIES))
    await system.initialize()

    first, second = await asyncio.gather(
        system.process_lead({"id": "lead-a"}, "Fui demitido", timeout_ms=5000),
        system.process_lead({"id": "lead-b"}, "Quero me divorciar", timeout_ms=5000),
    )

    assert first.status is ExecutionStatus.COMPLETED
    assert second.status is ExecutionStatus.COMPLETED
    assert first.execution_id != second.execution_id
    assert system.get_run(first.execution_id).lead_id == "lead-a"
    assert system.get_run(second.execution_id).lead_id == "lead-b"
    await system.shutdown()


@pytest.mark.anyio
async def test_slow_model_returns_partial_result_on_timeout() -> None:
    system = _system(HangingCompletion())
    await system.initialize()

    result = await system.process_lead({}, "Olá", timeout_ms=50)

    assert result.status is ExecutionStatus.TIMEOUT
    assert result.stages == []
    assert result.error == "Execution timeout"
    await system.shutdown()


@pytest.mark.anyio
async def test_failed_stage_returns_failed_result() -> None:
    replies = dict(PIPELINE_REPLIES)
    replies[AgentName.COMMERCIAL.value] = RuntimeError("quota exceeded")
    system = _system(StubCompletion(replies), max_ai_retries=1)
    await system.initialize()

    result = await system.process_lead({}, "Quanto custa?", timeout_ms=5000)

    assert result.status is ExecutionStatus.FAILED
    assert [stage.stage_name for stage in result.stages] == ["qualification", "legal_validation", "proposal"]
    assert result.stages[-1].success is False
    assert "Comercial failed at proposal" in result.error
    await system.shutdown()


@pytest.mark.anyio
async def test_routing_to_unknown_agent_raises() -> None:
    system = _system(StubCompletion({}))
    await system.initialize()

    message = AgentMessage.create("System", "DoesNotExist", MessageType.TASK_REQUEST, {"task": "x"})
    with pytest.raises(AgentNotFoundError):
        await system.route_message(message)

    assert system.get_message_history() == []
    await system.shutdown()


@pytest.mark.anyio
async def test_unsupported_channel_is_rejected_before_any_execution_exists() -> None:
    system = _system(StubCompletion(PIPELINE_REPLIES))
    await system.initialize()

    with pytest.raises(MessageValidationError) as excinfo:
        await system.process_lead({"id": "lead-1"}, "oi", channel="fax", timeout_ms=5000)

    assert excinfo.value.details == {"channel": "fax"}
    assert system.get_system_stats()["tracked_executions"] == 0
    assert system.store.list_executions() == []
    assert system.get_message_history() == []
    await system.shutdown()


@pytest.mark.anyio
async def test_without_waiting_returns_processing_result() -> None:
    system = _system(StubCompletion(PIPELINE_REPLIES))
    await system.initialize()

    result = await system.process_lead({}, "Fui demitido", wait_for_completion=False, timeout_ms=5000)

    assert result.status is ExecutionStatus.PROCESSING
    final = await system.get_tracker(result.execution_id).wait_for_completion(5000)
    assert final.status is ExecutionStatus.COMPLETED
    await system.shutdown()


@pytest.mark.anyio
async def test_finished_runs_are_evicted_after_retention() -> None:
    system = _system(StubCompletion(PIPELINE_REPLIES), tracker_retention_seconds=0.05)
    await system.initialize()

    result = await system.process_lead({}, "Fui demitido", timeout_ms=5000)
    assert system.get_tracker(result.execution_id) is not None

    await asyncio.sleep(0.2)
    assert system.get_tracker(result.execution_id) is None
    assert (await system.store.get_execution(result.execution_id)).status is ExecutionStatus.COMPLETED
    await system.shutdown()


@pytest.mark.anyio
async def test_stats_history_and_reset() -> None:
    system = _system(StubCompletion(PIPELINE_REPLIES))
    await system.initialize()
    await system.process_lead({}, "Fui demitido", timeout_ms=5000)
    await asyncio.sleep(0.05)

    stats = system.get_system_stats()
    assert stats["total_agents"] == 7
    assert stats["messages_processed"] >= 6
    assert stats["executions_in_flight"] == 0
    assert stats["tracked_executions"] == 1
    assert stats["last_activity"] is not None
    assert set(stats["fallbacks"]) >= {"routing_fallbacks", "json_parse_failures"}

    history = system.get_message_history(limit=2)
    assert len(history) == 2
    assert history[0].recipient == AgentName.COMMUNICATOR.value

    await system.reset()
    assert system.get_message_history() == []
    assert system.get_system_stats()["tracked_executions"] == 0
    assert system.is_ready()
    await system.shutdown()
