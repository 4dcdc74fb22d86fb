"""HTTP surface tests using FastAPI's TestClient."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from leadflow import runtime
from leadflow.core.models import AgentName
from leadflow.main import app
from stubs import StubCompletion

REPLIES = {
    AgentName.COORDINATOR.value: '{"next_agent": "Qualificador", "reason": "novo lead"}',
    AgentName.QUALIFIER.value: '{"qualificado": true, "area_juridica": "trabalhista"}',
    AgentName.LEGAL.value: '{"viavel": true}',
    AgentName.COMMERCIAL.value: '{"proposta": {"valor_total": "R$ 3.000,00"}}',
    AgentName.COMMUNICATOR.value: '{"mensagem_formatada": "Olá!"}',
}


@pytest.fixture
def client(monkeypatch):
    completion = StubCompletion(REPLIES, tokens=10)
    monkeypatch.setattr(runtime, "get_completion_service", lambda: completion)
    runtime.get_system.cache_clear()
    with TestClient(app) as test_client:
        yield test_client
    runtime.get_system.cache_clear()


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_process_lead_and_fetch_execution(client: TestClient) -> None:
    response = client.post(
        "/leads",
        json={"message": "Fui demitido sem justa causa", "lead": {"nome": "Ana", "tenant_id": "t1"}},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["tenant_id"] == "t1"
    assert body["qualification_result"]["area_juridica"] == "trabalhista"
    assert [stage["stage_name"] for stage in body["stages"]] == [
        "qualification",
        "legal_validation",
        "proposal",
        "message_sent",
    ]
    assert body["total_tokens"] == 40

    execution = client.get(f"/executions/{body['execution_id']}")
    assert execution.status_code == 200
    assert execution.json()["formatted_messages"] == "Olá!"


def test_unknown_execution_is_404(client: TestClient) -> None:
    assert client.get("/executions/exec_missing").status_code == 404


def test_empty_message_is_rejected(client: TestClient) -> None:
    assert client.post("/leads", json={"message": ""}).status_code == 422


def test_agents_endpoints(client: TestClient) -> None:
    client.post("/leads", json={"message": "Quanto custa um divórcio?"})

    agents = client.get("/agents").json()
    assert {agent["name"] for agent in agents} == {name.value for name in AgentName}
    assert all(agent["state"] == "RUNNING" for agent in agents)

    stats = client.get("/agents/stats").json()
    assert stats["total_agents"] == 7
    assert stats["messages_processed"] >= 6

    messages = client.get("/agents/messages", params={"limit": 3}).json()
    assert len(messages) == 3
    assert {"sender", "recipient", "type", "payload"} <= set(messages[0])


def test_metrics_endpoint(client: TestClient) -> None:
    client.post("/leads", json={"message": "Fui demitido"})
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "leadflow_executions_total" in response.text
