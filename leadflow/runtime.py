"""Application runtime composition helpers."""
from __future__ import annotations

from functools import lru_cache

from leadflow.agents.base import AgentServices
from leadflow.config import config
from leadflow.orchestration.orchestrator import MultiAgentSystem
from leadflow.services.completion import OpenAICompletionService
from leadflow.services.execution_store import InMemoryExecutionStore
from leadflow.services.knowledge import InMemoryKnowledgeBase
from leadflow.services.llm_pool import LLMPool
from leadflow.services.memory import InMemoryMemoryStore
from leadflow.services.outbound import RecordingOutbound


@lru_cache
def get_llm_pool() -> LLMPool:
    pool = LLMPool()
    model = config.orchestration.default_model

    # Azure wins when both are configured
    if config.azure_openai:
        pool.register_azure_openai(model, config.azure_openai)
    elif config.openai:
        pool.register_openai(model, config.openai)

    return pool


@lru_cache
def get_completion_service() -> OpenAICompletionService:
    return OpenAICompletionService(get_llm_pool())


@lru_cache
def get_memory() -> InMemoryMemoryStore:
    return InMemoryMemoryStore()


@lru_cache
def get_knowledge_base() -> InMemoryKnowledgeBase:
    return InMemoryKnowledgeBase()


@lru_cache
def get_execution_store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore(config.orchestration.cost_per_1k_tokens)


@lru_cache
def get_outbound() -> RecordingOutbound:
    return RecordingOutbound()


@lru_cache
def get_system() -> MultiAgentSystem:
    services = AgentServices(
        completion=get_completion_service(),
        memory=get_memory(),
        knowledge=get_knowledge_base(),
        outbound=get_outbound(),
    )
    return MultiAgentSystem(
        services=services,
        settings=config.orchestration,
        store=get_execution_store(),
    )
