"""Long-term agent memory consulted before each completion call.

Agents "remember" earlier interactions, decisions and facts about a lead.
The production backend is a vector store; the in-process implementation
here ranks by token overlap so the orchestration can run without one.
"""
from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from leadflow.core.models import utcnow

logger = logging.getLogger(__name__)

_WORD = re.compile(r"\w+", re.UNICODE)


class MemoryType(str, Enum):
    CONVERSATION = "conversation"
    DECISION = "decision"
    PREFERENCE = "preference"
    FACT = "fact"
    SUMMARY = "summary"


_TYPE_LABELS = {
    MemoryType.CONVERSATION: "Previous conversation",
    MemoryType.DECISION: "Decision taken",
    MemoryType.PREFERENCE: "Client preference",
    MemoryType.FACT: "Recorded fact",
    MemoryType.SUMMARY: "Summary",
}


@dataclass(slots=True)
class MemoryEntry:
    tenant_id: str
    agent_name: str
    content: str
    memory_type: MemoryType = MemoryType.CONVERSATION
    importance: int = 5
    lead_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    expires_at: Optional[datetime] = None
    id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class MemorySearchResult:
    id: str
    agent_name: str
    memory_type: MemoryType
    content: str
    importance: int
    similarity: float
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class MemoryContext:
    memories: List[MemorySearchResult]
    summary: str


class MemoryService(Protocol):
    async def recall(
        self,
        query: str,
        tenant_id: str,
        *,
        lead_id: Optional[str] = None,
        agent_name: Optional[str] = None,
        limit: int = 10,
        threshold: float = 0.7,
    ) -> List[MemorySearchResult]: ...

    async def store(self, entry: MemoryEntry) -> Optional[str]: ...


def _tokens(text: str) -> set:
    return {word.lower() for word in _WORD.findall(text) if len(word) > 2}


def similarity(query: str, content: str) -> float:
    """Share of query words present in ``content`` (0.0 - 1.0)."""
    query_tokens = _tokens(query)
    if not query_tokens:
        return 0.0
    return len(query_tokens & _tokens(content)) / len(query_tokens)


class InMemoryMemoryStore:
    """Process-local memory store with the same contract as the vector backend."""

    def __init__(self) -> None:
        self._entries: Dict[str, MemoryEntry] = {}

    async def store(self, entry: MemoryEntry) -> Optional[str]:
        """Persist ``entry``; returns its id, or ``None`` if it was rejected."""
        if not entry.content.strip():
            logger.warning(f"Refusing to store empty memory for {entry.agent_name}")
            return None
        entry.id = entry.id or str(uuid.uuid4())
        entry.importance = max(1, min(10, entry.importance))
        self._entries[entry.id] = entry
        logger.debug(f"Memory stored id={entry.id} agent={entry.agent_name} type={entry.memory_type.value}")
        return entry.id

    async def recall(
        self,
        query: str,
        tenant_id: str,
        *,
        lead_id: Optional[str] = None,
        agent_name: Optional[str] = None,
        memory_type: Optional[MemoryType] = None,
        limit: int = 10,
        threshold: float = 0.7,
    ) -> List[MemorySearchResult]:
        now = utcnow()
        results = []
        for entry in self._entries.values():
            if entry.tenant_id != tenant_id:
                continue
            if entry.expires_at is not None and entry.expires_at <= now:
                continue
            if lead_id is not None and entry.lead_id != lead_id:
                continue
            if agent_name is not None and entry.agent_name != agent_name:
                continue
            if memory_type is not None and entry.memory_type != memory_type:
                continue
            score = similarity(query, entry.content)
            if score < threshold:
                continue
            results.append(
                MemorySearchResult(
                    id=entry.id or "",
                    agent_name=entry.agent_name,
                    memory_type=entry.memory_type,
                    content=entry.content,
                    importance=entry.importance,
                    similarity=score,
                    created_at=entry.created_at,
                    metadata=dict(entry.metadata),
                )
            )
        results.sort(key=lambda r: (r.similarity, r.importance, r.created_at), reverse=True)
        return results[:limit]

    async def clean_expired(self, tenant_id: str) -> int:
        now = utcnow()
        expired = [
            key
            for key, entry in self._entries.items()
            if entry.tenant_id == tenant_id and entry.expires_at is not None and entry.expires_at <= now
        ]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info(f"Expired memories cleaned count={len(expired)} tenant={tenant_id}")
        return len(expired)

    def stats(self, tenant_id: str) -> Dict[str, Any]:
        by_type: Dict[str, int] = {}
        by_agent: Dict[str, int] = {}
        total = 0
        for entry in self._entries.values():
            if entry.tenant_id != tenant_id:
                continue
            total += 1
            by_type[entry.memory_type.value] = by_type.get(entry.memory_type.value, 0) + 1
            by_agent[entry.agent_name] = by_agent.get(entry.agent_name, 0) + 1
        return {"total": total, "by_type": by_type, "by_agent": by_agent}


async def build_memory_context(
    memory: MemoryService,
    query: str,
    tenant_id: str,
    *,
    lead_id: Optional[str] = None,
    agent_name: Optional[str] = None,
    limit: int = 5,
    threshold: float = 0.65,
    max_chars: int = 2000,
) -> MemoryContext:
    """Recall relevant memories and render them as a bounded prompt section."""
    memories = await memory.recall(
        query,
        tenant_id,
        lead_id=lead_id,
        agent_name=agent_name,
        limit=limit,
        threshold=threshold,
    )
    if not memories:
        return MemoryContext(memories=[], summary="")

    lines: List[str] = []
    used: List[MemorySearchResult] = []
    total_chars = 0
    for item in memories:
        label = _TYPE_LABELS.get(item.memory_type, item.memory_type.value)
        line = f"{len(lines) + 1}. [{label}] ({item.agent_name}): {item.content.strip()}"
        if total_chars + len(line) > max_chars:
            break
        lines.append(line)
        used.append(item)
        total_chars += len(line)

    if not lines:
        return MemoryContext(memories=[], summary="")
    summary = f"AGENT MEMORY ({len(lines)} relevant records):\n" + "\n".join(lines)
    return MemoryContext(memories=used, summary=summary)
