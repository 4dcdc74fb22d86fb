"""Knowledge-base retrieval used to ground agent prompts (RAG)."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from leadflow.services.memory import similarity

MAX_CONTEXT_CHUNKS = 5
MAX_CONTEXT_CHARS = 2000


@dataclass(frozen=True, slots=True)
class KnowledgeChunk:
    content: str
    similarity: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class KnowledgeBase(Protocol):
    async def search(self, query: str, tenant_id: str, top_k: int = MAX_CONTEXT_CHUNKS) -> List[KnowledgeChunk]: ...


class InMemoryKnowledgeBase:
    """Tenant-scoped passages ranked by word overlap with the query."""

    def __init__(self, min_similarity: float = 0.1) -> None:
        self._documents: Dict[str, List[Dict[str, Any]]] = {}
        self._min_similarity = min_similarity

    def add(self, tenant_id: str, content: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self._documents.setdefault(tenant_id, []).append({"content": content, "metadata": metadata or {}})

    async def search(self, query: str, tenant_id: str, top_k: int = MAX_CONTEXT_CHUNKS) -> List[KnowledgeChunk]:
        scored = [
            KnowledgeChunk(
                content=doc["content"],
                similarity=similarity(query, doc["content"]),
                metadata=dict(doc["metadata"]),
            )
            for doc in self._documents.get(tenant_id, [])
        ]
        scored = [chunk for chunk in scored if chunk.similarity >= self._min_similarity]
        scored.sort(key=lambda chunk: chunk.similarity, reverse=True)
        return scored[:top_k]


def build_context(
    chunks: Sequence[KnowledgeChunk],
    max_chunks: int = MAX_CONTEXT_CHUNKS,
    max_chars: int = MAX_CONTEXT_CHARS,
) -> str:
    """Render retrieved passages as bullet lines within the char/row budget."""
    total_chars = 0
    lines: List[str] = []
    for item in chunks:
        chunk = (item.content or "").strip()
        if not chunk:
            continue
        if total_chars + len(chunk) > max_chars:
            break
        lines.append(f"- {chunk}")
        total_chars += len(chunk)
        if len(lines) >= max_chunks:
            break
    return "\n".join(lines)
