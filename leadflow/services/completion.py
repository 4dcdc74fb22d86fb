"""Completion service contract and its OpenAI-backed implementation."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional, Protocol

import openai

from leadflow.core.errors import CompletionResponseError, CompletionUnavailableError
from leadflow.services.llm_pool import LLMPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True, slots=True)
class Completion:
    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: Optional[str] = None


class CompletionService(Protocol):
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> Completion: ...


class StreamingCompletionService(CompletionService, Protocol):
    def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[str]: ...


class OpenAICompletionService:
    """Chat completions through clients leased from an :class:`LLMPool`."""

    def __init__(self, llm_pool: LLMPool) -> None:
        self._llm_pool = llm_pool

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> Completion:
        try:
            async with self._llm_pool.acquire(model) as client:
                response = await client.chat.completions.create(
                    model=model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
        except KeyError as exc:
            raise CompletionUnavailableError(str(exc.args[0] if exc.args else exc), cause=exc) from exc
        except openai.APIConnectionError as exc:
            raise CompletionUnavailableError("Completion service unreachable", cause=exc) from exc
        except openai.RateLimitError as exc:
            raise CompletionUnavailableError("Completion service is rate limiting", cause=exc) from exc
        except openai.APIStatusError as exc:
            raise CompletionResponseError(
                f"Completion service returned HTTP {exc.status_code}",
                details={"status_code": exc.status_code},
                cause=exc,
            ) from exc
        except openai.APIError as exc:
            raise CompletionResponseError("Completion service returned an error", cause=exc) from exc

        if not response.choices or not response.choices[0].message.content:
            raise CompletionResponseError("Completion service returned no content", details={"model": model})

        usage = response.usage
        return Completion(
            text=response.choices[0].message.content,
            usage=TokenUsage(
                prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
                total_tokens=getattr(usage, "total_tokens", 0) or 0,
            ),
            model=getattr(response, "model", model),
        )

    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[str]:
        """Yield content deltas as they arrive."""
        try:
            async with self._llm_pool.acquire(model) as client:
                stream = await client.chat.completions.create(
                    model=model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    temperature=temperature,
                    max_tokens=max_tokens,
                    stream=True,
                )
                async for chunk in stream:
                    if chunk.choices and chunk.choices[0].delta.content:
                        yield chunk.choices[0].delta.content
        except KeyError as exc:
            raise CompletionUnavailableError(str(exc.args[0] if exc.args else exc), cause=exc) from exc
        except openai.APIConnectionError as exc:
            raise CompletionUnavailableError("Completion service unreachable", cause=exc) from exc
        except openai.RateLimitError as exc:
            raise CompletionUnavailableError("Completion service is rate limiting", cause=exc) from exc
        except openai.APIError as exc:
            raise CompletionResponseError("Completion stream failed", cause=exc) from exc
