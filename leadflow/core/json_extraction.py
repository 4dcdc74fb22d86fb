"""Resilient extraction of JSON values from free-form model output.

Models are asked for JSON but routinely wrap it in prose, fences or slightly
invalid syntax. ``extract_json`` tries a fixed sequence of strategies and
reports which one worked; it never raises.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Tuple, Union

_OBJECT_BLOCK = re.compile(r"\{[\s\S]*\}")
_FENCED_BLOCK = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)```")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_SINGLE_QUOTED = re.compile(r"'([^'\\\n]*)'")
_UNQUOTED_KEY = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)\s*:")


class ParseStrategy(str, Enum):
    WHOLE_TEXT = "whole_text"
    OBJECT_BLOCK = "object_block"
    CLEANED_BLOCK = "cleaned_block"
    FENCED_BLOCK = "fenced_block"


@dataclass(frozen=True)
class JSONExtraction:
    """Outcome of :func:`extract_json`: either a value or the reason there is none."""

    value: Any = None
    strategy: Optional[ParseStrategy] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.strategy is not None


class _NoCandidate(Exception):
    pass


def _loads(candidate: str) -> Any:
    return json.loads(candidate)


def _whole_text(text: str) -> Any:
    return _loads(text.strip())


def _object_block(text: str) -> Any:
    match = _OBJECT_BLOCK.search(text)
    if not match:
        raise _NoCandidate("no object block")
    return _loads(match.group(0))


def clean_json_text(candidate: str) -> str:
    """Repair trailing commas, single-quoted strings and bare keys."""
    cleaned = _TRAILING_COMMA.sub(r"\1", candidate)
    cleaned = _SINGLE_QUOTED.sub(r'"\1"', cleaned)
    cleaned = _UNQUOTED_KEY.sub(r'\1"\2":', cleaned)
    return cleaned


def _cleaned_block(text: str) -> Any:
    match = _OBJECT_BLOCK.search(text)
    candidate = match.group(0) if match else text.strip()
    return _loads(clean_json_text(candidate))


def _fenced_block(text: str) -> Any:
    match = _FENCED_BLOCK.search(text)
    if not match:
        raise _NoCandidate("no fenced block")
    body = match.group(1).strip()
    try:
        return _loads(body)
    except ValueError:
        return _loads(clean_json_text(body))


# A text that is valid JSON as a whole is taken verbatim before any
# extraction, so arrays and scalars are not reduced to an inner object.
_PIPELINE: Tuple[Tuple[ParseStrategy, Callable[[str], Any]], ...] = (
    (ParseStrategy.WHOLE_TEXT, _whole_text),
    (ParseStrategy.OBJECT_BLOCK, _object_block),
    (ParseStrategy.CLEANED_BLOCK, _cleaned_block),
    (ParseStrategy.FENCED_BLOCK, _fenced_block),
)


def extract_json(text: Union[str, bytes, None]) -> JSONExtraction:
    """Run every strategy in order and return the first value that parses."""
    if text is None:
        return JSONExtraction(error="no text")
    if isinstance(text, (bytes, bytearray)):
        text = bytes(text).decode("utf-8", errors="replace")
    if not isinstance(text, str):
        return JSONExtraction(error=f"unsupported input type {type(text).__name__}")
    if not text.strip():
        return JSONExtraction(error="empty text")

    errors = []
    for strategy, attempt in _PIPELINE:
        try:
            return JSONExtraction(value=attempt(text), strategy=strategy)
        except (ValueError, RecursionError, _NoCandidate) as exc:
            errors.append(f"{strategy.value}: {exc}")
    return JSONExtraction(error="; ".join(errors))


def safe_parse_json(text: Union[str, bytes, None]) -> Optional[Any]:
    """Return the parsed value, or ``None`` when no strategy succeeds."""
    return extract_json(text).value
