"""Tests for structured-output extraction from model text."""
from __future__ import annotations

import json
import random
import string

import pytest

from leadflow.core.json_extraction import JSONExtraction, ParseStrategy, clean_json_text, extract_json, safe_parse_json

ROUND_TRIP_VALUES = [
    {"qualificado": True, "score": 85, "area_juridica": "trabalhista"},
    {"nested": {"list": [1, 2, {"x": None}]}, "text": "viável"},
    [1, "two", {"three": 3}],
    "plain string",
    42,
    3.5,
    True,
    None,
]


@pytest.mark.parametrize("value", ROUND_TRIP_VALUES)
def test_serialized_values_round_trip(value) -> None:
    assert safe_parse_json(json.dumps(value)) == value


def test_object_inside_prose() -> None:
    text = 'Sure! Here is the routing:\n{"next_agent": "Juridico", "task": "validate_case"}\nHope it helps.'
    extraction = extract_json(text)
    assert extraction.ok
    assert extraction.strategy is ParseStrategy.OBJECT_BLOCK
    assert extraction.value["next_agent"] == "Juridico"


def test_cleaned_block_repairs_common_mistakes() -> None:
    text = "result: {next_agent: 'Comercial', 'reason': 'asked for price',}"
    extraction = extract_json(text)
    assert extraction.strategy is ParseStrategy.CLEANED_BLOCK
    assert extraction.value == {"next_agent": "Comercial", "reason": "asked for price"}


def test_fenced_block() -> None:
    text = "```json\n[1, 2, 3]\n```"
    extraction = extract_json(text)
    assert extraction.strategy is ParseStrategy.FENCED_BLOCK
    assert extraction.value == [1, 2, 3]


def test_clean_json_text_leaves_valid_json_parseable() -> None:
    assert json.loads(clean_json_text('{"a": [1, 2,], }')) == {"a": [1, 2]}


@pytest.mark.parametrize("text", [None, "", "   ", "no json here", "{broken", b"\xff\xfe"])
def test_failures_return_none(text) -> None:
    extraction = extract_json(text)
    assert extraction.value is None
    assert not extraction.ok
    assert extraction.error


def test_never_raises_on_arbitrary_text() -> None:
    rng = random.Random(1234)
    alphabet = string.printable + "{}[]:,'\"`ãé"
    for _ in range(500):
        text = "".join(rng.choice(alphabet) for _ in range(rng.randint(0, 80)))
        extract_json(text)
        safe_parse_json(text)


@pytest.mark.parametrize("size", [0, 1, 2, 7, 64, 512, 4096, 20_000])
def test_never_raises_on_random_bytes(size) -> None:
    rng = random.Random(size)
    for _ in range(50):
        data = rng.randbytes(size)
        assert isinstance(extract_json(data), JSONExtraction)
        assert isinstance(extract_json(bytearray(data)), JSONExtraction)
        safe_parse_json(data)


def test_never_raises_on_random_code_points() -> None:
    rng = random.Random(4321)
    for _ in range(300):
        # includes control characters and lone surrogates
        text = "".join(chr(rng.randrange(0x110000)) for _ in range(rng.randint(0, 200)))
        assert isinstance(extract_json(text), JSONExtraction)
        assert isinstance(extract_json("{" + text + "}"), JSONExtraction)
        safe_parse_json(text)


def test_deeply_nested_input_does_not_raise() -> None:
    assert safe_parse_json("[" * 100_000) is None
