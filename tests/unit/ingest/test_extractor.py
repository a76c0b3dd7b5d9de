"""Tests for knowledge extraction and output validation."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError as PydanticValidationError

from cairn.db.models import Entity, EntityType
from cairn.errors import ProviderError, SchemaValidationError
from cairn.ingest.extractor import KnowledgeExtractor, parse_extraction, response_format
from cairn.providers.llm_client import LLMClient

MODEL = "openai/gpt-4o-mini"

VALID = {
    "entities": [
        {"name": "HNSW", "type": "Concept", "description": "Layered proximity graph."},
        {"name": "Yu Malkov", "type": "person", "description": "Author of HNSW."},
    ],
    "relationships": [{"from": "HNSW", "to": "Yu Malkov", "type": "created by"}],
}


# ------------------------------------------------------------------
# parse_extraction()
# ------------------------------------------------------------------


def test_parse_valid_reply():
    result = parse_extraction(json.dumps(VALID))
    assert [e.name for e in result.entities] == ["HNSW", "Yu Malkov"]
    assert result.entities[1].type is EntityType.PERSON
    assert result.relationships[0].from_ == "HNSW"


def test_parse_tolerates_code_fence():
    result = parse_extraction(f"```json\n{json.dumps(VALID)}\n```")
    assert len(result.entities) == 2


def test_parse_empty_lists_ok():
    result = parse_extraction('{"entities": [], "relationships": []}')
    assert result.entities == []


@pytest.mark.parametrize(
    "reply",
    [
        "not json",
        '{"entities": []}',
        '{"entities": [], "relationships": [], "extra": 1}',
        json.dumps(
            {
                "entities": [{"name": "X", "type": "Planet", "description": ""}],
                "relationships": [],
            }
        ),
        json.dumps(
            {
                "entities": [{"name": "X", "type": "Idea", "description": ""}],
                "relationships": [{"from": "X", "to": "Y", "type": "relates to"}],
            }
        ),
        json.dumps(
            {"entities": [{"name": "   ", "type": "Idea", "description": ""}], "relationships": []}
        ),
    ],
    ids=["garbage", "missing-field", "extra-field", "unknown-type", "undeclared-endpoint", "blank"],
)
def test_parse_rejects_invalid(reply):
    with pytest.raises(PydanticValidationError):
        parse_extraction(reply)


def test_endpoint_match_uses_normalized_names():
    reply = {
        "entities": [{"name": "Rust", "type": "Concept", "description": ""}],
        "relationships": [{"from": " rust.", "to": "RUST", "type": "is"}],
    }
    assert len(parse_extraction(json.dumps(reply)).relationships) == 1


def test_response_format_lists_entity_types():
    fmt = response_format()
    assert fmt["json_schema"]["name"] == "knowledge_extraction"
    schema = fmt["json_schema"]["schema"]
    enum = schema["properties"]["entities"]["items"]["properties"]["type"]["enum"]
    assert set(enum) == {t.value for t in EntityType}


# ------------------------------------------------------------------
# KnowledgeExtractor
# ------------------------------------------------------------------


async def test_extract_valid_reply(llm):
    llm.replies = [json.dumps(VALID)]
    result = await KnowledgeExtractor(llm, MODEL).extract("HNSW text", "papers")
    assert len(result.entities) == 2
    assert len(llm.calls) == 1
    assert llm.calls[0]["model"] == MODEL
    assert llm.calls[0]["format"]["type"] == "json_schema"


async def test_extract_retries_once_after_invalid_reply(llm):
    llm.replies = ["{broken", json.dumps(VALID)]
    result = await KnowledgeExtractor(llm, MODEL).extract("HNSW text", "papers")
    assert len(result.entities) == 2
    assert len(llm.calls) == 2


async def test_extract_fails_after_two_invalid_replies(llm):
    llm.replies = ["{broken"]
    with pytest.raises(SchemaValidationError, match="after 2 attempts"):
        await KnowledgeExtractor(llm, MODEL).extract("HNSW text", "papers")
    assert len(llm.calls) == 2
    assert SchemaValidationError.retryable is False


async def test_user_message_carries_context(llm):
    related = [
        Entity(
            id="e1",
            owner="alice",
            source_id="c1",
            name="Vector index",
            description="",
            entity_type=EntityType.CONCEPT,
        )
    ]
    await KnowledgeExtractor(llm, MODEL).extract(
        "Some content", "research", instructions="focus on people", related=related
    )
    system, user = llm.calls[0]["messages"]
    assert system["role"] == "system"
    assert "Category: research" in user["content"]
    assert "focus on people" in user["content"]
    assert "- Vector index (Concept)" in user["content"]
    assert user["content"].endswith("Content:\nSome content")


async def test_custom_system_prompt(llm):
    await KnowledgeExtractor(llm, MODEL, system_prompt="Be terse.").extract("x", "")
    assert llm.calls[0]["messages"][0]["content"] == "Be terse."


class _FailingLLM(LLMClient):
    async def complete(self, messages, **kwargs):
        raise ProviderError("rate limited")

    async def describe_image(self, image, mime_type, prompt, *, model):
        raise NotImplementedError

    async def transcribe(self, path, *, model):
        raise NotImplementedError


async def test_provider_errors_propagate():
    with pytest.raises(ProviderError):
        await KnowledgeExtractor(_FailingLLM(), MODEL).extract("x", "")
