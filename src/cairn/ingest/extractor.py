"""Knowledge extraction: entities and relationships from content text.

The model is asked for structured output against a closed JSON schema and
the reply is validated again with pydantic (unknown and missing fields are
rejected, entity types must be in the closed set, relationship endpoints
must name declared entities). A reply that fails validation is retried once;
a second failure raises SchemaValidationError, which is terminal.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from cairn.db.models import Entity, EntityType, normalize_name
from cairn.errors import SchemaValidationError
from cairn.providers.llm_client import LLMClient

logger = logging.getLogger(__name__)

_SCHEMA_ATTEMPTS = 2
_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)

DEFAULT_EXTRACTION_PROMPT = """\
You extract a knowledge graph from a personal knowledge base entry.

Identify the distinct entities the content is about and the relationships
between them. For every entity give its name, its type and a one or two
sentence description grounded in the content. Relationships are directed,
name their endpoints exactly as the entities are named, and use a short
verb phrase as type (e.g. "part of", "references", "depends on").

Prefer the names of existing entities listed below when the content refers
to the same thing. Do not invent facts that are not in the content."""


# ---------------------------------------------------------------------------
# Output schema
# ---------------------------------------------------------------------------


class ExtractedEntity(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    type: EntityType
    description: str

    @field_validator("type", mode="before")
    @classmethod
    def _parse_type(cls, value: Any) -> EntityType:
        if isinstance(value, EntityType):
            return value
        if not isinstance(value, str):
            raise ValueError("entity type must be a string")
        return EntityType.parse(value)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not normalize_name(value):
            raise ValueError("entity name is blank")
        return value.strip()


class ExtractedRelationship(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    from_: str = Field(alias="from", min_length=1)
    to: str = Field(min_length=1)
    type: str = Field(min_length=1)


class ExtractionResult(BaseModel):
    """Validated extractor output."""

    model_config = ConfigDict(extra="forbid")

    entities: list[ExtractedEntity]
    relationships: list[ExtractedRelationship]

    @model_validator(mode="after")
    def _endpoints_declared(self) -> "ExtractionResult":
        declared = {normalize_name(e.name) for e in self.entities}
        for rel in self.relationships:
            for endpoint in (rel.from_, rel.to):
                if normalize_name(endpoint) not in declared:
                    raise ValueError(
                        f"relationship endpoint '{endpoint}' is not a declared entity"
                    )
        return self


def response_format() -> dict[str, Any]:
    """Strict JSON-schema response format for the extraction call."""
    entity = {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "type": {"type": "string", "enum": [t.value for t in EntityType]},
            "description": {"type": "string"},
        },
        "required": ["name", "type", "description"],
        "additionalProperties": False,
    }
    relationship = {
        "type": "object",
        "properties": {
            "from": {"type": "string"},
            "to": {"type": "string"},
            "type": {"type": "string"},
        },
        "required": ["from", "to", "type"],
        "additionalProperties": False,
    }
    return {
        "type": "json_schema",
        "json_schema": {
            "name": "knowledge_extraction",
            "strict": True,
            "schema": {
                "type": "object",
                "properties": {
                    "entities": {"type": "array", "items": entity},
                    "relationships": {"type": "array", "items": relationship},
                },
                "required": ["entities", "relationships"],
                "additionalProperties": False,
            },
        },
    }


def parse_extraction(raw: str) -> ExtractionResult:
    """Validate a raw model reply (code fences tolerated).

    Raises:
        pydantic.ValidationError: Malformed JSON or a schema violation.
    """
    text = raw.strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)
    return ExtractionResult.model_validate_json(text)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class KnowledgeExtractor:
    """Ask the extraction model for entities/relationships and validate the reply.

    Args:
        llm: Completion capability.
        model: LiteLLM model string for extraction.
        system_prompt: Overrides DEFAULT_EXTRACTION_PROMPT.
    """

    def __init__(self, llm: LLMClient, model: str, system_prompt: str | None = None) -> None:
        self.llm = llm
        self.model = model
        self.system_prompt = system_prompt or DEFAULT_EXTRACTION_PROMPT

    async def extract(
        self,
        text: str,
        category: str,
        instructions: str = "",
        related: list[Entity] | None = None,
    ) -> ExtractionResult:
        """Extract knowledge from *text*.

        Provider errors propagate unchanged (they are classified upstream).

        Raises:
            SchemaValidationError: The reply failed validation twice.
        """
        messages = self._build_messages(text, category, instructions, related or [])
        last_error: PydanticValidationError | None = None
        for attempt in range(1, _SCHEMA_ATTEMPTS + 1):
            raw = await self.llm.complete(
                messages, model=self.model, response_format=response_format(), max_tokens=4096
            )
            try:
                result = parse_extraction(raw)
            except PydanticValidationError as exc:
                last_error = exc
                logger.warning(
                    "Extraction output failed validation (attempt %d/%d): %s",
                    attempt,
                    _SCHEMA_ATTEMPTS,
                    _summarize(exc),
                )
                continue
            logger.debug(
                "Extracted %d entities, %d relationships",
                len(result.entities),
                len(result.relationships),
            )
            return result

        raise SchemaValidationError(
            f"Extraction output did not match the schema after {_SCHEMA_ATTEMPTS} attempts: "
            f"{_summarize(last_error)}"
        )

    def _build_messages(
        self, text: str, category: str, instructions: str, related: list[Entity]
    ) -> list[dict[str, str]]:
        existing = "\n".join(
            f"- {e.name} ({e.entity_type.value})" for e in related
        ) or "(none)"
        user = (
            f"Category: {category or '(none)'}\n"
            f"Instructions: {instructions or '(none)'}\n\n"
            f"Existing entities:\n{existing}\n\n"
            f"Allowed entity types: {', '.join(t.value for t in EntityType)}\n\n"
            f"Content:\n{text}"
        )
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": user},
        ]


def _summarize(exc: PydanticValidationError | None) -> str:
    if exc is None:
        return "no output"
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(p) for p in first.get("loc", ())) or "root"
    return f"{len(errors)} error(s), first at {where}: {first.get('msg', '')}"

