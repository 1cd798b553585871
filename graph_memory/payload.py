"""Extraction payload validation.

The external extractor emits loosely typed JSON. It is validated item by item
into pydantic models at the boundary; malformed items are quarantined as
:class:`~graph_memory.errors.ValidationError` entries instead of aborting the
event, while a malformed envelope rejects the whole event.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

logger = logging.getLogger(__name__)

SOURCE_TYPES = frozenset({"note", "conversation", "meeting", "profile"})

ENTITY_TYPES = frozenset({
    "person", "place", "project", "organization", "topic",
    "concept", "event", "product", "other",
})

_ENTITY_TYPE_ALIASES = {
    "company": "organization",
    "org": "organization",
    "organisation": "organization",
    "location": "place",
    "content": "product",
    "tool": "product",
    "idea": "concept",
}

IMPORTANCE_TIERS = ("trivial", "low", "medium", "high", "critical")

_WS_RE = re.compile(r"\s+")


def normalize_name(name: str) -> str:
    """Case-insensitive dedup key: casefolded, whitespace collapsed."""
    return _WS_RE.sub(" ", name).strip().casefold()


def normalize_predicate(predicate: str) -> str:
    return _WS_RE.sub("_", predicate.strip().lower())


def _clamp_unit(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return max(0.0, min(1.0, float(value)))
    return value


# ---------------------------------------------------------------------------
# Item models
# ---------------------------------------------------------------------------

class ExtractedEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1, max_length=200)
    type: str = "other"
    subtype: Optional[str] = Field(default=None, max_length=64)
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    context: Optional[str] = Field(default=None, max_length=2000)
    summary: Optional[str] = Field(default=None, max_length=2000)
    sentiment: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    importance: Optional[str] = None
    expires_at: Optional[float] = None
    privacy_level: Optional[str] = Field(default=None, max_length=32)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = _WS_RE.sub(" ", v).strip()
        if not v:
            raise ValueError("name must not be blank")
        return v

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, v: Any) -> str:
        if v is None:
            return "other"
        t = str(v).strip().lower()
        t = _ENTITY_TYPE_ALIASES.get(t, t)
        return t if t in ENTITY_TYPES else "other"

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> Any:
        return 0.7 if v is None else _clamp_unit(v)

    @field_validator("importance", mode="before")
    @classmethod
    def _check_importance(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        tier = str(v).strip().lower()
        if tier not in IMPORTANCE_TIERS:
            raise ValueError(f"importance must be one of {', '.join(IMPORTANCE_TIERS)}")
        return tier


class ExtractedRelationship(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subject: str = Field(..., min_length=1, max_length=200)
    predicate: str = Field(..., min_length=1, max_length=64)
    object: str = Field(..., min_length=1, max_length=500)
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    valid_from: Optional[float] = None

    @field_validator("subject", "object")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = _WS_RE.sub(" ", v).strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("predicate")
    @classmethod
    def _normalize_predicate(cls, v: str) -> str:
        p = normalize_predicate(v)
        if not p:
            raise ValueError("predicate must not be blank")
        return p

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> Any:
        return 0.7 if v is None else _clamp_unit(v)


class ExtractedBehavior(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = Field(..., min_length=1, max_length=64)
    target_entity: Optional[str] = Field(default=None, max_length=200)
    topic: Optional[str] = Field(default=None, max_length=200)
    evidence: Optional[str] = Field(default=None, max_length=2000)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    @field_validator("type")
    @classmethod
    def _normalize_type(cls, v: str) -> str:
        p = normalize_predicate(v)
        if not p:
            raise ValueError("type must not be blank")
        return p

    @field_validator("target_entity", "topic")
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = _WS_RE.sub(" ", v).strip()
        return v or None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> Any:
        return _clamp_unit(v)


class ExtractedTopic(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1, max_length=200)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    context: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = _WS_RE.sub(" ", v).strip()
        if not v:
            raise ValueError("name must not be blank")
        return v

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> Any:
        return 0.5 if v is None else _clamp_unit(v)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

@dataclass
class ExtractionPayload:
    """Validated ingestion event."""

    source_type: str
    source_id: str
    entities: List[ExtractedEntity] = field(default_factory=list)
    relationships: List[ExtractedRelationship] = field(default_factory=list)
    behaviors: List[ExtractedBehavior] = field(default_factory=list)
    topics: List[ExtractedTopic] = field(default_factory=list)
    content: Optional[str] = None
    rejected: List[ValidationError] = field(default_factory=list)


M = TypeVar("M", bound=BaseModel)


def _describe(exc: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'item'}: {err['msg']}"
        for err in exc.errors()
    )


def _validate_items(
    raw: Dict[str, Any],
    key: str,
    model: Type[M],
    rejected: List[ValidationError],
) -> List[M]:
    items = raw.get(key)
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValidationError(f"'{key}' must be a list")
    valid: List[M] = []
    for idx, item in enumerate(items):
        try:
            valid.append(model.model_validate(item))
        except PydanticValidationError as exc:
            rejected.append(ValidationError(f"{key}[{idx}]: {_describe(exc)}", item))
    return valid


def parse_payload(
    raw: Any,
    source_type: str,
    source_id: str,
) -> ExtractionPayload:
    """Validate an extraction payload into an :class:`ExtractionPayload`.

    Raises ValidationError when the envelope itself is malformed. Bad items are
    collected in ``payload.rejected`` and skipped.
    """
    if not isinstance(raw, dict):
        raise ValidationError("extraction payload must be an object")
    if source_type not in SOURCE_TYPES:
        raise ValidationError(
            f"source_type must be one of {', '.join(sorted(SOURCE_TYPES))}, got {source_type!r}"
        )
    if not isinstance(source_id, str) or not source_id.strip():
        raise ValidationError("source_id is required")

    content = raw.get("content")
    if content is not None and not isinstance(content, str):
        raise ValidationError("'content' must be a string")

    rejected: List[ValidationError] = []
    payload = ExtractionPayload(
        source_type=source_type,
        source_id=source_id.strip(),
        entities=_validate_items(raw, "entities", ExtractedEntity, rejected),
        relationships=_validate_items(raw, "relationships", ExtractedRelationship, rejected),
        behaviors=_validate_items(raw, "behaviors", ExtractedBehavior, rejected),
        topics=_validate_items(raw, "topics", ExtractedTopic, rejected),
        content=content.strip() if content and content.strip() else None,
        rejected=rejected,
    )
    for err in rejected:
        logger.warning("Quarantined extraction item (%s): %s", payload.source_id, err)
    return payload
