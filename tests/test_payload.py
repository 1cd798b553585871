"""Tests for extraction payload validation."""

from __future__ import annotations

import pytest

from graph_memory.errors import ValidationError
from graph_memory.payload import (
    ExtractedEntity,
    ExtractedRelationship,
    normalize_name,
    normalize_predicate,
    parse_payload,
)


class TestNormalization:
    def test_name_casefold_and_whitespace(self):
        assert normalize_name("  Alice   Smith ") == "alice smith"
        assert normalize_name("ALICE") == normalize_name("alice")

    def test_predicate(self):
        assert normalize_predicate(" Works At ") == "works_at"
        assert normalize_predicate("LIVES_IN") == "lives_in"


class TestItemModels:
    def test_entity_type_alias(self):
        assert ExtractedEntity(name="Acme", type="company").type == "organization"
        assert ExtractedEntity(name="Thing", type="gizmo").type == "other"

    def test_confidence_clamped(self):
        assert ExtractedEntity(name="A", confidence=1.7).confidence == 1.0
        assert ExtractedEntity(name="A", confidence=-3).confidence == 0.0
        assert ExtractedRelationship(subject="a", predicate="p", object="b",
                                     confidence=None).confidence == 0.7

    def test_blank_name_rejected(self):
        with pytest.raises(Exception):
            ExtractedEntity(name="   ")

    def test_importance_checked(self):
        assert ExtractedEntity(name="Mom", importance="Critical").importance == "critical"
        with pytest.raises(Exception):
            ExtractedEntity(name="Mom", importance="huge")


class TestParsePayload:
    def test_full_payload(self):
        p = parse_payload(
            {
                "entities": [{"name": "Alice", "type": "person"}],
                "relationships": [{"subject": "Alice", "predicate": "works at", "object": "Acme"}],
                "behaviors": [{"type": "Avoids", "topic": "politics"}],
                "topics": [{"name": "career"}],
                "content": "  Alice joined Acme.  ",
            },
            "note",
            " n1 ",
        )
        assert p.source_id == "n1"
        assert [e.name for e in p.entities] == ["Alice"]
        assert p.relationships[0].predicate == "works_at"
        assert p.behaviors[0].type == "avoids"
        assert p.topics[0].confidence == 0.5
        assert p.content == "Alice joined Acme."
        assert p.rejected == []

    def test_bad_items_quarantined(self):
        p = parse_payload(
            {
                "entities": [{"name": "Alice"}, {"name": ""}, {"type": "person"}],
                "relationships": [{"subject": "Alice", "predicate": " ", "object": "x"}],
            },
            "conversation",
            "c1",
        )
        assert len(p.entities) == 1
        assert len(p.relationships) == 0
        assert len(p.rejected) == 3
        assert all(isinstance(e, ValidationError) for e in p.rejected)
        assert p.rejected[0].item == {"name": ""}

    def test_whitespace_content_is_none(self):
        p = parse_payload({"content": "   "}, "note", "n1")
        assert p.content is None

    @pytest.mark.parametrize(
        "raw,source_type,source_id",
        [
            (["not", "a", "dict"], "note", "n1"),
            ({}, "email", "n1"),
            ({}, "note", "  "),
            ({"entities": {"name": "Alice"}}, "note", "n1"),
            ({"content": 42}, "note", "n1"),
        ],
    )
    def test_malformed_envelope(self, raw, source_type, source_id):
        with pytest.raises(ValidationError):
            parse_payload(raw, source_type, source_id)
