"""Tests for the entity registry."""

from __future__ import annotations

import pytest

from graph_memory.entities import name_match_score, name_ngrams, tier_for_score
from graph_memory.payload import ExtractedEntity

from conftest import add_entity


class TestTiers:
    @pytest.mark.parametrize(
        "score,tier",
        [(0.9, "high"), (0.85, "high"), (0.7, "medium"), (0.4, "low"), (0.1, "trivial")],
    )
    def test_tier_for_score(self, score, tier):
        assert tier_for_score(score) == tier


class TestUpsert:
    def test_insert(self, registry):
        res = registry.upsert(ExtractedEntity(name="Alice", type="person", confidence=0.8),
                              "note", "n1")
        assert res.created is True
        ent = registry.get(res.entity_id)
        assert ent["name"] == "Alice"
        assert ent["normalized_name"] == "alice"
        assert ent["mention_count"] == 1
        assert ent["importance_score"] == pytest.approx(0.8)
        assert ent["importance"] == "medium"
        assert ent["source_id"] == "n1"
        assert ent["status"] == "active"

    def test_case_insensitive_dedup(self, registry):
        first = add_entity(registry, "Alice")
        res = registry.upsert(ExtractedEntity(name="  ALICE "), "note", "n2")
        assert res.created is False
        assert res.entity_id == first
        ent = registry.get(first)
        assert ent["mention_count"] == 2
        assert ent["importance_score"] == pytest.approx(0.72)
        # Originating source is kept while the entity stays active
        assert ent["source_id"] == "src-1"

    def test_context_ring_and_sentiment(self, registry, config):
        eid = add_entity(registry, "Bob", context="note 0", sentiment=1.0)
        for i in range(1, config.max_context_notes + 2):
            registry.upsert(ExtractedEntity(name="Bob", context=f"note {i}", sentiment=0.0))
        ent = registry.get(eid)
        assert len(ent["context_notes"]) == config.max_context_notes
        assert ent["context_notes"][-1] == f"note {config.max_context_notes + 1}"
        assert ent["sentiment_count"] == config.max_context_notes + 2
        assert ent["sentiment_avg"] == pytest.approx(1.0 / (config.max_context_notes + 2))

    def test_critical_is_sticky(self, registry):
        eid = add_entity(registry, "Mom", importance="critical")
        registry.upsert(ExtractedEntity(name="Mom"))
        assert registry.get(eid)["importance"] == "critical"

    def test_mention_revives_inactive_and_takes_source(self, registry, tmp_storage):
        eid = add_entity(registry, "Carol", source_id="n1")
        assert registry.cascade_invalidate("n1") == 1
        assert registry.find_by_name("carol") is None
        registry.upsert(ExtractedEntity(name="Carol"), "note", "n2")
        ent = registry.get(eid)
        assert ent["status"] == "active"
        assert ent["source_id"] == "n2"


class TestCascadeAndErase:
    def test_cascade_round_trip_keeps_archived(self, registry, tmp_storage):
        a = add_entity(registry, "Alice", source_id="n1")
        b = add_entity(registry, "Bob", source_id="n1")
        with tmp_storage.transaction() as conn:
            conn.execute("UPDATE entities SET status = 'archived' WHERE id = ?", (b,))
        assert registry.cascade_invalidate("n1") == 2
        assert registry.get(a)["status"] == "inactive"
        assert registry.get(b)["status"] == "inactive"
        assert registry.cascade_restore("n1") == 2
        assert registry.get(a)["status"] == "active"
        assert registry.get(b)["status"] == "archived"

    def test_erase(self, registry, facts, graph):
        a = add_entity(registry, "Alice")
        b = add_entity(registry, "Bob")
        facts.upsert(a, "likes", "jazz")
        graph.link(a, b)
        assert registry.erase(a) is True
        assert registry.get(a)["status"] == "deleted"
        assert facts.current_facts(a) == []
        assert graph.neighbors(b) == []
        assert registry.erase(a) is False

    def test_erased_name_can_be_reused(self, registry):
        a = add_entity(registry, "Alice")
        registry.erase(a)
        b = add_entity(registry, "Alice")
        assert b != a
        assert registry.find_by_name("Alice")["id"] == b


class TestReads:
    def test_find_in_text(self, registry):
        add_entity(registry, "Alice")
        add_entity(registry, "New York")
        found = {e["name"] for e in registry.find_in_text("Alice moved to New York last May")}
        assert found == {"Alice", "New York"}

    def test_get_many_skips_inactive(self, registry):
        a = add_entity(registry, "Alice", source_id="n1")
        b = add_entity(registry, "Bob", source_id="n2")
        registry.cascade_invalidate("n1")
        assert [e["id"] for e in registry.get_many([a, b])] == [b]

    def test_list_active_order(self, registry):
        add_entity(registry, "Low", confidence=0.2)
        add_entity(registry, "High", confidence=0.95)
        assert [e["name"] for e in registry.list_active()] == ["High", "Low"]

    def test_categories_of(self, registry):
        a = add_entity(registry, "Alice")
        assert registry.categories_of([a]) == ["general"]
        assert registry.categories_of([]) == []


class TestNameMatching:
    def test_ngrams(self):
        assert name_ngrams("New York City") == [
            "new", "york", "city", "new york", "york city", "new york city",
        ]

    def test_match_score(self):
        assert name_match_score("Alice", "what about alice") == 1.0
        assert name_match_score("New York", "trip to new york soon") == 1.0
        assert name_match_score("Al", "alpha") == 0.0
        assert 0.0 < name_match_score("Alicia", "alice said") < 1.0
        assert name_match_score("", "x") == 0.0
