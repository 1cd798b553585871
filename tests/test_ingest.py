"""Tests for ingestion, cascade and entity operations through the engine."""

from __future__ import annotations

import asyncio

import pytest

from graph_memory.engine import MemoryEngine
from graph_memory.errors import NotFoundError, ValidationError

from conftest import FakeEmbedder, T0, DAY


def _snapshot(storage):
    tables = ("entities", "facts", "behaviors", "topics", "notes")
    out = {}
    for t in tables:
        rows = storage.fetchall(f"SELECT * FROM {t} ORDER BY rowid")
        for r in rows:
            # retrieval stamps access times on whatever it surfaces
            r.pop("last_accessed_at", None)
        out[t] = rows
    return out


@pytest.mark.asyncio
class TestIngest:
    async def test_full_event(self, engine, work_event):
        result = await engine.ingest("alice", work_event, "conversation", "c1")
        assert result.entities_created == 3
        assert result.facts_created == 2
        assert result.typed_links_created == 2
        assert result.links_created == 3
        assert result.behaviors_created == 1
        assert result.topics_created == 1
        assert result.note_indexed is True
        assert result.errors == []
        assert result.summaries_updated == ["work_life"]
        assert set(result.entity_ids) == {"alice", "bob", "acme"}

        stores = engine.tenant("alice")
        alice = stores.registry.find_by_name("alice")
        assert alice["entity_type"] == "person"
        assert alice["context_notes"] == ["met at the offsite"]
        assert stores.graph.get_edge(result.entity_ids["alice"], result.entity_ids["bob"])["strength"] == 1
        assert stores.storage.get_note("c1")["content"].startswith("Lunch with Alice")
        beh = stores.behaviors.for_entity(alice["id"])
        assert beh[0]["predicate"] == "trusts_opinion_of"

    async def test_repeat_reinforces(self, engine, work_event):
        await engine.ingest("alice", work_event, "conversation", "c1")
        again = await engine.ingest("alice", work_event, "conversation", "c2")
        assert again.entities_created == 0
        assert again.entities_updated == 3
        assert again.facts_created == 0
        assert again.facts_updated == 2
        assert again.links_updated == 3
        assert again.behaviors_updated == 1
        assert again.topics_updated == 1
        stores = engine.tenant("alice")
        alice = stores.registry.find_by_name("alice")
        assert alice["mention_count"] == 2
        edge = stores.graph.get_edge(again.entity_ids["alice"], again.entity_ids["bob"])
        assert edge["strength"] == 2

    async def test_contradiction_supersedes(self, engine, work_event, clock):
        await engine.ingest("alice", work_event, "conversation", "c1")
        clock.advance(days=30)
        result = await engine.ingest(
            "alice",
            {
                "entities": [{"name": "Alice"}, {"name": "Globex", "type": "company"}],
                "relationships": [{"subject": "Alice", "predicate": "works_at", "object": "Globex"}],
            },
            "note",
            "n2",
        )
        assert result.facts_superseded == 1
        alice_id = result.entity_ids["alice"]
        current = engine.facts_at("alice", alice_id, predicate="works_at")
        assert [f["object_text"] for f in current] == ["Globex"]
        earlier = engine.facts_at("alice", alice_id, as_of=T0 + DAY, predicate="works_at")
        assert [f["object_text"] for f in earlier] == ["Acme"]
        history = engine.fact_history("alice", alice_id, "works_at")
        assert [h["version"] for h in history] == [2, 1]
        summary = engine.tenant("alice").summaries.get("work_life")["summary"]
        assert "Globex" in summary and "Acme" not in summary

    async def test_in_event_order(self, engine):
        result = await engine.ingest(
            "alice",
            {
                "entities": [{"name": "Alice"}],
                "relationships": [
                    {"subject": "Alice", "predicate": "lives_in", "object": "Paris"},
                    {"subject": "Alice", "predicate": "lives_in", "object": "Berlin"},
                ],
            },
            "note",
            "n1",
        )
        assert result.facts_created == 1
        assert result.facts_superseded == 1
        current = engine.facts_at("alice", result.entity_ids["alice"], predicate="lives_in")
        assert [f["object_text"] for f in current] == ["Berlin"]

    async def test_partial_failure_tolerated(self, engine):
        result = await engine.ingest(
            "alice",
            {
                "entities": [{"name": "Alice"}, {"name": "   "}],
                "relationships": [
                    {"subject": "Alice", "predicate": "likes", "object": "jazz"},
                    {"subject": "Nobody", "predicate": "likes", "object": "jazz"},
                ],
            },
            "note",
            "n1",
        )
        assert result.entities_created == 1
        assert result.facts_created == 1
        assert result.partial is True
        assert result.retryable is False
        types = sorted(e["type"] for e in result.errors)
        assert types == ["NotFoundError", "ValidationError"]
        body = result.to_dict()
        assert body["partial"] is True
        assert len(body["errors"]) == 2

    async def test_malformed_envelope_writes_nothing(self, engine):
        with pytest.raises(ValidationError):
            await engine.ingest("alice", {"entities": "Alice"}, "note", "n1")
        with pytest.raises(ValidationError):
            await engine.ingest("alice", {"entities": []}, "email", "n1")
        assert engine.stats("alice")["entities"] == 0

    async def test_invalid_user(self, engine, work_event):
        with pytest.raises(ValidationError):
            await engine.ingest("", work_event, "note", "n1")
        with pytest.raises(ValidationError):
            await engine.ingest("all", work_event, "note", "n1")

    async def test_tenants_are_isolated(self, engine, work_event):
        await engine.ingest("alice", work_event, "conversation", "c1")
        assert engine.stats("alice")["entities"] == 3
        assert engine.stats("bob")["entities"] == 0
        assert sorted(engine.pool.get_all_users()) == ["alice", "bob"]

    async def test_concurrent_events(self, engine):
        events = [
            {
                "entities": [{"name": "Alice"}, {"name": f"Friend {i}"}],
                "relationships": [{"subject": "Alice", "predicate": "lives_in", "object": f"City {i}"}],
            }
            for i in range(5)
        ]
        results = await asyncio.gather(*[
            engine.ingest("alice", ev, "note", f"n{i}") for i, ev in enumerate(events)
        ])
        assert all(not r.errors for r in results)
        stores = engine.tenant("alice")
        alice = stores.registry.find_by_name("alice")
        assert alice["mention_count"] == 5
        assert len(stores.facts.current_facts(alice["id"])) == 1
        assert engine.stats("alice")["fact_conflicts"] == 0
        assert len(stores.facts.history(alice["id"], "lives_in")) == 5

    async def test_new_entities_embedded(self, engine, work_event):
        await engine.ingest("alice", work_event, "conversation", "c1")
        rows = engine.tenant("alice").storage.fetchall(
            "SELECT vector_rowid FROM entities WHERE vector_rowid IS NOT NULL"
        )
        assert len(rows) == 3
        assert engine.tenant("alice").storage.get_note("c1")["vector_rowid"] is not None

    async def test_embedder_down_still_ingests(self, engine, work_event, fake_embedder):
        fake_embedder.fail = True
        result = await engine.ingest("alice", work_event, "conversation", "c1")
        assert result.entities_created == 3
        stores = engine.tenant("alice")
        assert stores.storage.get_note("c1")["vector_rowid"] is None
        assert stores.storage.fetchall(
            "SELECT id FROM entities WHERE vector_rowid IS NOT NULL"
        ) == []


@pytest.mark.asyncio
class TestCascade:
    async def test_round_trip_restores_exactly(self, engine, work_event):
        await engine.ingest("alice", work_event, "conversation", "c1")
        await engine.ingest(
            "alice",
            {"entities": [{"name": "Carol"}], "relationships": [
                {"subject": "Carol", "predicate": "likes", "object": "tea"},
            ], "content": "Carol likes tea."},
            "note",
            "n2",
        )
        storage = engine.tenant("alice").storage
        before = _snapshot(storage)

        counts = engine.cascade_invalidate("alice", "c1")
        assert counts["entities"] == 3
        assert counts["facts"] == 2
        assert counts["behaviors"] == 1
        assert counts["topics"] == 1
        assert counts["notes"] == 1
        stores = engine.tenant("alice")
        assert stores.registry.find_by_name("Alice") is None
        assert stores.registry.find_by_name("Carol") is not None
        assert stores.summaries.get("work_life") is None

        result = await engine.retrieve("alice", "What about Alice?")
        assert "Alice" not in result.context.text

        restored = engine.cascade_restore("alice", "c1")
        assert restored["entities"] == 3
        after = _snapshot(storage)
        for table in ("entities", "facts", "behaviors", "topics", "notes"):
            assert after[table] == before[table], table
        assert stores.summaries.get("work_life") is not None

    async def test_unknown_source_is_noop(self, engine, work_event):
        await engine.ingest("alice", work_event, "conversation", "c1")
        counts = engine.cascade_invalidate("alice", "never-seen")
        assert counts == {
            "facts": 0, "entities": 0, "behaviors": 0, "topics": 0, "notes": 0, "summaries": 0,
        }

    async def test_blank_source_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.cascade_invalidate("alice", " ")

    async def test_remention_revives(self, engine, work_event):
        await engine.ingest("alice", work_event, "conversation", "c1")
        engine.cascade_invalidate("alice", "c1")
        await engine.ingest("alice", {"entities": [{"name": "Alice"}]}, "note", "n9")
        alice = engine.tenant("alice").registry.find_by_name("Alice")
        assert alice is not None
        assert alice["source_id"] == "n9"


@pytest.mark.asyncio
class TestEntityOperations:
    async def test_get_entity(self, engine, work_event):
        result = await engine.ingest("alice", work_event, "conversation", "c1")
        ent = engine.get_entity("alice", result.entity_ids["alice"])
        assert {f["predicate"] for f in ent["facts"]} == {"works_at", "knows"}
        assert {n["name"] for n in ent["neighbors"]} == {"Bob", "Acme"}
        assert ent["behaviors"][0]["predicate"] == "trusts_opinion_of"
        with pytest.raises(NotFoundError):
            engine.get_entity("alice", "missing")

    async def test_correct_fact_refreshes_summary(self, engine, work_event):
        result = await engine.ingest("alice", work_event, "conversation", "c1")
        alice_id = result.entity_ids["alice"]
        works_at = engine.facts_at("alice", alice_id, predicate="works_at")[0]
        fact = engine.correct_fact("alice", works_at["id"])
        assert fact["invalidation_reason"] == "user_corrected"
        summary = engine.tenant("alice").summaries.get("work_life")
        assert summary is None or "Acme" not in summary["summary"]
        with pytest.raises(NotFoundError):
            engine.correct_fact("alice", works_at["id"])

    async def test_erase_entity(self, engine, work_event):
        result = await engine.ingest("alice", work_event, "conversation", "c1")
        alice_id = result.entity_ids["alice"]
        assert engine.erase_entity("alice", alice_id) is True
        with pytest.raises(NotFoundError):
            engine.get_entity("alice", alice_id)
        with pytest.raises(NotFoundError):
            engine.erase_entity("alice", alice_id)
        assert engine.tenant("alice").summaries.get("work_life") is None

    async def test_stats(self, engine, work_event):
        await engine.ingest("alice", work_event, "conversation", "c1")
        stats = engine.stats("alice")
        assert stats["entities"] == 3
        assert stats["current_facts"] == 2
        assert stats["notes"] == 1
        assert stats["summaries"] == 1
        assert stats["fact_conflicts"] == 0

    async def test_health(self, engine, config, pool):
        health = await engine.health()
        assert health["status"] == "ok"
        assert health["checks"] == {"storage": True, "embedding": True, "chat": False}

        degraded = MemoryEngine(config=config, pool=pool, embedder=FakeEmbedder(fail=True))
        assert (await degraded.health())["status"] == "degraded"
