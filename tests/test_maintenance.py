"""Tests for decay, archival, expiry, consolidation and reindex."""

from __future__ import annotations

import pytest

from graph_memory.errors import ValidationError
from graph_memory.maintenance import MaintenanceScheduler
from graph_memory.summaries import SummaryCache

from conftest import DAY, T0, add_entity


@pytest.fixture
def summaries(tmp_storage, facts):
    return SummaryCache(tmp_storage, facts)


@pytest.fixture
def scheduler(tmp_storage, registry, facts, summaries, config):
    return MaintenanceScheduler(tmp_storage, registry, facts, summaries, config)


class TestDecay:
    def test_stale_entities_decay_by_tier(self, registry, scheduler, clock):
        low = add_entity(registry, "Old acquaintance", confidence=0.7, importance="low")
        medium = add_entity(registry, "Colleague", confidence=0.7)
        clock.advance(days=15)
        out = scheduler.run_decay()
        assert out["decayed"] == 1
        assert out["per_tier"]["low"] == 1
        assert registry.get(low)["importance_score"] == pytest.approx(0.595)
        assert registry.get(medium)["importance_score"] == pytest.approx(0.7)

    def test_second_run_is_noop(self, registry, scheduler, clock):
        eid = add_entity(registry, "Old acquaintance", confidence=0.7, importance="low")
        clock.advance(days=15)
        scheduler.run_decay()
        again = scheduler.run_decay()
        assert again["decayed"] == 0
        assert registry.get(eid)["importance_score"] == pytest.approx(0.595)

    def test_critical_never_decays(self, registry, scheduler, clock):
        eid = add_entity(registry, "Mom", confidence=0.5, importance="critical")
        clock.advance(days=400)
        scheduler.run_decay()
        ent = registry.get(eid)
        assert ent["importance_score"] == pytest.approx(0.5)
        assert ent["status"] == "active"

    def test_below_floor_is_archived(self, registry, scheduler, clock):
        eid = add_entity(registry, "Barista", confidence=0.12, importance="trivial")
        fresh = add_entity(registry, "Dentist", confidence=0.05, importance="trivial")
        with scheduler.storage.transaction() as conn:
            conn.execute("UPDATE entities SET updated_at = ? WHERE id = ?", (T0 + 10 * DAY, fresh))
        clock.advance(days=8)
        out = scheduler.run_decay()
        assert out["archived"] == 1
        ent = registry.get(eid)
        assert ent["status"] == "archived"
        assert ent["archived_at"] == pytest.approx(clock.now)
        # Never decayed, so never archived by this job
        assert registry.get(fresh)["status"] == "active"


class TestArchivalAndExpiry:
    def test_archival(self, registry, scheduler, clock):
        trivial = add_entity(registry, "Cashier", confidence=0.2)
        high = add_entity(registry, "Partner", confidence=0.9)
        seen = add_entity(registry, "Neighbor", confidence=0.4)
        clock.advance(days=181)
        registry.touch_accessed([seen])
        assert scheduler.run_archival() == {"archived": 1}
        assert registry.get(trivial)["status"] == "archived"
        assert registry.get(high)["status"] == "active"
        assert registry.get(seen)["status"] == "active"
        assert scheduler.run_archival() == {"archived": 0}

    def test_expiry(self, registry, scheduler, clock):
        eid = add_entity(registry, "Concert", expires_at=T0 + DAY)
        keep = add_entity(registry, "Holiday", expires_at=T0 + 30 * DAY)
        assert scheduler.run_expiry() == {"expired": 0}
        clock.advance(days=2)
        assert scheduler.run_expiry() == {"expired": 1}
        assert registry.get(eid)["status"] == "archived"
        assert registry.get(keep)["status"] == "active"

    def test_archived_summary_refreshed(self, registry, facts, scheduler, summaries, clock):
        eid = add_entity(registry, "Intern", confidence=0.2)
        facts.upsert(eid, "works_at", "Acme")
        summaries.evolve([eid])
        assert summaries.get("work_life") is not None
        clock.advance(days=181)
        scheduler.run_archival()
        assert summaries.get("work_life") is None

    def test_mention_revives_archived(self, registry, scheduler, clock):
        eid = add_entity(registry, "Cashier", confidence=0.2)
        clock.advance(days=181)
        scheduler.run_archival()
        add_entity(registry, "cashier")
        assert registry.get(eid)["status"] == "active"


class TestConsolidation:
    def test_near_duplicates_flagged_once(self, registry, scheduler, tmp_storage):
        a = add_entity(registry, "Jon Smith")
        b = add_entity(registry, "John Smith")
        c = add_entity(registry, "Acme")
        tmp_storage.set_entity_vector(a, [1.0, 0.0, 0.0, 0.0])
        tmp_storage.set_entity_vector(b, [0.99, 0.01, 0.0, 0.0])
        tmp_storage.set_entity_vector(c, [0.0, 1.0, 0.0, 0.0])

        out = scheduler.run_consolidation_scan()
        assert out == {"scanned": 3, "pairs": 1, "new_candidates": 1}
        again = scheduler.run_consolidation_scan()
        assert again["new_candidates"] == 0

        candidates = scheduler.merge_candidates()
        assert len(candidates) == 1
        assert {candidates[0]["name_a"], candidates[0]["name_b"]} == {"Jon Smith", "John Smith"}
        assert candidates[0]["similarity"] >= 0.92
        assert 0.8 < candidates[0]["name_similarity"] < 1.0
        # Flagging never merges
        assert registry.get(a)["status"] == "active"
        assert registry.get(b)["status"] == "active"

    def test_no_vectors(self, registry, scheduler):
        add_entity(registry, "Alice")
        assert scheduler.run_consolidation_scan() == {"scanned": 0, "pairs": 0, "new_candidates": 0}


class TestReindex:
    def test_rebuilds_keyword_index_and_summaries(self, registry, facts, scheduler, summaries, tmp_storage):
        alice = add_entity(registry, "Alice")
        facts.upsert(alice, "works_at", "Acme")
        tmp_storage.clear_knowledge_index()
        assert tmp_storage.search_knowledge("alice") == []
        out = scheduler.run_reindex()
        assert out == {"entities": 1, "facts": 1, "summaries": 1}
        kinds = {r["kind"] for r in tmp_storage.search_knowledge("alice")}
        assert kinds == {"entity", "fact"}
        assert summaries.get("work_life") is not None


@pytest.mark.asyncio
class TestEngineJobs:
    async def test_every_user(self, engine, work_event, clock):
        await engine.ingest("alice", work_event, "conversation", "c1")
        await engine.ingest("bob", work_event, "conversation", "c1")
        clock.advance(days=400)
        out = engine.run_decay()
        assert out["job"] == "decay"
        assert out["users"] == 2
        assert set(out["per_user"]) == {"alice", "bob"}
        assert out["totals"]["decayed"] == 6

    async def test_single_user_and_dispatch(self, engine, work_event):
        await engine.ingest("alice", work_event, "conversation", "c1")
        out = engine.run_job("reindex", "alice")
        assert out["users"] == 1
        assert out["totals"]["entities"] == 3
        assert engine.run_job("expiry", "alice")["totals"] == {"expired": 0}
        assert engine.run_archival("alice")["totals"] == {"archived": 0}
        with pytest.raises(ValidationError):
            engine.run_job("vacuum", "alice")

    async def test_merge_candidates(self, engine):
        await engine.ingest("alice", {"entities": [{"name": "Jon"}, {"name": "John"}]}, "note", "n1")
        storage = engine.tenant("alice").storage
        for row in storage.fetchall("SELECT id FROM entities"):
            storage.set_entity_vector(row["id"], [0.5, 0.5, 0.5, 0.5])
        out = engine.run_consolidation_scan("alice")
        assert out["totals"]["new_candidates"] == 1
        assert len(engine.merge_candidates("alice")) == 1
