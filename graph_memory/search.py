"""Tier 3 hybrid search.

Three lanes, fused by a weighted linear combination:

1. **Vector**  - sqlite-vec cosine similarity over note content (weight 0.6)
2. **Keyword** - FTS5 BM25 over entity, fact and note text (weight 0.3)
3. **Graph**   - one hop out from matched entities over typed and
   co-occurrence edges (weight 0.1)

Graceful degradation: if the embedder or vector index is unavailable the
vector lane is dropped and keyword + graph still answer.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .config import Config
from .entities import EntityRegistry
from .errors import DependencyUnavailable, StoreError
from .facts import FactStore
from .graph import RelationshipGraph
from .storage import MemoryStorage

logger = logging.getLogger(__name__)

_GRAPH_SEEDS = 5


def normalize_query(text: str) -> str:
    """Lowercase, collapse whitespace, drop trailing punctuation."""
    t = text.lower().strip()
    t = re.sub(r"\s+", " ", t)
    t = re.sub(r"[?!.,;:]+$", "", t)
    return t.strip()


@dataclass
class SearchWeights:
    vector: float = 0.6
    keyword: float = 0.3
    graph: float = 0.1

    @classmethod
    def from_config(cls, cfg: Config) -> "SearchWeights":
        return cls(vector=cfg.weight_vector, keyword=cfg.weight_keyword, graph=cfg.weight_graph)


@dataclass
class SearchHit:
    kind: str  # note | entity | fact
    id: str
    row: Dict[str, Any]
    vector_score: float = 0.0
    keyword_score: float = 0.0
    graph_score: float = 0.0
    score: float = 0.0
    facts: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "id": self.id,
            "score": round(self.score, 4),
            "vector_score": round(self.vector_score, 4),
            "keyword_score": round(self.keyword_score, 4),
            "graph_score": round(self.graph_score, 4),
        }


@dataclass
class SearchResult:
    """Fused hits of one search call and how they were produced."""

    hits: List[SearchHit] = field(default_factory=list)
    mode: str = "full"  # full | keyword_graph

    @property
    def degraded(self) -> bool:
        return self.mode != "full"


class HybridSearch:
    def __init__(
        self,
        storage: MemoryStorage,
        registry: EntityRegistry,
        facts: FactStore,
        graph: RelationshipGraph,
        embedder: Any = None,
        weights: Optional[SearchWeights] = None,
    ) -> None:
        self.storage = storage
        self.registry = registry
        self.facts = facts
        self.graph = graph
        self.embedder = embedder
        self.weights = weights or SearchWeights()

    # ------------------------------------------------------------------
    # Lanes
    # ------------------------------------------------------------------

    async def _vector_lane(self, query: str, limit: int, timeout: Optional[float]) -> List[Dict[str, Any]]:
        if self.embedder is None:
            raise DependencyUnavailable("no embedder configured")
        vec = await asyncio.wait_for(self.embedder.embed(query), timeout)
        return await asyncio.wait_for(
            asyncio.to_thread(self.storage.search_note_vectors, vec, limit), timeout
        )

    def _keyword_lane(self, query: str, limit: int) -> List[Tuple[str, str, float]]:
        """(kind, id, score in (0, 1]) for live entities and current facts."""
        rows = self.storage.search_knowledge(query, limit)
        if not rows:
            return []
        best = min(r["rank"] for r in rows)
        scored = [
            (r["kind"], r["item_id"], (r["rank"] / best) if best < 0 else 1.0)
            for r in rows
        ]
        live_entities = {e["id"] for e in self.registry.get_many(
            i for k, i, _ in scored if k == "entity"
        )}
        live_facts = {f["id"] for f in self.facts.get_many(
            i for k, i, _ in scored if k == "fact"
        )}
        return [
            (k, i, s) for k, i, s in scored
            if (k == "entity" and i in live_entities) or (k == "fact" and i in live_facts)
        ]

    def _note_text_lane(self, query: str, limit: int) -> List[Dict[str, Any]]:
        rows = self.storage.search_note_text(query, limit)
        if rows:
            best = min(r["rank"] for r in rows)
            for r in rows:
                r["keyword_score"] = (r["rank"] / best) if best < 0 else 1.0
        return rows

    def _graph_lane(self, seeds: List[str]) -> Dict[str, float]:
        scores: Dict[str, float] = {}
        for seed in seeds[:_GRAPH_SEEDS]:
            scores[seed] = 1.0
        for seed in seeds[:_GRAPH_SEEDS]:
            neighbors = self.graph.neighbors(seed)
            if not neighbors:
                continue
            top = max(n["strength"] for n in neighbors) or 1
            for n in neighbors:
                s = 0.5 * n["strength"] / top
                if s > scores.get(n["id"], 0.0):
                    scores[n["id"]] = s
        return scores

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    async def search(
        self,
        query: str,
        limit: int = 10,
        timeout: Optional[float] = None,
    ) -> SearchResult:
        """Run all three lanes and return fused hits, best first."""
        result = SearchResult()
        q_norm = normalize_query(query)
        if not q_norm:
            return result
        candidate_limit = max(limit * 3, 20)

        vec_task = asyncio.create_task(self._vector_lane(q_norm, candidate_limit, timeout))
        kw_task = asyncio.create_task(
            asyncio.to_thread(self._keyword_lane, q_norm, candidate_limit)
        )
        note_task = asyncio.create_task(
            asyncio.to_thread(self._note_text_lane, q_norm, candidate_limit)
        )
        lanes = (vec_task, kw_task, note_task)

        note_rows: List[Dict[str, Any]] = []
        try:
            try:
                note_rows = await vec_task
            except (DependencyUnavailable, StoreError, asyncio.TimeoutError) as exc:
                logger.warning("Vector lane unavailable, using keyword + graph: %s", exc or type(exc).__name__)
                result.mode = "keyword_graph"
            keyword: List[Tuple[str, str, float]] = await kw_task
            note_text_rows = await note_task
        finally:
            for task in lanes:
                if not task.done():
                    task.cancel()

        result.hits = await self._fuse(query, note_rows, note_text_rows, keyword, limit)
        return result

    async def _fuse(
        self,
        query: str,
        note_rows: List[Dict[str, Any]],
        note_text_rows: List[Dict[str, Any]],
        keyword: List[Tuple[str, str, float]],
        limit: int,
    ) -> List[SearchHit]:
        hits: Dict[Tuple[str, str], SearchHit] = {}
        for note in note_rows:
            hits[("note", note["id"])] = SearchHit(
                kind="note", id=note["id"], row=note, vector_score=float(note["score"])
            )
        for note in note_text_rows:
            hit = hits.get(("note", note["id"]))
            if hit is None:
                hit = hits[("note", note["id"])] = SearchHit(kind="note", id=note["id"], row=note)
            hit.keyword_score = float(note["keyword_score"])

        kw_entity_scores = {i: s for k, i, s in keyword if k == "entity"}
        kw_fact_scores = {i: s for k, i, s in keyword if k == "fact"}

        named = await asyncio.to_thread(self.registry.find_in_text, query)
        seeds = list(dict.fromkeys(
            [e["id"] for e in named]
            + sorted(kw_entity_scores, key=kw_entity_scores.get, reverse=True)
        ))
        fact_rows = await asyncio.to_thread(self.facts.get_many, list(kw_fact_scores))
        for f in fact_rows:
            if f["entity_id"] not in seeds:
                seeds.append(f["entity_id"])
        graph_scores = await asyncio.to_thread(self._graph_lane, seeds)

        entity_ids = list(dict.fromkeys([*kw_entity_scores, *graph_scores]))
        entity_rows = await asyncio.to_thread(self.registry.get_many, entity_ids)
        facts_by_entity = await asyncio.to_thread(
            self.facts.current_facts_for, [e["id"] for e in entity_rows]
        )
        for ent in entity_rows:
            hits[("entity", ent["id"])] = SearchHit(
                kind="entity",
                id=ent["id"],
                row=ent,
                keyword_score=kw_entity_scores.get(ent["id"], 0.0),
                graph_score=graph_scores.get(ent["id"], 0.0),
                facts=facts_by_entity.get(ent["id"], []),
            )
        for f in fact_rows:
            hits[("fact", f["id"])] = SearchHit(
                kind="fact",
                id=f["id"],
                row=f,
                keyword_score=kw_fact_scores.get(f["id"], 0.0),
                graph_score=0.5 * graph_scores.get(f["entity_id"], 0.0),
            )

        w = self.weights
        for hit in hits.values():
            hit.score = (
                w.vector * hit.vector_score
                + w.keyword * hit.keyword_score
                + w.graph * hit.graph_score
            )
        ranked = sorted(hits.values(), key=lambda h: h.score, reverse=True)
        return [h for h in ranked if h.score > 0][:limit]
