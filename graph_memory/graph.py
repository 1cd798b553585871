"""Relationship graph: co-occurrence edges and typed relationships."""

from __future__ import annotations

import itertools
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .payload import normalize_predicate
from .storage import MemoryStorage

logger = logging.getLogger(__name__)


@dataclass
class LinkResult:
    entity_a: str
    entity_b: str
    created: bool
    strength: int


def ordered_pair(a: str, b: str) -> Tuple[str, str]:
    return (a, b) if a < b else (b, a)


def co_occurring_pairs(entity_ids: Iterable[str]) -> List[Tuple[str, str]]:
    """Every unordered pair of distinct ids, lower id first."""
    unique = sorted(set(entity_ids))
    return list(itertools.combinations(unique, 2))


class RelationshipGraph:
    def __init__(self, storage: MemoryStorage) -> None:
        self.storage = storage

    # ------------------------------------------------------------------
    # Co-occurrence
    # ------------------------------------------------------------------

    def link(self, entity_a: str, entity_b: str, context: str = "") -> LinkResult:
        """Upsert the undirected edge between two entities."""
        if entity_a == entity_b:
            raise ValueError("cannot link an entity to itself")
        a, b = ordered_pair(entity_a, entity_b)
        now = self.storage.now()
        with self.storage.transaction() as conn:
            row = conn.execute(
                "SELECT id, strength FROM entity_edges WHERE entity_a = ? AND entity_b = ?",
                (a, b),
            ).fetchone()
            if row is None:
                conn.execute(
                    """INSERT INTO entity_edges
                       (id, entity_a, entity_b, strength, context, first_seen, last_seen)
                       VALUES (?, ?, ?, 1, ?, ?, ?)""",
                    (uuid.uuid4().hex[:16], a, b, context, now, now),
                )
                return LinkResult(a, b, created=True, strength=1)
            conn.execute(
                "UPDATE entity_edges SET strength = strength + 1, last_seen = ? WHERE id = ?",
                (now, row["id"]),
            )
            return LinkResult(a, b, created=False, strength=int(row["strength"]) + 1)

    def get_edge(self, entity_a: str, entity_b: str) -> Optional[Dict[str, Any]]:
        a, b = ordered_pair(entity_a, entity_b)
        return self.storage.fetchone(
            "SELECT * FROM entity_edges WHERE entity_a = ? AND entity_b = ?", (a, b)
        )

    # ------------------------------------------------------------------
    # Typed relationships
    # ------------------------------------------------------------------

    def link_typed(
        self,
        source_id: str,
        target_id: str,
        predicate: str,
        confidence: float = 0.7,
    ) -> bool:
        """Upsert a directed, predicate-labelled edge. Returns True if created."""
        predicate = normalize_predicate(predicate)
        now = self.storage.now()
        with self.storage.transaction() as conn:
            row = conn.execute(
                """SELECT id FROM typed_relationships
                    WHERE source_entity_id = ? AND target_entity_id = ? AND predicate = ?""",
                (source_id, target_id, predicate),
            ).fetchone()
            if row is None:
                conn.execute(
                    """INSERT INTO typed_relationships
                       (id, source_entity_id, target_entity_id, predicate, strength,
                        confidence, first_seen, last_seen)
                       VALUES (?, ?, ?, ?, 1, ?, ?, ?)""",
                    (uuid.uuid4().hex[:16], source_id, target_id, predicate, confidence, now, now),
                )
                return True
            conn.execute(
                """UPDATE typed_relationships
                      SET strength = strength + 1,
                          confidence = MAX(confidence, ?),
                          last_seen = ?
                    WHERE id = ?""",
                (confidence, now, row["id"]),
            )
            return False

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def neighbors(self, entity_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Active entities one hop away, strongest first, ties by name.

        Each row has ``id``, ``name``, ``strength`` and ``via``
        (``co_occurrence`` or the typed predicate).
        """
        co = self.storage.fetchall(
            """
            SELECT e.id, e.name, ee.strength AS strength, 'co_occurrence' AS via
              FROM entity_edges ee
              JOIN entities e
                ON e.id = CASE WHEN ee.entity_a = ? THEN ee.entity_b ELSE ee.entity_a END
             WHERE (ee.entity_a = ? OR ee.entity_b = ?) AND e.status = 'active'
            """,
            (entity_id, entity_id, entity_id),
        )
        typed = self.storage.fetchall(
            """
            SELECT e.id, e.name, tr.strength AS strength, tr.predicate AS via
              FROM typed_relationships tr
              JOIN entities e
                ON e.id = CASE WHEN tr.source_entity_id = ? THEN tr.target_entity_id
                               ELSE tr.source_entity_id END
             WHERE (tr.source_entity_id = ? OR tr.target_entity_id = ?) AND e.status = 'active'
            """,
            (entity_id, entity_id, entity_id),
        )
        # Typed rows first so a neighbour reached both ways keeps its predicate.
        best: Dict[str, Dict[str, Any]] = {}
        for row in typed + co:
            prev = best.get(row["id"])
            if prev is None:
                best[row["id"]] = row
            else:
                prev["strength"] = max(prev["strength"], row["strength"])
        ranked = sorted(best.values(), key=lambda r: (-r["strength"], r["name"].casefold()))
        return ranked[:limit]
