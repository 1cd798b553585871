"""Background maintenance jobs for one tenant.

All jobs are idempotent and safe to run next to live ingestion: every pass is
a handful of short ``BEGIN IMMEDIATE`` transactions and only touches rows that
still qualify when the transaction runs.

* decay        - importance *= tier retention for stale entities
* consolidation - flag near-duplicate entities for review (never merges)
* archival     - low/trivial entities nobody looked at in a long time
* expiry       - entities past their explicit ``expires_at``
* reindex      - rebuild the keyword index and every category summary
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from rapidfuzz import fuzz

from .config import Config
from .entities import EntityRegistry
from .facts import FactStore
from .graph import ordered_pair
from .storage import MemoryStorage
from .summaries import SummaryCache

logger = logging.getLogger(__name__)

_DAY = 86400.0
_HOUR = 3600.0

DECAY_TIERS = ("trivial", "low", "medium", "high")  # critical never decays
ARCHIVAL_TIERS = ("trivial", "low")


class MaintenanceScheduler:
    def __init__(
        self,
        storage: MemoryStorage,
        registry: EntityRegistry,
        facts: FactStore,
        summaries: SummaryCache,
        config: Optional[Config] = None,
    ) -> None:
        self.storage = storage
        self.registry = registry
        self.facts = facts
        self.summaries = summaries
        self.config = config or Config()

    # ------------------------------------------------------------------
    # Decay
    # ------------------------------------------------------------------

    def run_decay(self) -> Dict[str, Any]:
        """Multiply importance by the tier's retention rate for stale entities.

        An entity is decayed at most once per ``decay_min_interval_hours``, so
        running the job twice in a row changes nothing the second time.
        Entities that fall below ``decay_floor`` are archived.
        """
        cfg = self.config
        now = self.storage.now()
        interval_cutoff = now - cfg.decay_min_interval_hours * _HOUR
        per_tier: Dict[str, int] = {}
        with self.storage.transaction() as conn:
            for tier in DECAY_TIERS:
                days = cfg.decay_after_days.get(tier)
                rate = cfg.decay_retention.get(tier)
                if days is None or rate is None:
                    continue
                cur = conn.execute(
                    """UPDATE entities
                          SET importance_score = importance_score * ?,
                              last_decayed_at = ?
                        WHERE status = 'active'
                          AND importance = ?
                          AND COALESCE(updated_at, last_mentioned, first_mentioned) < ?
                          AND (last_decayed_at IS NULL OR last_decayed_at < ?)""",
                    (min(rate, 1.0), now, tier, now - days * _DAY, interval_cutoff),
                )
                per_tier[tier] = cur.rowcount
        archived = self._archive(
            """status = 'active' AND importance != 'critical'
                AND last_decayed_at IS NOT NULL AND importance_score < ?""",
            (cfg.decay_floor,),
        )
        decayed = sum(per_tier.values())
        logger.info(
            "Decay run: decayed=%d archived=%d per_tier=%s", decayed, archived, per_tier
        )
        return {"decayed": decayed, "archived": archived, "per_tier": per_tier}

    # ------------------------------------------------------------------
    # Consolidation
    # ------------------------------------------------------------------

    def run_consolidation_scan(self) -> Dict[str, Any]:
        """Queue entity pairs whose embeddings are nearly identical."""
        cfg = self.config
        rows = self.storage.fetchall(
            """SELECT id, name, vector_rowid FROM entities
                WHERE status = 'active' AND vector_rowid IS NOT NULL"""
        )
        names = {r["id"]: r["name"] for r in rows}
        seen = set()
        new_candidates = 0
        now = self.storage.now()
        for r in rows:
            blob = self.storage.get_entity_vector(r["vector_rowid"])
            if blob is None:
                continue
            for n in self.storage.nearest_entities(blob, cfg.consolidation_neighbors + 1):
                if n["id"] == r["id"] or n["similarity"] < cfg.consolidation_threshold:
                    continue
                pair = ordered_pair(r["id"], n["id"])
                if pair in seen:
                    continue
                seen.add(pair)
                name_sim = fuzz.token_sort_ratio(
                    names.get(pair[0], ""), names.get(pair[1], "")
                ) / 100.0
                with self.storage.transaction() as conn:
                    cur = conn.execute(
                        """INSERT INTO merge_candidates
                           (entity_a, entity_b, similarity, name_similarity, status, created_at)
                           VALUES (?, ?, ?, ?, 'pending', ?)
                           ON CONFLICT(entity_a, entity_b) DO NOTHING""",
                        (pair[0], pair[1], round(n["similarity"], 4), name_sim, now),
                    )
                    new_candidates += cur.rowcount
        logger.info(
            "Consolidation scan: scanned=%d pairs=%d new_candidates=%d",
            len(rows), len(seen), new_candidates,
        )
        return {"scanned": len(rows), "pairs": len(seen), "new_candidates": new_candidates}

    def merge_candidates(self, status: str = "pending", limit: int = 100) -> List[Dict[str, Any]]:
        return self.storage.fetchall(
            """SELECT mc.*, a.name AS name_a, b.name AS name_b
                 FROM merge_candidates mc
                 JOIN entities a ON a.id = mc.entity_a
                 JOIN entities b ON b.id = mc.entity_b
                WHERE mc.status = ?
                ORDER BY mc.similarity DESC LIMIT ?""",
            (status, limit),
        )

    # ------------------------------------------------------------------
    # Archival / expiry
    # ------------------------------------------------------------------

    def run_archival(self) -> Dict[str, Any]:
        """Archive low-value entities unaccessed for ``archive_after_days``."""
        cutoff = self.storage.now() - self.config.archive_after_days * _DAY
        placeholders = ",".join("?" for _ in ARCHIVAL_TIERS)
        archived = self._archive(
            f"""status = 'active' AND importance IN ({placeholders})
                AND COALESCE(last_accessed_at, last_mentioned, first_mentioned) < ?""",
            (*ARCHIVAL_TIERS, cutoff),
        )
        logger.info("Archival run: archived=%d", archived)
        return {"archived": archived}

    def run_expiry(self) -> Dict[str, Any]:
        archived = self._archive(
            "status = 'active' AND expires_at IS NOT NULL AND expires_at <= ?",
            (self.storage.now(),),
        )
        logger.info("Expiry run: archived=%d", archived)
        return {"expired": archived}

    def _archive(self, where: str, params: Sequence[Any]) -> int:
        now = self.storage.now()
        with self.storage.transaction() as conn:
            rows = conn.execute(
                f"SELECT id, category FROM entities WHERE {where}", tuple(params)
            ).fetchall()
            if rows:
                conn.executemany(
                    """UPDATE entities SET status = 'archived', archived_at = ?
                        WHERE id = ? AND status = 'active'""",
                    [(now, r["id"]) for r in rows],
                )
        if rows:
            self.summaries.refresh(r["category"] for r in rows)
        return len(rows)

    # ------------------------------------------------------------------
    # Re-index
    # ------------------------------------------------------------------

    def run_reindex(self) -> Dict[str, Any]:
        t0 = time.perf_counter()
        self.storage.clear_knowledge_index()
        entities = self.registry.reindex_all()
        facts = self.facts.reindex_all()
        summaries = self.summaries.rebuild()
        logger.info(
            "Reindex: entities=%d facts=%d summaries=%d in %.0fms",
            entities, facts, len(summaries), (time.perf_counter() - t0) * 1000.0,
        )
        return {"entities": entities, "facts": facts, "summaries": len(summaries)}
