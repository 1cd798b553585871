"""Entity registry: canonical store of named things.

Dedup is exact on a case-insensitive normalized name at write time. Fuzzy
matching (rapidfuzz) is only used for read-side name matching against a
query; near-duplicate merging is left to the consolidation job.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from rapidfuzz import fuzz

from .config import Config
from .errors import ConflictError
from .payload import ExtractedEntity, normalize_name
from .storage import MemoryStorage

logger = logging.getLogger(__name__)

_UPSERT_ATTEMPTS = 3
_WORD_RE = re.compile(r"[\w'-]+", re.UNICODE)


def tier_for_score(score: float) -> str:
    """Map an importance score to a decay tier. ``critical`` is never derived."""
    if score >= 0.85:
        return "high"
    if score >= 0.6:
        return "medium"
    if score >= 0.35:
        return "low"
    return "trivial"


@dataclass
class UpsertResult:
    entity_id: str
    created: bool
    name: str


class EntityRegistry:
    """Entity CRUD on top of a tenant's :class:`MemoryStorage`."""

    def __init__(self, storage: MemoryStorage, config: Optional[Config] = None) -> None:
        self.storage = storage
        self.config = config or Config()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(
        self,
        entity: ExtractedEntity,
        source_type: Optional[str] = None,
        source_id: Optional[str] = None,
    ) -> UpsertResult:
        """Create the entity or register another mention of it."""
        norm = normalize_name(entity.name)
        for attempt in range(_UPSERT_ATTEMPTS):
            try:
                with self.storage.transaction() as conn:
                    row = conn.execute(
                        "SELECT * FROM entities WHERE normalized_name = ? AND status != 'deleted'",
                        (norm,),
                    ).fetchone()
                    if row is None:
                        result = self._insert(conn, entity, norm, source_type, source_id)
                    else:
                        result = self._mention(conn, dict(row), entity, source_type, source_id)
                    self._index(result.entity_id)
                return result
            except sqlite3.IntegrityError:
                # Another worker inserted the same name first; retry as a mention.
                logger.debug("Entity insert race on %r (attempt %d)", norm, attempt + 1)
        raise ConflictError(f"could not upsert entity {entity.name!r}")

    def _insert(
        self,
        conn: sqlite3.Connection,
        entity: ExtractedEntity,
        norm: str,
        source_type: Optional[str],
        source_id: Optional[str],
    ) -> UpsertResult:
        now = self.storage.now()
        eid = uuid.uuid4().hex[:16]
        score = entity.confidence
        notes = [entity.context] if entity.context else []
        conn.execute(
            """INSERT INTO entities
               (id, name, normalized_name, entity_type, subtype, summary,
                mention_count, importance_score, importance,
                sentiment_avg, sentiment_count, context_notes,
                first_mentioned, last_mentioned, updated_at, expires_at,
                status, source_type, source_id, privacy_level)
               VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?, ?)""",
            (
                eid, entity.name, norm, entity.type, entity.subtype,
                entity.summary or entity.context,
                score, entity.importance or tier_for_score(score),
                entity.sentiment if entity.sentiment is not None else 0.0,
                1 if entity.sentiment is not None else 0,
                json.dumps(notes),
                now, now, now, entity.expires_at,
                source_type, source_id, entity.privacy_level or "private",
            ),
        )
        return UpsertResult(entity_id=eid, created=True, name=entity.name)

    def _mention(
        self,
        conn: sqlite3.Connection,
        row: Dict[str, Any],
        entity: ExtractedEntity,
        source_type: Optional[str],
        source_id: Optional[str],
    ) -> UpsertResult:
        now = self.storage.now()
        cfg = self.config
        score = min(1.0, float(row["importance_score"]) + cfg.entity_importance_increment)

        if entity.importance:
            tier = entity.importance
        elif row["importance"] == "critical":
            tier = "critical"
        else:
            tier = tier_for_score(score)

        notes: List[str] = json.loads(row["context_notes"] or "[]")
        if entity.context:
            notes.append(entity.context)
            notes = notes[-cfg.max_context_notes:]

        sentiment_avg = float(row["sentiment_avg"])
        sentiment_count = int(row["sentiment_count"])
        if entity.sentiment is not None:
            sentiment_avg = (sentiment_avg * sentiment_count + entity.sentiment) / (sentiment_count + 1)
            sentiment_count += 1

        status = row["status"]
        row_source_type, row_source_id = row["source_type"], row["source_id"]
        if status == "inactive":
            # The originating source is gone; this mention now backs the entity.
            row_source_type, row_source_id = source_type, source_id
        if status != "active":
            logger.info("Reviving %s entity %s (%s)", status, row["id"], row["name"])

        conn.execute(
            """UPDATE entities
                  SET mention_count = mention_count + 1,
                      importance_score = ?,
                      importance = ?,
                      last_mentioned = ?,
                      updated_at = ?,
                      context_notes = ?,
                      sentiment_avg = ?,
                      sentiment_count = ?,
                      summary = COALESCE(?, summary),
                      subtype = COALESCE(subtype, ?),
                      expires_at = COALESCE(?, expires_at),
                      privacy_level = COALESCE(?, privacy_level),
                      status = 'active',
                      archived_at = NULL,
                      cascade_prior_status = NULL,
                      source_type = ?,
                      source_id = ?
                WHERE id = ?""",
            (
                score, tier, now, now, json.dumps(notes),
                sentiment_avg, sentiment_count,
                entity.summary, entity.subtype, entity.expires_at, entity.privacy_level,
                row_source_type, row_source_id, row["id"],
            ),
        )
        return UpsertResult(entity_id=row["id"], created=False, name=row["name"])

    def _index(self, entity_id: str) -> None:
        ent = self.storage.fetchone(
            "SELECT name, entity_type, subtype, summary FROM entities WHERE id = ?",
            (entity_id,),
        )
        if ent:
            text = " ".join(
                part for part in (ent["name"], ent["entity_type"], ent["subtype"], ent["summary"])
                if part
            )
            self.storage.index_knowledge("entity", entity_id, text)

    def reindex_all(self) -> int:
        rows = self.storage.fetchall("SELECT id FROM entities WHERE status = 'active'")
        for r in rows:
            self._index(r["id"])
        return len(rows)

    def touch_accessed(self, entity_ids: Iterable[str]) -> None:
        """Record that entities were surfaced by retrieval."""
        ids = list(entity_ids)
        if not ids:
            return
        now = self.storage.now()
        with self.storage.transaction() as conn:
            conn.executemany(
                "UPDATE entities SET last_accessed_at = ? WHERE id = ?",
                [(now, eid) for eid in ids],
            )

    def erase(self, entity_id: str) -> bool:
        """Explicit user erasure. Marks the entity deleted and drops its facts."""
        with self.storage.transaction() as conn:
            cur = conn.execute(
                "UPDATE entities SET status = 'deleted', updated_at = ? WHERE id = ? AND status != 'deleted'",
                (self.storage.now(), entity_id),
            )
            if cur.rowcount == 0:
                return False
            conn.execute("DELETE FROM facts WHERE entity_id = ?", (entity_id,))
            conn.execute(
                "DELETE FROM entity_edges WHERE entity_a = ? OR entity_b = ?", (entity_id, entity_id)
            )
            conn.execute(
                "DELETE FROM typed_relationships WHERE source_entity_id = ? OR target_entity_id = ?",
                (entity_id, entity_id),
            )
            conn.execute("DELETE FROM knowledge_fts WHERE kind = 'entity' AND item_id = ?", (entity_id,))
        logger.info("Erased entity %s", entity_id)
        return True

    def cascade_invalidate(self, source_id: str) -> int:
        """Entities whose originating source was deleted become inactive."""
        return self.storage.cascade_status("entities", source_id)

    def cascade_restore(self, source_id: str) -> int:
        return self.storage.cascade_status("entities", source_id, restore=True)

    def categories_of(self, entity_ids: Iterable[str]) -> List[str]:
        ids = list(dict.fromkeys(entity_ids))
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        rows = self.storage.fetchall(
            f"SELECT DISTINCT category FROM entities WHERE id IN ({placeholders})", ids
        )
        return [r["category"] for r in rows]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, entity_id: str) -> Optional[Dict[str, Any]]:
        row = self.storage.fetchone("SELECT * FROM entities WHERE id = ?", (entity_id,))
        return _decode(row) if row else None

    def find_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        """Active entity whose normalized name equals *name*'s."""
        row = self.storage.fetchone(
            "SELECT * FROM entities WHERE normalized_name = ? AND status = 'active'",
            (normalize_name(name),),
        )
        return _decode(row) if row else None

    def find_in_text(self, text: str) -> List[Dict[str, Any]]:
        """Active entities whose full name appears in *text* (up to three words)."""
        grams = name_ngrams(text)
        if not grams:
            return []
        placeholders = ",".join("?" for _ in grams)
        rows = self.storage.fetchall(
            f"""SELECT * FROM entities
                 WHERE status = 'active' AND normalized_name IN ({placeholders})
                 ORDER BY importance_score DESC""",
            grams,
        )
        return [_decode(r) for r in rows]

    def list_active(self, limit: int = 200) -> List[Dict[str, Any]]:
        rows = self.storage.fetchall(
            """SELECT * FROM entities WHERE status = 'active'
                ORDER BY importance_score DESC, mention_count DESC
                LIMIT ?""",
            (limit,),
        )
        return [_decode(r) for r in rows]

    def get_many(self, entity_ids: Iterable[str]) -> List[Dict[str, Any]]:
        ids = list(dict.fromkeys(entity_ids))
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        rows = self.storage.fetchall(
            f"SELECT * FROM entities WHERE id IN ({placeholders}) AND status = 'active'",
            ids,
        )
        return [_decode(r) for r in rows]


def _decode(row: Dict[str, Any]) -> Dict[str, Any]:
    d = dict(row)
    try:
        d["context_notes"] = json.loads(d.get("context_notes") or "[]")
    except (TypeError, ValueError):
        d["context_notes"] = []
    return d


def name_ngrams(text: str, max_n: int = 3) -> List[str]:
    words = [w.strip("'-") for w in _WORD_RE.findall(normalize_name(text))]
    words = [w for w in words if w]
    grams: List[str] = []
    for n in range(1, max_n + 1):
        for i in range(len(words) - n + 1):
            grams.append(" ".join(words[i:i + n]))
    return list(dict.fromkeys(grams))


def name_match_score(name: str, query: str) -> float:
    """How strongly *query* names the entity, in [0, 1]."""
    if not name or not query:
        return 0.0
    n = normalize_name(name)
    q = normalize_name(query)
    if n in q.split() or f" {n} " in f" {q} ":
        return 1.0
    if len(n) < 3:
        return 0.0
    return fuzz.partial_ratio(n, q) / 100.0
