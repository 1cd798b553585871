"""Bi-temporal fact store.

Facts are (subject entity, predicate, object) triples with two time axes:

* ``valid_from`` / ``valid_to``: when the fact held in the world
* ``created_at`` / ``invalidated_at``: when the system learned / unlearned it

Single-value predicates keep at most one current fact per (entity, predicate).
A new value supersedes the old one inside a single ``BEGIN IMMEDIATE``
transaction; the UPDATE is a compare-and-swap on the prior fact still being
current, and the partial unique index ``idx_facts_single_current`` makes the
database the final arbiter. Lost races are retried with backoff.
"""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from .config import Config
from .errors import ConflictError, NotFoundError, ValidationError
from .payload import normalize_name, normalize_predicate
from .storage import MemoryStorage

logger = logging.getLogger(__name__)

SINGLE_VALUE_PREDICATES: FrozenSet[str] = frozenset({
    "works_at", "lives_in", "job_title", "reports_to", "married_to", "dating",
    "age", "birthday", "company", "role", "location", "employer",
})

INVALIDATION_REASONS = frozenset({
    "contradiction", "source_deleted", "user_corrected", "expired", "merged",
})


class _StalePrior(Exception):
    """The prior current fact changed between read and swap."""


@dataclass
class FactWrite:
    fact_id: str
    outcome: str  # "created", "reinforced" or "superseded"
    version: int = 1
    superseded_id: Optional[str] = None


class FactStore:
    """Fact CRUD with contradiction handling and version chains."""

    def __init__(
        self,
        storage: MemoryStorage,
        config: Optional[Config] = None,
        single_value_predicates: Optional[Iterable[str]] = None,
    ) -> None:
        self.storage = storage
        self.config = config or Config()
        self.single_value = frozenset(single_value_predicates or SINGLE_VALUE_PREDICATES)

    def is_single_value(self, predicate: str) -> bool:
        return normalize_predicate(predicate) in self.single_value

    # ------------------------------------------------------------------
    # Upsert
    # ------------------------------------------------------------------

    def upsert(
        self,
        entity_id: str,
        predicate: str,
        object_text: str,
        confidence: float = 0.7,
        source_type: Optional[str] = None,
        source_id: Optional[str] = None,
        object_entity_id: Optional[str] = None,
        valid_from: Optional[float] = None,
    ) -> FactWrite:
        """Reinforce, insert or supersede a fact. See module docstring."""
        predicate = normalize_predicate(predicate)
        object_text = object_text.strip()
        if not predicate or not object_text:
            raise ValidationError("fact needs a predicate and an object")
        object_norm = normalize_name(object_text)
        single = predicate in self.single_value

        subject = self.storage.fetchone(
            "SELECT id, name FROM entities WHERE id = ? AND status = 'active'", (entity_id,)
        )
        if subject is None:
            raise NotFoundError(f"entity {entity_id} not found")

        retries = self.config.fact_max_retries
        backoff = self.config.fact_retry_backoff_ms / 1000.0
        for attempt in range(retries + 1):
            try:
                with self.storage.transaction() as conn:
                    return self._write(
                        conn, subject, predicate, object_text, object_norm, single,
                        confidence, source_type, source_id, object_entity_id, valid_from,
                    )
            except (_StalePrior, sqlite3.IntegrityError) as exc:
                logger.debug(
                    "Fact CAS conflict on (%s, %s) attempt %d/%d: %s",
                    entity_id, predicate, attempt + 1, retries + 1, exc,
                )
                if attempt < retries:
                    time.sleep(backoff * (2 ** attempt))
        logger.warning("Fact CAS retries exhausted for (%s, %s)", entity_id, predicate)
        raise ConflictError(f"concurrent update of {predicate} for entity {entity_id}")

    def _write(
        self,
        conn: sqlite3.Connection,
        subject: Dict[str, Any],
        predicate: str,
        object_text: str,
        object_norm: str,
        single: bool,
        confidence: float,
        source_type: Optional[str],
        source_id: Optional[str],
        object_entity_id: Optional[str],
        valid_from: Optional[float],
    ) -> FactWrite:
        now = self.storage.now()
        entity_id = subject["id"]

        same = conn.execute(
            """SELECT id, version FROM facts
                WHERE entity_id = ? AND predicate = ? AND object_normalized = ?
                  AND is_current = 1 AND status = 'active'
                LIMIT 1""",
            (entity_id, predicate, object_norm),
        ).fetchone()
        if same is not None:
            conn.execute(
                """UPDATE facts
                      SET mention_count = mention_count + 1,
                          confidence = MIN(1.0, confidence + ?),
                          last_mentioned = ?,
                          updated_at = ?,
                          object_entity_id = COALESCE(object_entity_id, ?)
                    WHERE id = ?""",
                (self.config.fact_confidence_increment, now, now, object_entity_id, same["id"]),
            )
            return FactWrite(fact_id=same["id"], outcome="reinforced", version=same["version"])

        prior = None
        if single:
            prior = conn.execute(
                """SELECT id, version FROM facts
                    WHERE entity_id = ? AND predicate = ? AND is_current = 1
                    ORDER BY version DESC LIMIT 1""",
                (entity_id, predicate),
            ).fetchone()

        fid = uuid.uuid4().hex[:16]
        start = valid_from if valid_from is not None else now
        version = 1
        if prior is not None:
            cur = conn.execute(
                """UPDATE facts
                      SET is_current = 0,
                          invalidated_at = ?,
                          invalidation_reason = CASE WHEN status = 'inactive'
                              THEN invalidation_reason ELSE 'contradiction' END,
                          cascade_prior_reason = CASE WHEN status = 'inactive'
                              THEN 'contradiction' ELSE cascade_prior_reason END,
                          invalidated_by = ?,
                          valid_to = COALESCE(valid_to, ?),
                          updated_at = ?
                    WHERE id = ? AND is_current = 1""",
                (now, fid, start, now, prior["id"]),
            )
            if cur.rowcount != 1:
                raise _StalePrior(prior["id"])
            version = int(prior["version"]) + 1

        conn.execute(
            """INSERT INTO facts
               (id, entity_id, predicate, object_text, object_normalized, object_entity_id,
                single_value, confidence, mention_count, source_type, source_id,
                valid_from, created_at, version, previous_version_id, is_current,
                status, last_mentioned, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?, 1, 'active', ?, ?)""",
            (
                fid, entity_id, predicate, object_text, object_norm, object_entity_id,
                1 if single else 0, confidence, source_type, source_id,
                start, now, version, prior["id"] if prior else None, now, now,
            ),
        )
        self.storage.index_knowledge(
            "fact", fid, f"{subject['name']} {predicate.replace('_', ' ')} {object_text}"
        )

        if prior is not None:
            logger.info(
                "Fact %s supersedes %s (%s %s, v%d)",
                fid, prior["id"], subject["name"], predicate, version,
            )
            return FactWrite(fact_id=fid, outcome="superseded", version=version,
                             superseded_id=prior["id"])
        return FactWrite(fact_id=fid, outcome="created", version=version)

    def reindex_all(self) -> int:
        """Re-add every current, active fact to the keyword index."""
        rows = self.storage.fetchall(
            """SELECT f.id, f.predicate, f.object_text, e.name AS entity_name
                 FROM facts f JOIN entities e ON e.id = f.entity_id
                WHERE f.is_current = 1 AND f.status = 'active' AND e.status = 'active'"""
        )
        for r in rows:
            self.storage.index_knowledge(
                "fact", r["id"],
                f"{r['entity_name']} {r['predicate'].replace('_', ' ')} {r['object_text']}",
            )
        return len(rows)

    # ------------------------------------------------------------------
    # Manual invalidation
    # ------------------------------------------------------------------

    def correct(self, fact_id: str, reason: str = "user_corrected") -> Dict[str, Any]:
        """Invalidate a current fact without a successor."""
        if reason not in INVALIDATION_REASONS:
            raise ValidationError(f"unknown invalidation reason {reason!r}")
        now = self.storage.now()
        with self.storage.transaction() as conn:
            cur = conn.execute(
                """UPDATE facts
                      SET is_current = 0,
                          invalidated_at = ?,
                          invalidation_reason = CASE WHEN status = 'inactive'
                              THEN invalidation_reason ELSE ? END,
                          cascade_prior_reason = CASE WHEN status = 'inactive'
                              THEN ? ELSE cascade_prior_reason END,
                          valid_to = COALESCE(valid_to, ?),
                          updated_at = ?
                    WHERE id = ? AND is_current = 1""",
                (now, reason, reason, now, now, fact_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"no current fact {fact_id}")
        logger.info("Fact %s invalidated (%s)", fact_id, reason)
        return self.get(fact_id) or {}

    # ------------------------------------------------------------------
    # Cascade
    # ------------------------------------------------------------------

    def cascade_invalidate(self, source_id: str) -> int:
        """Hide every active fact derived from *source_id*.

        ``is_current`` and version pointers are left alone; the prior status
        and reason are kept so :meth:`cascade_restore` can put them back.
        """
        with self.storage.transaction() as conn:
            cur = conn.execute(
                """UPDATE facts
                      SET cascade_prior_status = status,
                          cascade_prior_reason = invalidation_reason,
                          status = 'inactive',
                          invalidation_reason = 'source_deleted'
                    WHERE source_id = ? AND status = 'active'""",
                (source_id,),
            )
            return cur.rowcount

    def cascade_restore(self, source_id: str) -> int:
        with self.storage.transaction() as conn:
            cur = conn.execute(
                """UPDATE facts
                      SET status = cascade_prior_status,
                          invalidation_reason = cascade_prior_reason,
                          cascade_prior_status = NULL,
                          cascade_prior_reason = NULL
                    WHERE source_id = ? AND status = 'inactive'
                      AND cascade_prior_status IS NOT NULL""",
                (source_id,),
            )
            return cur.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, fact_id: str) -> Optional[Dict[str, Any]]:
        return self.storage.fetchone("SELECT * FROM facts WHERE id = ?", (fact_id,))

    def facts_at(
        self,
        entity_id: str,
        as_of: float,
        predicate: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Facts true in the world *and* known to the system at *as_of*."""
        sql = """
            SELECT * FROM facts
             WHERE entity_id = ?
               AND status = 'active'
               AND COALESCE(valid_from, created_at) <= ?
               AND (valid_to IS NULL OR valid_to > ?)
               AND created_at <= ?
               AND (invalidated_at IS NULL OR invalidated_at > ?)
        """
        params: List[Any] = [entity_id, as_of, as_of, as_of, as_of]
        if predicate:
            sql += " AND predicate = ?"
            params.append(normalize_predicate(predicate))
        sql += " ORDER BY valid_from DESC, confidence DESC"
        return self.storage.fetchall(sql, params)

    def fact_at(self, entity_id: str, predicate: str, as_of: float) -> Optional[Dict[str, Any]]:
        rows = self.facts_at(entity_id, as_of, predicate)
        return rows[0] if rows else None

    def history(self, entity_id: str, predicate: str) -> List[Dict[str, Any]]:
        """Version chain for (entity, predicate), newest first."""
        return self.storage.fetchall(
            """SELECT * FROM facts WHERE entity_id = ? AND predicate = ?
                ORDER BY version DESC, created_at DESC""",
            (entity_id, normalize_predicate(predicate)),
        )

    def current_facts(self, entity_id: str) -> List[Dict[str, Any]]:
        return self.storage.fetchall(
            """SELECT * FROM facts
                WHERE entity_id = ? AND is_current = 1 AND status = 'active'
                ORDER BY confidence DESC, mention_count DESC""",
            (entity_id,),
        )

    def current_facts_for(self, entity_ids: Iterable[str]) -> Dict[str, List[Dict[str, Any]]]:
        ids = list(dict.fromkeys(entity_ids))
        out: Dict[str, List[Dict[str, Any]]] = {eid: [] for eid in ids}
        if not ids:
            return out
        placeholders = ",".join("?" for _ in ids)
        rows = self.storage.fetchall(
            f"""SELECT * FROM facts
                 WHERE entity_id IN ({placeholders}) AND is_current = 1 AND status = 'active'
                 ORDER BY confidence DESC, mention_count DESC""",
            ids,
        )
        for r in rows:
            out[r["entity_id"]].append(r)
        return out

    def get_many(self, fact_ids: Iterable[str]) -> List[Dict[str, Any]]:
        ids = list(dict.fromkeys(fact_ids))
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        return self.storage.fetchall(
            f"""SELECT f.*, e.name AS entity_name FROM facts f
                  JOIN entities e ON e.id = f.entity_id
                 WHERE f.id IN ({placeholders}) AND f.is_current = 1
                   AND f.status = 'active' AND e.status = 'active'""",
            ids,
        )

    def conflicts(self) -> List[Dict[str, Any]]:
        """(entity, predicate) pairs with more than one current single-value fact."""
        return self.storage.fetchall(
            """SELECT entity_id, predicate, COUNT(*) AS count FROM facts
                WHERE is_current = 1 AND single_value = 1
                GROUP BY entity_id, predicate HAVING COUNT(*) > 1"""
        )
