"""Behavior store (the user's own stance toward things) and topic store.

Behaviors are reinforced, never contradicted: "trusts X" and "avoids X" may
coexist. Both stores carry a source back-reference for cascade.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .config import Config
from .errors import ConflictError
from .payload import ExtractedBehavior, ExtractedTopic, normalize_name
from .storage import MemoryStorage

logger = logging.getLogger(__name__)

BEHAVIOR_TYPES = frozenset({
    "trusts_opinion_of", "seeks_advice_from", "inspired_by", "relies_on", "avoids",
    "prefers", "struggles_with", "excited_about", "worried_about",
})

# Short forms the extractor emits for the same stance.
BEHAVIOR_ALIASES = {
    "trusts_opinion": "trusts_opinion_of",
    "seeks_advice": "seeks_advice_from",
}


def canonical_behavior_type(behavior_type: str) -> str:
    return BEHAVIOR_ALIASES.get(behavior_type, behavior_type)


@dataclass
class ReinforceResult:
    id: str
    created: bool
    confidence: float


class BehaviorStore:
    def __init__(self, storage: MemoryStorage, config: Optional[Config] = None) -> None:
        self.storage = storage
        self.config = config or Config()

    def reinforce(
        self,
        behavior: ExtractedBehavior,
        target_entity_id: Optional[str] = None,
        source_type: Optional[str] = None,
        source_id: Optional[str] = None,
    ) -> ReinforceResult:
        """Upsert keyed on (predicate, target, topic)."""
        behavior = behavior.model_copy(update={"type": canonical_behavior_type(behavior.type)})
        if behavior.type not in BEHAVIOR_TYPES:
            logger.debug("Unrecognised behavior type %r stored as-is", behavior.type)
        target_key = target_entity_id or (
            normalize_name(behavior.target_entity) if behavior.target_entity else ""
        )
        topic_key = normalize_name(behavior.topic) if behavior.topic else ""
        now = self.storage.now()

        for _ in range(2):
            try:
                with self.storage.transaction() as conn:
                    row = conn.execute(
                        """SELECT id, confidence, status, source_type, source_id FROM behaviors
                            WHERE predicate = ? AND target_key = ? AND topic_key = ?""",
                        (behavior.type, target_key, topic_key),
                    ).fetchone()
                    if row is None:
                        return self._insert(
                            conn, behavior, target_entity_id, target_key, topic_key,
                            source_type, source_id,
                        )
                    confidence = min(
                        1.0, float(row["confidence"]) + self.config.behavior_confidence_increment
                    )
                    src_type, src_id = row["source_type"], row["source_id"]
                    if row["status"] == "inactive":
                        src_type, src_id = source_type, source_id
                    conn.execute(
                        """UPDATE behaviors
                              SET confidence = ?,
                                  reinforcement_count = reinforcement_count + 1,
                                  last_reinforced_at = ?,
                                  evidence = COALESCE(?, evidence),
                                  target_entity_id = COALESCE(target_entity_id, ?),
                                  status = 'active',
                                  cascade_prior_status = NULL,
                                  source_type = ?,
                                  source_id = ?
                            WHERE id = ?""",
                        (confidence, now, behavior.evidence, target_entity_id,
                         src_type, src_id, row["id"]),
                    )
                    return ReinforceResult(id=row["id"], created=False, confidence=confidence)
            except sqlite3.IntegrityError:
                logger.debug("Behavior insert race on %s, retrying", behavior.type)
        raise ConflictError(f"could not reinforce behavior {behavior.type!r}")

    def _insert(
        self,
        conn: sqlite3.Connection,
        behavior: ExtractedBehavior,
        target_entity_id: Optional[str],
        target_key: str,
        topic_key: str,
        source_type: Optional[str],
        source_id: Optional[str],
    ) -> ReinforceResult:
        now = self.storage.now()
        bid = uuid.uuid4().hex[:16]
        confidence = (
            behavior.confidence
            if behavior.confidence is not None
            else self.config.behavior_default_confidence
        )
        conn.execute(
            """INSERT INTO behaviors
               (id, predicate, target_entity_id, target_name, target_key, topic, topic_key,
                evidence, confidence, reinforcement_count, first_seen, last_reinforced_at,
                source_type, source_id, status)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, 'active')""",
            (
                bid, behavior.type, target_entity_id, behavior.target_entity, target_key,
                behavior.topic, topic_key, behavior.evidence, confidence, now, now,
                source_type, source_id,
            ),
        )
        return ReinforceResult(id=bid, created=True, confidence=confidence)

    def get(self, behavior_id: str) -> Optional[Dict[str, Any]]:
        return self.storage.fetchone("SELECT * FROM behaviors WHERE id = ?", (behavior_id,))

    def for_entity(self, entity_id: str) -> List[Dict[str, Any]]:
        return self.storage.fetchall(
            """SELECT * FROM behaviors WHERE target_entity_id = ? AND status = 'active'
                ORDER BY confidence DESC""",
            (entity_id,),
        )

    def list_active(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self.storage.fetchall(
            """SELECT * FROM behaviors WHERE status = 'active'
                ORDER BY confidence DESC, reinforcement_count DESC LIMIT ?""",
            (limit,),
        )

    def cascade_invalidate(self, source_id: str) -> int:
        return self.storage.cascade_status("behaviors", source_id, restore=False)

    def cascade_restore(self, source_id: str) -> int:
        return self.storage.cascade_status("behaviors", source_id, restore=True)


class TopicStore:
    def __init__(self, storage: MemoryStorage) -> None:
        self.storage = storage

    def upsert(
        self,
        topic: ExtractedTopic,
        source_type: Optional[str] = None,
        source_id: Optional[str] = None,
    ) -> ReinforceResult:
        norm = normalize_name(topic.name)
        now = self.storage.now()
        with self.storage.transaction() as conn:
            row = conn.execute(
                "SELECT id, confidence, status FROM topics WHERE normalized_name = ?", (norm,)
            ).fetchone()
            if row is None:
                tid = uuid.uuid4().hex[:16]
                conn.execute(
                    """INSERT INTO topics
                       (id, name, normalized_name, description, confidence, mention_count,
                        first_mentioned, last_mentioned, source_type, source_id, status)
                       VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?, ?, 'active')""",
                    (tid, topic.name, norm, topic.context, topic.confidence, now, now,
                     source_type, source_id),
                )
                return ReinforceResult(id=tid, created=True, confidence=topic.confidence)
            confidence = max(float(row["confidence"]), topic.confidence)
            revive = row["status"] == "inactive"
            conn.execute(
                """UPDATE topics
                      SET mention_count = mention_count + 1,
                          last_mentioned = ?,
                          confidence = ?,
                          description = COALESCE(description, ?),
                          status = 'active',
                          cascade_prior_status = NULL,
                          source_type = CASE WHEN ? THEN ? ELSE source_type END,
                          source_id = CASE WHEN ? THEN ? ELSE source_id END
                    WHERE id = ?""",
                (now, confidence, topic.context, revive, source_type, revive, source_id,
                 row["id"]),
            )
            return ReinforceResult(id=row["id"], created=False, confidence=confidence)

    def list_active(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self.storage.fetchall(
            """SELECT * FROM topics WHERE status = 'active'
                ORDER BY mention_count DESC, confidence DESC LIMIT ?""",
            (limit,),
        )

    def cascade_invalidate(self, source_id: str) -> int:
        return self.storage.cascade_status("topics", source_id, restore=False)

    def cascade_restore(self, source_id: str) -> int:
        return self.storage.cascade_status("topics", source_id, restore=True)

