"""SQLite + sqlite-vec storage layer for one tenant.

Single-file database with:
* ``sqlite-vec`` virtual tables for note and entity vectors
* FTS5 virtual tables for note content and entity/fact text
* Knowledge graph tables (entities, facts, edges, behaviors, topics, summaries)
* Auto-create schema on first use

Every user gets their own file (see :mod:`graph_memory.pool`), so no table
carries a user column and cross-tenant references cannot be expressed.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import numpy as np

from .errors import StoreError

logger = logging.getLogger(__name__)

_FTS_TOKEN_RE = re.compile(r"\w+", re.UNICODE)

# ---------------------------------------------------------------------------
# sqlite-vec extension loading
# ---------------------------------------------------------------------------

def _load_vec_extension(conn: sqlite3.Connection) -> None:
    """Load the sqlite-vec extension into *conn*.

    Extension loading is only enabled for the duration of the load call.
    """
    conn.enable_load_extension(True)
    try:
        import sqlite_vec

        sqlite_vec.load(conn)
    except Exception as exc:
        logger.error("Failed to load sqlite-vec: %s", exc)
        raise
    finally:
        conn.enable_load_extension(False)


def vector_blob(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def fts_query(text: str) -> str:
    """Turn free text into an FTS5 OR-query of quoted tokens."""
    tokens = [t for t in _FTS_TOKEN_RE.findall(text.lower()) if len(t) >= 2]
    seen: List[str] = []
    for tok in tokens:
        if tok not in seen:
            seen.append(tok)
    return " OR ".join(f'"{tok}"' for tok in seen)


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
-- Source notes (content indexed for Tier 3)
CREATE TABLE IF NOT EXISTS notes (
    id TEXT PRIMARY KEY,
    source_type TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at REAL NOT NULL,
    updated_at REAL,
    vector_rowid INTEGER,
    status TEXT NOT NULL DEFAULT 'active',
    cascade_prior_status TEXT
);

CREATE VIRTUAL TABLE IF NOT EXISTS note_fts USING fts5(
    id UNINDEXED,
    content
);

-- Entity registry
CREATE TABLE IF NOT EXISTS entities (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    normalized_name TEXT NOT NULL,
    entity_type TEXT NOT NULL DEFAULT 'other',
    subtype TEXT,
    summary TEXT,
    category TEXT NOT NULL DEFAULT 'general',
    mention_count INTEGER NOT NULL DEFAULT 1,
    importance_score REAL NOT NULL DEFAULT 0.5,
    importance TEXT NOT NULL DEFAULT 'medium',
    sentiment_avg REAL NOT NULL DEFAULT 0.0,
    sentiment_count INTEGER NOT NULL DEFAULT 0,
    context_notes TEXT NOT NULL DEFAULT '[]',
    first_mentioned REAL,
    last_mentioned REAL,
    last_accessed_at REAL,
    updated_at REAL,
    last_decayed_at REAL,
    expires_at REAL,
    archived_at REAL,
    status TEXT NOT NULL DEFAULT 'active',
    cascade_prior_status TEXT,
    source_type TEXT,
    source_id TEXT,
    privacy_level TEXT NOT NULL DEFAULT 'private',
    vector_rowid INTEGER
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_entities_norm_live
    ON entities(normalized_name) WHERE status != 'deleted';
CREATE INDEX IF NOT EXISTS idx_entities_status ON entities(status, importance_score);
CREATE INDEX IF NOT EXISTS idx_entities_source ON entities(source_id);
CREATE INDEX IF NOT EXISTS idx_entities_category ON entities(category);

-- Bi-temporal facts
CREATE TABLE IF NOT EXISTS facts (
    id TEXT PRIMARY KEY,
    entity_id TEXT NOT NULL REFERENCES entities(id),
    predicate TEXT NOT NULL,
    object_text TEXT NOT NULL,
    object_normalized TEXT NOT NULL,
    object_entity_id TEXT,
    single_value INTEGER NOT NULL DEFAULT 0,
    confidence REAL NOT NULL DEFAULT 0.7,
    mention_count INTEGER NOT NULL DEFAULT 1,
    source_type TEXT,
    source_id TEXT,
    valid_from REAL,
    valid_to REAL,
    created_at REAL NOT NULL,
    invalidated_at REAL,
    invalidated_by TEXT,
    invalidation_reason TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    previous_version_id TEXT,
    is_current INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL DEFAULT 'active',
    cascade_prior_status TEXT,
    cascade_prior_reason TEXT,
    last_mentioned REAL,
    updated_at REAL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_facts_single_current
    ON facts(entity_id, predicate) WHERE is_current = 1 AND single_value = 1;
CREATE INDEX IF NOT EXISTS idx_facts_entity_pred ON facts(entity_id, predicate, is_current);
CREATE INDEX IF NOT EXISTS idx_facts_source ON facts(source_id);
CREATE INDEX IF NOT EXISTS idx_facts_prev ON facts(previous_version_id);

-- Co-occurrence edges (entity_a < entity_b)
CREATE TABLE IF NOT EXISTS entity_edges (
    id TEXT PRIMARY KEY,
    entity_a TEXT NOT NULL REFERENCES entities(id),
    entity_b TEXT NOT NULL REFERENCES entities(id),
    strength INTEGER NOT NULL DEFAULT 1,
    context TEXT DEFAULT '',
    first_seen REAL,
    last_seen REAL,
    UNIQUE (entity_a, entity_b)
);

CREATE INDEX IF NOT EXISTS idx_edges_b ON entity_edges(entity_b);

-- Directed typed relationships
CREATE TABLE IF NOT EXISTS typed_relationships (
    id TEXT PRIMARY KEY,
    source_entity_id TEXT NOT NULL REFERENCES entities(id),
    target_entity_id TEXT NOT NULL REFERENCES entities(id),
    predicate TEXT NOT NULL,
    strength INTEGER NOT NULL DEFAULT 1,
    confidence REAL NOT NULL DEFAULT 0.7,
    first_seen REAL,
    last_seen REAL,
    UNIQUE (source_entity_id, target_entity_id, predicate)
);

CREATE INDEX IF NOT EXISTS idx_typed_target ON typed_relationships(target_entity_id);

-- First-person behaviors
CREATE TABLE IF NOT EXISTS behaviors (
    id TEXT PRIMARY KEY,
    predicate TEXT NOT NULL,
    target_entity_id TEXT,
    target_name TEXT,
    target_key TEXT NOT NULL DEFAULT '',
    topic TEXT,
    topic_key TEXT NOT NULL DEFAULT '',
    evidence TEXT,
    confidence REAL NOT NULL DEFAULT 0.6,
    reinforcement_count INTEGER NOT NULL DEFAULT 1,
    first_seen REAL,
    last_reinforced_at REAL,
    source_type TEXT,
    source_id TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    cascade_prior_status TEXT,
    UNIQUE (predicate, target_key, topic_key)
);

CREATE INDEX IF NOT EXISTS idx_behaviors_source ON behaviors(source_id);

-- Topics
CREATE TABLE IF NOT EXISTS topics (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    normalized_name TEXT NOT NULL UNIQUE,
    description TEXT,
    confidence REAL NOT NULL DEFAULT 0.5,
    mention_count INTEGER NOT NULL DEFAULT 1,
    first_mentioned REAL,
    last_mentioned REAL,
    source_type TEXT,
    source_id TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    cascade_prior_status TEXT
);

CREATE INDEX IF NOT EXISTS idx_topics_source ON topics(source_id);

-- One evolving summary per category
CREATE TABLE IF NOT EXISTS category_summaries (
    category TEXT PRIMARY KEY,
    summary TEXT NOT NULL,
    entity_count INTEGER NOT NULL DEFAULT 0,
    fact_count INTEGER NOT NULL DEFAULT 0,
    rewrite_count INTEGER NOT NULL DEFAULT 1,
    updated_at REAL NOT NULL
);

-- Consolidation review queue
CREATE TABLE IF NOT EXISTS merge_candidates (
    entity_a TEXT NOT NULL,
    entity_b TEXT NOT NULL,
    similarity REAL NOT NULL,
    name_similarity REAL,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at REAL NOT NULL,
    PRIMARY KEY (entity_a, entity_b)
);

-- Keyword index over entity / fact text
CREATE VIRTUAL TABLE IF NOT EXISTS knowledge_fts USING fts5(
    item_id UNINDEXED,
    kind UNINDEXED,
    text
)
"""


class MemoryStorage:
    """SQLite-backed store for one user's knowledge graph."""

    def __init__(
        self,
        db_path: str,
        dimensions: int = 4096,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.db_path = db_path
        self.dimensions = dimensions
        self.clock: Callable[[], float] = clock or time.time

        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        # One connection per thread; ingestion fans out over a worker pool.
        self._local = threading.local()
        self._conns: List[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()
        self._ensure_schema()

    def now(self) -> float:
        return self.clock()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = sqlite3.connect(
                    self.db_path,
                    timeout=5.0,
                    isolation_level=None,
                    check_same_thread=False,
                )
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA foreign_keys=ON")
                conn.execute("PRAGMA busy_timeout = 5000")
                conn.execute("PRAGMA temp_store = MEMORY")
                _load_vec_extension(conn)
            except sqlite3.Error as exc:
                raise StoreError(f"cannot open {self.db_path}: {exc}") from exc
            self._local.conn = conn
            with self._conns_lock:
                self._conns.append(conn)
        return conn

    def close(self) -> None:
        with self._conns_lock:
            for conn in self._conns:
                conn.close()
            self._conns.clear()
        self._local = threading.local()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside ``BEGIN IMMEDIATE`` ... ``COMMIT``.

        Nested use joins the outer transaction. ``sqlite3.IntegrityError``
        propagates unchanged so callers can treat it as a lost race; every
        other driver error becomes :class:`StoreError`.
        """
        conn = self._get_conn()
        if conn.in_transaction:
            yield conn
            return
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise StoreError(f"cannot begin transaction: {exc}") from exc
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.IntegrityError:
            conn.execute("ROLLBACK")
            raise
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            logger.exception("Store transaction failed")
            raise StoreError(str(exc)) from exc
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        try:
            rows = self._get_conn().execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return [dict(r) for r in rows]

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        try:
            row = self._get_conn().execute(sql, tuple(params)).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return dict(row) if row else None

    # ------------------------------------------------------------------
    # Schema bootstrap
    # ------------------------------------------------------------------

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        for stmt in _SCHEMA_SQL.split(";"):
            stmt = stmt.strip()
            if stmt:
                conn.execute(stmt)

        for table in ("note_vectors", "entity_vectors"):
            conn.execute(
                f"CREATE VIRTUAL TABLE IF NOT EXISTS {table} USING vec0("
                f"embedding float[{self.dimensions}] distance_metric=cosine)"
            )

    # ------------------------------------------------------------------
    # Notes (source content)
    # ------------------------------------------------------------------

    def upsert_note(
        self,
        source_id: str,
        source_type: str,
        content: str,
        vector: Optional[Sequence[float]] = None,
    ) -> None:
        """Store or replace the indexed content of one source."""
        now = self.now()
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT vector_rowid FROM notes WHERE id = ?", (source_id,)
            ).fetchone()
            vector_rowid = row["vector_rowid"] if row else None
            if vector is not None:
                blob = vector_blob(vector)
                if vector_rowid is not None:
                    conn.execute(
                        "UPDATE note_vectors SET embedding = ? WHERE rowid = ?",
                        (blob, vector_rowid),
                    )
                else:
                    cur = conn.execute(
                        "INSERT INTO note_vectors(embedding) VALUES (?)", (blob,)
                    )
                    vector_rowid = cur.lastrowid
            if row:
                conn.execute(
                    """UPDATE notes SET source_type = ?, content = ?, updated_at = ?,
                              vector_rowid = ?
                        WHERE id = ?""",
                    (source_type, content, now, vector_rowid, source_id),
                )
            else:
                conn.execute(
                    """INSERT INTO notes
                       (id, source_type, content, created_at, updated_at, vector_rowid, status)
                       VALUES (?, ?, ?, ?, ?, ?, 'active')""",
                    (source_id, source_type, content, now, now, vector_rowid),
                )
            conn.execute("DELETE FROM note_fts WHERE id = ?", (source_id,))
            conn.execute(
                "INSERT INTO note_fts(id, content) VALUES (?, ?)", (source_id, content)
            )

    def get_note(self, source_id: str) -> Optional[Dict[str, Any]]:
        return self.fetchone("SELECT * FROM notes WHERE id = ?", (source_id,))

    def search_note_vectors(
        self, query_vector: Sequence[float], limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Nearest active notes by cosine similarity (``score`` in [0, 1])."""
        rows = self.fetchall(
            """
            SELECT nv.rowid AS vec_rowid, nv.distance AS distance
              FROM note_vectors nv
             WHERE nv.embedding MATCH ? AND k = ?
             ORDER BY nv.distance
            """,
            (vector_blob(query_vector), limit),
        )
        results: List[Dict[str, Any]] = []
        for r in rows:
            note = self.fetchone(
                "SELECT * FROM notes WHERE vector_rowid = ? AND status = 'active'",
                (r["vec_rowid"],),
            )
            if note:
                note["score"] = max(0.0, min(1.0, 1.0 - float(r["distance"])))
                results.append(note)
        return results

    def search_note_text(self, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        """BM25 over active note content. Lower ``rank`` is better."""
        match = fts_query(query)
        if not match:
            return []
        return self.fetchall(
            """
            SELECT n.*, bm25(note_fts) AS rank
              FROM note_fts
              JOIN notes n ON n.id = note_fts.id
             WHERE note_fts MATCH ? AND n.status = 'active'
             ORDER BY rank
             LIMIT ?
            """,
            (match, limit),
        )

    # ------------------------------------------------------------------
    # Keyword index over entity / fact text
    # ------------------------------------------------------------------

    def index_knowledge(self, kind: str, item_id: str, text: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                "DELETE FROM knowledge_fts WHERE kind = ? AND item_id = ?", (kind, item_id)
            )
            conn.execute(
                "INSERT INTO knowledge_fts(item_id, kind, text) VALUES (?, ?, ?)",
                (item_id, kind, text),
            )

    def search_knowledge(self, query: str, limit: int = 20) -> List[Dict[str, Any]]:
        """BM25 search over the knowledge index. Lower ``rank`` is better."""
        match = fts_query(query)
        if not match:
            return []
        return self.fetchall(
            """
            SELECT item_id, kind, text, bm25(knowledge_fts) AS rank
              FROM knowledge_fts
             WHERE knowledge_fts MATCH ?
             ORDER BY rank
             LIMIT ?
            """,
            (match, limit),
        )

    def clear_knowledge_index(self) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM knowledge_fts")

    # ------------------------------------------------------------------
    # Entity vectors
    # ------------------------------------------------------------------

    def set_entity_vector(self, entity_id: str, vector: Sequence[float]) -> None:
        blob = vector_blob(vector)
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT vector_rowid FROM entities WHERE id = ?", (entity_id,)
            ).fetchone()
            if row is None:
                return
            if row["vector_rowid"] is not None:
                conn.execute(
                    "UPDATE entity_vectors SET embedding = ? WHERE rowid = ?",
                    (blob, row["vector_rowid"]),
                )
            else:
                cur = conn.execute("INSERT INTO entity_vectors(embedding) VALUES (?)", (blob,))
                conn.execute(
                    "UPDATE entities SET vector_rowid = ? WHERE id = ?",
                    (cur.lastrowid, entity_id),
                )

    def get_entity_vector(self, vector_rowid: int) -> Optional[bytes]:
        row = self.fetchone(
            "SELECT embedding FROM entity_vectors WHERE rowid = ?", (vector_rowid,)
        )
        return row["embedding"] if row else None

    def nearest_entities(self, blob: bytes, k: int) -> List[Dict[str, Any]]:
        """Active entities nearest to *blob*, with cosine ``similarity``."""
        rows = self.fetchall(
            """
            SELECT ev.rowid AS vec_rowid, ev.distance AS distance
              FROM entity_vectors ev
             WHERE ev.embedding MATCH ? AND k = ?
             ORDER BY ev.distance
            """,
            (blob, k),
        )
        results: List[Dict[str, Any]] = []
        for r in rows:
            ent = self.fetchone(
                "SELECT id, name FROM entities WHERE vector_rowid = ? AND status = 'active'",
                (r["vec_rowid"],),
            )
            if ent:
                ent["similarity"] = 1.0 - float(r["distance"])
                results.append(ent)
        return results

    # ------------------------------------------------------------------
    # Cascade
    # ------------------------------------------------------------------

    _CASCADE_TABLES = {
        "entities": "source_id",
        "behaviors": "source_id",
        "topics": "source_id",
        "notes": "id",
    }

    def cascade_status(self, table: str, source_id: str, restore: bool = False) -> int:
        """Flip rows of *table* derived from *source_id* to / from ``inactive``.

        The previous status is parked in ``cascade_prior_status`` so a restore
        puts back exactly what was there.
        """
        column = self._CASCADE_TABLES[table]
        with self.transaction() as conn:
            if restore:
                cur = conn.execute(
                    f"""UPDATE {table}
                           SET status = cascade_prior_status, cascade_prior_status = NULL
                         WHERE {column} = ? AND status = 'inactive'
                           AND cascade_prior_status IS NOT NULL""",
                    (source_id,),
                )
            else:
                cur = conn.execute(
                    f"""UPDATE {table}
                           SET cascade_prior_status = status, status = 'inactive'
                         WHERE {column} = ? AND status IN ('active', 'archived')""",
                    (source_id,),
                )
            return cur.rowcount

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Return database statistics."""
        def count(sql: str) -> int:
            row = self.fetchone(sql)
            return int(row["c"]) if row else 0

        by_status = self.fetchall(
            "SELECT status, COUNT(*) AS c FROM entities GROUP BY status"
        )
        return {
            "entities": count("SELECT COUNT(*) AS c FROM entities WHERE status = 'active'"),
            "entities_by_status": {r["status"]: r["c"] for r in by_status},
            "facts": count("SELECT COUNT(*) AS c FROM facts"),
            "current_facts": count(
                "SELECT COUNT(*) AS c FROM facts WHERE is_current = 1 AND status = 'active'"
            ),
            "edges": count("SELECT COUNT(*) AS c FROM entity_edges"),
            "typed_relationships": count("SELECT COUNT(*) AS c FROM typed_relationships"),
            "behaviors": count("SELECT COUNT(*) AS c FROM behaviors WHERE status = 'active'"),
            "topics": count("SELECT COUNT(*) AS c FROM topics WHERE status = 'active'"),
            "summaries": count("SELECT COUNT(*) AS c FROM category_summaries"),
            "notes": count("SELECT COUNT(*) AS c FROM notes WHERE status = 'active'"),
            "merge_candidates": count(
                "SELECT COUNT(*) AS c FROM merge_candidates WHERE status = 'pending'"
            ),
        }
