"""MemoryEngine: the exposed operations, keyed by user id.

Every user id maps to its own SQLite file through :class:`StoragePool`; the
per-user component graph (registry, facts, graph, ...) is built lazily on
first use and cached.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .behaviors import BehaviorStore, TopicStore
from .config import Config, load_config
from .context import AssembledContext
from .entities import EntityRegistry
from .errors import DependencyUnavailable, NotFoundError, StoreError, ValidationError
from .facts import FactStore
from .graph import RelationshipGraph
from .ingest import IngestPipeline, IngestResult
from .maintenance import MaintenanceScheduler
from .payload import parse_payload
from .pool import StoragePool
from .retrieval import MODES, RetrievalResult, TieredRetriever
from .search import HybridSearch, SearchWeights
from .storage import MemoryStorage
from .summaries import SummaryCache, SummaryRewriter

logger = logging.getLogger(__name__)

MAINTENANCE_JOBS = ("decay", "consolidation", "archival", "expiry", "reindex")


@dataclass
class TenantStores:
    """All components bound to one user's storage."""

    storage: MemoryStorage
    registry: EntityRegistry
    facts: FactStore
    graph: RelationshipGraph
    behaviors: BehaviorStore
    topics: TopicStore
    summaries: SummaryCache
    search: HybridSearch
    retriever: TieredRetriever
    pipeline: IngestPipeline
    maintenance: MaintenanceScheduler


class MemoryEngine:
    def __init__(
        self,
        config: Optional[Config] = None,
        pool: Optional[StoragePool] = None,
        embedder: Any = None,
        chat: Any = None,
    ) -> None:
        self.config = config or load_config()
        self.pool = pool or StoragePool(
            base_dir=self.config.data_dir,
            dimensions=self.config.embedding_dimensions,
        )
        self.embedder = embedder
        self.chat = chat
        self._tenants: Dict[str, TenantStores] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    def tenant(self, user_id: str) -> TenantStores:
        try:
            key = StoragePool.normalize_key(user_id)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        with self._lock:
            stores = self._tenants.get(key)
            if stores is None:
                stores = self._build(self.pool.get(key))
                self._tenants[key] = stores
            return stores

    def _build(self, storage: MemoryStorage) -> TenantStores:
        cfg = self.config
        registry = EntityRegistry(storage, cfg)
        facts = FactStore(storage, cfg)
        graph = RelationshipGraph(storage)
        behaviors = BehaviorStore(storage, cfg)
        topics = TopicStore(storage)
        summaries = SummaryCache(storage, facts, SummaryRewriter(self.chat))
        search = HybridSearch(
            storage, registry, facts, graph,
            embedder=self.embedder, weights=SearchWeights.from_config(cfg),
        )
        retriever = TieredRetriever(
            storage, registry, facts, summaries, search, config=cfg, chat=self.chat
        )
        pipeline = IngestPipeline(
            storage, registry, facts, graph, behaviors, topics, summaries, cfg
        )
        maintenance = MaintenanceScheduler(storage, registry, facts, summaries, cfg)
        return TenantStores(
            storage=storage, registry=registry, facts=facts, graph=graph,
            behaviors=behaviors, topics=topics, summaries=summaries, search=search,
            retriever=retriever, pipeline=pipeline, maintenance=maintenance,
        )

    def close(self) -> None:
        with self._lock:
            self._tenants.clear()
        self.pool.close_all()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(
        self,
        user_id: str,
        payload: Any,
        source_type: str,
        source_id: str,
    ) -> IngestResult:
        """Validate and apply one extraction event.

        Raises ValidationError for a malformed envelope (nothing is written)
        and StoreError when the store fails. Item-level failures are reported
        on the result.
        """
        parsed = parse_payload(payload, source_type, source_id)
        stores = self.tenant(user_id)

        note_vector = None
        if parsed.content and self.embedder is not None:
            try:
                note_vector = await self.embedder.embed(parsed.content)
            except DependencyUnavailable as exc:
                logger.warning("Note %s stored without vector: %s", parsed.source_id, exc)

        result = await asyncio.to_thread(stores.pipeline.run, parsed, note_vector)
        await self._embed_entities(stores, result.created_entity_ids)
        return result

    async def _embed_entities(self, stores: TenantStores, entity_ids: List[str]) -> int:
        if self.embedder is None or not entity_ids:
            return 0
        rows = await asyncio.to_thread(stores.registry.get_many, entity_ids)
        if not rows:
            return 0
        texts = [
            " ".join(p for p in (r["name"], r["entity_type"], r.get("summary")) if p)
            for r in rows
        ]
        try:
            vectors = await self.embedder.embed_batch(texts)
        except DependencyUnavailable as exc:
            logger.warning("Skipped embedding %d new entities: %s", len(rows), exc)
            return 0
        for row, vec in zip(rows, vectors):
            await asyncio.to_thread(stores.storage.set_entity_vector, row["id"], vec)
        return len(rows)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def retrieve(
        self,
        user_id: str,
        query: str,
        max_tokens: Optional[int] = None,
        mode: str = "fast",
        cancel: Optional[asyncio.Event] = None,
    ) -> RetrievalResult:
        """Context for *query*. Bad arguments raise; everything else degrades."""
        if mode not in MODES:
            raise ValidationError(f"mode must be one of {', '.join(MODES)}")
        if max_tokens is not None and max_tokens <= 0:
            raise ValidationError("max_tokens must be positive")
        try:
            stores = self.tenant(user_id)
        except StoreError:
            logger.exception("Retrieval store unavailable for %s", user_id)
            return RetrievalResult(
                context=AssembledContext(max_tokens=max_tokens or self.config.default_max_tokens),
                mode=mode,
                degraded=True,
                error=StoreError.__name__,
            )
        return await stores.retriever.retrieve(query, max_tokens, mode, cancel)

    # ------------------------------------------------------------------
    # Cascade
    # ------------------------------------------------------------------

    def _source_categories(self, stores: TenantStores, source_id: str) -> List[str]:
        rows = stores.storage.fetchall(
            """SELECT category FROM entities WHERE source_id = ?
               UNION
               SELECT e.category FROM facts f JOIN entities e ON e.id = f.entity_id
                WHERE f.source_id = ?""",
            (source_id, source_id),
        )
        return [r["category"] for r in rows]

    def _cascade(self, user_id: str, source_id: str, restore: bool) -> Dict[str, int]:
        if not source_id or not source_id.strip():
            raise ValidationError("source_id is required")
        stores = self.tenant(user_id)
        with stores.storage.transaction():
            if restore:
                counts = {
                    "facts": stores.facts.cascade_restore(source_id),
                    "entities": stores.registry.cascade_restore(source_id),
                    "behaviors": stores.behaviors.cascade_restore(source_id),
                    "topics": stores.topics.cascade_restore(source_id),
                    "notes": stores.storage.cascade_status("notes", source_id, restore=True),
                }
            else:
                counts = {
                    "facts": stores.facts.cascade_invalidate(source_id),
                    "entities": stores.registry.cascade_invalidate(source_id),
                    "behaviors": stores.behaviors.cascade_invalidate(source_id),
                    "topics": stores.topics.cascade_invalidate(source_id),
                    "notes": stores.storage.cascade_status("notes", source_id),
                }
        refreshed = stores.summaries.refresh(self._source_categories(stores, source_id))
        logger.info(
            "Cascade %s %s/%s: %s summaries=%s",
            "restore" if restore else "invalidate", user_id, source_id, counts,
            ",".join(refreshed) or "-",
        )
        counts["summaries"] = len(refreshed)
        return counts

    def cascade_invalidate(self, user_id: str, source_id: str) -> Dict[str, int]:
        """Hide everything derived from *source_id* in one transaction."""
        return self._cascade(user_id, source_id, restore=False)

    def cascade_restore(self, user_id: str, source_id: str) -> Dict[str, int]:
        """Undo :meth:`cascade_invalidate` exactly."""
        return self._cascade(user_id, source_id, restore=True)

    # ------------------------------------------------------------------
    # Facts and entities
    # ------------------------------------------------------------------

    def correct_fact(self, user_id: str, fact_id: str, reason: str = "user_corrected") -> Dict[str, Any]:
        stores = self.tenant(user_id)
        fact = stores.facts.correct(fact_id, reason)
        stores.summaries.refresh(stores.registry.categories_of([fact["entity_id"]]))
        return fact

    def facts_at(
        self,
        user_id: str,
        entity_id: str,
        as_of: Optional[float] = None,
        predicate: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        stores = self.tenant(user_id)
        when = stores.storage.now() if as_of is None else as_of
        return stores.facts.facts_at(entity_id, when, predicate)

    def fact_history(self, user_id: str, entity_id: str, predicate: str) -> List[Dict[str, Any]]:
        return self.tenant(user_id).facts.history(entity_id, predicate)

    def get_entity(self, user_id: str, entity_id: str) -> Dict[str, Any]:
        stores = self.tenant(user_id)
        entity = stores.registry.get(entity_id)
        if entity is None or entity["status"] == "deleted":
            raise NotFoundError(f"entity {entity_id} not found")
        entity["facts"] = stores.facts.current_facts(entity_id)
        entity["neighbors"] = stores.graph.neighbors(entity_id)
        entity["behaviors"] = stores.behaviors.for_entity(entity_id)
        return entity

    def erase_entity(self, user_id: str, entity_id: str) -> bool:
        stores = self.tenant(user_id)
        categories = stores.registry.categories_of([entity_id])
        if not stores.registry.erase(entity_id):
            raise NotFoundError(f"entity {entity_id} not found")
        stores.summaries.refresh(categories)
        return True

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def _users(self, user_id: Optional[str]) -> List[str]:
        if user_id is not None:
            return [user_id]
        return self.pool.get_all_users()

    def _run_job(
        self,
        name: str,
        user_id: Optional[str],
        job: Callable[[MaintenanceScheduler], Dict[str, Any]],
    ) -> Dict[str, Any]:
        per_user: Dict[str, Dict[str, Any]] = {}
        totals: Dict[str, int] = {}
        for uid in self._users(user_id):
            counts = job(self.tenant(uid).maintenance)
            per_user[uid] = counts
            for k, v in counts.items():
                if isinstance(v, int):
                    totals[k] = totals.get(k, 0) + v
        return {"job": name, "users": len(per_user), "totals": totals, "per_user": per_user}

    def run_decay(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        return self._run_job("decay", user_id, lambda m: m.run_decay())

    def run_consolidation_scan(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        return self._run_job("consolidation", user_id, lambda m: m.run_consolidation_scan())

    def run_archival(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        return self._run_job("archival", user_id, lambda m: m.run_archival())

    def run_expiry(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        return self._run_job("expiry", user_id, lambda m: m.run_expiry())

    def run_reindex(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        return self._run_job("reindex", user_id, lambda m: m.run_reindex())

    def run_job(self, job: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        runners = {
            "decay": self.run_decay,
            "consolidation": self.run_consolidation_scan,
            "archival": self.run_archival,
            "expiry": self.run_expiry,
            "reindex": self.run_reindex,
        }
        if job not in runners:
            raise ValidationError(f"unknown maintenance job {job!r}")
        return runners[job](user_id)

    def merge_candidates(self, user_id: str) -> List[Dict[str, Any]]:
        return self.tenant(user_id).maintenance.merge_candidates()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def stats(self, user_id: str) -> Dict[str, Any]:
        stores = self.tenant(user_id)
        out = stores.storage.stats()
        out["fact_conflicts"] = len(stores.facts.conflicts())
        return out

    async def health(self) -> Dict[str, Any]:
        checks: Dict[str, bool] = {"storage": False, "embedding": False, "chat": False}
        try:
            self.pool.base_dir.mkdir(parents=True, exist_ok=True)
            checks["storage"] = os.access(self.pool.base_dir, os.W_OK)
        except OSError as exc:
            logger.warning("Storage health probe failed: %s", exc)
        if self.embedder is not None:
            try:
                await asyncio.wait_for(self.embedder.embed("health_probe"), timeout=5.0)
                checks["embedding"] = True
            except (DependencyUnavailable, asyncio.TimeoutError) as exc:
                logger.warning("Embedding health probe failed: %s", exc or "timeout")
        if self.chat is not None:
            checks["chat"] = bool(getattr(self.chat, "available", True))
        if not checks["storage"]:
            status = "down"
        elif checks["embedding"]:
            status = "ok"
        else:
            status = "degraded"
        return {"status": status, "checks": checks}
