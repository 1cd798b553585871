"""Ingestion of one validated extraction event.

Three phases, each finished before the next starts:

1. entity upserts (fanned out over a small worker pool)
2. co-occurrence links, fact upserts, behaviors and topics (worker pool);
   facts for the same (subject, predicate) run sequentially in payload order
3. summary evolution for every touched category

Item failures are recorded on the result and do not stop the event.
:class:`~graph_memory.errors.StoreError` always propagates.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .behaviors import BehaviorStore, TopicStore
from .config import Config
from .entities import EntityRegistry
from .errors import ConflictError, GraphMemoryError, NotFoundError, StoreError
from .facts import FactStore, FactWrite
from .graph import RelationshipGraph, co_occurring_pairs
from .payload import ExtractedRelationship, ExtractionPayload, normalize_name
from .storage import MemoryStorage
from .summaries import SummaryCache

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    source_type: str
    source_id: str
    entities_created: int = 0
    entities_updated: int = 0
    facts_created: int = 0
    facts_updated: int = 0
    facts_superseded: int = 0
    behaviors_created: int = 0
    behaviors_updated: int = 0
    topics_created: int = 0
    topics_updated: int = 0
    links_created: int = 0
    links_updated: int = 0
    typed_links_created: int = 0
    summaries_updated: List[str] = field(default_factory=list)
    note_indexed: bool = False
    errors: List[Dict[str, str]] = field(default_factory=list)
    entity_ids: Dict[str, str] = field(default_factory=dict)
    created_entity_ids: List[str] = field(default_factory=list)

    def record(self, item: str, exc: GraphMemoryError) -> None:
        entry = {"item": item}
        entry.update(exc.to_dict())
        self.errors.append(entry)

    @property
    def retryable(self) -> bool:
        """True when some item lost a write race and the event can be re-sent."""
        return any(e["type"] == ConflictError.__name__ for e in self.errors)

    @property
    def partial(self) -> bool:
        return bool(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_type": self.source_type,
            "source_id": self.source_id,
            "entities_created": self.entities_created,
            "entities_updated": self.entities_updated,
            "facts_created": self.facts_created,
            "facts_updated": self.facts_updated,
            "facts_superseded": self.facts_superseded,
            "behaviors_created": self.behaviors_created,
            "behaviors_updated": self.behaviors_updated,
            "topics_created": self.topics_created,
            "topics_updated": self.topics_updated,
            "links_created": self.links_created,
            "links_updated": self.links_updated,
            "typed_links_created": self.typed_links_created,
            "summaries_updated": self.summaries_updated,
            "note_indexed": self.note_indexed,
            "partial": self.partial,
            "retryable": self.retryable,
            "errors": self.errors,
            "entity_ids": self.entity_ids,
        }


class IngestPipeline:
    def __init__(
        self,
        storage: MemoryStorage,
        registry: EntityRegistry,
        facts: FactStore,
        graph: RelationshipGraph,
        behaviors: BehaviorStore,
        topics: TopicStore,
        summaries: SummaryCache,
        config: Optional[Config] = None,
    ) -> None:
        self.storage = storage
        self.registry = registry
        self.facts = facts
        self.graph = graph
        self.behaviors = behaviors
        self.topics = topics
        self.summaries = summaries
        self.config = config or Config()

    def run(
        self,
        payload: ExtractionPayload,
        note_vector: Optional[Sequence[float]] = None,
    ) -> IngestResult:
        result = IngestResult(source_type=payload.source_type, source_id=payload.source_id)
        for err in payload.rejected:
            result.record("payload", err)

        if payload.content:
            self.storage.upsert_note(
                payload.source_id, payload.source_type, payload.content, note_vector
            )
            result.note_indexed = True

        with ThreadPoolExecutor(
            max_workers=self.config.ingest_workers, thread_name_prefix="ingest"
        ) as pool:
            self._entities(pool, payload, result)
            touched = self._links_facts_behaviors(pool, payload, result)

        # Last step: every fact write of this event is visible now.
        result.summaries_updated = self.summaries.evolve(touched)

        logger.info(
            "Ingested %s/%s: entities +%d ~%d, facts +%d ~%d ^%d, behaviors +%d ~%d, "
            "topics +%d ~%d, links +%d ~%d, summaries=%s, errors=%d",
            payload.source_type, payload.source_id,
            result.entities_created, result.entities_updated,
            result.facts_created, result.facts_updated, result.facts_superseded,
            result.behaviors_created, result.behaviors_updated,
            result.topics_created, result.topics_updated,
            result.links_created, result.links_updated,
            ",".join(result.summaries_updated) or "-", len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Phase 1
    # ------------------------------------------------------------------

    def _entities(self, pool: ThreadPoolExecutor, payload: ExtractionPayload, result: IngestResult) -> None:
        unique: "OrderedDict[str, Any]" = OrderedDict()
        for ent in payload.entities:
            unique.setdefault(normalize_name(ent.name), ent)

        futures = [
            (norm, ent, pool.submit(self.registry.upsert, ent, payload.source_type, payload.source_id))
            for norm, ent in unique.items()
        ]
        for norm, ent, fut in futures:
            try:
                res = fut.result()
            except StoreError:
                raise
            except GraphMemoryError as exc:
                result.record(f"entity {ent.name!r}", exc)
                continue
            result.entity_ids[norm] = res.entity_id
            if res.created:
                result.entities_created += 1
                result.created_entity_ids.append(res.entity_id)
            else:
                result.entities_updated += 1

    # ------------------------------------------------------------------
    # Phase 2
    # ------------------------------------------------------------------

    def _resolve(self, name: str, result: IngestResult) -> Optional[str]:
        norm = normalize_name(name)
        if norm in result.entity_ids:
            return result.entity_ids[norm]
        row = self.registry.find_by_name(name)
        return row["id"] if row else None

    def _fact_group(
        self,
        rels: List[ExtractedRelationship],
        payload: ExtractionPayload,
        result: IngestResult,
    ) -> List[Tuple[ExtractedRelationship, Any]]:
        """Write one (subject, predicate) group in order. Returns (rel, outcome|exc)."""
        out: List[Tuple[ExtractedRelationship, Any]] = []
        for rel in rels:
            try:
                out.append((rel, self._fact(rel, payload, result)))
            except StoreError:
                raise
            except GraphMemoryError as exc:
                out.append((rel, exc))
        return out

    def _fact(
        self,
        rel: ExtractedRelationship,
        payload: ExtractionPayload,
        result: IngestResult,
    ) -> Tuple[FactWrite, Optional[str], bool]:
        subject_id = self._resolve(rel.subject, result)
        if subject_id is None:
            raise NotFoundError(f"subject {rel.subject!r} is not a known entity")
        object_id = self._resolve(rel.object, result)
        if object_id == subject_id:
            object_id = None
        write = self.facts.upsert(
            subject_id,
            rel.predicate,
            rel.object,
            confidence=rel.confidence,
            source_type=payload.source_type,
            source_id=payload.source_id,
            object_entity_id=object_id,
            valid_from=rel.valid_from,
        )
        typed_created = False
        if object_id is not None:
            typed_created = self.graph.link_typed(subject_id, object_id, rel.predicate, rel.confidence)
        return write, object_id, typed_created

    def _links_facts_behaviors(
        self,
        pool: ThreadPoolExecutor,
        payload: ExtractionPayload,
        result: IngestResult,
    ) -> List[str]:
        touched: List[str] = list(result.entity_ids.values())
        st, sid = payload.source_type, payload.source_id

        link_futs = [
            (pair, pool.submit(self.graph.link, pair[0], pair[1], sid))
            for pair in co_occurring_pairs(result.entity_ids.values())
        ]

        groups: "OrderedDict[Tuple[str, str], List[ExtractedRelationship]]" = OrderedDict()
        for rel in payload.relationships:
            groups.setdefault((normalize_name(rel.subject), rel.predicate), []).append(rel)
        fact_futs = [pool.submit(self._fact_group, rels, payload, result) for rels in groups.values()]

        behavior_futs: List[Tuple[str, Future]] = []
        for beh in payload.behaviors:
            target_id = self._resolve(beh.target_entity, result) if beh.target_entity else None
            behavior_futs.append(
                (beh.type, pool.submit(self.behaviors.reinforce, beh, target_id, st, sid))
            )
        topic_futs = [(t.name, pool.submit(self.topics.upsert, t, st, sid)) for t in payload.topics]

        for pair, fut in link_futs:
            try:
                link = fut.result()
            except StoreError:
                raise
            except GraphMemoryError as exc:
                result.record(f"link {pair[0]}-{pair[1]}", exc)
                continue
            if link.created:
                result.links_created += 1
            else:
                result.links_updated += 1

        for fut in fact_futs:
            for rel, outcome in fut.result():
                label = f"fact {rel.subject} {rel.predicate} {rel.object}"
                if isinstance(outcome, Exception):
                    result.record(label, outcome)
                    continue
                write, object_id, typed_created = outcome
                if write.outcome == "created":
                    result.facts_created += 1
                elif write.outcome == "superseded":
                    result.facts_superseded += 1
                else:
                    result.facts_updated += 1
                if typed_created:
                    result.typed_links_created += 1
                fact = self.facts.get(write.fact_id)
                if fact:
                    touched.append(fact["entity_id"])
                if object_id:
                    touched.append(object_id)

        for label, fut in behavior_futs:
            try:
                res = fut.result()
            except StoreError:
                raise
            except GraphMemoryError as exc:
                result.record(f"behavior {label}", exc)
                continue
            if res.created:
                result.behaviors_created += 1
            else:
                result.behaviors_updated += 1

        for label, fut in topic_futs:
            try:
                res = fut.result()
            except StoreError:
                raise
            except GraphMemoryError as exc:
                result.record(f"topic {label!r}", exc)
                continue
            if res.created:
                result.topics_created += 1
            else:
                result.topics_updated += 1

        return list(dict.fromkeys(touched))
