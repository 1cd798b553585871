"""Tiered retrieval: summaries -> entities -> hybrid search.

Each call walks the tiers strictly in order and stops at the first tier whose
result is judged sufficient. Store calls carry a per-tier timeout and the whole
call a cumulative budget; a tier that times out is skipped, never fatal.
Cancellation is honoured at tier boundaries and while Tier 3 is in flight, and
always returns what Tiers 1 and 2 already found.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import Config
from .context import (
    AssembledContext,
    ContextAssembler,
    ContextItem,
    entity_item,
    fact_item,
    note_item,
    recency_decay,
    summary_item,
)
from .entities import EntityRegistry, name_match_score
from .errors import DependencyUnavailable, GraphMemoryError, StoreError
from .facts import FactStore
from .llm import OpenRouterChat
from .search import HybridSearch
from .storage import MemoryStorage
from .summaries import SummaryCache, categories_for_query

logger = logging.getLogger(__name__)

MODES = ("fast", "full")

_CAPITALIZED_RE = re.compile(r"\b[A-Z][\w'-]*")

# Capitalized words that are not names.
_NON_NAMES = frozenset({
    "i", "i'm", "i've", "i'd", "me", "my", "mine", "we", "our", "you", "your",
    "what", "who", "whom", "whose", "where", "when", "why", "how", "which",
    "is", "are", "was", "were", "am", "do", "does", "did", "can", "could",
    "should", "would", "will", "have", "has", "had", "tell", "give", "show",
    "remind", "summarize", "list", "any", "anything", "the", "a", "an",
    "and", "or", "but", "about", "please", "hey", "hi", "ok", "okay", "so",
    "recently", "today", "yesterday", "tomorrow", "lately",
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
})

_BROAD_RE = re.compile(
    r"\b(about me|overview|summar|in general|generally|know about|my life|"
    r"what do you know|catch me up|everything)\b",
    re.IGNORECASE,
)

_JUDGE_SYSTEM = "You decide whether stored memory summaries already answer a question."

_JUDGE_PROMPT = """QUESTION:
{query}

SUMMARIES:
{summaries}

Do these summaries contain enough to answer the question well, without looking up
specific people, places or past notes? Reply with JSON only:
{{"sufficient": true|false, "confidence": 0.0-1.0}}"""


def named_tokens(query: str) -> List[str]:
    """Proper-noun-like tokens of *query*, casefolded."""
    out = []
    for tok in _CAPITALIZED_RE.findall(query):
        t = tok.strip("'-").casefold()
        if t.endswith("'s"):
            t = t[:-2]
        if len(t) >= 2 and t not in _NON_NAMES:
            out.append(t)
    return list(dict.fromkeys(out))


@dataclass
class RetrievalResult:
    context: AssembledContext
    tier_used: int = 0
    mode: str = "fast"
    timings_ms: Dict[str, float] = field(default_factory=dict)
    tiers_attempted: List[int] = field(default_factory=list)
    sufficiency: Dict[str, bool] = field(default_factory=dict)
    degraded: bool = False
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def item_counts(self) -> Dict[str, int]:
        return self.context.item_counts()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "context": self.context.text,
            "tier_used": self.tier_used,
            "mode": self.mode,
            "timings_ms": self.timings_ms,
            "item_counts": self.item_counts,
            "total_tokens": self.context.total_tokens,
            "tiers_attempted": self.tiers_attempted,
            "sufficiency": self.sufficiency,
            "degraded": self.degraded,
            "cancelled": self.cancelled,
            "error": self.error,
            "items": self.context.to_dict()["sections"],
        }


class _Run:
    """Mutable state of one retrieval call."""

    def __init__(self, budget_s: float) -> None:
        self.started = time.perf_counter()
        self.deadline = self.started + budget_s
        self.items: List[ContextItem] = []
        self.tier_used = 0
        self.timings: Dict[str, float] = {}
        self.attempted: List[int] = []
        self.sufficiency: Dict[str, bool] = {}
        self.degraded = False
        self.cancelled = False

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.perf_counter())

    def elapsed_ms(self, since: float) -> float:
        return round((time.perf_counter() - since) * 1000.0, 2)


class TieredRetriever:
    def __init__(
        self,
        storage: MemoryStorage,
        registry: EntityRegistry,
        facts: FactStore,
        summaries: SummaryCache,
        search: HybridSearch,
        config: Optional[Config] = None,
        chat: Optional[OpenRouterChat] = None,
    ) -> None:
        self.storage = storage
        self.registry = registry
        self.facts = facts
        self.summaries = summaries
        self.search = search
        self.config = config or Config()
        self.chat = chat
        self.assembler = ContextAssembler(self.config)

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    async def retrieve(
        self,
        query: str,
        max_tokens: Optional[int] = None,
        mode: str = "fast",
        cancel: Optional[asyncio.Event] = None,
    ) -> RetrievalResult:
        """Build a context payload for *query*. Never raises."""
        max_tokens = max_tokens or self.config.default_max_tokens
        run = _Run(self.config.retrieval_budget_ms / 1000.0)
        try:
            await self._walk(run, query, mode, cancel)
            context = self.assembler.assemble(run.items, max_tokens, now=self.storage.now())
        except Exception as exc:
            logger.exception("Retrieval failed for query %r", query[:80])
            return RetrievalResult(
                context=AssembledContext(max_tokens=max_tokens),
                tier_used=0,
                mode=mode,
                timings_ms={"total": run.elapsed_ms(run.started)},
                tiers_attempted=run.attempted,
                degraded=True,
                error=type(exc).__name__,
            )

        await self._touch(context)
        run.timings["total"] = run.elapsed_ms(run.started)
        logger.debug(
            "Retrieved tier=%d items=%s tokens=%d in %.1fms",
            run.tier_used, context.item_counts(), context.total_tokens, run.timings["total"],
        )
        return RetrievalResult(
            context=context,
            tier_used=run.tier_used,
            mode=mode,
            timings_ms=run.timings,
            tiers_attempted=run.attempted,
            sufficiency=run.sufficiency,
            degraded=run.degraded,
            cancelled=run.cancelled,
        )

    # ------------------------------------------------------------------
    # Tier walk
    # ------------------------------------------------------------------

    async def _walk(
        self,
        run: _Run,
        query: str,
        mode: str,
        cancel: Optional[asyncio.Event],
    ) -> None:
        def stop() -> bool:
            if cancel is not None and cancel.is_set():
                run.cancelled = True
                return True
            if run.remaining() <= 0:
                logger.warning("Retrieval budget exhausted after tier %d", run.tier_used)
                run.degraded = True
                return True
            return False

        if not query or not query.strip() or stop():
            return

        run.attempted.append(1)
        t = time.perf_counter()
        ok = await self._tier1(run, query, mode)
        run.timings["tier1"] = run.elapsed_ms(t)
        run.sufficiency["tier1"] = ok
        if ok or stop():
            return

        run.attempted.append(2)
        t = time.perf_counter()
        ok = await self._tier2(run, query)
        run.timings["tier2"] = run.elapsed_ms(t)
        run.sufficiency["tier2"] = ok
        if ok or stop():
            return

        run.attempted.append(3)
        t = time.perf_counter()
        await self._tier3(run, query, cancel)
        run.timings["tier3"] = run.elapsed_ms(t)

    async def _call(self, run: _Run, fn: Callable[..., Any], *args: Any) -> Any:
        timeout = min(self.config.tier_timeout_ms / 1000.0, run.remaining())
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout)

    # ------------------------------------------------------------------
    # Tier 1: category summaries
    # ------------------------------------------------------------------

    async def _tier1(self, run: _Run, query: str, mode: str) -> bool:
        categories = categories_for_query(query)
        try:
            rows = await self._call(run, self.summaries.for_categories, categories)
        except asyncio.TimeoutError:
            logger.warning("Tier 1 timed out, escalating")
            run.degraded = True
            return False
        if not rows:
            return False
        run.tier_used = 1
        run.items.extend(
            summary_item(r, relevance=1.0 if r["category"] in categories else 0.5) for r in rows
        )
        if mode == "full" and self.chat is not None:
            verdict = await self._judge(run, query, rows)
            if verdict is not None:
                return verdict
        return self.tier1_heuristic(query, categories, rows)

    @staticmethod
    def tier1_heuristic(
        query: str,
        categories: Sequence[str],
        rows: Sequence[Dict[str, Any]],
    ) -> bool:
        """Broad query fully covered by the summaries we have."""
        if not rows:
            return False
        text = " ".join(r["summary"] for r in rows).casefold()
        if any(tok not in text for tok in named_tokens(query)):
            return False
        return bool(categories) or bool(_BROAD_RE.search(query))

    async def _judge(self, run: _Run, query: str, rows: Sequence[Dict[str, Any]]) -> Optional[bool]:
        prompt = _JUDGE_PROMPT.format(
            query=query,
            summaries="\n".join(f"[{r['category']}] {r['summary']}" for r in rows),
        )
        timeout = min(self.config.judge_timeout_ms / 1000.0, run.remaining())
        try:
            data = await asyncio.wait_for(
                self.chat.complete_json(prompt, system=_JUDGE_SYSTEM), timeout
            )
            sufficient = bool(data["sufficient"])
            confidence = float(data.get("confidence", 0.0))
        except (DependencyUnavailable, asyncio.TimeoutError) as exc:
            logger.warning("Sufficiency judge unavailable, using heuristic: %s", exc or "timeout")
            return None
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Sufficiency judge reply unusable, using heuristic: %s", exc)
            return None
        return sufficient and confidence >= self.config.judge_min_confidence

    # ------------------------------------------------------------------
    # Tier 2: entities
    # ------------------------------------------------------------------

    def _rank_entities(self, query: str) -> List[Dict[str, Any]]:
        now = self.storage.now()
        candidates = {e["id"]: e for e in self.registry.list_active(200)}
        for e in self.registry.find_in_text(query):
            candidates.setdefault(e["id"], e)
        scored = []
        for e in candidates.values():
            match = name_match_score(e["name"], query)
            recency = recency_decay(
                e.get("updated_at") or e.get("last_mentioned"), now, self.config.half_life_days
            )
            e["name_match"] = match
            e["blended"] = float(e["importance_score"]) * recency * max(match, 0.1)
            scored.append(e)
        scored.sort(key=lambda e: e["blended"], reverse=True)
        top = scored[: self.config.tier2_limit]
        facts = self.facts.current_facts_for([e["id"] for e in top])
        for e in top:
            e["facts"] = facts.get(e["id"], [])
        return top

    async def _tier2(self, run: _Run, query: str) -> bool:
        try:
            entities = await self._call(run, self._rank_entities, query)
        except asyncio.TimeoutError:
            logger.warning("Tier 2 timed out, escalating")
            run.degraded = True
            return False
        if entities:
            run.tier_used = 2
        for e in entities:
            run.items.append(
                entity_item(e, e["facts"], relevance=max(e["name_match"], 0.3))
            )
        return self.tier2_sufficient(query, entities, self.config.tier2_min_entities)

    @staticmethod
    def tier2_sufficient(query: str, entities: Sequence[Dict[str, Any]], min_entities: int) -> bool:
        """Every name in the query resolved to a retrieved entity."""
        names = named_tokens(query)
        if not names:
            return len(entities) >= min_entities
        resolved = set()
        for e in entities:
            resolved.update(e["name"].casefold().split())
        return all(tok in resolved for tok in names)

    # ------------------------------------------------------------------
    # Tier 3: hybrid search
    # ------------------------------------------------------------------

    async def _tier3(self, run: _Run, query: str, cancel: Optional[asyncio.Event]) -> None:
        budget = run.remaining()
        search_task = asyncio.create_task(asyncio.wait_for(
            self.search.search(query, limit=self.config.tier3_limit, timeout=budget), budget
        ))
        waiters = {search_task}
        cancel_task = None
        if cancel is not None:
            cancel_task = asyncio.create_task(cancel.wait())
            waiters.add(cancel_task)
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancel_task is not None:
                cancel_task.cancel()

        if not search_task.done():
            search_task.cancel()
            await asyncio.gather(search_task, return_exceptions=True)
            run.cancelled = True
            logger.info("Retrieval cancelled during tier 3")
            return
        try:
            found = search_task.result()
        except asyncio.TimeoutError:
            logger.warning("Tier 3 timed out after %.0fms", budget * 1000.0)
            run.degraded = True
            return
        except GraphMemoryError as exc:
            logger.warning("Tier 3 failed, keeping earlier tiers: %s", exc)
            run.degraded = True
            return

        if found.degraded:
            run.degraded = True
        if found.hits:
            run.tier_used = 3
        for hit in found.hits:
            if hit.kind == "note":
                run.items.append(note_item(hit.row, relevance=hit.score))
            elif hit.kind == "entity":
                run.items.append(entity_item(hit.row, hit.facts, relevance=hit.score))
            elif hit.kind == "fact":
                run.items.append(fact_item(hit.row, relevance=hit.score))

    async def _touch(self, context: AssembledContext) -> None:
        ids = [i.item_id for items in context.sections.values() for i in items if i.kind == "entity"]
        if not ids:
            return
        try:
            await asyncio.to_thread(self.registry.touch_accessed, ids)
        except StoreError:
            logger.warning("Could not record entity access", exc_info=True)
