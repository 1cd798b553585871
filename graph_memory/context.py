"""Context assembly: score retrieved items and pack them into a token budget.

final = importance * 0.30 + recency * 0.25 + relevance * 0.35 + mentions * 0.10

where ``recency = 0.5 ** (days_since_update / half_life_days)`` and
``mentions = min(mention_count / 10, 1)``. Items go into three partitions
(summaries / entities / matches, 30/40/30 by default) and are included whole
or not at all. Budget left unused by one partition is offered to items the
other partitions had to skip.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .config import Config
from .token_utils import estimate_tokens

logger = logging.getLogger(__name__)

SECTIONS = ("summaries", "entities", "matches")

SECTION_HEADERS = {
    "summaries": "What I know about you:",
    "entities": "People and things in your world:",
    "matches": "Relevant memories:",
}

_DAY = 86400.0
_SENTIMENT_THRESHOLD = 0.3


@dataclass
class ContextItem:
    kind: str  # summary | entity | fact | note
    section: str  # one of SECTIONS
    item_id: str
    text: str
    importance: float = 0.5
    updated_at: Optional[float] = None
    relevance: float = 0.5
    mention_count: int = 0
    score: float = 0.0

    @property
    def tokens(self) -> int:
        return estimate_tokens(self.text + "\n")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "id": self.item_id,
            "text": self.text,
            "score": round(self.score, 4),
            "relevance": round(self.relevance, 4),
        }


@dataclass
class AssembledContext:
    text: str = ""
    sections: Dict[str, List[ContextItem]] = field(
        default_factory=lambda: {name: [] for name in SECTIONS}
    )
    total_tokens: int = 0
    max_tokens: int = 0
    skipped: int = 0

    def item_counts(self) -> Dict[str, int]:
        return {name: len(items) for name, items in self.sections.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "total_tokens": self.total_tokens,
            "max_tokens": self.max_tokens,
            "skipped": self.skipped,
            "sections": {
                name: [item.to_dict() for item in items]
                for name, items in self.sections.items()
            },
        }


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def recency_decay(updated_at: Optional[float], now: float, half_life_days: float) -> float:
    """Exponential half-life decay; unknown timestamps score 0.5."""
    if updated_at is None:
        return 0.5
    days = max(0.0, (now - updated_at) / _DAY)
    return 0.5 ** (days / half_life_days)


def final_score(item: ContextItem, now: float, config: Config) -> float:
    mentions = min(item.mention_count / 10.0, 1.0)
    return (
        item.importance * config.score_importance
        + recency_decay(item.updated_at, now, config.half_life_days) * config.score_recency
        + item.relevance * config.score_relevance
        + mentions * config.score_mentions
    )


# ---------------------------------------------------------------------------
# Item builders
# ---------------------------------------------------------------------------

def summary_item(row: Dict[str, Any], relevance: float = 0.5) -> ContextItem:
    return ContextItem(
        kind="summary",
        section="summaries",
        item_id=row["category"],
        text=f"[{row['category'].upper()}]: {row['summary']}",
        updated_at=row.get("updated_at"),
        relevance=relevance,
        mention_count=int(row.get("entity_count") or 0),
    )


def format_entity(entity: Dict[str, Any], facts: Sequence[Dict[str, Any]] = ()) -> str:
    parts = [f"[{entity['name']}] ({entity.get('entity_type') or 'other'})"]
    if entity.get("summary"):
        parts.append(entity["summary"])
    if facts:
        parts.append(", ".join(
            f"{f['predicate'].replace('_', ' ')} {f['object_text']}" for f in facts[:5]
        ))
    notes = entity.get("context_notes") or []
    if notes:
        parts.append("Recent: " + "; ".join(notes[-2:]))
    sentiment = float(entity.get("sentiment_avg") or 0.0)
    if abs(sentiment) > _SENTIMENT_THRESHOLD:
        parts.append("Sentiment: " + ("positive" if sentiment > 0 else "negative"))
    return " | ".join(parts)


def entity_item(
    entity: Dict[str, Any],
    facts: Sequence[Dict[str, Any]] = (),
    relevance: float = 0.5,
    section: str = "entities",
) -> ContextItem:
    return ContextItem(
        kind="entity",
        section=section,
        item_id=entity["id"],
        text=format_entity(entity, facts),
        importance=float(entity.get("importance_score") or 0.5),
        updated_at=entity.get("updated_at") or entity.get("last_mentioned"),
        relevance=relevance,
        mention_count=int(entity.get("mention_count") or 0),
    )


def fact_item(fact: Dict[str, Any], relevance: float = 0.5) -> ContextItem:
    subject = fact.get("entity_name") or fact["entity_id"]
    return ContextItem(
        kind="fact",
        section="matches",
        item_id=fact["id"],
        text=f"{subject} {fact['predicate'].replace('_', ' ')} {fact['object_text']}",
        importance=float(fact.get("confidence") or 0.5),
        updated_at=fact.get("updated_at") or fact.get("created_at"),
        relevance=relevance,
        mention_count=int(fact.get("mention_count") or 0),
    )


def note_item(note: Dict[str, Any], relevance: float = 0.5) -> ContextItem:
    return ContextItem(
        kind="note",
        section="matches",
        item_id=note["id"],
        text=f"({note['source_type']}) {note['content']}",
        updated_at=note.get("updated_at") or note.get("created_at"),
        relevance=relevance,
    )


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------

class ContextAssembler:
    def __init__(self, config: Optional[Config] = None) -> None:
        self.config = config or Config()

    def budgets(self, max_tokens: int) -> Dict[str, int]:
        cfg = self.config
        return {
            "summaries": int(max_tokens * cfg.budget_summaries),
            "entities": int(max_tokens * cfg.budget_entities),
            "matches": int(max_tokens * cfg.budget_matches),
        }

    def assemble(
        self,
        items: Sequence[ContextItem],
        max_tokens: int,
        now: Optional[float] = None,
    ) -> AssembledContext:
        now = time.time() if now is None else now
        result = AssembledContext(max_tokens=max_tokens)
        if max_tokens <= 0 or not items:
            return result

        # Same item reached by several tiers: keep its best relevance.
        unique: Dict[tuple, ContextItem] = {}
        for item in items:
            key = (item.kind, item.item_id)
            prev = unique.get(key)
            if prev is None or item.relevance > prev.relevance:
                unique[key] = item
        for item in unique.values():
            item.score = final_score(item, now, self.config)
        ranked = sorted(unique.values(), key=lambda i: i.score, reverse=True)

        remaining = self.budgets(max_tokens)
        chosen: Dict[str, List[ContextItem]] = {name: [] for name in SECTIONS}
        used = 0

        def cost(item: ContextItem) -> int:
            header = 0
            if not chosen[item.section]:
                header = estimate_tokens("\n" + SECTION_HEADERS[item.section] + "\n")
            return item.tokens + header

        skipped: List[ContextItem] = []
        for item in ranked:
            c = cost(item)
            if c <= remaining[item.section]:
                chosen[item.section].append(item)
                remaining[item.section] -= c
                used += c
            else:
                skipped.append(item)

        # Reallocate what under-filled partitions left over.
        pool = max_tokens - used
        still_skipped = 0
        for item in skipped:
            c = cost(item)
            if c <= pool:
                chosen[item.section].append(item)
                pool -= c
                used += c
            else:
                still_skipped += 1

        for name in SECTIONS:
            chosen[name].sort(key=lambda i: i.score, reverse=True)
        result.sections = chosen
        result.total_tokens = used
        result.skipped = still_skipped
        result.text = render(chosen)
        if still_skipped:
            logger.debug("Context budget %d: skipped %d items", max_tokens, still_skipped)
        return result


def render(sections: Dict[str, List[ContextItem]]) -> str:
    blocks = []
    for name in SECTIONS:
        items = sections.get(name) or []
        if items:
            blocks.append("\n".join([SECTION_HEADERS[name], *(i.text for i in items)]))
    return "\n\n".join(blocks)
