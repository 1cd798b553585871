"""Category summaries (Tier 1 of retrieval).

One paragraph per topical category, rewritten wholesale whenever facts in that
category change. The rewrite goes to the chat model; when it is unavailable
the paragraph is regenerated from the category's current entities and facts.
Summaries are derived data and can always be rebuilt.
"""

from __future__ import annotations

import json
import logging
import re
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .errors import DependencyUnavailable
from .facts import FactStore
from .llm import OpenRouterChat
from .storage import MemoryStorage

logger = logging.getLogger(__name__)

CATEGORY_KEYWORDS: Dict[str, List[str]] = {
    "work_life": [
        "work", "job", "office", "meeting", "project", "deadline", "boss", "colleague",
        "salary", "promotion", "career", "company", "startup", "client", "presentation",
        "email", "conference", "coworker", "manager", "team", "employer", "hired",
    ],
    "personal_life": [
        "home", "apartment", "house", "weekend", "hobby", "free time", "relax", "vacation",
        "birthday", "celebration", "party", "movie", "book", "music", "game", "fun", "lives",
    ],
    "health_wellness": [
        "health", "doctor", "exercise", "workout", "gym", "run", "sleep", "diet",
        "meditation", "stress", "anxiety", "therapy", "mental health", "illness",
        "medicine", "hospital", "wellness", "fitness", "yoga", "nutrition",
    ],
    "relationships": [
        "friend", "family", "partner", "spouse", "dating", "marriage", "married", "boyfriend",
        "girlfriend", "husband", "wife", "parent", "child", "sibling", "mom", "dad",
        "brother", "sister", "cousin", "relationship", "breakup",
    ],
    "goals_aspirations": [
        "goal", "dream", "aspiration", "plan", "future", "wish", "hope",
        "ambition", "target", "milestone", "achieve", "success", "resolution",
    ],
    "preferences": [
        "like", "love", "prefer", "favorite", "enjoy", "hate", "dislike",
        "taste", "style", "choice", "opinion",
    ],
    "beliefs_values": [
        "believe", "value", "important", "principle", "moral", "ethics",
        "religion", "spiritual", "philosophy", "meaning", "purpose",
    ],
    "skills_expertise": [
        "skill", "expert", "learn", "experience", "talent", "ability",
        "proficient", "master", "certification", "training", "education",
    ],
    "projects": [
        "project", "build", "create", "develop", "launch", "ship", "product",
        "feature", "app", "website", "side project", "mvp",
    ],
    "challenges": [
        "challenge", "problem", "struggle", "difficulty", "obstacle", "issue",
        "concern", "worry", "fear", "conflict", "stuck",
    ],
}

# Narrower vocabulary for mapping a query onto categories.
QUERY_KEYWORDS: Dict[str, List[str]] = {
    "work_life": ["work", "job", "office", "meeting", "project", "boss", "colleague", "career", "company", "startup"],
    "personal_life": ["home", "weekend", "hobby", "vacation", "relax", "fun", "house", "apartment"],
    "health_wellness": ["health", "exercise", "workout", "gym", "sleep", "diet", "stress", "therapy", "doctor"],
    "relationships": ["friend", "family", "partner", "spouse", "dating", "marriage", "parent", "child", "relationship"],
    "goals_aspirations": ["goal", "dream", "aspiration", "plan", "future", "ambition", "want", "achieve"],
    "preferences": ["like", "love", "prefer", "favorite", "enjoy", "hate", "dislike"],
    "beliefs_values": ["believe", "think", "value", "important", "principle", "moral"],
    "skills_expertise": ["skill", "expert", "learn", "know", "experience", "talent"],
    "projects": ["project", "build", "create", "develop", "launch", "ship", "product", "app"],
    "challenges": ["challenge", "problem", "struggle", "difficulty", "obstacle", "worry", "stuck"],
}

PREDICATE_CATEGORIES: Dict[str, str] = {
    "works_at": "work_life", "employer": "work_life", "job_title": "work_life",
    "role": "work_life", "company": "work_life", "reports_to": "work_life",
    "manages": "work_life",
    "lives_in": "personal_life", "location": "personal_life", "from": "personal_life",
    "birthday": "personal_life",
    "married_to": "relationships", "dating": "relationships", "knows": "relationships",
    "likes": "preferences", "prefers": "preferences", "dislikes": "preferences",
    "expertise_in": "skills_expertise", "learning": "skills_expertise",
    "working_on": "projects", "involves": "projects", "part_of": "projects",
}

GENERAL = "general"
_MAX_SUMMARY_CHARS = 700
_CATEGORY_ENTITY_LIMIT = 8

_keyword_patterns = {
    cat: [re.compile(r"\b" + re.escape(kw)) for kw in kws]
    for cat, kws in CATEGORY_KEYWORDS.items()
}
_query_patterns = {
    cat: [re.compile(r"\b" + re.escape(kw)) for kw in kws]
    for cat, kws in QUERY_KEYWORDS.items()
}


def label(category: str) -> str:
    return category.replace("_", " ")


def categories_for_query(query: str, limit: int = 3) -> List[str]:
    """Top categories whose keywords appear in *query* (most hits first)."""
    text = query.lower()
    scores = Counter()
    for cat, patterns in _query_patterns.items():
        hits = sum(1 for p in patterns if p.search(text))
        if hits:
            scores[cat] = hits
    return [cat for cat, _ in scores.most_common(limit)]


def classify_entity(entity: Dict[str, Any], facts: Sequence[Dict[str, Any]] = ()) -> str:
    """Pick the best category for an entity from its text and current facts."""
    parts = [
        entity.get("name") or "",
        entity.get("subtype") or "",
        entity.get("summary") or "",
        *(entity.get("context_notes") or []),
    ]
    scores = Counter()
    for fact in facts:
        predicate = fact["predicate"]
        parts.append(f"{predicate.replace('_', ' ')} {fact['object_text']}")
        hinted = PREDICATE_CATEGORIES.get(predicate)
        if hinted:
            scores[hinted] += 2
    text = " ".join(parts).lower()
    for cat, patterns in _keyword_patterns.items():
        hits = sum(1 for p in patterns if p.search(text))
        if hits:
            scores[cat] += hits
    if not scores:
        return GENERAL
    return scores.most_common(1)[0][0]


def describe_entity(entity: Dict[str, Any], facts: Sequence[Dict[str, Any]]) -> str:
    """One line of plain text about an entity, used as rewrite input."""
    line = f"{entity['name']} ({entity['entity_type']})"
    if entity.get("summary"):
        line += f": {entity['summary']}"
    if facts:
        line += "; " + "; ".join(
            f"{f['predicate'].replace('_', ' ')} {f['object_text']}" for f in facts[:5]
        )
    return line


def compose_summary(category: str, lines: Sequence[str]) -> str:
    """Deterministic summary: whole sentences while they fit."""
    out = f"{label(category).capitalize()}:"
    for line in lines:
        sentence = line.rstrip(".") + "."
        if len(out) + 1 + len(sentence) > _MAX_SUMMARY_CHARS:
            break
        out += " " + sentence
    return out


_REWRITE_PROMPT = """You are maintaining a personal knowledge summary for a user's {label} category.

{existing}NEW INFORMATION:
{new_info}

EVERYTHING CURRENTLY KNOWN IN THIS CATEGORY:
{current}

Write a new, cohesive prose summary (2-4 sentences) that incorporates all relevant information.
- If new info contradicts existing info, use the new info (it is more recent)
- Only state things listed as currently known
- Keep it personal and concise

Write ONLY the new summary, no preamble:"""


class SummaryRewriter:
    """Produces a fresh summary paragraph for one category."""

    def __init__(self, chat: Optional[OpenRouterChat] = None) -> None:
        self.chat = chat

    def rewrite(
        self,
        category: str,
        existing: Optional[str],
        new_lines: Sequence[str],
        current_lines: Sequence[str],
    ) -> str:
        if self.chat is not None and new_lines:
            prompt = _REWRITE_PROMPT.format(
                label=label(category),
                existing=f"CURRENT SUMMARY:\n{existing}\n\n" if existing else "No existing summary yet.\n\n",
                new_info="\n".join(f"- {l}" for l in new_lines),
                current="\n".join(f"- {l}" for l in current_lines),
            )
            try:
                text = self.chat.complete_sync(prompt, max_tokens=300)
                if text:
                    return text[:_MAX_SUMMARY_CHARS * 2]
            except DependencyUnavailable as exc:
                logger.warning("Summary rewrite for %s fell back to template: %s", category, exc)
        return compose_summary(category, current_lines)


class SummaryCache:
    """Read and evolve the per-category summaries of one tenant."""

    def __init__(
        self,
        storage: MemoryStorage,
        facts: FactStore,
        rewriter: Optional[SummaryRewriter] = None,
    ) -> None:
        self.storage = storage
        self.facts = facts
        self.rewriter = rewriter or SummaryRewriter()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, category: str) -> Optional[Dict[str, Any]]:
        return self.storage.fetchone(
            "SELECT * FROM category_summaries WHERE category = ?", (category,)
        )

    def for_categories(self, categories: Sequence[str], limit: int = 10) -> List[Dict[str, Any]]:
        """Summaries for *categories*; every summary when none are given."""
        if not categories:
            return self.storage.fetchall(
                "SELECT * FROM category_summaries ORDER BY updated_at DESC LIMIT ?", (limit,)
            )
        placeholders = ",".join("?" for _ in categories)
        return self.storage.fetchall(
            f"""SELECT * FROM category_summaries WHERE category IN ({placeholders})
                 ORDER BY updated_at DESC LIMIT ?""",
            [*categories, limit],
        )

    # ------------------------------------------------------------------
    # Evolution
    # ------------------------------------------------------------------

    def categorize(self, entity_ids: Iterable[str]) -> Dict[str, List[str]]:
        """(Re)classify entities. Returns every category touched, old or new."""
        touched: Dict[str, List[str]] = {}
        ids = list(dict.fromkeys(entity_ids))
        if not ids:
            return touched
        placeholders = ",".join("?" for _ in ids)
        rows = self.storage.fetchall(
            f"SELECT * FROM entities WHERE id IN ({placeholders})", ids
        )
        facts_by_entity = self.facts.current_facts_for(ids)
        with self.storage.transaction() as conn:
            for ent in rows:
                ent["context_notes"] = _json_list(ent.get("context_notes"))
                category = classify_entity(ent, facts_by_entity.get(ent["id"], []))
                if category != ent["category"]:
                    conn.execute(
                        "UPDATE entities SET category = ? WHERE id = ?", (category, ent["id"])
                    )
                    touched.setdefault(ent["category"], [])
                touched.setdefault(category, []).append(ent["id"])
        return touched

    def evolve(self, entity_ids: Iterable[str]) -> List[str]:
        """Rewrite the summary of every category the given entities touch.

        Must run after all fact writes of the ingestion event.
        """
        updated: List[str] = []
        for category, new_ids in self.categorize(entity_ids).items():
            if category == GENERAL:
                continue
            if self._rewrite(category, new_ids):
                updated.append(category)
        return updated

    def refresh(self, categories: Iterable[str]) -> List[str]:
        """Regenerate summaries from current state (no new information)."""
        updated = []
        for category in dict.fromkeys(categories):
            if category != GENERAL and self._rewrite(category, []):
                updated.append(category)
        return updated

    def rebuild(self) -> List[str]:
        """Re-classify every active entity and rewrite every category."""
        rows = self.storage.fetchall("SELECT id FROM entities WHERE status = 'active'")
        self.categorize(r["id"] for r in rows)
        existing = [r["category"] for r in self.storage.fetchall(
            "SELECT category FROM category_summaries"
        )]
        live = [r["category"] for r in self.storage.fetchall(
            "SELECT DISTINCT category FROM entities WHERE status = 'active'"
        )]
        return self.refresh([*live, *existing])

    def _rewrite(self, category: str, new_ids: Sequence[str]) -> bool:
        members = self.storage.fetchall(
            """SELECT * FROM entities WHERE category = ? AND status = 'active'
                ORDER BY importance_score DESC, mention_count DESC""",
            (category,),
        )
        if not members:
            with self.storage.transaction() as conn:
                cur = conn.execute(
                    "DELETE FROM category_summaries WHERE category = ?", (category,)
                )
            return cur.rowcount > 0

        top = members[:_CATEGORY_ENTITY_LIMIT]
        facts_by_entity = self.facts.current_facts_for(
            [m["id"] for m in top] + list(new_ids)
        )
        by_id = {m["id"]: m for m in members}
        current_lines = [describe_entity(m, facts_by_entity.get(m["id"], [])) for m in top]
        new_lines = [
            describe_entity(by_id[eid], facts_by_entity.get(eid, []))
            for eid in dict.fromkeys(new_ids) if eid in by_id
        ]
        existing = self.get(category)
        text = self.rewriter.rewrite(
            category, existing["summary"] if existing else None, new_lines, current_lines
        )
        fact_count = sum(len(v) for k, v in facts_by_entity.items() if k in by_id)
        with self.storage.transaction() as conn:
            conn.execute(
                """INSERT INTO category_summaries
                   (category, summary, entity_count, fact_count, rewrite_count, updated_at)
                   VALUES (?, ?, ?, ?, 1, ?)
                   ON CONFLICT(category) DO UPDATE SET
                       summary = excluded.summary,
                       entity_count = excluded.entity_count,
                       fact_count = excluded.fact_count,
                       rewrite_count = category_summaries.rewrite_count + 1,
                       updated_at = excluded.updated_at""",
                (category, text, len(members), fact_count, self.storage.now()),
            )
        logger.debug("Rewrote %s summary (%d entities)", category, len(members))
        return True


def _json_list(raw: Any) -> List[str]:
    if isinstance(raw, list):
        return raw
    try:
        value = json.loads(raw or "[]")
    except (TypeError, ValueError):
        return []
    return value if isinstance(value, list) else []
