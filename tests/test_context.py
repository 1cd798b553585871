"""Tests for context scoring and budgeted assembly."""

from __future__ import annotations

import pytest

from graph_memory.config import Config
from graph_memory.context import (
    SECTION_HEADERS,
    ContextAssembler,
    ContextItem,
    entity_item,
    final_score,
    format_entity,
    recency_decay,
)
from graph_memory.token_utils import estimate_tokens

from conftest import DAY, T0


def _item(section: str, item_id: str, chars: int, relevance: float = 0.5) -> ContextItem:
    kind = {"summaries": "summary", "entities": "entity", "matches": "note"}[section]
    # len(text + "\n") == chars, so the item costs chars / 4 tokens
    return ContextItem(kind=kind, section=section, item_id=item_id,
                       text="x" * (chars - 1), relevance=relevance, updated_at=T0)


class TestScoring:
    def test_recency_half_life(self):
        assert recency_decay(T0, T0, 14.0) == pytest.approx(1.0)
        assert recency_decay(T0, T0 + 14 * DAY, 14.0) == pytest.approx(0.5)
        assert recency_decay(None, T0, 14.0) == 0.5

    def test_final_score_weights(self):
        item = ContextItem(kind="entity", section="entities", item_id="e", text="t",
                           importance=1.0, updated_at=T0, relevance=1.0, mention_count=20)
        assert final_score(item, T0, Config()) == pytest.approx(1.0)
        item.mention_count = 5
        assert final_score(item, T0, Config()) == pytest.approx(0.95)

    def test_token_estimate(self):
        assert estimate_tokens("") == 1
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2


class TestFormatting:
    def test_entity_line(self):
        ent = {
            "id": "e1", "name": "Alice", "entity_type": "person", "summary": "old friend",
            "context_notes": ["a", "b", "c"], "sentiment_avg": 0.6,
        }
        facts = [{"predicate": "works_at", "object_text": "Acme"}]
        assert format_entity(ent, facts) == (
            "[Alice] (person) | old friend | works at Acme | Recent: b; c | Sentiment: positive"
        )

    def test_neutral_sentiment_hidden(self):
        ent = {"id": "e1", "name": "Bob", "entity_type": "person", "sentiment_avg": -0.2}
        assert "Sentiment" not in format_entity(ent)


class TestAssembly:
    def test_budget_never_exceeded(self):
        items = [_item("entities", f"e{i}", 200) for i in range(10)]
        out = ContextAssembler().assemble(items, max_tokens=100, now=T0)
        assert out.total_tokens <= 100
        assert out.skipped > 0

    def test_partition_shares(self):
        assert ContextAssembler().budgets(1000) == {
            "summaries": 300, "entities": 400, "matches": 300,
        }

    def test_leftover_is_reallocated(self):
        # Entities get 40 of 100 tokens; one 50-token entity only fits via
        # the budget the empty summaries / matches partitions leave behind.
        header = estimate_tokens("\n" + SECTION_HEADERS["entities"] + "\n")
        items = [_item("entities", "big", 200)]
        out = ContextAssembler().assemble(items, max_tokens=100, now=T0)
        assert [i.item_id for i in out.sections["entities"]] == ["big"]
        assert out.total_tokens == 50 + header
        assert out.skipped == 0

    def test_items_are_whole(self):
        items = [_item("matches", "m1", 4000)]
        out = ContextAssembler().assemble(items, max_tokens=100, now=T0)
        assert out.sections["matches"] == []
        assert out.text == ""
        assert out.skipped == 1

    def test_dedup_keeps_best_relevance(self):
        low = _item("entities", "same", 40, relevance=0.2)
        high = _item("entities", "same", 40, relevance=0.9)
        out = ContextAssembler().assemble([low, high], max_tokens=1000, now=T0)
        assert len(out.sections["entities"]) == 1
        assert out.sections["entities"][0].relevance == 0.9

    def test_render_order_and_headers(self):
        ent = entity_item({"id": "e1", "name": "Alice", "entity_type": "person"})
        summary = ContextItem(kind="summary", section="summaries", item_id="work_life",
                              text="[WORK_LIFE]: Busy.", relevance=1.0)
        out = ContextAssembler().assemble([ent, summary], max_tokens=500, now=T0)
        assert out.text.index(SECTION_HEADERS["summaries"]) < out.text.index(
            SECTION_HEADERS["entities"]
        )
        assert "[Alice] (person)" in out.text
        assert out.item_counts() == {"summaries": 1, "entities": 1, "matches": 0}

    def test_empty_inputs(self):
        assert ContextAssembler().assemble([], max_tokens=100).text == ""
        item = _item("entities", "e", 20)
        assert ContextAssembler().assemble([item], max_tokens=0).total_tokens == 0
