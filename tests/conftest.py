"""Shared fixtures for graph memory tests."""

from __future__ import annotations

import asyncio
import hashlib
from typing import Any, Dict, List, Optional

import pytest

from graph_memory.behaviors import BehaviorStore, TopicStore
from graph_memory.config import Config
from graph_memory.embeddings import EmbeddingError
from graph_memory.engine import MemoryEngine
from graph_memory.entities import EntityRegistry
from graph_memory.facts import FactStore
from graph_memory.graph import RelationshipGraph
from graph_memory.llm import LLMError
from graph_memory.payload import ExtractedEntity
from graph_memory.pool import StoragePool
from graph_memory.storage import MemoryStorage

DAY = 86400.0
T0 = 1_750_000_000.0


# ---------------------------------------------------------------------------
# Ensure no real API calls leak out
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch, tmp_path):
    """Blank API key and a temp data dir so nothing touches the network or $HOME."""
    monkeypatch.setenv("OPENROUTER_API_KEY", "")
    monkeypatch.setenv("GRAPH_MEMORY_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("GRAPH_MEMORY_CONFIG", raising=False)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FakeClock:
    """Controllable wall clock (epoch seconds)."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, days: float = 0.0, hours: float = 0.0, seconds: float = 0.0) -> float:
        self.now += days * DAY + hours * 3600.0 + seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeEmbedder:
    """Deterministic mock embedder.

    The vector is derived from an md5 of the text so identical texts always
    produce the same unit vector.
    """

    def __init__(self, dimensions: int = 4, fail: bool = False, delay: float = 0.0):
        self.dimensions = dimensions
        self.fail = fail
        self.delay = delay
        self.call_count = 0

    async def embed(self, text: str) -> List[float]:
        self.call_count += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise EmbeddingError("embedding service down")
        return self._deterministic_vector(text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.call_count += 1
        if self.fail:
            raise EmbeddingError("embedding service down")
        return [self._deterministic_vector(t) for t in texts]

    def _deterministic_vector(self, text: str) -> List[float]:
        digest = hashlib.md5(text.encode("utf-8")).digest()
        vec = [(digest[i] + 1) / 256.0 for i in range(self.dimensions)]
        mag = max(sum(v * v for v in vec) ** 0.5, 1e-9)
        return [v / mag for v in vec]


class FakeChat:
    """Chat stand-in: canned rewrite text and a canned judge verdict."""

    available = True

    def __init__(
        self,
        reply: str = "",
        verdict: Optional[Dict[str, Any]] = None,
        fail: bool = False,
    ):
        self.reply = reply
        self.verdict = verdict if verdict is not None else {"sufficient": True, "confidence": 0.9}
        self.fail = fail
        self.prompts: List[str] = []
        self.judge_calls = 0

    def complete_sync(self, prompt: str, system: Optional[str] = None,
                      max_tokens: int = 400, temperature: float = 0.3) -> str:
        self.prompts.append(prompt)
        if self.fail:
            raise LLMError("chat model down")
        return self.reply

    async def complete_json(self, prompt: str, system: Optional[str] = None) -> Dict[str, Any]:
        self.judge_calls += 1
        if self.fail:
            raise LLMError("chat model down")
        return dict(self.verdict)


@pytest.fixture
def fake_embedder():
    """Return a FakeEmbedder with 4 dimensions."""
    return FakeEmbedder(dimensions=4)


# ---------------------------------------------------------------------------
# Storage and stores
# ---------------------------------------------------------------------------

def make_config(tmp_path, **overrides) -> Config:
    # Generous timeouts: thread start-up on a loaded CI box must not trip them.
    values = dict(
        data_dir=str(tmp_path / "data"),
        embedding_dimensions=4,
        tier_timeout_ms=5000,
        retrieval_budget_ms=10000,
        judge_timeout_ms=5000,
        fact_retry_backoff_ms=1,
    )
    values.update(overrides)
    return Config(**values)


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def tmp_storage(tmp_path, clock):
    """Fresh MemoryStorage backed by a temp SQLite file (4-dim vectors)."""
    s = MemoryStorage(db_path=str(tmp_path / "test.sqlite"), dimensions=4, clock=clock)
    yield s
    s.close()


@pytest.fixture
def registry(tmp_storage, config):
    return EntityRegistry(tmp_storage, config)


@pytest.fixture
def facts(tmp_storage, config):
    return FactStore(tmp_storage, config)


@pytest.fixture
def graph(tmp_storage):
    return RelationshipGraph(tmp_storage)


@pytest.fixture
def behaviors(tmp_storage, config):
    return BehaviorStore(tmp_storage, config)


@pytest.fixture
def topics(tmp_storage):
    return TopicStore(tmp_storage)


def add_entity(registry: EntityRegistry, name: str, source_id: str = "src-1", **fields) -> str:
    ent = ExtractedEntity(name=name, **fields)
    return registry.upsert(ent, "note", source_id).entity_id


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

@pytest.fixture
def pool(tmp_path, clock):
    p = StoragePool(base_dir=str(tmp_path / "data"), dimensions=4, clock=clock)
    yield p
    p.close_all()


@pytest.fixture
def engine(config, pool, fake_embedder):
    e = MemoryEngine(config=config, pool=pool, embedder=fake_embedder, chat=None)
    yield e
    e.close()


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------

WORK_EVENT = {
    "entities": [
        {"name": "Alice", "type": "person", "context": "met at the offsite", "sentiment": 0.6},
        {"name": "Bob", "type": "person"},
        {"name": "Acme", "type": "company"},
    ],
    "relationships": [
        {"subject": "Alice", "predicate": "works_at", "object": "Acme"},
        {"subject": "Alice", "predicate": "knows", "object": "Bob"},
    ],
    "behaviors": [
        {"type": "trusts_opinion_of", "target_entity": "Alice", "evidence": "asked her about the launch"},
    ],
    "topics": [{"name": "career", "confidence": 0.6}],
    "content": "Lunch with Alice and Bob. Alice works at Acme and wants to lead the launch.",
}


@pytest.fixture
def work_event():
    return {k: (list(v) if isinstance(v, list) else v) for k, v in WORK_EVENT.items()}
