"""OpenRouter embedding client.

Calls the OpenAI-compatible ``/embeddings`` endpoint through
:func:`graph_memory.openrouter.post_json`. Blocking calls run in a worker
thread; repeated texts are served from a small LRU cache.

The engine treats vectors as opaque; it only stores them and lets
sqlite-vec compare them.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple

from .config import Config, load_config
from .errors import DependencyUnavailable
from .openrouter import post_json

logger = logging.getLogger(__name__)


class EmbeddingError(DependencyUnavailable):
    """Raised when the embedding API returns an error."""


class OpenRouterEmbeddings:
    """Async facade over the OpenRouter embeddings endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        base_url: Optional[str] = None,
        config: Optional[Config] = None,
    ) -> None:
        cfg = config or load_config()
        self.api_key: str = api_key if api_key is not None else cfg.openrouter_api_key
        self.model: str = model or cfg.embedding_model
        self.dimensions: int = dimensions or cfg.embedding_dimensions
        self.url = f"{(base_url or cfg.openrouter_base_url).rstrip('/')}/embeddings"
        self.max_retries = cfg.embed_max_retries
        self.timeout = cfg.embed_timeout_s
        self._cache_size = cfg.embed_cache_size
        self._cache: "OrderedDict[Tuple[str, str], List[float]]" = OrderedDict()

    # ------------------------------------------------------------------
    # LRU cache keyed by (model, text)
    # ------------------------------------------------------------------

    def _cache_get(self, text: str) -> Optional[List[float]]:
        key = (self.model, text)
        vec = self._cache.get(key)
        if vec is not None:
            self._cache.move_to_end(key)
        return vec

    def _cache_put(self, text: str, vector: List[float]) -> None:
        self._cache[(self.model, text)] = vector
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    # ------------------------------------------------------------------
    # Blocking call
    # ------------------------------------------------------------------

    def _call_api(self, texts: List[str]) -> List[List[float]]:
        body = post_json(
            self.url,
            self.api_key,
            {"model": self.model, "input": texts},
            timeout=self.timeout,
            max_retries=self.max_retries,
            error_cls=EmbeddingError,
            label="embedding service",
        )
        return self._parse(body, len(texts))

    def _parse(self, body: Dict[str, Any], expected: int) -> List[List[float]]:
        try:
            items = sorted(body["data"], key=lambda d: d["index"])
            vectors = [list(item["embedding"]) for item in items]
        except (KeyError, TypeError) as exc:
            raise EmbeddingError(f"unexpected embedding response: {exc}") from exc
        if len(vectors) != expected:
            raise EmbeddingError(f"asked for {expected} embeddings, got {len(vectors)}")
        bad = [len(v) for v in vectors if len(v) != self.dimensions]
        if bad:
            raise EmbeddingError(f"expected {self.dimensions} dimensions, got {bad[0]}")
        return vectors

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> List[float]:
        """Embed one string."""
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed several strings with at most one HTTP call for the uncached ones."""
        out: List[Optional[List[float]]] = [self._cache_get(t) for t in texts]
        todo = [i for i, vec in enumerate(out) if vec is None]
        if todo:
            logger.debug("Embedding %d text(s), %d cached", len(todo), len(texts) - len(todo))
            fresh = await asyncio.to_thread(self._call_api, [texts[i] for i in todo])
            for i, vec in zip(todo, fresh):
                out[i] = vec
                self._cache_put(texts[i], vec)
        return out  # type: ignore[return-value]
