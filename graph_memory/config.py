"""Configuration for the graph memory engine.

Loads from environment variables with sensible defaults.
Optionally reads a config.json file.

Note:
    Environment variables use the ``GRAPH_MEMORY_*`` prefix.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional


def _default_decay_days() -> Dict[str, float]:
    return {"trivial": 7.0, "low": 14.0, "medium": 30.0, "high": 90.0}


def _default_retention() -> Dict[str, float]:
    return {"trivial": 0.80, "low": 0.85, "medium": 0.90, "high": 0.95}


@dataclass
class Config:
    """Central configuration for all memory sub-systems."""

    # OpenRouter (embeddings + chat)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    embedding_model: str = "qwen/qwen3-embedding-8b"
    embedding_dimensions: int = 4096
    chat_model: str = "anthropic/claude-3.5-haiku"

    # Storage: one memory-<user>.sqlite per tenant
    data_dir: str = ""  # resolved in load_config()

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8788

    # Tier 3 hybrid fusion weights
    weight_vector: float = 0.6
    weight_keyword: float = 0.3
    weight_graph: float = 0.1

    # Context assembly
    score_importance: float = 0.30
    score_recency: float = 0.25
    score_relevance: float = 0.35
    score_mentions: float = 0.10
    half_life_days: float = 14.0
    budget_summaries: float = 0.30
    budget_entities: float = 0.40
    budget_matches: float = 0.30
    default_max_tokens: int = 2000

    # Tiered retrieval
    tier_timeout_ms: int = 300
    retrieval_budget_ms: int = 1500
    judge_timeout_ms: int = 1000
    tier2_limit: int = 10
    tier2_min_entities: int = 3
    tier3_limit: int = 10
    judge_min_confidence: float = 0.7

    # Ingestion
    ingest_workers: int = 4
    entity_importance_increment: float = 0.02
    fact_confidence_increment: float = 0.02
    behavior_confidence_increment: float = 0.05
    default_confidence: float = 0.7
    behavior_default_confidence: float = 0.6
    max_context_notes: int = 5
    fact_max_retries: int = 3
    fact_retry_backoff_ms: int = 20

    # Maintenance
    decay_after_days: Dict[str, float] = field(default_factory=_default_decay_days)
    decay_retention: Dict[str, float] = field(default_factory=_default_retention)
    decay_floor: float = 0.1
    decay_min_interval_hours: float = 12.0
    archive_after_days: float = 180.0
    consolidation_threshold: float = 0.92
    consolidation_neighbors: int = 5

    # Embedding retry
    embed_max_retries: int = 3
    embed_cache_size: int = 1024
    embed_timeout_s: float = 30.0

    def validate(self) -> list[str]:
        """Return a list of validation errors (empty == OK)."""
        errors: list[str] = []
        if self.embedding_dimensions < 1:
            errors.append("GRAPH_MEMORY_DIMENSIONS must be >= 1")
        if self.api_port < 1 or self.api_port > 65535:
            errors.append("GRAPH_MEMORY_PORT must be 1-65535")
        for name in ("weight_vector", "weight_keyword", "weight_graph"):
            if getattr(self, name) < 0:
                errors.append(f"{name} must be >= 0")
        shares = self.budget_summaries + self.budget_entities + self.budget_matches
        if abs(shares - 1.0) > 1e-6:
            errors.append("budget shares must sum to 1.0")
        for tier, rate in self.decay_retention.items():
            if not 0.0 < rate <= 1.0:
                errors.append(f"decay_retention[{tier}] must be in (0, 1]")
        if self.half_life_days <= 0:
            errors.append("half_life_days must be > 0")
        if self.retrieval_budget_ms <= 0 or self.tier_timeout_ms <= 0:
            errors.append("retrieval timeouts must be > 0")
        if self.ingest_workers < 1:
            errors.append("GRAPH_MEMORY_INGEST_WORKERS must be >= 1")
        return errors


def load_config(config_path: Optional[str] = None) -> Config:
    """Build a Config from defaults, a JSON file and environment variables.

    Environment variables (all optional):
        OPENROUTER_API_KEY
        OPENROUTER_BASE_URL
        GRAPH_MEMORY_DATA_DIR
        GRAPH_MEMORY_EMBED_MODEL
        GRAPH_MEMORY_DIMENSIONS
        GRAPH_MEMORY_CHAT_MODEL
        GRAPH_MEMORY_HOST
        GRAPH_MEMORY_PORT
    """
    cfg = Config()

    # --- JSON file overlay ------------------------------------------------
    json_path = config_path or os.environ.get("GRAPH_MEMORY_CONFIG")
    if json_path and Path(json_path).is_file():
        with open(json_path, "r") as fh:
            data = json.load(fh)
        for key, val in data.items():
            if hasattr(cfg, key):
                expected_type = type(getattr(cfg, key))
                try:
                    if expected_type is dict:
                        merged = dict(getattr(cfg, key))
                        merged.update({str(k): float(v) for k, v in val.items()})
                        setattr(cfg, key, merged)
                    else:
                        setattr(cfg, key, expected_type(val))
                except (ValueError, TypeError, AttributeError):
                    pass  # skip bad values

    # --- Environment variable overlay -------------------------------------
    env_map: dict[str, tuple[str, type]] = {
        "OPENROUTER_API_KEY": ("openrouter_api_key", str),
        "OPENROUTER_BASE_URL": ("openrouter_base_url", str),
        "GRAPH_MEMORY_DATA_DIR": ("data_dir", str),
        "GRAPH_MEMORY_EMBED_MODEL": ("embedding_model", str),
        "GRAPH_MEMORY_DIMENSIONS": ("embedding_dimensions", int),
        "GRAPH_MEMORY_CHAT_MODEL": ("chat_model", str),
        "GRAPH_MEMORY_HOST": ("api_host", str),
        "GRAPH_MEMORY_PORT": ("api_port", int),
        "GRAPH_MEMORY_HALF_LIFE_DAYS": ("half_life_days", float),
        "GRAPH_MEMORY_TIER_TIMEOUT_MS": ("tier_timeout_ms", int),
        "GRAPH_MEMORY_RETRIEVAL_BUDGET_MS": ("retrieval_budget_ms", int),
        "GRAPH_MEMORY_INGEST_WORKERS": ("ingest_workers", int),
        "GRAPH_MEMORY_DEFAULT_MAX_TOKENS": ("default_max_tokens", int),
    }

    for env_key, (attr, cast) in env_map.items():
        val = os.environ.get(env_key)
        if val is not None:
            try:
                setattr(cfg, attr, cast(val))
            except (ValueError, TypeError):
                pass

    # --- Default data_dir resolution --------------------------------------
    if not cfg.data_dir:
        cfg.data_dir = str(Path.home() / ".graph-memory")

    return cfg
