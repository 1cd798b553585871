"""Tests for configuration loading and validation."""

import json

from graph_memory.config import Config, load_config


class TestLoadConfig:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("GRAPH_MEMORY_DATA_DIR", raising=False)
        cfg = load_config()
        assert cfg.api_port == 8788
        assert cfg.data_dir.endswith(".graph-memory")
        assert cfg.decay_after_days["medium"] == 30.0
        assert cfg.validate() == []

    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("GRAPH_MEMORY_PORT", "9000")
        monkeypatch.setenv("GRAPH_MEMORY_TIER_TIMEOUT_MS", "150")
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-test")
        cfg = load_config()
        assert cfg.api_port == 9000
        assert cfg.tier_timeout_ms == 150
        assert cfg.openrouter_api_key == "sk-test"
        assert cfg.data_dir == str(tmp_path / "data")

    def test_bad_env_value_ignored(self, monkeypatch):
        monkeypatch.setenv("GRAPH_MEMORY_PORT", "not-a-port")
        assert load_config().api_port == 8788

    def test_json_overlay(self, monkeypatch, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "weight_vector": 0.5,
            "decay_retention": {"low": 0.5},
            "tier2_min_entities": "bogus",
            "unknown_key": 1,
        }))
        monkeypatch.setenv("GRAPH_MEMORY_CONFIG", str(path))
        cfg = load_config()
        assert cfg.weight_vector == 0.5
        assert cfg.decay_retention["low"] == 0.5
        assert cfg.decay_retention["high"] == 0.95
        assert cfg.tier2_min_entities == 3

    def test_env_beats_json(self, monkeypatch, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"api_port": 7000}))
        monkeypatch.setenv("GRAPH_MEMORY_PORT", "7100")
        assert load_config(str(path)).api_port == 7100


class TestValidate:
    def test_budget_shares(self):
        cfg = Config(budget_summaries=0.5)
        assert "budget shares must sum to 1.0" in cfg.validate()

    def test_timeouts_and_port(self):
        errors = Config(tier_timeout_ms=0, api_port=70000).validate()
        assert "retrieval timeouts must be > 0" in errors
        assert "GRAPH_MEMORY_PORT must be 1-65535" in errors

    def test_retention_range(self):
        cfg = Config()
        cfg.decay_retention["high"] = 1.5
        assert "decay_retention[high] must be in (0, 1]" in cfg.validate()
