"""Tests for config loading, env overrides and secret handling."""

import json
import os
import pytest
from unittest.mock import patch


class TestDefaults:
    def test_llm_config_defaults(self):
        from dossier.common.config import LLMConfig
        cfg = LLMConfig()
        assert cfg.provider == "anthropic"
        assert cfg.anthropic_api_key == ""
        assert cfg.model == cfg.anthropic_model

    def test_model_follows_provider(self):
        from dossier.common.config import LLMConfig
        cfg = LLMConfig(provider="openai", openai_model="gpt-4o")
        assert cfg.model == "gpt-4o"

    def test_trust_weights_default(self):
        from dossier.common.config import DEFAULT_TRUST_WEIGHTS, DossierConfig
        cfg = DossierConfig()
        assert cfg.sources.trust_weights == DEFAULT_TRUST_WEIGHTS
        # repositories outrank resumes, resumes outrank endorsements
        assert cfg.sources.trust_weights["repository"] > cfg.sources.trust_weights["resume"]
        assert cfg.sources.trust_weights["resume"] > cfg.sources.trust_weights["endorsement"]

    def test_retriever_weights_default(self):
        from dossier.common.config import RetrieverConfig
        cfg = RetrieverConfig()
        assert cfg.semantic_weight + cfg.structured_weight == pytest.approx(1.0)


class TestLoadConfig:
    def test_load_sections_from_file(self, tmp_path):
        from dossier.common.config import load_config
        config_data = {
            "llm": {"provider": "openai", "openai_api_key": "sk-test"},
            "sources": {"trust_weights": {"resume": 0.95}, "max_attempts": 5},
            "retriever": {"semantic_weight": 0.6, "structured_weight": 0.4},
            "cache": {"ttl_seconds": 60},
        }
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps(config_data))

        with patch("dossier.common.config.CONFIG_PATH", config_file):
            cfg = load_config()

        assert cfg.llm.provider == "openai"
        assert cfg.sources.trust_weights["resume"] == 0.95
        # missing trust keys keep their defaults
        assert cfg.sources.trust_weights["repository"] == 0.9
        assert cfg.sources.max_attempts == 5
        assert cfg.retriever.semantic_weight == 0.6
        assert cfg.cache.ttl_seconds == 60

    def test_corrupt_file_falls_back_to_defaults(self, tmp_path):
        from dossier.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text("{not json")

        with patch("dossier.common.config.CONFIG_PATH", config_file):
            cfg = load_config()

        assert cfg.index.chunk_size == 400

    def test_env_var_overrides(self, tmp_path):
        from dossier.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"retriever": {"topk": 3}}))

        env = {
            "DOSSIER_TOPK": "7",
            "DOSSIER_DATA_DIR": str(tmp_path / "data"),
            "OPENAI_API_KEY": "sk-env",
            "DOSSIER_LLM_PROVIDER": "openai",
        }
        with patch("dossier.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, env, clear=False):
            cfg = load_config()

        assert cfg.retriever.topk == 7
        assert cfg.synthesis.data_dir == str(tmp_path / "data")
        assert cfg.llm.openai_api_key == "sk-env"
        assert cfg.llm.provider == "openai"


class TestSaveConfig:
    def test_save_config_omits_env_keys(self, tmp_path):
        from dossier.common.config import load_config, save_config
        config_file = tmp_path / "config.json"
        config_file.write_text("{}")

        env = {"ANTHROPIC_API_KEY": "sk-from-env", "GITHUB_TOKEN": "ghp-from-env"}
        with patch("dossier.common.config.CONFIG_PATH", config_file), \
             patch("dossier.common.config.CONFIG_DIR", tmp_path), \
             patch.dict(os.environ, env, clear=False):
            cfg = load_config()
            save_config(cfg)

        saved = json.loads(config_file.read_text())
        assert saved["llm"]["anthropic_api_key"] == ""
        assert saved["sources"]["github_token"] == ""

    def test_save_then_load_roundtrips_file_values(self, tmp_path):
        from dossier.common.config import DossierConfig, load_config, save_config
        config_file = tmp_path / "config.json"
        cfg = DossierConfig()
        cfg.retriever.answer_timeout = 4.5
        cfg.sources.trust_weights["article"] = 0.7

        with patch("dossier.common.config.CONFIG_PATH", config_file), \
             patch("dossier.common.config.CONFIG_DIR", tmp_path):
            save_config(cfg)
            loaded = load_config()

        assert loaded.retriever.answer_timeout == 4.5
        assert loaded.sources.trust_weights["article"] == 0.7
