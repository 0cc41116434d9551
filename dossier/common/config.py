"""
Configuration Management for Dossier

Loads configuration from ~/.dossier/config.json and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict

logger = logging.getLogger("dossier.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".dossier"
CONFIG_PATH = CONFIG_DIR / "config.json"

DEFAULT_TRUST_WEIGHTS = {
    "repository": 0.9,
    "resume": 0.8,
    "article": 0.6,
    "endorsement": 0.5,
}


@dataclass
class EmbeddingConfig:
    """Embedding model configuration"""
    mode: str = "femb"  # fastembed (on-device)
    model: str = "sentence-transformers/all-MiniLM-L6-v2"


@dataclass
class LLMConfig:
    """LLM provider configuration shared by narrative and answer synthesis"""
    provider: str = "anthropic"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    google_api_key: str = ""
    google_model: str = "gemini-2.0-flash-exp"

    @property
    def model(self) -> str:
        return {
            "anthropic": self.anthropic_model,
            "openai": self.openai_model,
            "google": self.google_model,
        }.get(self.provider, "")


@dataclass
class SourceConfig:
    """Source connector and normalizer configuration"""
    trust_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_TRUST_WEIGHTS))
    max_attempts: int = 3
    base_delay: float = 0.5  # seconds, doubled per attempt
    max_delay: float = 8.0
    http_timeout: float = 10.0
    github_token: str = ""
    github_api_url: str = "https://api.github.com"


@dataclass
class SynthesisConfig:
    """Profile synthesizer configuration"""
    narrative_timeout: float = 20.0
    narrative_max_tokens: int = 400
    narrative_max_chars: int = 2000
    data_dir: str = ""  # empty = in-memory snapshot log


@dataclass
class IndexConfig:
    """Embedding indexer configuration"""
    chunk_size: int = 400  # characters


@dataclass
class RetrieverConfig:
    """Retrieval & answer engine configuration"""
    topk: int = 10
    semantic_weight: float = 0.7
    structured_weight: float = 0.3
    query_timeout: float = 15.0
    answer_timeout: float = 10.0
    answer_max_tokens: int = 700
    llm_rewrite: bool = False


@dataclass
class CacheConfig:
    """Result cache configuration"""
    ttl_seconds: float = 300.0
    max_entries: int = 512


@dataclass
class DossierConfig:
    """Main Dossier configuration"""
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    sources: SourceConfig = field(default_factory=SourceConfig)
    synthesis: SynthesisConfig = field(default_factory=SynthesisConfig)
    index: IndexConfig = field(default_factory=IndexConfig)
    retriever: RetrieverConfig = field(default_factory=RetrieverConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _parse_embedding_config(data: dict) -> EmbeddingConfig:
    """Parse embedding section from config dict"""
    embedding_data = data.get("embedding", {})
    return EmbeddingConfig(
        mode=embedding_data.get("mode", "femb"),
        model=embedding_data.get("model", "sentence-transformers/all-MiniLM-L6-v2"),
    )


def _parse_llm_config(data: dict) -> LLMConfig:
    """Parse llm section from config dict"""
    llm_data = data.get("llm", {})
    return LLMConfig(
        provider=llm_data.get("provider", "anthropic"),
        anthropic_api_key=llm_data.get("anthropic_api_key", ""),
        anthropic_model=llm_data.get("anthropic_model", "claude-sonnet-4-20250514"),
        openai_api_key=llm_data.get("openai_api_key", ""),
        openai_model=llm_data.get("openai_model", "gpt-4o-mini"),
        google_api_key=llm_data.get("google_api_key", ""),
        google_model=llm_data.get("google_model", "gemini-2.0-flash-exp"),
    )


def _parse_source_config(data: dict) -> SourceConfig:
    """Parse sources section; unknown trust keys are kept, missing ones defaulted"""
    source_data = data.get("sources", {})
    trust = dict(DEFAULT_TRUST_WEIGHTS)
    trust.update(source_data.get("trust_weights", {}))
    return SourceConfig(
        trust_weights=trust,
        max_attempts=source_data.get("max_attempts", 3),
        base_delay=source_data.get("base_delay", 0.5),
        max_delay=source_data.get("max_delay", 8.0),
        http_timeout=source_data.get("http_timeout", 10.0),
        github_token=source_data.get("github_token", ""),
        github_api_url=source_data.get("github_api_url", "https://api.github.com"),
    )


def _parse_synthesis_config(data: dict) -> SynthesisConfig:
    """Parse synthesis section from config dict"""
    synthesis_data = data.get("synthesis", {})
    return SynthesisConfig(
        narrative_timeout=synthesis_data.get("narrative_timeout", 20.0),
        narrative_max_tokens=synthesis_data.get("narrative_max_tokens", 400),
        narrative_max_chars=synthesis_data.get("narrative_max_chars", 2000),
        data_dir=synthesis_data.get("data_dir", ""),
    )


def _parse_retriever_config(data: dict) -> RetrieverConfig:
    """Parse retriever section from config dict"""
    retriever_data = data.get("retriever", {})
    return RetrieverConfig(
        topk=retriever_data.get("topk", 10),
        semantic_weight=retriever_data.get("semantic_weight", 0.7),
        structured_weight=retriever_data.get("structured_weight", 0.3),
        query_timeout=retriever_data.get("query_timeout", 15.0),
        answer_timeout=retriever_data.get("answer_timeout", 10.0),
        answer_max_tokens=retriever_data.get("answer_max_tokens", 700),
        llm_rewrite=retriever_data.get("llm_rewrite", False),
    )


def load_config() -> DossierConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.dossier/config.json)
    3. Default values
    """
    config = DossierConfig()

    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.embedding = _parse_embedding_config(data)
            config.llm = _parse_llm_config(data)
            config.sources = _parse_source_config(data)
            config.synthesis = _parse_synthesis_config(data)
            config.index = IndexConfig(
                chunk_size=data.get("index", {}).get("chunk_size", 400),
            )
            config.retriever = _parse_retriever_config(data)
            config.cache = CacheConfig(
                ttl_seconds=data.get("cache", {}).get("ttl_seconds", 300.0),
                max_entries=data.get("cache", {}).get("max_entries", 512),
            )
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Failed to load config file: %s", e)

    if os.getenv("EMBEDDING_MODE"):
        config.embedding.mode = os.getenv("EMBEDDING_MODE")
    if os.getenv("EMBEDDING_MODEL"):
        config.embedding.model = os.getenv("EMBEDDING_MODEL")

    if os.getenv("DOSSIER_CHUNK_SIZE"):
        config.index.chunk_size = int(os.getenv("DOSSIER_CHUNK_SIZE"))
    if os.getenv("DOSSIER_TOPK"):
        config.retriever.topk = int(os.getenv("DOSSIER_TOPK"))
    if os.getenv("DOSSIER_CACHE_TTL"):
        config.cache.ttl_seconds = float(os.getenv("DOSSIER_CACHE_TTL"))
    if os.getenv("DOSSIER_DATA_DIR"):
        config.synthesis.data_dir = os.getenv("DOSSIER_DATA_DIR")

    # Secret env vars are tracked so save_config does not write them to disk
    _env_secret_map = {
        "ANTHROPIC_API_KEY": (config.llm, "anthropic_api_key"),
        "OPENAI_API_KEY": (config.llm, "openai_api_key"),
        "GOOGLE_API_KEY": (config.llm, "google_api_key"),
        "GEMINI_API_KEY": (config.llm, "google_api_key"),
        "GITHUB_TOKEN": (config.sources, "github_token"),
    }
    for env_var, (section, attr) in _env_secret_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(section, attr, val)
            config._env_sourced_keys.add(attr)

    _env_llm_map = {
        "ANTHROPIC_MODEL": "anthropic_model",
        "OPENAI_MODEL": "openai_model",
        "GOOGLE_MODEL": "google_model",
        "DOSSIER_LLM_PROVIDER": "provider",
    }
    for env_var, attr in _env_llm_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(config.llm, attr, val)

    return config


def save_config(config: DossierConfig) -> None:
    """Save configuration to file.

    Secret fields that were sourced from environment variables are written
    as empty strings so that they are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())

    llm_section = {
        "provider": config.llm.provider,
        "anthropic_api_key": config.llm.anthropic_api_key,
        "anthropic_model": config.llm.anthropic_model,
        "openai_api_key": config.llm.openai_api_key,
        "openai_model": config.llm.openai_model,
        "google_api_key": config.llm.google_api_key,
        "google_model": config.llm.google_model,
    }
    for key in ("anthropic_api_key", "openai_api_key", "google_api_key"):
        if key in env_sourced:
            llm_section[key] = ""

    data = {
        "embedding": {
            "mode": config.embedding.mode,
            "model": config.embedding.model,
        },
        "llm": llm_section,
        "sources": {
            "trust_weights": config.sources.trust_weights,
            "max_attempts": config.sources.max_attempts,
            "base_delay": config.sources.base_delay,
            "max_delay": config.sources.max_delay,
            "http_timeout": config.sources.http_timeout,
            "github_token": "" if "github_token" in env_sourced else config.sources.github_token,
            "github_api_url": config.sources.github_api_url,
        },
        "synthesis": {
            "narrative_timeout": config.synthesis.narrative_timeout,
            "narrative_max_tokens": config.synthesis.narrative_max_tokens,
            "narrative_max_chars": config.synthesis.narrative_max_chars,
            "data_dir": config.synthesis.data_dir,
        },
        "index": {
            "chunk_size": config.index.chunk_size,
        },
        "retriever": {
            "topk": config.retriever.topk,
            "semantic_weight": config.retriever.semantic_weight,
            "structured_weight": config.retriever.structured_weight,
            "query_timeout": config.retriever.query_timeout,
            "answer_timeout": config.retriever.answer_timeout,
            "answer_max_tokens": config.retriever.answer_max_tokens,
            "llm_rewrite": config.retriever.llm_rewrite,
        },
        "cache": {
            "ttl_seconds": config.cache.ttl_seconds,
            "max_entries": config.cache.max_entries,
        },
    }

    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    CONFIG_PATH.chmod(0o600)
