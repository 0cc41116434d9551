"""
Dossier Common Module

Shared infrastructure for ingestion, synthesis, indexing and retrieval.
"""

from .config import DossierConfig, load_config
from .embedding_service import EmbeddingService, get_embedding_service
from .llm_client import LLMClient, create_llm_client

__all__ = [
    "DossierConfig",
    "load_config",
    "EmbeddingService",
    "get_embedding_service",
    "LLMClient",
    "create_llm_client",
]
