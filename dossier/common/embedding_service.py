"""
Embedding Service

On-device embedding generation using fastembed.
Vectors are L2 normalized, so inner product equals cosine similarity;
that is the one similarity measure used across the system.
"""

import logging
from typing import List, Optional

import numpy as np

logger = logging.getLogger("dossier.common.embedding_service")


class EmbeddingService:
    """
    Embedding service for Dossier.

    Uses fastembed by default for on-device embedding generation.
    This avoids external API calls and keeps profile data local.
    """

    def __init__(self, mode: str = "femb", model: str = "sentence-transformers/all-MiniLM-L6-v2"):
        self._mode = mode
        self._model_name = model
        self._model = None
        self._init_model()

    def _init_model(self) -> None:
        """Initialize the underlying embedding model"""
        if self._mode != "femb":
            logger.warning("Unsupported embedding mode %s, embeddings unavailable", self._mode)
            return
        try:
            from fastembed import TextEmbedding

            self._model = TextEmbedding(model_name=self._model_name)
            logger.info("Initialized with mode=%s, model=%s", self._mode, self._model_name)
        except ImportError as e:
            logger.warning("fastembed not installed: %s", e)
        except Exception as e:
            logger.warning("Failed to load embedding model %s: %s", self._model_name, e)

    @property
    def is_available(self) -> bool:
        """Check if embedding service is available"""
        return self._model is not None

    def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: List of strings to embed

        Returns:
            List of embedding vectors (L2 normalized)
        """
        if not self._model:
            raise RuntimeError("Embedding model not initialized")

        if not texts:
            return []

        matrix = np.array(list(self._model.embed(texts)), dtype=np.float32)
        return normalize_rows(matrix).tolist()

    def embed_single(self, text: str) -> List[float]:
        """
        Generate embedding for a single text.

        Args:
            text: String to embed

        Returns:
            Embedding vector (L2 normalized)
        """
        if not text:
            raise ValueError("Cannot embed empty text")

        return self.embed([text])[0]


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """L2-normalize each row; zero rows stay zero."""
    if matrix.ndim == 1:
        norm = np.linalg.norm(matrix)
        return matrix / norm if norm > 0 else matrix
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def cosine_scores(query_vec: List[float], matrix: np.ndarray) -> np.ndarray:
    """
    Cosine similarity between a query and each row of ``matrix``.

    Rows are expected to be normalized already; the query is normalized
    here so callers can pass raw vectors.
    """
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float32)

    query = normalize_rows(np.asarray(query_vec, dtype=np.float32))
    if query.shape[0] != matrix.shape[1]:
        raise ValueError(f"Vector dimension mismatch: {query.shape[0]} vs {matrix.shape[1]}")

    return np.clip(matrix @ query, -1.0, 1.0)


# Module-level singleton getter
_service_instance: Optional[EmbeddingService] = None


def get_embedding_service(
    mode: str = "femb",
    model: str = "sentence-transformers/all-MiniLM-L6-v2"
) -> EmbeddingService:
    """
    Get the shared EmbeddingService instance.

    Args:
        mode: Embedding mode (only fastembed, "femb", is supported)
        model: Model name

    Returns:
        EmbeddingService instance
    """
    global _service_instance

    if _service_instance is None:
        _service_instance = EmbeddingService(mode=mode, model=model)

    return _service_instance
