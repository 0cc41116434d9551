"""Shared fakes: a deterministic hashing embedder and a scripted LLM client."""

import asyncio
import hashlib
import re
import time
from datetime import datetime, timezone
from typing import List, Optional, Set

import numpy as np
import pytest

from dossier.common.embedding_service import EmbeddingService, normalize_rows
from dossier.common.llm_client import LLMClient
from dossier.common.schemas import NormalizedFact, SourceType


class FakeEmbeddingService(EmbeddingService):
    """Bag-of-words vectors: each token is hashed into one of ``dim`` buckets."""

    def __init__(self, dim: int = 512, available: bool = True):
        # Skip real __init__ to avoid loading a model
        self.dim = dim
        self.available = available
        self.fail_on: Set[str] = set()
        self.delay = 0.0
        self.calls = 0

    @property
    def is_available(self) -> bool:
        return self.available

    def _vector(self, text: str) -> List[float]:
        for marker in self.fail_on:
            if marker in text:
                raise RuntimeError(f"embedding backend rejected chunk containing {marker!r}")
        vec = np.zeros(self.dim, dtype=np.float32)
        for token in re.findall(r"[a-z0-9+#]+", text.lower()):
            bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % self.dim
            vec[bucket] += 1.0
        return normalize_rows(vec).tolist()

    def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        return [self._vector(t) for t in texts]

    def embed_single(self, text: str) -> List[float]:
        return self.embed([text])[0]


class FakeLLMClient(LLMClient):
    """Returns scripted responses; honours the timeout like the real client."""

    def __init__(self, responses: Optional[List[str]] = None, delay: float = 0.0, error: Optional[Exception] = None):
        # Skip real __init__ to avoid SDK setup
        self.provider = "fake"
        self.model = "fake-model"
        self._client = object()
        self.responses = list(responses or [])
        self.delay = delay
        self.error = error
        self.prompts: List[str] = []

    async def agenerate(self, prompt, *, system=None, max_tokens=512, timeout=30.0) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.wait_for(asyncio.sleep(self.delay), timeout=timeout)
        if self.error is not None:
            raise self.error
        if not self.responses:
            return ""
        return self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]


def make_fact(
    owner_id: str,
    field_name: str,
    value: str,
    provenance: str = "resume:abc",
    confidence: float = 0.8,
    source_type: SourceType = SourceType.RESUME,
    observed_at: Optional[datetime] = None,
) -> NormalizedFact:
    return NormalizedFact(
        owner_id=owner_id,
        field_name=field_name,
        value=value,
        provenance=provenance,
        source_type=source_type,
        confidence=confidence,
        observed_at=observed_at or datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def embedding():
    return FakeEmbeddingService()
