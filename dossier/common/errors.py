"""
Error taxonomy for the Dossier pipeline.

Every failure that crosses a component boundary is one of these. Failures
local to one owner or one chunk are caught by the caller that owns that
scope; nothing here is meant to abort work for other owners.
"""

from typing import Optional


class DossierError(Exception):
    """Base class for all pipeline errors."""
    pass


class SourceUnavailable(DossierError):
    """Transient fetch failure (network, 5xx, rate limit). Retried with backoff."""

    def __init__(self, source_id: str, reason: str, attempts: int = 1):
        super().__init__(f"Source {source_id} unavailable after {attempts} attempt(s): {reason}")
        self.source_id = source_id
        self.reason = reason
        self.attempts = attempts


class SourcePermanentFailure(DossierError):
    """Permanent fetch failure (revoked access, gone). Reported, never retried."""

    def __init__(self, source_id: str, reason: str, status_code: Optional[int] = None):
        super().__init__(f"Source {source_id} failed permanently: {reason}")
        self.source_id = source_id
        self.reason = reason
        self.status_code = status_code


class SynthesisFailed(DossierError):
    """A profile snapshot could not be assembled or persisted."""

    def __init__(self, owner_id: str, reason: str):
        super().__init__(f"Synthesis failed for {owner_id}: {reason}")
        self.owner_id = owner_id
        self.reason = reason


class IndexingFailed(DossierError):
    """No chunk of a snapshot could be indexed; previous entries stay live."""

    def __init__(self, owner_id: str, version: int, reason: str):
        super().__init__(f"Indexing failed for {owner_id} v{version}: {reason}")
        self.owner_id = owner_id
        self.version = version
        self.reason = reason


class RetrievalUnavailable(DossierError):
    """The embedding or vector backend could not serve a query."""
    pass


class QueryTimeout(DossierError):
    """The query budget ran out before retrieval completed."""

    def __init__(self, stage: str, budget: float):
        super().__init__(f"Query timed out during {stage} (budget {budget:.2f}s)")
        self.stage = stage
        self.budget = budget
