"""
Dossier Ingestion

Source Connector (fetch with retries and checksum idempotence) and
Normalizer (RawDocument → NormalizedFacts).
"""

from .connector import FetchResult, SourceConnector, SourceStatus
from .normalizer import NormalizationResult, Normalizer, redact_sensitive

__all__ = [
    "FetchResult",
    "SourceConnector",
    "SourceStatus",
    "NormalizationResult",
    "Normalizer",
    "redact_sensitive",
]
