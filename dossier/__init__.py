"""
Dossier

Aggregates professional documents into one versioned profile per person
and answers natural-language questions over the resulting corpus.

Philosophy:
- Facts keep their provenance; conflicts are resolved deterministically
- Snapshots are append-only; the current profile is a pointer, not a field
- The index is a derived cache that can be rebuilt from snapshots
- Answers only say what a retrieved chunk supports

Usage:
    from dossier.common import load_config, EmbeddingService
    from dossier.engine import ProfileEngine
    from dossier.common.schemas import SourceRef, SourceType
"""

__version__ = "0.1.0"
