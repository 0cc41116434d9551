"""
Dossier Profile Schemas

Raw documents, provenance-tagged facts, versioned snapshots, index entries
and search results.
"""

from .profile import (
    SourceType,
    SourceRef,
    RawDocument,
    NormalizedFact,
    AuditEntry,
    ProfileSnapshot,
    IndexEntry,
    SupportingChunk,
    SearchHit,
    SearchResult,
    USER_DECLARED,
    compute_content_hash,
    content_checksum,
    generate_source_id,
    slugify,
)
from .templates import (
    field_label,
    render_fact_line,
    render_fallback_narrative,
    render_profile_text,
    group_by_namespace,
)

__all__ = [
    "SourceType",
    "SourceRef",
    "RawDocument",
    "NormalizedFact",
    "AuditEntry",
    "ProfileSnapshot",
    "IndexEntry",
    "SupportingChunk",
    "SearchHit",
    "SearchResult",
    "USER_DECLARED",
    "compute_content_hash",
    "content_checksum",
    "generate_source_id",
    "slugify",
    "field_label",
    "render_fact_line",
    "render_fallback_narrative",
    "render_profile_text",
    "group_by_namespace",
]
