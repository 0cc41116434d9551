"""
Profile Schemas

Core principle: a profile is never edited in place. Sources produce raw
documents, raw documents produce provenance-tagged facts, and facts are
folded into immutable, versioned snapshots. The index and every answer
point back at a snapshot version.
"""

import hashlib
import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ============================================================================
# Enums & constants
# ============================================================================

class SourceType(str, Enum):
    """Kinds of document a profile can be built from"""
    RESUME = "resume"
    REPOSITORY = "repository"
    ARTICLE = "article"
    ENDORSEMENT = "endorsement"
    USER_DECLARED = "user-declared"


USER_DECLARED = SourceType.USER_DECLARED.value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def slugify(value: str) -> str:
    """'Distributed Systems' → 'distributed_systems'; used for dotted field names"""
    slug = re.sub(r"[^a-z0-9+#]+", "_", value.strip().lower())
    return slug.strip("_")


def generate_source_id(source_type: SourceType, location: str, content: Optional[str] = None) -> str:
    """Stable source id: type plus a short digest of where the source lives"""
    basis = location or (content or "")
    digest = hashlib.sha1(basis.encode("utf-8")).hexdigest()[:12]
    return f"{source_type.value}:{digest}"


# ============================================================================
# Ingestion
# ============================================================================

class SourceRef(BaseModel):
    """A declared external source for one owner"""
    owner_id: str
    source_type: SourceType
    location: str = Field(default="", description="Path, URL, or github:owner/repo")
    content: Optional[str] = Field(default=None, description="Inline text (endorsements)")
    source_id: str = ""

    @model_validator(mode="after")
    def _default_source_id(self) -> "SourceRef":
        if not self.source_id:
            self.source_id = generate_source_id(self.source_type, self.location, self.content)
        return self


class RawDocument(BaseModel):
    """Bytes fetched from a source. Superseded by newer fetches, never edited."""
    model_config = ConfigDict(frozen=True)

    source_id: str
    owner_id: str
    source_type: SourceType
    fetched_at: datetime = Field(default_factory=_utcnow)
    content_bytes: bytes
    content_type: str
    checksum: str = ""

    @model_validator(mode="before")
    @classmethod
    def _default_checksum(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("checksum") and data.get("content_bytes") is not None:
            data = dict(data)
            data["checksum"] = content_checksum(data["content_bytes"])
        return data


def content_checksum(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


class NormalizedFact(BaseModel):
    """One claim about an owner, tagged with where it came from"""
    model_config = ConfigDict(frozen=True)

    owner_id: str
    field_name: str
    value: str
    provenance: str = Field(..., description="source_id, or 'user-declared'")
    source_type: SourceType
    confidence: float = Field(ge=0.0, le=1.0)
    observed_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_user_declared(self) -> bool:
        return self.provenance == USER_DECLARED

    @property
    def namespace(self) -> str:
        """'skill' for 'skill.rust', the whole name for plain fields"""
        return self.field_name.split(".", 1)[0]

    def claim(self) -> Tuple[str, str, str, str, float]:
        """What is asserted, regardless of when it was observed"""
        return (self.field_name, self.value, self.provenance, self.source_type.value, round(self.confidence, 6))

    def canonical(self) -> Dict[str, Any]:
        """Stable dict used for hashing"""
        return {
            "owner_id": self.owner_id,
            "field_name": self.field_name,
            "value": self.value,
            "provenance": self.provenance,
            "source_type": self.source_type.value,
            "confidence": round(self.confidence, 6),
            "observed_at": self.observed_at.astimezone(timezone.utc).isoformat()
            if self.observed_at.tzinfo else self.observed_at.isoformat(),
        }


def compute_content_hash(facts: List[NormalizedFact]) -> str:
    """sha256 over the sorted fact set; order of input does not matter"""
    canonical = sorted(
        json.dumps(f.canonical(), sort_keys=True, ensure_ascii=False) for f in facts
    )
    return hashlib.sha256("\n".join(canonical).encode("utf-8")).hexdigest()


# ============================================================================
# Synthesis
# ============================================================================

class AuditEntry(BaseModel):
    """Resolution record for one field: the winner and every fact it beat"""
    model_config = ConfigDict(frozen=True)

    field_name: str
    chosen: NormalizedFact
    rejected: List[NormalizedFact] = Field(default_factory=list)


class ProfileSnapshot(BaseModel):
    """
    One immutable version of an owner's profile.

    content_hash is derived from the facts used, so two syntheses over the
    same fact set are recognisably the same.
    """
    model_config = ConfigDict(frozen=True)

    owner_id: str
    version: int = Field(ge=1)
    narrative_text: str = ""
    narrative_degraded: bool = False
    structured_facts: Dict[str, NormalizedFact] = Field(default_factory=dict)
    audit_trail: List[AuditEntry] = Field(default_factory=list)
    content_hash: str
    created_at: datetime = Field(default_factory=_utcnow)
    rolled_back_from: Optional[int] = None

    def fact_value(self, field_name: str) -> Optional[str]:
        fact = self.structured_facts.get(field_name)
        return fact.value if fact else None

    def facts_in(self, namespace: str) -> List[NormalizedFact]:
        """Resolved facts whose field name is ``namespace`` or ``namespace.*``"""
        return [
            f for name, f in sorted(self.structured_facts.items())
            if name == namespace or name.startswith(namespace + ".")
        ]

    def rejected_values(self, field_name: str) -> List[str]:
        for entry in self.audit_trail:
            if entry.field_name == field_name:
                return [f.value for f in entry.rejected]
        return []

    @property
    def all_facts(self) -> List[NormalizedFact]:
        """Every fact the snapshot was built from, winners and losers"""
        facts = list(self.structured_facts.values())
        for entry in self.audit_trail:
            facts.extend(entry.rejected)
        return facts


# ============================================================================
# Index & search
# ============================================================================

class IndexEntry(BaseModel):
    """One embedded chunk of a snapshot"""
    model_config = ConfigDict(frozen=True)

    chunk_id: str
    owner_id: str
    snapshot_version: int
    snapshot_created_at: datetime
    embedding_vector: List[float]
    chunk_text: str
    field_names: List[str] = Field(default_factory=list)


class SupportingChunk(BaseModel):
    """A chunk cited as evidence for a hit"""
    chunk_id: str
    text: str
    similarity: float


class SearchHit(BaseModel):
    """One ranked profile in a search result"""
    owner_id: str
    score: float
    cited_snapshot_version: int
    supporting_chunks: List[SupportingChunk] = Field(default_factory=list)
    answer_fragment: str = ""
    snapshot_created_at: Optional[datetime] = None


class SearchResult(BaseModel):
    """Ranked hits plus how the answer was produced"""
    query: str
    hits: List[SearchHit] = Field(default_factory=list)
    synthesized: bool = False
    partial: bool = False
    cacheable: bool = Field(default=True, description="False when answer generation failed and a retry may do better")
    warnings: List[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.hits

    def to_public(self) -> List[Dict[str, Any]]:
        """Stable shape handed to callers outside the core"""
        return [
            {
                "owner_id": hit.owner_id,
                "score": round(hit.score, 4),
                "answer_fragment": hit.answer_fragment,
                "citations": [
                    {
                        "chunk_id": chunk.chunk_id,
                        "snapshot_version": hit.cited_snapshot_version,
                        "text": chunk.text,
                    }
                    for chunk in hit.supporting_chunks
                ],
            }
            for hit in self.hits
        ]
