"""
Searcher

Semantic retrieval over the vector store plus structured re-ranking.

score = semantic_weight × best_similarity
      + structured_weight × (1 − 0.5 ** exact_matches)

exact_matches counts resolved facts whose value equals a query phrase or
one of its synonyms. Ties go to the more recent snapshot, then owner_id.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..common.embedding_service import EmbeddingService
from ..common.errors import RetrievalUnavailable
from ..common.schemas import IndexEntry, ProfileSnapshot, SearchHit, SupportingChunk
from ..index.vector_store import VectorStore
from .query_processor import ParsedQuery

logger = logging.getLogger("dossier.retriever.searcher")

SnapshotLookup = Callable[[str, int], Optional[ProfileSnapshot]]


@dataclass
class Candidate:
    """One owner with the chunks that matched the query"""
    owner_id: str
    snapshot_version: int
    snapshot_created_at: datetime
    best_similarity: float = 0.0
    chunks: List[Tuple[IndexEntry, float]] = field(default_factory=list)
    matched_fields: List[str] = field(default_factory=list)


class Searcher:
    """
    Retrieves and ranks profiles.

    Pipeline:
    1. Embed every query expansion
    2. Top-K chunk search per expansion, merged by best similarity
    3. Add owners whose resolved facts exactly match a query phrase
    4. Apply structured filters, rank
    """

    def __init__(
        self,
        embedding_service: EmbeddingService,
        vector_store: VectorStore,
        snapshot_lookup: SnapshotLookup,
        topk: int = 10,
        semantic_weight: float = 0.7,
        structured_weight: float = 0.3,
        chunks_per_owner: int = 3,
    ):
        """
        Initialize searcher.

        Args:
            embedding_service: Embeds query text
            vector_store: Committed index entries
            snapshot_lookup: (owner_id, version) → snapshot, for structured matching
            topk: Chunks retrieved per expansion and profiles returned
            semantic_weight: Weight of the best chunk similarity
            structured_weight: Weight of the exact fact match boost
            chunks_per_owner: Supporting chunks kept per profile
        """
        self._embedding = embedding_service
        self._store = vector_store
        self._lookup = snapshot_lookup
        self._topk = topk
        self._semantic_weight = semantic_weight
        self._structured_weight = structured_weight
        self._chunks_per_owner = chunks_per_owner

    async def search(self, parsed: ParsedQuery) -> List[SearchHit]:
        candidates = await self.retrieve(parsed)
        return self.rank(candidates)

    async def retrieve(self, parsed: ParsedQuery) -> List[Candidate]:
        """
        Find candidate owners.

        Raises:
            RetrievalUnavailable: embedding backend or vector store failed
        """
        if not self._embedding.is_available:
            raise RetrievalUnavailable("embedding service is not available")

        queries = parsed.expanded_queries or [parsed.cleaned]
        try:
            vectors = await asyncio.to_thread(self._embedding.embed, queries)
        except Exception as e:
            raise RetrievalUnavailable(f"query embedding failed: {e}") from e
        if not vectors:
            raise RetrievalUnavailable("query embedding returned no vectors")

        # No awaits from here on: all reads see one state of the store
        versions = self._store.committed_versions()
        allowed = self._apply_filters(versions, parsed.filters)
        if not allowed:
            return []

        try:
            best: Dict[str, Tuple[IndexEntry, float]] = {}
            for vector in vectors:
                for entry, similarity in self._store.search(vector, self._topk, owner_ids=allowed):
                    current = best.get(entry.chunk_id)
                    if current is None or similarity > current[1]:
                        best[entry.chunk_id] = (entry, similarity)

            owners: Set[str] = {entry.owner_id for entry, _ in best.values()}
            matches = {owner_id: self._matched_fields(owner_id, versions[owner_id], parsed) for owner_id in allowed}
            owners.update(owner_id for owner_id, fields in matches.items() if fields)

            candidates = []
            for owner_id in sorted(owners):
                candidates.append(self._candidate(owner_id, vectors, matches.get(owner_id, [])))
        except ValueError as e:
            raise RetrievalUnavailable(f"vector search failed: {e}") from e

        logger.debug("Retrieved %d candidates for %r", len(candidates), parsed.cleaned)
        return [c for c in candidates if c.chunks]

    def _apply_filters(self, versions: Dict[str, int], filters: Dict[str, str]) -> Set[str]:
        allowed = set(versions)
        if not filters:
            return allowed

        kept = set()
        for owner_id in allowed:
            snapshot = self._lookup(owner_id, versions[owner_id])
            if snapshot is not None and self._passes(snapshot, filters):
                kept.add(owner_id)
        return kept

    @staticmethod
    def _passes(snapshot: ProfileSnapshot, filters: Dict[str, str]) -> bool:
        location = filters.get("location")
        if location:
            value = (snapshot.fact_value("location") or "").lower()
            if location.lower() not in value:
                return False
        skill = filters.get("skill")
        if skill:
            values = {f.value.lower() for f in snapshot.facts_in("skill")}
            if skill.lower() not in values:
                return False
        return True

    def _matched_fields(self, owner_id: str, version: int, parsed: ParsedQuery) -> List[str]:
        snapshot = self._lookup(owner_id, version)
        if snapshot is None:
            return []
        terms = set(parsed.match_terms)
        return [
            name for name, fact in sorted(snapshot.structured_facts.items())
            if fact.value.strip().lower() in terms
        ]

    def _candidate(self, owner_id: str, vectors: List[List[float]], matched_fields: List[str]) -> Candidate:
        """Score all of one owner's chunks; keep the best plus any carrying a matched fact"""
        owner_index = self._store.owner_index(owner_id)
        scored: Dict[str, Tuple[IndexEntry, float]] = {}
        for vector in vectors:
            for entry, similarity in self._store.search(vector, len(owner_index.entries), owner_ids=[owner_id]):
                current = scored.get(entry.chunk_id)
                if current is None or similarity > current[1]:
                    scored[entry.chunk_id] = (entry, similarity)

        ordered = sorted(scored.values(), key=lambda pair: (-pair[1], pair[0].chunk_id))
        chunks = ordered[:self._chunks_per_owner]
        for field_name in matched_fields:
            if any(field_name in entry.field_names for entry, _ in chunks):
                continue
            for pair in ordered:
                if field_name in pair[0].field_names:
                    chunks.append(pair)
                    break

        return Candidate(
            owner_id=owner_id,
            snapshot_version=owner_index.version,
            snapshot_created_at=owner_index.created_at,
            best_similarity=ordered[0][1] if ordered else 0.0,
            chunks=chunks,
            matched_fields=matched_fields,
        )

    def score(self, candidate: Candidate) -> float:
        boost = 1.0 - 0.5 ** len(candidate.matched_fields)
        return self._semantic_weight * max(candidate.best_similarity, 0.0) + self._structured_weight * boost

    def rank(self, candidates: List[Candidate]) -> List[SearchHit]:
        """Order candidates by score, then snapshot recency, then owner_id"""
        scored = [(self.score(c), c) for c in candidates]
        scored.sort(key=lambda pair: (
            -round(pair[0], 9),
            -pair[1].snapshot_created_at.timestamp(),
            pair[1].owner_id,
        ))

        hits = []
        for score, candidate in scored[:self._topk]:
            hits.append(SearchHit(
                owner_id=candidate.owner_id,
                score=score,
                cited_snapshot_version=candidate.snapshot_version,
                supporting_chunks=[
                    SupportingChunk(chunk_id=entry.chunk_id, text=entry.chunk_text, similarity=round(similarity, 6))
                    for entry, similarity in candidate.chunks
                ],
                snapshot_created_at=candidate.snapshot_created_at,
            ))
        return hits
