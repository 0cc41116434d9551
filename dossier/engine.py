"""
Profile Engine

The two boundaries of the core:
- Ingestion: add_source / refresh_source / remove_source / edit_fact
  fetch → normalize → fact store → synthesize → index
- Query: search → parse → retrieve + rank → cited answer, behind the cache

Indexing is driven by ProfileChanged events from the synthesizer. An
owner whose last indexing was partial is reindexed on its next trigger.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .common.config import DossierConfig, load_config
from .common.embedding_service import EmbeddingService, get_embedding_service
from .common.errors import (
    IndexingFailed,
    QueryTimeout,
    SourcePermanentFailure,
    SourceUnavailable,
    SynthesisFailed,
)
from .common.llm_client import LLMClient, create_llm_client
from .common.schemas import (
    USER_DECLARED,
    NormalizedFact,
    ProfileSnapshot,
    SearchResult,
    SourceRef,
    SourceType,
)
from .index import EmbeddingIndexer, IndexCommit, VectorStore
from .ingest import Normalizer, SourceConnector, SourceStatus
from .retriever import AnswerSynthesizer, QueryProcessor, ResultCache, Searcher
from .synthesis import FactStore, ProfileChanged, ProfileSynthesizer, SnapshotStore

logger = logging.getLogger("dossier.engine")


@dataclass
class IngestReport:
    """What happened to one source on add or refresh"""
    owner_id: str
    source_id: str
    status: str = "ok"  # ok, unchanged, unavailable, failed, empty
    changed: bool = False
    facts: int = 0
    diagnostics: List[str] = field(default_factory=list)
    snapshot_version: Optional[int] = None
    indexed_chunks: int = 0
    index_partial: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "source_id": self.source_id,
            "status": self.status,
            "changed": self.changed,
            "facts": self.facts,
            "diagnostics": list(self.diagnostics),
            "snapshot_version": self.snapshot_version,
            "indexed_chunks": self.indexed_chunks,
            "index_partial": self.index_partial,
            "error": self.error,
        }


class ProfileEngine:
    """
    Profile aggregation and retrieval engine.

    Every collaborator can be injected; anything omitted is built from
    the configuration.
    """

    def __init__(
        self,
        config: Optional[DossierConfig] = None,
        *,
        connector: Optional[SourceConnector] = None,
        normalizer: Optional[Normalizer] = None,
        embedding_service: Optional[EmbeddingService] = None,
        llm_client: Optional[LLMClient] = None,
        fact_store: Optional[FactStore] = None,
        snapshot_store: Optional[SnapshotStore] = None,
        vector_store: Optional[VectorStore] = None,
        cache: Optional[ResultCache] = None,
    ):
        self.config = config or load_config()
        cfg = self.config

        if llm_client is None:
            llm_client = create_llm_client(cfg.llm)
        if embedding_service is None:
            embedding_service = get_embedding_service(cfg.embedding.mode, cfg.embedding.model)

        self.connector = connector if connector is not None else SourceConnector.from_config(cfg.sources)
        self.normalizer = normalizer if normalizer is not None else Normalizer(cfg.sources.trust_weights)
        self.facts = fact_store if fact_store is not None else FactStore()
        self.snapshots = snapshot_store if snapshot_store is not None else SnapshotStore(cfg.synthesis.data_dir or None)
        self.vectors = vector_store if vector_store is not None else VectorStore()

        self.synthesizer = ProfileSynthesizer(
            self.facts,
            self.snapshots,
            llm_client=llm_client,
            trust_weights=cfg.sources.trust_weights,
            narrative_timeout=cfg.synthesis.narrative_timeout,
            narrative_max_tokens=cfg.synthesis.narrative_max_tokens,
            narrative_max_chars=cfg.synthesis.narrative_max_chars,
        )
        self.indexer = EmbeddingIndexer(embedding_service, self.vectors, chunk_size=cfg.index.chunk_size)
        self.query_processor = QueryProcessor(llm_client=llm_client if cfg.retriever.llm_rewrite else None)
        self.searcher = Searcher(
            embedding_service,
            self.vectors,
            self.snapshots.get,
            topk=cfg.retriever.topk,
            semantic_weight=cfg.retriever.semantic_weight,
            structured_weight=cfg.retriever.structured_weight,
        )
        self.answers = AnswerSynthesizer(llm_client, max_tokens=cfg.retriever.answer_max_tokens)
        self.cache = cache if cache is not None else ResultCache(cfg.cache.ttl_seconds, cfg.cache.max_entries)

        self._sources: Dict[Tuple[str, str], SourceRef] = {}
        self._last_commit: Dict[str, IndexCommit] = {}
        # owner_id -> (reindex attempts so far, version of the latest attempt)
        self._index_attempts: Dict[str, Tuple[int, int]] = {}
        self.synthesizer.subscribe(self._on_profile_changed)

        # Facts are not persisted on their own; a reloaded snapshot carries them
        for snapshot in self.snapshots.current_snapshots():
            self.facts.restore(snapshot.owner_id, snapshot.all_facts)

    async def start(self) -> None:
        """Build the index for snapshots loaded from disk"""
        if self.snapshots.owners():
            await self.rebuild_index()

    async def close(self) -> None:
        await self.connector.aclose()

    # ------------------------------------------------------------------
    # Ingestion boundary
    # ------------------------------------------------------------------

    async def add_source(self, owner_id: str, source_ref: Union[SourceRef, Mapping[str, Any]]) -> IngestReport:
        """
        Register a source for an owner and run it through the pipeline.

        Args:
            owner_id: Profile owner
            source_ref: SourceRef, or a dict with source_type/location/content

        Returns:
            IngestReport (fetch and synthesis failures are reported, not raised)
        """
        if isinstance(source_ref, SourceRef):
            ref = source_ref
            if ref.owner_id != owner_id:
                raise ValueError(f"source belongs to {ref.owner_id!r}, not {owner_id!r}")
        else:
            ref = SourceRef(owner_id=owner_id, **dict(source_ref))
        if ref.source_type == SourceType.USER_DECLARED:
            raise ValueError("user-declared facts are added with edit_fact()")

        self._sources[(owner_id, ref.source_id)] = ref
        logger.info("Added source %s (%s) for %s", ref.source_id, ref.source_type.value, owner_id)
        return await self._ingest(ref)

    async def refresh_source(self, owner_id: str, source_id: str) -> IngestReport:
        """Re-fetch a known source; unchanged content is a no-op"""
        ref = self._sources.get((owner_id, source_id))
        if ref is None:
            raise KeyError(f"unknown source {source_id!r} for {owner_id!r}")
        return await self._ingest(ref)

    async def remove_source(self, owner_id: str, source_id: str) -> Optional[ProfileSnapshot]:
        """Retract a source's facts and re-synthesize"""
        self._sources.pop((owner_id, source_id), None)
        self.connector.forget(owner_id, source_id)
        if not self.facts.remove_source(owner_id, source_id):
            return self.snapshots.current(owner_id)

        attempts = self._attempt_count(owner_id)
        self.synthesizer.mark_stale(owner_id)
        snapshot = await self.synthesizer.synthesize(owner_id)
        await self._ensure_indexed(snapshot, attempts)
        logger.info("Removed source %s from %s (now v%d)", source_id, owner_id, snapshot.version)
        return snapshot

    async def edit_fact(self, owner_id: str, field_name: str, value: str) -> ProfileSnapshot:
        """
        Declare a fact as the owner. It wins every conflict for its field.

        Raises:
            ValueError: empty field name or value
            SynthesisFailed: the snapshot could not be committed
        """
        field_name = (field_name or "").strip()
        value = (value or "").strip()
        if not field_name or not value:
            raise ValueError("field_name and value are required")

        fact = NormalizedFact(
            owner_id=owner_id,
            field_name=field_name,
            value=value,
            provenance=USER_DECLARED,
            source_type=SourceType.USER_DECLARED,
            confidence=1.0,
        )
        attempts = self._attempt_count(owner_id)
        if self.facts.declare(fact):
            self.synthesizer.mark_stale(owner_id)
        snapshot = await self.synthesizer.synthesize(owner_id)
        await self._ensure_indexed(snapshot, attempts)
        return snapshot

    async def _ingest(self, ref: SourceRef) -> IngestReport:
        owner_id = ref.owner_id
        report = IngestReport(owner_id=owner_id, source_id=ref.source_id)

        try:
            fetched = await self.connector.fetch(ref)
        except SourcePermanentFailure as e:
            report.status, report.error = "failed", e.reason
            logger.warning("Keeping last known facts of %s for %s: %s", ref.source_id, owner_id, e.reason)
            return self._with_current(report)
        except SourceUnavailable as e:
            report.status, report.error = "unavailable", e.reason
            return self._with_current(report)

        report.changed = fetched.changed
        current = self.snapshots.current(owner_id)
        if not fetched.changed and current is not None and not self.indexer.needs_retry(owner_id):
            report.status = "unchanged"
            return self._with_current(report)

        result = await asyncio.to_thread(self.normalizer.normalize, fetched.document)
        report.diagnostics = list(result.diagnostics)
        report.facts = len(result.facts)

        attempts = self._attempt_count(owner_id)
        previous = [f for f in self.facts.facts_for(owner_id) if f.provenance == ref.source_id]
        if result.is_empty and previous:
            report.status = "empty"
            report.diagnostics.append(f"{ref.source_id}: kept {len(previous)} facts from the previous fetch")
        elif self.facts.replace_source(owner_id, ref.source_id, result.facts):
            self.synthesizer.mark_stale(owner_id)

        try:
            snapshot = await self.synthesizer.synthesize(owner_id)
        except SynthesisFailed as e:
            report.status, report.error = "failed", e.reason
            return report

        await self._ensure_indexed(snapshot, attempts)
        return self._with_current(report)

    def _with_current(self, report: IngestReport) -> IngestReport:
        current = self.snapshots.current(report.owner_id)
        if current is not None:
            report.snapshot_version = current.version
        owner_index = self.vectors.owner_index(report.owner_id)
        if owner_index is not None:
            report.indexed_chunks = len(owner_index.entries)
        report.index_partial = self.indexer.needs_retry(report.owner_id)
        return report

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    async def _on_profile_changed(self, event: ProfileChanged) -> None:
        snapshot = self.snapshots.get(event.owner_id, event.version)
        if snapshot is not None:
            await self._reindex(snapshot)

    def _attempt_count(self, owner_id: str) -> int:
        return self._index_attempts.get(owner_id, (0, 0))[0]

    async def _ensure_indexed(self, snapshot: ProfileSnapshot, attempts_before: Optional[int] = None) -> None:
        """
        Index the snapshot unless it is already fully live.

        ``attempts_before`` is the attempt count taken before the caller
        synthesized; if the ProfileChanged listener has since tried this
        version, a partial outcome waits for the next trigger.
        """
        count, attempted_version = self._index_attempts.get(snapshot.owner_id, (0, 0))
        if attempts_before is not None and count > attempts_before and attempted_version >= snapshot.version:
            return
        live = self.vectors.owner_index(snapshot.owner_id)
        if live is not None and live.version >= snapshot.version and not self.indexer.needs_retry(snapshot.owner_id):
            return
        await self._reindex(snapshot)

    async def _reindex(self, snapshot: ProfileSnapshot) -> None:
        owner_id = snapshot.owner_id
        self._index_attempts[owner_id] = (self._attempt_count(owner_id) + 1, snapshot.version)
        try:
            self._last_commit[snapshot.owner_id] = await self.indexer.reindex(snapshot)
        except IndexingFailed as e:
            # Previous entries stay searchable; retried on the next trigger
            logger.warning("%s", e)

    async def rebuild_index(self) -> List[IndexCommit]:
        """Rebuild every owner's entries from the current snapshots"""
        return await self.indexer.rebuild(self.snapshots.current_snapshots())

    # ------------------------------------------------------------------
    # Query boundary
    # ------------------------------------------------------------------

    async def search(
        self,
        query_text: str,
        caller_id: str,
        timeout: Optional[float] = None,
        filters: Optional[Dict[str, str]] = None,
    ) -> SearchResult:
        """
        Answer a natural-language query over all current profiles.

        Args:
            query_text: The question
            caller_id: Owner id of the caller (recorded, not used for ranking)
            timeout: Budget in seconds (defaults to retriever.query_timeout)
            filters: Structured filters, e.g. {"location": "berlin"}

        Raises:
            RetrievalUnavailable: embedding backend or index failed
            QueryTimeout: retrieval did not finish within the budget
        """
        budget = timeout if timeout is not None else self.config.retriever.query_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + budget

        def remaining() -> float:
            return max(0.0, deadline - loop.time())

        parsed = self.query_processor.parse(query_text, filters)
        if self.config.retriever.llm_rewrite:
            try:
                parsed = await asyncio.wait_for(self.query_processor.rewrite(parsed), timeout=remaining())
            except asyncio.TimeoutError:
                logger.warning("Query rewrite ran out of time, continuing with the parsed query")

        key = self.cache.fingerprint(
            parsed.normalized, self.vectors.committed_versions(), self.vectors.incomplete_owners(),
        )

        async def compute() -> SearchResult:
            try:
                hits = await asyncio.wait_for(self.searcher.search(parsed), timeout=remaining())
            except asyncio.TimeoutError:
                raise QueryTimeout("retrieval", budget) from None
            answer_budget = min(self.config.retriever.answer_timeout, remaining())
            return await self.answers.synthesize(parsed.cleaned, hits, timeout=answer_budget)

        result = await self.cache.get_or_compute(key, compute)
        logger.info(
            "Search by %s: %r → %d hits%s",
            caller_id, parsed.cleaned, len(result.hits),
            " (partial)" if result.partial else "",
        )
        return result

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def get_profile(self, owner_id: str) -> Optional[ProfileSnapshot]:
        return self.snapshots.current(owner_id)

    def history(self, owner_id: str) -> List[ProfileSnapshot]:
        return self.synthesizer.history(owner_id)

    async def rollback(self, owner_id: str, version: int) -> ProfileSnapshot:
        attempts = self._attempt_count(owner_id)
        snapshot = await self.synthesizer.rollback(owner_id, version)
        await self._ensure_indexed(snapshot, attempts)
        return snapshot

    def list_sources(self, owner_id: str) -> List[SourceRef]:
        return [ref for (owner, _), ref in sorted(self._sources.items()) if owner == owner_id]

    def source_status(self, owner_id: str, source_id: str) -> Optional[SourceStatus]:
        return self.connector.source_status(owner_id, source_id)

    def last_index_commit(self, owner_id: str) -> Optional[IndexCommit]:
        return self._last_commit.get(owner_id)
