"""
Embedding Indexer

Chunks a snapshot, embeds each chunk independently and swaps the owner's
entries in the vector store once the new set is complete.

A chunk that fails to embed is skipped; the owner is flagged for retry
and picked up again on the next trigger. Only when no chunk at all can be
embedded does reindex() raise IndexingFailed, leaving the old entries live.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Set

from ..common.embedding_service import EmbeddingService
from ..common.errors import IndexingFailed
from ..common.schemas import IndexEntry, ProfileSnapshot
from .chunker import chunk_snapshot
from .vector_store import VectorStore

logger = logging.getLogger("dossier.index.indexer")


@dataclass
class IndexCommit:
    """Outcome of one reindex"""
    owner_id: str
    version: int
    indexed: int = 0
    failed: int = 0
    committed: bool = True  # False → a newer version was already live

    @property
    def total(self) -> int:
        return self.indexed + self.failed

    @property
    def partial(self) -> bool:
        return self.failed > 0


class EmbeddingIndexer:
    """
    Maintains the vector index from profile snapshots.

    Writers are serialised per owner with an asyncio.Lock; different
    owners index in parallel.
    """

    def __init__(
        self,
        embedding_service: EmbeddingService,
        vector_store: VectorStore,
        chunk_size: int = 400,
    ):
        self._embedding = embedding_service
        self._store = vector_store
        self._chunk_size = chunk_size
        self._locks: Dict[str, asyncio.Lock] = {}
        self._retry: Set[str] = set()

    @property
    def vector_store(self) -> VectorStore:
        return self._store

    def needs_retry(self, owner_id: str) -> bool:
        """True while the owner's live entries cover only part of its snapshot"""
        return owner_id in self._retry

    def pending_retries(self) -> List[str]:
        return sorted(self._retry)

    async def reindex(self, snapshot: ProfileSnapshot, force: bool = False) -> IndexCommit:
        """
        Index a snapshot.

        Args:
            snapshot: Snapshot to index
            force: Re-embed even if this version is already fully indexed

        Raises:
            IndexingFailed: no chunk could be embedded
        """
        owner_id = snapshot.owner_id
        lock = self._locks.setdefault(owner_id, asyncio.Lock())

        async with lock:
            live = self._store.owner_index(owner_id)
            if live is not None:
                if live.version > snapshot.version:
                    logger.info("Skipping reindex of %s v%d, v%d is live", owner_id, snapshot.version, live.version)
                    return IndexCommit(owner_id, snapshot.version, committed=False)
                if live.version == snapshot.version and live.complete and not force:
                    return IndexCommit(owner_id, snapshot.version, indexed=len(live.entries))

            chunks = chunk_snapshot(snapshot, self._chunk_size)
            entries: List[IndexEntry] = []
            errors: List[str] = []

            for chunk in chunks:
                try:
                    vector = await asyncio.to_thread(self._embedding.embed_single, chunk.text)
                except Exception as e:
                    errors.append(str(e))
                    logger.warning("Embedding failed for chunk %s: %s", chunk.chunk_id, e)
                    continue
                entries.append(IndexEntry(
                    chunk_id=chunk.chunk_id,
                    owner_id=owner_id,
                    snapshot_version=snapshot.version,
                    snapshot_created_at=snapshot.created_at,
                    embedding_vector=vector,
                    chunk_text=chunk.text,
                    field_names=chunk.field_names,
                ))

            if chunks and not entries:
                self._retry.add(owner_id)
                raise IndexingFailed(owner_id, snapshot.version, errors[0] if errors else "no chunks embedded")

            complete = not errors
            committed = self._store.replace_owner(
                owner_id, snapshot.version, snapshot.created_at, entries, complete=complete,
            )
            if not committed:
                return IndexCommit(owner_id, snapshot.version, committed=False)

            if complete:
                self._retry.discard(owner_id)
                logger.info("Indexed %s v%d (%d chunks)", owner_id, snapshot.version, len(entries))
            else:
                self._retry.add(owner_id)
                logger.warning(
                    "Partially indexed %s v%d: %d/%d chunks, flagged for retry",
                    owner_id, snapshot.version, len(entries), len(chunks),
                )
            return IndexCommit(owner_id, snapshot.version, indexed=len(entries), failed=len(errors))

    async def remove(self, owner_id: str) -> None:
        lock = self._locks.setdefault(owner_id, asyncio.Lock())
        async with lock:
            self._store.remove_owner(owner_id)
            self._retry.discard(owner_id)

    async def rebuild(self, snapshots: List[ProfileSnapshot], force: bool = True) -> List[IndexCommit]:
        """
        Rebuild the index from the given current snapshots.

        Owners that fail are logged and left flagged for retry; the
        rest of the rebuild continues.
        """
        live_owners = set(self._store.committed_versions())
        wanted = {s.owner_id for s in snapshots}
        for owner_id in sorted(live_owners - wanted):
            await self.remove(owner_id)

        async def _one(snapshot: ProfileSnapshot):
            try:
                return await self.reindex(snapshot, force=force)
            except IndexingFailed as e:
                logger.error("Rebuild: %s", e)
                return None

        results = await asyncio.gather(*(_one(s) for s in snapshots))
        commits = [r for r in results if r is not None]
        logger.info("Rebuilt index for %d/%d owners", len(commits), len(snapshots))
        return commits
