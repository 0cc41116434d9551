"""
In-process Vector Store

Holds the IndexEntries of every owner, one snapshot version per owner.

Swap-after-write: a writer builds the owner's complete new entry set
first and publishes it by replacing the owner map in one assignment.
Readers take a reference to the map and never see a half-written owner.
Similarity is cosine over L2-normalized vectors.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from ..common.embedding_service import cosine_scores, normalize_rows
from ..common.schemas import IndexEntry

logger = logging.getLogger("dossier.index.vector_store")


@dataclass(frozen=True)
class OwnerIndex:
    """All entries of one owner for one snapshot version"""
    owner_id: str
    version: int
    created_at: datetime
    entries: Tuple[IndexEntry, ...]
    matrix: np.ndarray
    complete: bool = True


class VectorStore:
    """Per-owner immutable entry sets behind a copy-on-write map"""

    def __init__(self):
        self._owners: Dict[str, OwnerIndex] = {}

    def replace_owner(
        self,
        owner_id: str,
        version: int,
        created_at: datetime,
        entries: Sequence[IndexEntry],
        complete: bool = True,
    ) -> bool:
        """
        Publish a new entry set for an owner.

        Returns:
            False if a newer version is already live (nothing changed)
        """
        live = self._owners.get(owner_id)
        if live is not None and live.version > version:
            logger.info("Discarding index for %s v%d, v%d already live", owner_id, version, live.version)
            return False

        if entries:
            matrix = normalize_rows(np.asarray([e.embedding_vector for e in entries], dtype=np.float32))
        else:
            matrix = np.zeros((0, 0), dtype=np.float32)
        owner_index = OwnerIndex(
            owner_id=owner_id,
            version=version,
            created_at=created_at,
            entries=tuple(entries),
            matrix=matrix,
            complete=complete,
        )

        owners = dict(self._owners)
        owners[owner_id] = owner_index
        self._owners = owners
        return True

    def remove_owner(self, owner_id: str) -> bool:
        if owner_id not in self._owners:
            return False
        owners = dict(self._owners)
        del owners[owner_id]
        self._owners = owners
        return True

    def clear(self) -> None:
        self._owners = {}

    def owner_index(self, owner_id: str) -> Optional[OwnerIndex]:
        return self._owners.get(owner_id)

    def committed_versions(self) -> Dict[str, int]:
        """owner_id → snapshot version currently searchable"""
        return {owner_id: idx.version for owner_id, idx in self._owners.items()}

    def incomplete_owners(self) -> List[str]:
        """Owners whose live entries cover only part of their snapshot"""
        return sorted(owner_id for owner_id, idx in self._owners.items() if not idx.complete)

    def search(
        self,
        query_vec: List[float],
        topk: int = 10,
        owner_ids: Optional[Iterable[str]] = None,
    ) -> List[Tuple[IndexEntry, float]]:
        """
        Top-k entries by cosine similarity.

        Args:
            query_vec: Query embedding
            topk: Number of entries to return
            owner_ids: Restrict the search to these owners

        Returns:
            [(entry, similarity)] sorted by similarity descending

        Raises:
            ValueError: query dimension does not match the stored vectors
        """
        owners = self._owners
        allowed = set(owner_ids) if owner_ids is not None else None

        scored: List[Tuple[IndexEntry, float]] = []
        for owner_id in sorted(owners):
            if allowed is not None and owner_id not in allowed:
                continue
            owner_index = owners[owner_id]
            if not owner_index.entries:
                continue
            scores = cosine_scores(query_vec, owner_index.matrix)
            scored.extend(zip(owner_index.entries, (float(s) for s in scores)))

        scored.sort(key=lambda pair: (-pair[1], pair[0].chunk_id))
        return scored[:topk]

    def __len__(self) -> int:
        return sum(len(idx.entries) for idx in self._owners.values())
