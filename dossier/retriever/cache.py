"""
Result Cache

LRU + TTL cache for SearchResults keyed by a fingerprint of the query and
the snapshot versions the searcher could see. A profile change yields a
new fingerprint, so stale entries are never hit and simply age out.
"""

import asyncio
import hashlib
import logging
import time
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, Iterable, Mapping, Optional, Tuple

from ..common.schemas import SearchResult

logger = logging.getLogger("dossier.retriever.cache")


class ResultCache:
    """SearchResult cache with TTL expiry, LRU eviction and per-key single-flight"""

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 512,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, SearchResult]]" = OrderedDict()
        self._inflight: Dict[str, asyncio.Task] = {}
        self.stats = {"hits": 0, "misses": 0, "uncached": 0}

    @staticmethod
    def fingerprint(
        normalized_query: str,
        visible_versions: Mapping[str, int],
        incomplete_owners: Iterable[str] = (),
    ) -> str:
        """
        sha256 over the query and every visible owner:version pair.

        Owners whose live index covers only part of their snapshot are
        marked, so completing a partial index also yields a new key.
        """
        incomplete = set(incomplete_owners)
        versions = ",".join(
            f"{owner}:{version}" + ("~partial" if owner in incomplete else "")
            for owner, version in sorted(visible_versions.items())
        )
        return hashlib.sha256(f"{normalized_query}\n{versions}".encode("utf-8")).hexdigest()

    def _is_expired(self, stored_at: float) -> bool:
        return self._clock() - stored_at > self.ttl_seconds

    def get(self, key: str) -> Optional[SearchResult]:
        item = self._entries.get(key)
        if item is None:
            return None
        stored_at, result = item
        if self._is_expired(stored_at):
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return result

    def put(self, key: str, result: SearchResult) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        elif len(self._entries) >= self.max_entries:
            oldest_key = next(iter(self._entries))
            del self._entries[oldest_key]
        self._entries[key] = (self._clock(), result)

    async def get_or_compute(
        self,
        key: str,
        compute_fn: Callable[[], Awaitable[SearchResult]],
    ) -> SearchResult:
        """
        Return the cached result for ``key`` or compute and store it.

        Partial and non-cacheable results are returned but not stored.
        Concurrent misses on the same key share one computation.
        """
        cached = self.get(key)
        if cached is not None:
            self.stats["hits"] += 1
            logger.debug("Cache hit %s", key[:12])
            return cached

        task = self._inflight.get(key)
        if task is None:
            self.stats["misses"] += 1
            task = asyncio.ensure_future(compute_fn())
            self._inflight[key] = task
            try:
                result = await asyncio.shield(task)
            finally:
                self._inflight.pop(key, None)
            if result.partial or not result.cacheable:
                self.stats["uncached"] += 1
            else:
                self.put(key, result)
            return result

        return await asyncio.shield(task)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
