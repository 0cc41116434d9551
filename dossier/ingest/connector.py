"""
Source Connector

Fetches raw documents from declared sources.

Rules:
- A fetch whose content checksum matches the last fetch creates nothing new
- Transient failures are retried with exponential backoff, bounded attempts
- Permanent failures are reported once and never retried
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional, Tuple

import httpx

from ..common.config import SourceConfig
from ..common.errors import SourcePermanentFailure, SourceUnavailable
from ..common.schemas import RawDocument, SourceRef, SourceType, content_checksum
from .handlers import (
    ArticleHandler,
    BaseHandler,
    EndorsementHandler,
    RepositoryHandler,
    ResumeHandler,
)

logger = logging.getLogger("dossier.ingest.connector")

SourceKey = Tuple[str, str]  # (owner_id, source_id)


@dataclass
class FetchResult:
    """Outcome of one fetch"""
    document: RawDocument
    changed: bool  # False → same checksum as the previous fetch
    attempts: int = 1


@dataclass
class SourceStatus:
    """Last known state of a source"""
    owner_id: str
    source_id: str
    source_type: SourceType
    state: str = "pending"  # pending, ok, unavailable, failed
    last_error: Optional[str] = None
    last_checksum: Optional[str] = None
    last_success_at: Optional[datetime] = None

    @property
    def is_failed(self) -> bool:
        return self.state == "failed"


class SourceConnector:
    """
    Fetches RawDocuments through source-type specific handlers.

    Pipeline per fetch:
    1. Pick the handler for the source type
    2. Call it, retrying SourceUnavailable with exponential backoff
    3. Compare the content checksum with the previous fetch
    4. Create a new RawDocument only if the content changed
    """

    def __init__(
        self,
        handlers: Optional[Dict[SourceType, BaseHandler]] = None,
        client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        http_timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize connector.

        Args:
            handlers: Handler per source type (defaults to all built-in handlers)
            client: Shared HTTP client (created lazily if omitted)
            max_attempts: Total attempts for transient failures
            base_delay: First backoff delay in seconds, doubled per attempt
            max_delay: Upper bound for a single backoff delay
            http_timeout: Timeout for the lazily created client
            sleep: Awaitable sleep, replaceable in tests
        """
        self._handlers = handlers if handlers is not None else {
            SourceType.RESUME: ResumeHandler(),
            SourceType.REPOSITORY: RepositoryHandler(),
            SourceType.ARTICLE: ArticleHandler(),
            SourceType.ENDORSEMENT: EndorsementHandler(),
        }
        self._client = client
        self._owns_client = client is None
        self._max_attempts = max(1, max_attempts)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._http_timeout = http_timeout
        self._sleep = sleep

        self._latest: Dict[SourceKey, RawDocument] = {}
        self._status: Dict[SourceKey, SourceStatus] = {}
        self._locks: Dict[SourceKey, asyncio.Lock] = {}

    @classmethod
    def from_config(cls, config: SourceConfig, client: Optional[httpx.AsyncClient] = None) -> "SourceConnector":
        handlers = {
            SourceType.RESUME: ResumeHandler(),
            SourceType.REPOSITORY: RepositoryHandler(api_url=config.github_api_url, token=config.github_token),
            SourceType.ARTICLE: ArticleHandler(),
            SourceType.ENDORSEMENT: EndorsementHandler(),
        }
        return cls(
            handlers=handlers,
            client=client,
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            http_timeout=config.http_timeout,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._http_timeout),
                headers={"User-Agent": "dossier/0.1"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)"""
        return min(self._max_delay, self._base_delay * (2 ** attempt))

    async def fetch(self, ref: SourceRef) -> FetchResult:
        """
        Fetch a source.

        Args:
            ref: Source reference

        Returns:
            FetchResult; ``changed`` is False when the content is identical
            to the previous fetch, in which case ``document`` is that
            previous RawDocument

        Raises:
            SourceUnavailable: transient failures exhausted all attempts
            SourcePermanentFailure: the source cannot be fetched at all
        """
        handler = self._handlers.get(ref.source_type)
        key = (ref.owner_id, ref.source_id)
        status = self._status.setdefault(
            key, SourceStatus(owner_id=ref.owner_id, source_id=ref.source_id, source_type=ref.source_type)
        )
        if handler is None:
            status.state = "failed"
            status.last_error = f"no handler for {ref.source_type.value}"
            raise SourcePermanentFailure(ref.source_id, status.last_error)

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            content, content_type, attempts = await self._fetch_with_retry(handler, ref, status)

            checksum = content_checksum(content)
            previous = self._latest.get(key)
            status.state = "ok"
            status.last_error = None
            status.last_success_at = datetime.now(timezone.utc)

            if previous is not None and previous.checksum == checksum:
                logger.info("Source %s unchanged (checksum %s)", ref.source_id, checksum[:12])
                return FetchResult(document=previous, changed=False, attempts=attempts)

            document = RawDocument(
                source_id=ref.source_id,
                owner_id=ref.owner_id,
                source_type=ref.source_type,
                content_bytes=content,
                content_type=content_type,
                checksum=checksum,
            )
            self._latest[key] = document
            status.last_checksum = checksum
            logger.info(
                "Fetched %s for %s (%d bytes, %s)",
                ref.source_id, ref.owner_id, len(content), content_type,
            )
            return FetchResult(document=document, changed=True, attempts=attempts)

    async def _fetch_with_retry(
        self,
        handler: BaseHandler,
        ref: SourceRef,
        status: SourceStatus,
    ) -> Tuple[bytes, str, int]:
        client = self._get_client()
        last_error: Optional[SourceUnavailable] = None

        for attempt in range(self._max_attempts):
            try:
                content, content_type = await handler.fetch_remote(ref, client)
                return content, content_type, attempt + 1
            except SourcePermanentFailure as e:
                status.state = "failed"
                status.last_error = e.reason
                logger.error("Source %s failed permanently: %s", ref.source_id, e.reason)
                raise
            except SourceUnavailable as e:
                last_error = e
                if attempt == self._max_attempts - 1:
                    break
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Source %s unavailable (%s), retrying in %.1fs (attempt %d/%d)",
                    ref.source_id, e.reason, delay, attempt + 1, self._max_attempts,
                )
                await self._sleep(delay)

        status.state = "unavailable"
        status.last_error = last_error.reason if last_error else "unknown"
        raise SourceUnavailable(ref.source_id, status.last_error, attempts=self._max_attempts)

    def latest(self, owner_id: str, source_id: str) -> Optional[RawDocument]:
        """Most recent RawDocument fetched for a source"""
        return self._latest.get((owner_id, source_id))

    def source_status(self, owner_id: str, source_id: str) -> Optional[SourceStatus]:
        return self._status.get((owner_id, source_id))

    def forget(self, owner_id: str, source_id: str) -> None:
        """Drop all state for a removed source"""
        key = (owner_id, source_id)
        self._latest.pop(key, None)
        self._status.pop(key, None)
        self._locks.pop(key, None)
