"""
Base Handler

Abstract base class for source-type specific fetchers.
Each handler turns a SourceRef into raw bytes plus a content type; the
connector owns retries, checksums and document lifecycle.
"""

from abc import ABC, abstractmethod
from typing import Optional, Tuple

import httpx

from ...common.errors import SourcePermanentFailure, SourceUnavailable
from ...common.schemas import SourceRef, SourceType

# Statuses worth retrying; everything else in 4xx is permanent
TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}

CONTENT_TYPES_BY_EXTENSION = {
    ".json": "application/json",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".txt": "text/plain",
    ".html": "text/html",
    ".htm": "text/html",
}


class BaseHandler(ABC):
    """
    Abstract base class for source handlers.

    Each handler must implement:
    - fetch_remote: Read the current content of a source

    Errors must be raised as SourceUnavailable (transient) or
    SourcePermanentFailure (do not retry).
    """

    def __init__(self, source_type: SourceType):
        """
        Initialize handler.

        Args:
            source_type: The source type this handler serves
        """
        self.source_type = source_type

    @abstractmethod
    async def fetch_remote(
        self,
        ref: SourceRef,
        client: httpx.AsyncClient,
    ) -> Tuple[bytes, str]:
        """
        Fetch the current content of a source.

        Args:
            ref: Source reference
            client: Shared HTTP client

        Returns:
            (content bytes, content type)
        """
        pass

    async def _http_get(
        self,
        ref: SourceRef,
        client: httpx.AsyncClient,
        url: str,
        headers: Optional[dict] = None,
    ) -> httpx.Response:
        """GET with status codes mapped onto the error taxonomy"""
        try:
            response = await client.get(url, headers=headers, follow_redirects=True)
        except httpx.TransportError as e:
            raise SourceUnavailable(ref.source_id, f"{type(e).__name__}: {e}")

        raise_for_source_status(ref.source_id, response)
        return response


def raise_for_source_status(source_id: str, response: httpx.Response) -> None:
    """Translate an HTTP status into SourceUnavailable / SourcePermanentFailure"""
    status = response.status_code
    if status < 400:
        return
    if status in TRANSIENT_STATUS_CODES or status >= 500:
        raise SourceUnavailable(source_id, f"HTTP {status}")
    raise SourcePermanentFailure(source_id, f"HTTP {status}", status_code=status)


def content_type_from_response(response: httpx.Response, default: str = "text/plain") -> str:
    """Media type without parameters, e.g. 'text/html'"""
    raw = response.headers.get("content-type", "")
    return raw.split(";", 1)[0].strip().lower() or default


def content_type_from_path(path: str, default: str = "text/plain") -> str:
    lowered = path.lower()
    for extension, content_type in CONTENT_TYPES_BY_EXTENSION.items():
        if lowered.endswith(extension):
            return content_type
    return default


def is_http_location(location: str) -> bool:
    return location.startswith("http://") or location.startswith("https://")
