"""
Resume Handler

Reads resumes from local files or HTTP(S) URLs.
JSON files are treated as JSON Resume documents; .md/.txt as sectioned text.
"""

import asyncio
from pathlib import Path
from typing import Tuple

import httpx

from ...common.errors import SourcePermanentFailure, SourceUnavailable
from ...common.schemas import SourceRef, SourceType
from .base import (
    BaseHandler,
    content_type_from_path,
    content_type_from_response,
    is_http_location,
)


class ResumeHandler(BaseHandler):
    """
    Handler for resume documents.

    Locations:
    - /path/to/resume.json, file:///path/to/resume.md
    - https://example.com/resume.txt
    """

    def __init__(self):
        super().__init__(SourceType.RESUME)

    async def fetch_remote(self, ref: SourceRef, client: httpx.AsyncClient) -> Tuple[bytes, str]:
        location = ref.location.strip()
        if not location:
            raise SourcePermanentFailure(ref.source_id, "resume location is empty")

        if is_http_location(location):
            response = await self._http_get(ref, client, location)
            content_type = content_type_from_response(response, default="")
            if content_type in ("", "application/octet-stream", "text/plain"):
                # Servers often label JSON/markdown as text; the extension knows better
                content_type = content_type_from_path(location, default=content_type or "text/plain")
            return response.content, content_type

        path = Path(location[len("file://"):] if location.startswith("file://") else location)
        path = path.expanduser()
        try:
            content = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise SourcePermanentFailure(ref.source_id, f"file not found: {path}")
        except PermissionError:
            raise SourcePermanentFailure(ref.source_id, f"permission denied: {path}")
        except OSError as e:
            raise SourceUnavailable(ref.source_id, f"read failed: {e}")

        return content, content_type_from_path(str(path))
