"""
Article Handler

Fetches published articles over HTTP(S).
"""

from typing import Tuple

import httpx

from ...common.errors import SourcePermanentFailure
from ...common.schemas import SourceRef, SourceType
from .base import BaseHandler, content_type_from_path, content_type_from_response, is_http_location


class ArticleHandler(BaseHandler):
    """Handler for articles and blog posts (HTML, Markdown or plain text)."""

    def __init__(self):
        super().__init__(SourceType.ARTICLE)

    async def fetch_remote(self, ref: SourceRef, client: httpx.AsyncClient) -> Tuple[bytes, str]:
        if not is_http_location(ref.location):
            raise SourcePermanentFailure(ref.source_id, f"article location must be a URL: {ref.location!r}")

        response = await self._http_get(ref, client, ref.location)
        content_type = content_type_from_response(response, default="")
        if not content_type:
            content_type = content_type_from_path(ref.location, default="text/html")
        return response.content, content_type
