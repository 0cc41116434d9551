"""
Endorsement Handler

Endorsements arrive inline from the account layer rather than from a URL.
"""

from typing import Tuple

import httpx

from ...common.errors import SourcePermanentFailure
from ...common.schemas import SourceRef, SourceType
from .base import BaseHandler


class EndorsementHandler(BaseHandler):
    """Handler for inline endorsement text ("From: <name>" on the first line is optional)."""

    def __init__(self):
        super().__init__(SourceType.ENDORSEMENT)

    async def fetch_remote(self, ref: SourceRef, client: httpx.AsyncClient) -> Tuple[bytes, str]:
        if ref.content is None:
            raise SourcePermanentFailure(ref.source_id, "endorsement has no inline content")
        return ref.content.encode("utf-8"), "text/plain"
