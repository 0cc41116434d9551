"""
Repository Handler

Fetches repository history metadata from the GitHub REST API and bundles
the repository record with its language breakdown into one JSON document.
"""

import json
import logging
import re
from typing import Dict, Optional, Tuple

import httpx

from ...common.errors import SourcePermanentFailure
from ...common.schemas import SourceRef, SourceType
from .base import BaseHandler

logger = logging.getLogger("dossier.ingest.repository")

REPOSITORY_CONTENT_TYPE = "application/vnd.dossier.repository+json"

# Only fields that describe the work; counters that drift daily are left out
# so that an untouched repository keeps the same checksum.
REPO_FIELDS = (
    "full_name", "name", "description", "html_url", "language",
    "topics", "pushed_at", "created_at", "fork", "archived",
)

_GITHUB_URL_RE = re.compile(r"^https?://(?:www\.)?github\.com/([^/\s]+)/([^/\s#?]+?)(?:\.git)?/?$")
_GITHUB_REF_RE = re.compile(r"^github:([^/\s]+)/([^/\s]+)$")


def parse_repository_location(location: str) -> Optional[Tuple[str, str]]:
    """'github:octo/hello' or a github.com URL → ('octo', 'hello')"""
    location = location.strip()
    for pattern in (_GITHUB_REF_RE, _GITHUB_URL_RE):
        match = pattern.match(location)
        if match:
            return match.group(1), match.group(2)
    return None


class RepositoryHandler(BaseHandler):
    """
    Handler for code repositories hosted on GitHub.

    Makes two calls per fetch:
    - GET /repos/{owner}/{repo}
    - GET /repos/{owner}/{repo}/languages
    """

    def __init__(self, api_url: str = "https://api.github.com", token: str = ""):
        """
        Initialize repository handler.

        Args:
            api_url: GitHub API base URL (GitHub Enterprise uses a different host)
            token: Optional token; private repositories need one
        """
        super().__init__(SourceType.REPOSITORY)
        self._api_url = api_url.rstrip("/")
        self._token = token

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def fetch_remote(self, ref: SourceRef, client: httpx.AsyncClient) -> Tuple[bytes, str]:
        parsed = parse_repository_location(ref.location)
        if parsed is None:
            raise SourcePermanentFailure(ref.source_id, f"not a GitHub repository: {ref.location!r}")
        owner, repo = parsed
        base = f"{self._api_url}/repos/{owner}/{repo}"

        repo_response = await self._http_get(ref, client, base, headers=self._headers())
        languages_response = await self._http_get(ref, client, f"{base}/languages", headers=self._headers())

        try:
            repo_data = repo_response.json()
            languages = languages_response.json()
        except ValueError as e:
            # Let the normalizer report the malformed document
            logger.warning("Repository %s/%s returned non-JSON body: %s", owner, repo, e)
            return repo_response.content, REPOSITORY_CONTENT_TYPE

        bundle = {
            "repository": {key: repo_data.get(key) for key in REPO_FIELDS},
            "owner_login": (repo_data.get("owner") or {}).get("login", owner),
            "languages": languages if isinstance(languages, dict) else {},
        }
        content = json.dumps(bundle, sort_keys=True, ensure_ascii=False).encode("utf-8")
        return content, REPOSITORY_CONTENT_TYPE
