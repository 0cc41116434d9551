"""Tests for SourceConnector: checksums, retries with backoff, permanent failures."""

import json

import httpx
import pytest

from dossier.common.errors import SourcePermanentFailure, SourceUnavailable
from dossier.common.schemas import SourceRef, SourceType
from dossier.ingest import SourceConnector
from dossier.ingest.handlers import REPOSITORY_CONTENT_TYPE
from dossier.ingest.handlers.repository import parse_repository_location

REPO = {
    "full_name": "octo/raft-kv",
    "name": "raft-kv",
    "description": "Raft playground",
    "language": "Go",
    "topics": ["consensus"],
    "pushed_at": "2024-05-01T10:00:00Z",
    "created_at": "2023-01-01T00:00:00Z",
    "fork": False,
    "archived": False,
    "stargazers_count": 10,
    "owner": {"login": "octo"},
}


class GitHubStub:
    """MockTransport handler that fails the first ``failures`` repo calls"""

    def __init__(self, failures: int = 0, status: int = 503):
        self.failures = failures
        self.status = status
        self.repo_calls = 0
        self.stars = 10

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/languages"):
            return httpx.Response(200, json={"Go": 300, "Rust": 100})
        self.repo_calls += 1
        if self.repo_calls <= self.failures:
            return httpx.Response(self.status, json={"message": "nope"})
        return httpx.Response(200, json=dict(REPO, stargazers_count=self.stars))


def make_connector(stub, max_attempts=3):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    client = httpx.AsyncClient(transport=httpx.MockTransport(stub))
    connector = SourceConnector(client=client, max_attempts=max_attempts, base_delay=0.5, sleep=fake_sleep)
    return connector, sleeps


def repo_ref():
    return SourceRef(owner_id="ada", source_type=SourceType.REPOSITORY, location="github:octo/raft-kv")


class TestRepositoryLocation:
    def test_short_form(self):
        assert parse_repository_location("github:octo/raft-kv") == ("octo", "raft-kv")

    def test_url_form(self):
        assert parse_repository_location("https://github.com/octo/raft-kv.git") == ("octo", "raft-kv")

    def test_not_github(self):
        assert parse_repository_location("https://gitlab.com/octo/raft-kv") is None


class TestFetch:
    @pytest.mark.asyncio
    async def test_repository_bundle(self):
        connector, _ = make_connector(GitHubStub())
        result = await connector.fetch(repo_ref())

        assert result.changed is True
        assert result.document.content_type == REPOSITORY_CONTENT_TYPE
        bundle = json.loads(result.document.content_bytes)
        assert bundle["repository"]["full_name"] == "octo/raft-kv"
        assert bundle["languages"] == {"Go": 300, "Rust": 100}
        assert bundle["owner_login"] == "octo"

    @pytest.mark.asyncio
    async def test_unchanged_content_returns_previous_document(self):
        stub = GitHubStub()
        connector, _ = make_connector(stub)
        ref = repo_ref()

        first = await connector.fetch(ref)
        stub.stars = 999  # drifting counters are not part of the bundle
        second = await connector.fetch(ref)

        assert second.changed is False
        assert second.document is first.document
        assert connector.latest("ada", ref.source_id) is first.document

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried_with_backoff(self):
        stub = GitHubStub(failures=2, status=503)
        connector, sleeps = make_connector(stub)

        result = await connector.fetch(repo_ref())

        assert result.attempts == 3
        assert sleeps == [0.5, 1.0]
        assert stub.repo_calls == 3

    @pytest.mark.asyncio
    async def test_transient_failures_exhaust_attempts(self):
        stub = GitHubStub(failures=10, status=429)
        connector, sleeps = make_connector(stub)
        ref = repo_ref()

        with pytest.raises(SourceUnavailable) as exc_info:
            await connector.fetch(ref)

        assert exc_info.value.attempts == 3
        assert len(sleeps) == 2
        assert connector.source_status("ada", ref.source_id).state == "unavailable"

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self):
        stub = GitHubStub(failures=10, status=404)
        connector, sleeps = make_connector(stub)
        ref = repo_ref()

        with pytest.raises(SourcePermanentFailure) as exc_info:
            await connector.fetch(ref)

        assert exc_info.value.status_code == 404
        assert stub.repo_calls == 1
        assert sleeps == []
        assert connector.source_status("ada", ref.source_id).is_failed

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self):
        calls = []

        def broken(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        connector, sleeps = make_connector(broken, max_attempts=2)
        with pytest.raises(SourceUnavailable):
            await connector.fetch(repo_ref())
        assert len(calls) == 2
        assert sleeps == [0.5]

    @pytest.mark.asyncio
    async def test_resume_from_file(self, tmp_path):
        path = tmp_path / "resume.json"
        path.write_text(json.dumps({"basics": {"name": "Ada"}}))
        connector, _ = make_connector(GitHubStub())
        ref = SourceRef(owner_id="ada", source_type=SourceType.RESUME, location=str(path))

        result = await connector.fetch(ref)

        assert result.document.content_type == "application/json"
        assert result.document.owner_id == "ada"

    @pytest.mark.asyncio
    async def test_missing_resume_file_is_permanent(self, tmp_path):
        connector, sleeps = make_connector(GitHubStub())
        ref = SourceRef(owner_id="ada", source_type=SourceType.RESUME, location=str(tmp_path / "nope.md"))

        with pytest.raises(SourcePermanentFailure, match="file not found"):
            await connector.fetch(ref)
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_inline_endorsement(self):
        connector, _ = make_connector(GitHubStub())
        ref = SourceRef(owner_id="ada", source_type=SourceType.ENDORSEMENT, content="From: Bob\nGreat at Rust.")

        result = await connector.fetch(ref)

        assert result.document.content_bytes == b"From: Bob\nGreat at Rust."
        assert ref.source_id.startswith("endorsement:")

    def test_backoff_is_capped(self):
        connector = SourceConnector(base_delay=1.0, max_delay=3.0)
        assert connector.backoff_delay(0) == 1.0
        assert connector.backoff_delay(1) == 2.0
        assert connector.backoff_delay(5) == 3.0
