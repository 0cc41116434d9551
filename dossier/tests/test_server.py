# tests/test_server.py
import httpx
import pytest

from fastmcp import Client

from dossier.common.config import DossierConfig
from dossier.common.llm_client import LLMClient
from dossier.engine import ProfileEngine
from dossier.ingest import SourceConnector
from dossier.server import DossierMCPServer
from dossier.tests.conftest import FakeEmbeddingService


def tool_data(result):
    return getattr(result, "data", None) or getattr(result, "structured", None) \
        or getattr(result, "structured_content", None)


@pytest.fixture
def mcp_server():
    """
    Create and return a FastMCP server instance for testing.
    The engine runs on fake embeddings, no LLM and no network.
    """
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
    engine = ProfileEngine(
        DossierConfig(),
        connector=SourceConnector(client=client),
        embedding_service=FakeEmbeddingService(),
        llm_client=LLMClient(provider="anthropic"),
    )
    app = DossierMCPServer(engine, mcp_server_name="test-dossier")
    return app.mcp  # FastMCP Instance


ENDORSEMENT = {
    "owner_id": "cy",
    "source_type": "endorsement",
    "content": "From: Dana\nCy is great at Python and Django.",
}


@pytest.mark.asyncio
async def test_tools_registered(mcp_server):
    async with Client(mcp_server) as client:
        tools = await client.list_tools()
        names = {t.name for t in tools}
        assert {"add_source", "edit_fact", "search", "get_profile"} <= names


@pytest.mark.asyncio
async def test_add_source_then_get_profile(mcp_server):
    async with Client(mcp_server) as client:
        added = tool_data(await client.call_tool("add_source", ENDORSEMENT))
        assert added["ok"] is True
        assert added["results"]["snapshot_version"] == 1
        assert added["results"]["status"] == "ok"

        profile = tool_data(await client.call_tool("get_profile", {"owner_id": "cy"}))
        assert profile["ok"] is True
        assert profile["results"]["version"] == 1
        assert profile["results"]["facts"]["skill.python"] == "Python"
        assert profile["results"]["narrative_degraded"] is True
        assert "# Profile:" in profile["results"]["text"]


@pytest.mark.asyncio
async def test_get_unknown_profile(mcp_server):
    async with Client(mcp_server) as client:
        data = tool_data(await client.call_tool("get_profile", {"owner_id": "nobody"}))
        assert data["ok"] is False
        assert "nobody" in data["error"]


@pytest.mark.asyncio
async def test_add_source_rejects_unknown_type(mcp_server):
    async with Client(mcp_server) as client:
        data = tool_data(await client.call_tool(
            "add_source", {"owner_id": "cy", "source_type": "tweet", "content": "hi"}
        ))
        assert data["ok"] is False


@pytest.mark.asyncio
async def test_edit_fact_and_search(mcp_server):
    async with Client(mcp_server) as client:
        await client.call_tool("add_source", ENDORSEMENT)
        edited = tool_data(await client.call_tool(
            "edit_fact", {"owner_id": "cy", "field_name": "location", "value": "Lisbon"}
        ))
        assert edited["ok"] is True
        assert edited["results"]["version"] == 2

        found = tool_data(await client.call_tool(
            "search", {"query": "Who knows Python?", "caller_id": "ada"}
        ))
        assert found["ok"] is True
        assert found["synthesized"] is False
        assert found["partial"] is False
        top = found["results"][0]
        assert top["owner_id"] == "cy"
        assert top["citations"][0]["snapshot_version"] == 2
        assert top["answer_fragment"]


@pytest.mark.asyncio
async def test_edit_fact_requires_value(mcp_server):
    async with Client(mcp_server) as client:
        data = tool_data(await client.call_tool(
            "edit_fact", {"owner_id": "cy", "field_name": "location", "value": ""}
        ))
        assert data["ok"] is False


@pytest.mark.asyncio
async def test_search_requires_query(mcp_server):
    async with Client(mcp_server) as client:
        data = tool_data(await client.call_tool("search", {"query": "  ", "caller_id": "ada"}))
        assert data["ok"] is False
        assert "query" in data["error"]
