"""
Dossier MCP Server.

Transport: stdio only.

Expected MCP Tool Return Format:
{
    "ok": bool,
    "results": Any,          # Present if ok is True
    "error": str            # Present if ok is False
}
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import Annotated, Any, Dict, Optional

from dotenv import load_dotenv
from fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from .common.errors import DossierError
from .common.schemas import render_profile_text
from .engine import ProfileEngine

logger = logging.getLogger("dossier.server")


class DossierMCPServer:
    """MCP tool surface over one ProfileEngine"""

    def __init__(self, engine: ProfileEngine, mcp_server_name: str = "dossier"):
        self.engine = engine
        self.mcp = FastMCP(name=mcp_server_name)
        self._started = False
        self._start_lock: Optional[asyncio.Lock] = None

        # ---------- MCP Tools: Add Source ---------- #
        @self.mcp.tool(
            name="add_source",
            description=(
                "Attach a source (resume, repository, article, endorsement) to a profile "
                "and run it through fetch, normalization, synthesis and indexing."
            ),
            annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False)
        )
        async def tool_add_source(
            owner_id: Annotated[str, Field(description="profile owner id")],
            source_type: Annotated[str, Field(description="one of: resume, repository, article, endorsement")],
            location: Annotated[str, Field(description="file path, URL, or github:owner/repo")] = "",
            content: Annotated[Optional[str], Field(description="inline text, used for endorsements")] = None,
        ) -> Dict[str, Any]:
            """
            Returns:
                Dict[str, Any]: the ingest report; fetch failures come back with ok=False
            """
            try:
                await self._ensure_started()
                report = await self.engine.add_source(
                    owner_id,
                    {"source_type": source_type, "location": location, "content": content},
                )
            except (DossierError, ValueError) as e:
                return {"ok": False, "error": str(e)}
            if not report.ok:
                return {"ok": False, "error": report.error, "results": report.to_dict()}
            return {"ok": True, "results": report.to_dict()}

        # ---------- MCP Tools: Edit Fact ---------- #
        @self.mcp.tool(
            name="edit_fact",
            description="Declare a fact as the profile owner. It overrides every other source for that field.",
            annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False)
        )
        async def tool_edit_fact(
            owner_id: Annotated[str, Field(description="profile owner id")],
            field_name: Annotated[str, Field(description="fact field, e.g. 'headline' or 'skill.rust'")],
            value: Annotated[str, Field(description="declared value")],
        ) -> Dict[str, Any]:
            try:
                await self._ensure_started()
                snapshot = await self.engine.edit_fact(owner_id, field_name, value)
            except (DossierError, ValueError) as e:
                return {"ok": False, "error": str(e)}
            return {
                "ok": True,
                "results": {
                    "owner_id": snapshot.owner_id,
                    "version": snapshot.version,
                    "content_hash": snapshot.content_hash,
                },
            }

        # ---------- MCP Tools: Search ---------- #
        @self.mcp.tool(
            name="search",
            description=(
                "Ask a natural-language question across all profiles. Returns ranked profiles, "
                "each with an answer fragment and the chunk citations that support it."
            ),
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False)
        )
        async def tool_search(
            query: Annotated[str, Field(description="natural-language question")],
            caller_id: Annotated[str, Field(description="owner id of the caller")],
            timeout: Annotated[Optional[float], Field(description="time budget in seconds")] = None,
            location: Annotated[Optional[str], Field(description="only profiles located here")] = None,
        ) -> Dict[str, Any]:
            if not query or not query.strip():
                return {"ok": False, "error": "query parameter is required."}
            filters = {"location": location} if location else None
            try:
                await self._ensure_started()
                result = await self.engine.search(query, caller_id, timeout=timeout, filters=filters)
            except DossierError as e:
                return {"ok": False, "error": str(e)}
            return {
                "ok": True,
                "results": result.to_public(),
                "synthesized": result.synthesized,
                "partial": result.partial,
                "warnings": list(result.warnings),
            }

        # ---------- MCP Tools: Get Profile ---------- #
        @self.mcp.tool(
            name="get_profile",
            description="Get the current profile snapshot of an owner.",
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False)
        )
        async def tool_get_profile(
            owner_id: Annotated[str, Field(description="profile owner id")],
        ) -> Dict[str, Any]:
            await self._ensure_started()
            snapshot = self.engine.get_profile(owner_id)
            if snapshot is None:
                return {"ok": False, "error": f"No profile for {owner_id!r}"}
            return {
                "ok": True,
                "results": {
                    "owner_id": snapshot.owner_id,
                    "version": snapshot.version,
                    "narrative": snapshot.narrative_text,
                    "narrative_degraded": snapshot.narrative_degraded,
                    "facts": {name: fact.value for name, fact in sorted(snapshot.structured_facts.items())},
                    "text": render_profile_text(snapshot),
                },
            }

    async def _ensure_started(self) -> None:
        """Index persisted snapshots once, inside the server's event loop"""
        if self._started:
            return
        if self._start_lock is None:
            self._start_lock = asyncio.Lock()
        async with self._start_lock:
            if not self._started:
                await self.engine.start()
                self._started = True

    def run(self) -> None:
        """Runs the MCP server using stdio transport."""
        self.mcp.run(transport="stdio")


def main() -> None:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Run the Dossier MCP server (stdio).")
    parser.add_argument(
        "--server-name",
        default=os.getenv("DOSSIER_SERVER_NAME", "dossier"),
        help="Advertised MCP server name.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("DOSSIER_LOG_LEVEL", "INFO"),
        help="Logging level (written to stderr).",
    )
    args = parser.parse_args()

    # stdout is the transport
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    engine = ProfileEngine()
    app = DossierMCPServer(engine, mcp_server_name=args.server_name)
    logger.info("Starting Dossier MCP server %r", args.server_name)
    app.run()


if __name__ == "__main__":
    main()
