"""
Answer Synthesizer

Turns ranked hits into a cited answer, one fragment per profile.

Key principle: nothing is stated without a supporting chunk.
- A fragment must cite at least one chunk of its own profile
- Fragments with missing or foreign citations are dropped, not repaired
- Without generation (no client, error, timeout) each hit carries its
  top chunk verbatim and the result is flagged "unsynthesized"
- A failed or unusable generation is not cacheable, so the next query
  tries again; a missing client is a stable answer and is cached
"""

import asyncio
import logging
from typing import Dict, List, Optional

from ..common.llm_client import LLMClient
from ..common.llm_utils import parse_llm_json, truncate_text
from ..common.schemas import SearchHit, SearchResult

logger = logging.getLogger("dossier.retriever.synthesizer")

UNSYNTHESIZED = "unsynthesized"


ANSWER_SYSTEM_PROMPT = """You answer questions about people using excerpts from their
professional profiles. Use ONLY the excerpts. Never invent facts."""

ANSWER_PROMPT = """Question: {query}

Profiles (each excerpt is tagged with its chunk id):
{profiles}

For each profile that is relevant to the question, write one or two
sentences explaining why, and cite the chunk ids you used. Every claim
must come from a cited excerpt of that same profile. Skip profiles you
cannot support.

Respond with a valid JSON object:
{{"answers": [{{"owner_id": "...", "fragment": "...", "citations": ["chunk id", "..."]}}]}}

JSON:"""


class AnswerSynthesizer:
    """
    Synthesizes cited answer fragments with a bounded-context LLM call.

    Falls back to raw chunks if the LLM is not available.
    """

    def __init__(
        self,
        llm_client: Optional[LLMClient] = None,
        max_tokens: int = 700,
        max_context_chars: int = 6000,
        max_fragment_chars: int = 500,
    ):
        """
        Initialize answer synthesizer.

        Args:
            llm_client: Generation client (optional)
            max_tokens: Token budget for the answer call
            max_context_chars: Cap on excerpt text sent to the model
            max_fragment_chars: Cap on each returned fragment
        """
        self._llm = llm_client
        self._max_tokens = max_tokens
        self._max_context_chars = max_context_chars
        self._max_fragment_chars = max_fragment_chars

    @property
    def has_llm(self) -> bool:
        return self._llm is not None and self._llm.is_available

    async def synthesize(self, query: str, hits: List[SearchHit], timeout: float = 10.0) -> SearchResult:
        """
        Build the SearchResult for ranked hits.

        Args:
            query: Query text as given by the caller
            hits: Ranked hits (order is preserved)
            timeout: Seconds allowed for generation

        Returns:
            SearchResult; ``partial`` is set when generation ran out of time
        """
        if not hits:
            return SearchResult(query=query, hits=[], synthesized=False)

        if not self.has_llm:
            return self._unsynthesized(query, hits)

        if timeout <= 0:
            return self._unsynthesized(query, hits, partial=True, reason="no time left for answer generation")

        prompt = ANSWER_PROMPT.format(query=query, profiles=self._format_context(hits))
        try:
            raw = await self._llm.agenerate(
                prompt,
                system=ANSWER_SYSTEM_PROMPT,
                max_tokens=self._max_tokens,
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Answer generation timed out after %.1fs", timeout)
            return self._unsynthesized(query, hits, partial=True, reason="answer generation timed out")
        except Exception as e:
            logger.warning("Answer generation failed: %s", e)
            return self._unsynthesized(query, hits, reason=f"answer generation failed: {e}", cacheable=False)

        return self._apply_fragments(query, hits, parse_llm_json(raw))

    def _format_context(self, hits: List[SearchHit]) -> str:
        blocks = []
        budget = self._max_context_chars
        for hit in hits:
            lines = [f"## {hit.owner_id}"]
            for chunk in hit.supporting_chunks:
                if budget <= 0:
                    break
                text = truncate_text(chunk.text.replace("\n", "; "), budget)
                lines.append(f"[{chunk.chunk_id}] {text}")
                budget -= len(text)
            blocks.append("\n".join(lines))
            if budget <= 0:
                break
        return "\n\n".join(blocks)

    def _apply_fragments(self, query: str, hits: List[SearchHit], payload: dict) -> SearchResult:
        answers = payload.get("answers")
        if not isinstance(answers, list):
            logger.warning("Answer generation returned no usable JSON")
            return self._unsynthesized(query, hits, reason="answer generation returned no usable JSON", cacheable=False)

        by_owner: Dict[str, SearchHit] = {hit.owner_id: hit for hit in hits}
        accepted: Dict[str, SearchHit] = {}
        warnings: List[str] = []

        for answer in answers:
            if not isinstance(answer, dict):
                continue
            owner_id = answer.get("owner_id")
            fragment = answer.get("fragment")
            citations = answer.get("citations")
            hit = by_owner.get(owner_id) if isinstance(owner_id, str) else None
            if hit is None or owner_id in accepted:
                continue
            if not isinstance(fragment, str) or not fragment.strip() or not isinstance(citations, list):
                warnings.append(f"dropped malformed fragment for {owner_id}")
                continue

            chunks = {c.chunk_id: c for c in hit.supporting_chunks}
            cited_ids = list(dict.fromkeys(c for c in citations if isinstance(c, str)))
            cited = [chunks[c] for c in cited_ids if c in chunks]
            # Every citation must resolve to this profile's chunks
            if not cited or len(cited) != len(cited_ids):
                warnings.append(f"dropped unsupported fragment for {owner_id}")
                continue

            accepted[owner_id] = hit.model_copy(update={
                "answer_fragment": truncate_text(fragment.strip(), self._max_fragment_chars),
                "supporting_chunks": cited,
            })

        if not accepted:
            return self._unsynthesized(query, hits, reason="no fragment could be supported by citations")

        final_hits = []
        for hit in hits:
            if hit.owner_id in accepted:
                final_hits.append(accepted[hit.owner_id])
            else:
                final_hits.append(self._raw(hit))
                warnings.append(f"{hit.owner_id}: {UNSYNTHESIZED}")

        for note in warnings:
            logger.info("Answer synthesis: %s", note)
        return SearchResult(query=query, hits=final_hits, synthesized=True, warnings=warnings)

    @staticmethod
    def _raw(hit: SearchHit) -> SearchHit:
        top = hit.supporting_chunks[0] if hit.supporting_chunks else None
        return hit.model_copy(update={"answer_fragment": top.text if top else ""})

    def _unsynthesized(
        self,
        query: str,
        hits: List[SearchHit],
        partial: bool = False,
        reason: Optional[str] = None,
        cacheable: bool = True,
    ) -> SearchResult:
        warnings = [UNSYNTHESIZED]
        if reason:
            warnings.append(reason)
        return SearchResult(
            query=query,
            hits=[self._raw(hit) for hit in hits],
            synthesized=False,
            partial=partial,
            cacheable=cacheable,
            warnings=warnings,
        )
