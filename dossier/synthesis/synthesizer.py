"""
Profile Synthesizer

Folds an owner's current facts into a new immutable ProfileSnapshot.

Pipeline:
1. Collect current facts (FactStore)
2. Hash the fact set; unchanged hash → return the current snapshot
3. Resolve conflicts per field (resolver)
4. Narrative from resolved facts (LLM, bounded, with deterministic fallback)
5. Append version N+1 (SnapshotStore), emit ProfileChanged
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from ..common.llm_client import LLMClient
from ..common.llm_utils import truncate_text
from ..common.schemas import (
    NormalizedFact,
    ProfileSnapshot,
    compute_content_hash,
    render_fact_line,
    render_fallback_narrative,
)
from ..common.schemas.templates import group_by_namespace
from ..common.errors import SynthesisFailed
from .resolver import resolve_facts
from .store import FactStore, SnapshotStore

logger = logging.getLogger("dossier.synthesis.synthesizer")


NARRATIVE_SYSTEM_PROMPT = """You write short third-person professional profiles.
Use ONLY the facts provided. Do not add employers, dates, skills or claims
that are not listed. Plain prose, no headings, no bullet points."""

NARRATIVE_PROMPT = """Write a profile of at most {max_words} words from these facts:

{facts}
"""


@dataclass(frozen=True)
class ProfileChanged:
    """Emitted after a new snapshot is committed"""
    owner_id: str
    version: int
    content_hash: str
    narrative_degraded: bool = False


Subscriber = Callable[[ProfileChanged], Union[None, Awaitable[None]]]


class ProfileSynthesizer:
    """
    Builds versioned profile snapshots.

    Single-flight per owner: concurrent synthesize() calls share one task.
    mark_stale() during a run makes that run commit and then run again,
    so callers always end up with a snapshot of the newest facts.
    """

    def __init__(
        self,
        fact_store: FactStore,
        snapshot_store: SnapshotStore,
        llm_client: Optional[LLMClient] = None,
        trust_weights: Optional[Mapping[str, float]] = None,
        narrative_timeout: float = 20.0,
        narrative_max_tokens: int = 400,
        narrative_max_chars: int = 2000,
    ):
        """
        Initialize synthesizer.

        Args:
            fact_store: Current facts per owner
            snapshot_store: Append-only snapshot log
            llm_client: Narrative generator; None → fallback narrative only
            trust_weights: Source trust weights used as a resolution tie-break
            narrative_timeout: Seconds allowed for narrative generation
            narrative_max_tokens: Token budget for the narrative call
            narrative_max_chars: Hard cap on narrative length
        """
        self._facts = fact_store
        self._snapshots = snapshot_store
        self._llm = llm_client
        self._trust_weights = trust_weights
        self._narrative_timeout = narrative_timeout
        self._narrative_max_tokens = narrative_max_tokens
        self._narrative_max_chars = narrative_max_chars

        self._inflight: Dict[str, asyncio.Task] = {}
        self._generation: Dict[str, int] = {}
        self._subscribers: List[Subscriber] = []

    @property
    def snapshot_store(self) -> SnapshotStore:
        return self._snapshots

    def subscribe(self, callback: Subscriber) -> None:
        """Register a ProfileChanged listener (sync or async)"""
        self._subscribers.append(callback)

    def mark_stale(self, owner_id: str) -> None:
        """Signal that the owner's facts changed; an in-flight run will rerun"""
        self._generation[owner_id] = self._generation.get(owner_id, 0) + 1

    def is_running(self, owner_id: str) -> bool:
        return owner_id in self._inflight

    async def synthesize(self, owner_id: str) -> ProfileSnapshot:
        """
        Synthesize (or reuse) the owner's current snapshot.

        Raises:
            SynthesisFailed: no facts to build from, or the snapshot could not be persisted
        """
        task = self._inflight.get(owner_id)
        if task is None:
            task = asyncio.create_task(self._run(owner_id))
            self._inflight[owner_id] = task
            task.add_done_callback(lambda t, o=owner_id: self._clear_inflight(o, t))
        else:
            logger.debug("Attaching to in-flight synthesis for %s", owner_id)
        # shield: one caller's cancellation must not cancel the shared run
        return await asyncio.shield(task)

    def _clear_inflight(self, owner_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(owner_id) is task:
            del self._inflight[owner_id]

    async def _run(self, owner_id: str) -> ProfileSnapshot:
        while True:
            generation = self._generation.get(owner_id, 0)
            snapshot = await self._synthesize_once(owner_id)
            if self._generation.get(owner_id, 0) == generation:
                return snapshot
            logger.info("Facts for %s changed during synthesis of v%d, rerunning", owner_id, snapshot.version)

    async def _synthesize_once(self, owner_id: str) -> ProfileSnapshot:
        facts = self._facts.facts_for(owner_id)
        current = self._snapshots.current(owner_id)
        if not facts and current is None:
            raise SynthesisFailed(owner_id, "no facts to synthesize from")

        content_hash = compute_content_hash(facts)
        if current is not None and current.content_hash == content_hash:
            logger.debug("Profile %s unchanged (v%d)", owner_id, current.version)
            return current

        structured, audit = resolve_facts(facts, self._trust_weights)
        narrative, degraded = await self._narrative(owner_id, structured)

        try:
            snapshot = ProfileSnapshot(
                owner_id=owner_id,
                version=self._snapshots.latest_version(owner_id) + 1,
                narrative_text=narrative,
                narrative_degraded=degraded,
                structured_facts=structured,
                audit_trail=audit,
                content_hash=content_hash,
            )
            self._snapshots.append(snapshot)
        except (ValueError, OSError) as e:
            logger.error("Could not commit snapshot for %s: %s", owner_id, e)
            raise SynthesisFailed(owner_id, str(e)) from e

        logger.info(
            "Committed %s v%d (%d fields, %d contested%s)",
            owner_id, snapshot.version, len(structured), len(audit),
            ", narrative degraded" if degraded else "",
        )
        await self._emit(ProfileChanged(
            owner_id=owner_id,
            version=snapshot.version,
            content_hash=content_hash,
            narrative_degraded=degraded,
        ))
        return snapshot

    async def _narrative(self, owner_id: str, structured: Dict[str, NormalizedFact]) -> Tuple[str, bool]:
        """(narrative_text, degraded)"""
        fallback = render_fallback_narrative(structured, self._narrative_max_chars)
        if not structured:
            return "", False
        if self._llm is None or not self._llm.is_available:
            return fallback, True

        lines = []
        for facts in group_by_namespace(structured).values():
            lines.extend(f"- {render_fact_line(fact)}" for fact in facts)
        prompt = NARRATIVE_PROMPT.format(
            max_words=max(40, self._narrative_max_chars // 7),
            facts="\n".join(lines),
        )

        try:
            text = await self._llm.agenerate(
                prompt,
                system=NARRATIVE_SYSTEM_PROMPT,
                max_tokens=self._narrative_max_tokens,
                timeout=self._narrative_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Narrative for %s timed out after %.1fs, using fallback", owner_id, self._narrative_timeout)
            return fallback, True
        except Exception as e:
            logger.warning("Narrative generation failed for %s: %s", owner_id, e)
            return fallback, True

        text = truncate_text(text.strip(), self._narrative_max_chars)
        if not text:
            logger.warning("Empty narrative for %s, using fallback", owner_id)
            return fallback, True
        return text, False

    async def _emit(self, event: ProfileChanged) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                # A failing listener must not undo a committed snapshot
                logger.error("ProfileChanged listener failed for %s v%d: %s", event.owner_id, event.version, e)

    async def rollback(self, owner_id: str, version: int) -> ProfileSnapshot:
        """
        Restore an earlier version by appending a copy of it as a new version.

        The owner's facts are reset to the facts that version was built from,
        so the next synthesis does not silently undo the rollback.
        """
        target = self._snapshots.get(owner_id, version)
        if target is None:
            raise SynthesisFailed(owner_id, f"version {version} does not exist")

        in_flight = self._inflight.get(owner_id)
        if in_flight is not None:
            await asyncio.shield(in_flight)

        self._facts.restore(owner_id, target.all_facts)
        try:
            snapshot = target.model_copy(update={
                "version": self._snapshots.latest_version(owner_id) + 1,
                "rolled_back_from": target.version,
                "created_at": datetime.now(timezone.utc),
            })
            self._snapshots.append(snapshot)
        except (ValueError, OSError) as e:
            raise SynthesisFailed(owner_id, str(e)) from e

        logger.info("Rolled back %s to v%d as v%d", owner_id, version, snapshot.version)
        await self._emit(ProfileChanged(
            owner_id=owner_id,
            version=snapshot.version,
            content_hash=snapshot.content_hash,
            narrative_degraded=snapshot.narrative_degraded,
        ))
        return snapshot

    def history(self, owner_id: str) -> List[ProfileSnapshot]:
        return self._snapshots.history(owner_id)

    def current(self, owner_id: str) -> Optional[ProfileSnapshot]:
        return self._snapshots.current(owner_id)
