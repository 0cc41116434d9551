"""
Fact and Snapshot Stores

FactStore holds the current facts per owner: the latest normalized facts
of every source plus user-declared facts. SnapshotStore is the append-only
version log with a current pointer per owner.

Readers get immutable values (tuples, frozen models). Writers build the
new value first and publish it with a single assignment.
"""

import logging
import os
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError

from ..common.schemas import USER_DECLARED, NormalizedFact, ProfileSnapshot

logger = logging.getLogger("dossier.synthesis.store")

SNAPSHOT_LOG_NAME = "snapshots.jsonl"


def _claims(facts: Iterable[NormalizedFact]) -> List[Tuple[str, str, str, str, float]]:
    return sorted(f.claim() for f in facts)


class FactStore:
    """Current facts per owner, grouped by provenance"""

    def __init__(self):
        # owner_id -> source_id -> facts
        self._by_source: Dict[str, Dict[str, Tuple[NormalizedFact, ...]]] = {}
        # owner_id -> field_name -> user-declared fact
        self._declared: Dict[str, Dict[str, NormalizedFact]] = {}

    def replace_source(self, owner_id: str, source_id: str, facts: Iterable[NormalizedFact]) -> bool:
        """
        Replace everything known from one source.

        A refetch that asserts the same claims only with newer observation
        times keeps the stored facts, so the profile hash does not move.

        Returns:
            True if the stored facts changed
        """
        new_facts = tuple(sorted(facts, key=lambda f: (f.field_name, f.value)))
        sources = dict(self._by_source.get(owner_id, {}))
        stored = sources.get(source_id)
        if stored is not None and _claims(stored) == _claims(new_facts):
            return False
        sources[source_id] = new_facts
        self._by_source[owner_id] = sources
        return True

    def remove_source(self, owner_id: str, source_id: str) -> bool:
        sources = dict(self._by_source.get(owner_id, {}))
        if source_id not in sources:
            return False
        del sources[source_id]
        self._by_source[owner_id] = sources
        return True

    def declare(self, fact: NormalizedFact) -> bool:
        """Store a user-declared fact; replaces any earlier declaration of the field"""
        if fact.provenance != USER_DECLARED:
            raise ValueError("declare() only accepts user-declared facts")
        declared = dict(self._declared.get(fact.owner_id, {}))
        existing = declared.get(fact.field_name)
        if existing is not None and existing.claim() == fact.claim():
            return False
        declared[fact.field_name] = fact
        self._declared[fact.owner_id] = declared
        return True

    def facts_for(self, owner_id: str) -> List[NormalizedFact]:
        facts: List[NormalizedFact] = []
        for source_id in sorted(self._by_source.get(owner_id, {})):
            facts.extend(self._by_source[owner_id][source_id])
        declared = self._declared.get(owner_id, {})
        facts.extend(declared[name] for name in sorted(declared))
        return facts

    def restore(self, owner_id: str, facts: Iterable[NormalizedFact]) -> None:
        """Replace all of an owner's facts, e.g. from a snapshot after restart or rollback"""
        by_source: Dict[str, List[NormalizedFact]] = {}
        declared: Dict[str, NormalizedFact] = {}
        for fact in facts:
            if fact.is_user_declared:
                declared[fact.field_name] = fact
            else:
                by_source.setdefault(fact.provenance, []).append(fact)
        self._by_source[owner_id] = {
            source_id: tuple(sorted(items, key=lambda f: (f.field_name, f.value)))
            for source_id, items in by_source.items()
        }
        self._declared[owner_id] = declared


class SnapshotStore:
    """
    Append-only ProfileSnapshot log.

    With a data directory every append is written to a JSON Lines file
    before it becomes visible; the log is replayed on startup.
    """

    def __init__(self, data_dir: Optional[Union[str, Path]] = None):
        self._logs: Dict[str, Tuple[ProfileSnapshot, ...]] = {}
        self._current: Dict[str, ProfileSnapshot] = {}
        self._path: Optional[Path] = None

        if data_dir:
            self._path = Path(data_dir).expanduser() / SNAPSHOT_LOG_NAME
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._load()

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        loaded = 0
        with open(self._path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    snapshot = ProfileSnapshot.model_validate_json(line)
                except ValidationError as e:
                    logger.warning("Skipping corrupt snapshot at %s:%d: %s", self._path, line_no, e)
                    continue
                log = self._logs.get(snapshot.owner_id, ())
                if log and snapshot.version <= log[-1].version:
                    logger.warning(
                        "Skipping out-of-order snapshot %s v%d at line %d",
                        snapshot.owner_id, snapshot.version, line_no,
                    )
                    continue
                self._logs[snapshot.owner_id] = log + (snapshot,)
                self._current[snapshot.owner_id] = snapshot
                loaded += 1
        logger.info("Loaded %d snapshots for %d owners from %s", loaded, len(self._logs), self._path)

    def append(self, snapshot: ProfileSnapshot) -> None:
        """
        Append a snapshot and move the owner's current pointer to it.

        Raises:
            ValueError: version is not latest + 1
            OSError: the log could not be written
        """
        expected = self.latest_version(snapshot.owner_id) + 1
        if snapshot.version != expected:
            raise ValueError(
                f"snapshot version {snapshot.version} for {snapshot.owner_id} "
                f"does not follow {expected - 1}"
            )

        if self._path is not None:
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(snapshot.model_dump_json() + "\n")
                f.flush()
                os.fsync(f.fileno())

        self._logs[snapshot.owner_id] = self._logs.get(snapshot.owner_id, ()) + (snapshot,)
        self._current[snapshot.owner_id] = snapshot

    def current(self, owner_id: str) -> Optional[ProfileSnapshot]:
        return self._current.get(owner_id)

    def get(self, owner_id: str, version: int) -> Optional[ProfileSnapshot]:
        for snapshot in self._logs.get(owner_id, ()):
            if snapshot.version == version:
                return snapshot
        return None

    def history(self, owner_id: str) -> List[ProfileSnapshot]:
        """All versions, oldest first"""
        return list(self._logs.get(owner_id, ()))

    def latest_version(self, owner_id: str) -> int:
        log = self._logs.get(owner_id)
        return log[-1].version if log else 0

    def owners(self) -> List[str]:
        return sorted(self._current)

    def current_snapshots(self) -> List[ProfileSnapshot]:
        current = dict(self._current)
        return [current[owner_id] for owner_id in sorted(current)]

