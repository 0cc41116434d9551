"""
Dossier Profile Synthesis

Current facts → conflict resolution → versioned, immutable snapshots.
"""

from .resolver import resolve_facts
from .store import FactStore, SnapshotStore
from .synthesizer import ProfileChanged, ProfileSynthesizer

__all__ = [
    "resolve_facts",
    "FactStore",
    "SnapshotStore",
    "ProfileChanged",
    "ProfileSynthesizer",
]
