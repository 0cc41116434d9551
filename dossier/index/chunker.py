"""
Snapshot Chunker

Splits a ProfileSnapshot into bounded-size text units. Each chunk is the
unit of embedding and of citation.
"""

import re
from dataclasses import dataclass, field
from typing import List, Tuple

from ..common.schemas import ProfileSnapshot, render_fact_line
from ..common.schemas.templates import group_by_namespace

NARRATIVE_FIELD = "narrative"

_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")


@dataclass
class Chunk:
    chunk_id: str
    text: str
    field_names: List[str] = field(default_factory=list)


def split_sentences(text: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_RE.split(text) if s.strip()]


def split_long(piece: str, chunk_size: int) -> List[str]:
    """Break one over-long piece at word boundaries"""
    parts: List[str] = []
    current = ""
    for word in piece.split():
        while len(word) > chunk_size:
            if current:
                parts.append(current)
                current = ""
            parts.append(word[:chunk_size])
            word = word[chunk_size:]
        candidate = f"{current} {word}" if current else word
        if len(candidate) > chunk_size:
            parts.append(current)
            current = word
        else:
            current = candidate
    if current:
        parts.append(current)
    return parts


def pack(pieces: List[Tuple[str, str]], chunk_size: int, separator: str = " ") -> List[List[Tuple[str, str]]]:
    """
    Greedily pack (text, field_name) pieces into groups whose joined text
    stays within chunk_size. Over-long pieces are split first.
    """
    groups: List[List[Tuple[str, str]]] = []
    current: List[Tuple[str, str]] = []
    length = 0
    for text, field_name in pieces:
        parts = split_long(text, chunk_size) if len(text) > chunk_size else [text]
        for part in parts:
            added = len(part) + (len(separator) if current else 0)
            if current and length + added > chunk_size:
                groups.append(current)
                current, length = [], 0
                added = len(part)
            current.append((part, field_name))
            length += added
    if current:
        groups.append(current)
    return groups


def chunk_snapshot(snapshot: ProfileSnapshot, chunk_size: int = 400) -> List[Chunk]:
    """
    Chunk a snapshot.

    Narrative sentences are packed into chunks first; structured facts
    follow as "<Label>: <value>" lines, packed per namespace so a chunk
    never mixes e.g. skills with education.

    Chunk ids are "<owner_id>:v<version>:<n>".
    """
    chunk_size = max(40, chunk_size)
    chunks: List[Chunk] = []

    def add(group: List[Tuple[str, str]], separator: str) -> None:
        field_names: List[str] = []
        for _, field_name in group:
            if field_name not in field_names:
                field_names.append(field_name)
        chunks.append(Chunk(
            chunk_id=f"{snapshot.owner_id}:v{snapshot.version}:{len(chunks)}",
            text=separator.join(text for text, _ in group),
            field_names=field_names,
        ))

    if snapshot.narrative_text:
        sentences = [(s, NARRATIVE_FIELD) for s in split_sentences(snapshot.narrative_text)]
        for group in pack(sentences, chunk_size):
            add(group, " ")

    for facts in group_by_namespace(snapshot.structured_facts).values():
        lines = [(render_fact_line(fact), fact.field_name) for fact in facts]
        for group in pack(lines, chunk_size, separator="\n"):
            add(group, "\n")

    return chunks
