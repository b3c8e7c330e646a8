"""Heading-aware chunking of markdown documents."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from vault_assistant.config import IndexConfig
from vault_assistant.types import Chunk

_HEADING_PATTERN = re.compile(r"^(#+)\s*(.*)$")


@dataclass(slots=True)
class _ChunkState:
    lines: list[str] = field(default_factory=list)
    start: int = 0


class HeadingChunker:
    """Splits a document into chunks that never cross a heading boundary.

    Algorithm:
    1. Scan the document line by line, tracking the cumulative character
       offset (each line counts its trailing newline).
    2. A heading line (stripped form starts with `#`) flushes the chunk being
       accumulated and updates the outline stack: the stack is truncated to
       `level - 1` entries and the heading title is pushed. Every chunk carries
       a copy of the stack that was current when its text was collected.
    3. Other lines accumulate. Once the joined text is longer than
       `chunk_chars`, the chunk is flushed, so chunks are soft-bounded.
    4. Flushed text is stripped; whitespace-only chunks are dropped.

    Offsets are half-open `[start, end)` and contiguous: the next chunk starts
    where the previous flush happened, so siblings never overlap. Chunking the
    same text twice gives identical ids, headings and boundaries.
    """

    def __init__(self, config: IndexConfig | None = None) -> None:
        self.config = config or IndexConfig()

    def chunk_document(self, path: str, text: str, updated: float = 0.0) -> list[Chunk]:
        chunks: list[Chunk] = []
        headings: list[str] = []
        state = _ChunkState()
        offset = 0

        def flush() -> None:
            nonlocal state
            content = "\n".join(state.lines).strip()
            if not content:
                state.lines = []
                return
            chunks.append(
                Chunk(
                    id=f"{path}::{len(chunks)}",
                    file=path,
                    headings=list(headings),
                    content=content,
                    updated=updated,
                    start=state.start,
                    end=offset,
                )
            )
            state = _ChunkState(start=offset)

        for line in text.split("\n"):
            if line.strip().startswith("#"):
                flush()
                headings = update_headings(headings, line)
                offset += len(line) + 1
                continue

            state.lines.append(line)
            offset += len(line) + 1
            if len("\n".join(state.lines)) > self.config.chunk_chars:
                flush()

        flush()
        return chunks


def update_headings(existing: list[str], raw_line: str) -> list[str]:
    """Return the outline stack after encountering `raw_line`."""

    match = _HEADING_PATTERN.match(raw_line)
    if not match:
        return existing
    level = len(match.group(1))
    title = match.group(2).strip()
    return [*existing[: level - 1], title]


def find_chunk_at(chunks: list[Chunk], offset: int) -> int:
    """Index of the chunk whose range contains `offset`, or -1."""

    for index, chunk in enumerate(chunks):
        if chunk.start <= offset <= chunk.end:
            return index
    return -1
