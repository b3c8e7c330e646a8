"""In-memory chunk store and its JSON snapshot."""

from __future__ import annotations

import json
from pathlib import Path

from vault_assistant.types import Chunk


class ChunkStore:
    """Ordered chunk collection with a per-document view.

    Every mutation builds fresh containers and publishes them with a single
    assignment, so a reader iterating `chunks()` during an update sees either
    the previous or the next list for a document, never a mix.
    """

    def __init__(self) -> None:
        self._chunks: list[Chunk] = []
        self._by_file: dict[str, list[Chunk]] = {}

    def __len__(self) -> int:
        return len(self._chunks)

    def chunks(self) -> list[Chunk]:
        return self._chunks

    def chunks_for(self, path: str) -> list[Chunk]:
        return self._by_file.get(path, [])

    def files(self) -> list[str]:
        return list(self._by_file)

    def replace_all(self, chunks: list[Chunk]) -> None:
        by_file: dict[str, list[Chunk]] = {}
        for chunk in chunks:
            by_file.setdefault(chunk.file, []).append(chunk)
        self._chunks, self._by_file = list(chunks), by_file

    def replace_file(self, path: str, chunks: list[Chunk]) -> None:
        remaining = [chunk for chunk in self._chunks if chunk.file != path]
        by_file = dict(self._by_file)
        by_file[path] = list(chunks)
        self._chunks, self._by_file = [*remaining, *chunks], by_file

    def remove_file(self, path: str) -> None:
        remaining = [chunk for chunk in self._chunks if chunk.file != path]
        by_file = {key: value for key, value in self._by_file.items() if key != path}
        self._chunks, self._by_file = remaining, by_file

    def cache_file(self, path: str, chunks: list[Chunk]) -> None:
        """Remember a document's chunks without making them searchable."""

        by_file = dict(self._by_file)
        by_file[path] = list(chunks)
        self._by_file = by_file

    def clear(self) -> None:
        self._chunks, self._by_file = [], {}


def read_snapshot(path: str | Path) -> list[Chunk]:
    """Load chunks from a snapshot file.

    Raises `OSError`, `ValueError`, `KeyError` or `TypeError` for unreadable or
    malformed snapshots; the caller decides how to recover.
    """

    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise ValueError("index snapshot must be a JSON array")
    return [Chunk.from_record(record) for record in payload]


def write_snapshot(path: str | Path, chunks: list[Chunk]) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    records = [chunk.to_record() for chunk in chunks]
    tmp = target.with_suffix(target.suffix + ".tmp")
    tmp.write_text(json.dumps(records, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp.replace(target)
