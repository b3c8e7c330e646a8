"""Incremental indexing: vault documents -> chunks -> store -> snapshot."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path

from vault_assistant.config import IndexConfig
from vault_assistant.ingest.chunker import HeadingChunker
from vault_assistant.ingest.store import ChunkStore, read_snapshot, write_snapshot
from vault_assistant.ingest.vault import DocumentSource, has_extension, is_hidden
from vault_assistant.types import Chunk

LOGGER = logging.getLogger(__name__)


class Debouncer:
    """Runs `callback` once, `delay` seconds after the last `schedule()`."""

    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._callback()


class VaultIndexer:
    """Keeps a `ChunkStore` consistent with the vault.

    The host delivers change notifications one at a time; each handler
    re-chunks a single document and swaps its chunks into the store. Disk
    writes are debounced so a burst of edits produces one snapshot write that
    reflects the final state.
    """

    def __init__(
        self,
        source: DocumentSource,
        store: ChunkStore,
        snapshot_path: str | Path,
        *,
        chunker: HeadingChunker | None = None,
        config: IndexConfig | None = None,
    ) -> None:
        self.source = source
        self.store = store
        self.snapshot_path = Path(snapshot_path)
        self.config = config or IndexConfig()
        self.chunker = chunker or HeadingChunker(self.config)
        self._saver = Debouncer(self.config.save_debounce_seconds, self._write_snapshot)
        self._listing: list[str] | None = None

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def save_pending(self) -> bool:
        return self._saver.pending

    async def initialize(self) -> None:
        await self.load()
        if self.enabled and len(self.store) == 0:
            await self.rebuild()

    async def load(self) -> None:
        if not self.snapshot_path.exists():
            self.store.clear()
            return
        try:
            chunks = read_snapshot(self.snapshot_path)
        except (OSError, ValueError, KeyError, TypeError):
            LOGGER.warning("Failed to load index snapshot, rebuilding", exc_info=True)
            self.store.clear()
            if self.enabled:
                await self.rebuild()
            return
        self.store.replace_all(chunks)
        LOGGER.info("Loaded %d chunks from %s", len(chunks), self.snapshot_path)

    async def rebuild(self) -> None:
        if not self.enabled:
            return
        chunks: list[Chunk] = []
        listing: list[str] = []
        for path in self.source.list_files():
            if not self.is_eligible(path):
                continue
            listing.append(path)
            if self.is_excluded(path):
                continue
            try:
                chunks.extend(self._chunk_path(path))
            except (OSError, UnicodeDecodeError, ValueError):
                LOGGER.warning("Skipping unreadable document %s", path, exc_info=True)
        self._listing = listing
        self.store.replace_all(chunks)
        LOGGER.info("Rebuilt index with %d chunks", len(chunks))
        await self.flush()

    async def handle_modify(self, path: str) -> None:
        self._track(path, present=True)
        if not self.enabled or not self.is_eligible(path):
            return
        if self.is_excluded(path):
            self.store.remove_file(path)
            self._schedule_save()
            return
        try:
            chunks = self._chunk_path(path)
        except (OSError, UnicodeDecodeError, ValueError):
            LOGGER.warning("Could not re-index %s", path, exc_info=True)
            return
        self.store.replace_file(path, chunks)
        self._schedule_save()

    async def handle_delete(self, path: str) -> None:
        self._track(path, present=False)
        if not self.is_eligible(path):
            return
        self.store.remove_file(path)
        self._schedule_save()

    async def handle_rename(self, path: str, old_path: str) -> None:
        self._track(old_path, present=False)
        if not self.is_eligible(path) and not self.is_eligible(old_path):
            return
        self.store.remove_file(old_path)
        if self.enabled:
            self._schedule_save()
        await self.handle_modify(path)

    async def ensure_file_chunks(self, path: str) -> list[Chunk]:
        """Chunks for `path`, chunking it on demand when it was never indexed."""

        existing = self.store.chunks_for(path)
        if existing:
            return existing
        if not self.is_eligible(path) or not self.source.exists(path) or self.source.is_dir(path):
            return []
        try:
            chunks = self._chunk_path(path)
        except (OSError, UnicodeDecodeError, ValueError):
            LOGGER.warning("Could not chunk mentioned document %s", path, exc_info=True)
            return []
        if self.enabled:
            self.store.replace_file(path, chunks)
            self._schedule_save()
        else:
            self.store.cache_file(path, chunks)
        return chunks

    async def set_enabled(self, enabled: bool) -> None:
        self.config = self.config.model_copy(update={"enabled": enabled})
        if enabled:
            if len(self.store) == 0:
                await self.rebuild()
        else:
            self._saver.cancel()

    async def update_config(self, config: IndexConfig) -> None:
        previous = self.config
        self.config = config
        self.chunker.config = config
        if config.extensions != previous.extensions:
            self._listing = None
        self._saver.delay = config.save_debounce_seconds
        if config.excluded_prefixes() != previous.excluded_prefixes() and config.enabled:
            await self.rebuild()
        elif config.enabled and not previous.enabled and len(self.store) == 0:
            await self.rebuild()

    async def clear_index(self) -> None:
        self.store.clear()
        self._saver.cancel()
        self.snapshot_path.unlink(missing_ok=True)

    async def flush(self) -> None:
        self._saver.cancel()
        self._write_snapshot()

    async def shutdown(self) -> None:
        if self._saver.pending:
            await self.flush()

    def document_paths(self) -> list[str]:
        """Eligible vault paths; listed once, then kept current by file events."""

        if self._listing is None:
            self._listing = [path for path in self.source.list_files() if self.is_eligible(path)]
        return self._listing

    def is_eligible(self, path: str) -> bool:
        return has_extension(path, self.config.extensions) and not is_hidden(path)

    def is_excluded(self, path: str) -> bool:
        return any(path.startswith(folder) for folder in self.config.excluded_prefixes())

    def chunk_text(self, path: str, text: str, updated: float = 0.0) -> list[Chunk]:
        return self.chunker.chunk_document(path, text, updated)

    def _chunk_path(self, path: str) -> list[Chunk]:
        text = self.source.read(path)
        updated = self.source.stat(path).mtime
        return self.chunker.chunk_document(path, text, updated)

    def _track(self, path: str, *, present: bool) -> None:
        if self._listing is None or not self.is_eligible(path):
            return
        if present and path not in self._listing:
            self._listing.append(path)
        elif not present and path in self._listing:
            self._listing.remove(path)

    def _schedule_save(self) -> None:
        self._saver.schedule()

    def _write_snapshot(self) -> None:
        try:
            write_snapshot(self.snapshot_path, self.store.chunks())
        except OSError:
            LOGGER.warning("Failed to persist index snapshot", exc_info=True)
