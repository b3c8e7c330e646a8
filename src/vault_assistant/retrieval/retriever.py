"""Lexical context retriever: active document, index-wide scoring, mentions."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from vault_assistant.config import RetrievalConfig
from vault_assistant.ingest.chunker import find_chunk_at
from vault_assistant.ingest.indexer import VaultIndexer
from vault_assistant.ingest.store import ChunkStore
from vault_assistant.ingest.vault import ActiveDocument
from vault_assistant.retrieval.mentions import resolve_mentions
from vault_assistant.retrieval.prompt import build_prompt, sanitize_for_prompt, tokenize
from vault_assistant.types import Chunk, RAGContext, RetrievedChunk

LOGGER = logging.getLogger(__name__)


class ContextRetriever:
    """Builds a bounded, ranked `RAGContext` for one outgoing message.

    The only I/O performed is reading the active document when the host did
    not supply its text, and chunking explicitly mentioned documents that
    were never indexed. Scoring walks the in-memory store once per request
    using the precomputed lowercase chunk text.
    """

    def __init__(
        self,
        store: ChunkStore,
        indexer: VaultIndexer,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.store = store
        self.indexer = indexer
        self.config = config or RetrievalConfig()

    def update_settings(self, config: RetrievalConfig) -> None:
        self.config = config

    async def get_context(
        self,
        query: str,
        *,
        active: ActiveDocument | None = None,
        mentions: Sequence[str] = (),
        allow_retrieved: bool = True,
    ) -> RAGContext:
        tokens = tokenize(query, self.config.min_token_length)
        active_chunks = self.active_chunks(active)

        retrieved: list[RetrievedChunk] = []
        if allow_retrieved:
            budget = self.config.max_context - len(active_chunks)
            exclude = {entry.chunk.file for entry in active_chunks}
            retrieved = self.retrieve(tokens, exclude, budget)

        mention_paths: list[str] = []
        missing: list[str] = []
        if mentions:
            mention_paths, missing = resolve_mentions(list(mentions), self.indexer.document_paths())
        mention_chunks = await self.mention_chunks(mention_paths)

        prompt = build_prompt(active_chunks, retrieved, mention_chunks)
        return RAGContext(
            active=active_chunks,
            retrieved=retrieved,
            mentions=mention_chunks,
            prompt=prompt,
            missing=missing,
        )

    def active_chunks(self, active: ActiveDocument | None) -> list[RetrievedChunk]:
        """Fresh chunks of the open document, cursor chunk first."""

        if active is None or not self.indexer.is_eligible(active.path):
            return []
        text = active.text
        if text is None:
            try:
                text = self.indexer.source.read(active.path)
            except (OSError, UnicodeDecodeError, ValueError):
                LOGGER.warning("Could not read active document %s", active.path, exc_info=True)
                return []
        chunks = self.indexer.chunk_text(active.path, text)
        if not chunks:
            return []

        ordered = list(chunks)
        if active.cursor_offset is not None:
            index = find_chunk_at(chunks, active.cursor_offset)
            if index >= 0:
                ordered = [chunks[index], *chunks[:index], *chunks[index + 1 :]]

        results: list[RetrievedChunk] = []
        score = self.config.pinned_score
        for chunk in ordered:
            if not sanitize_for_prompt(chunk.content).strip():
                continue
            results.append(RetrievedChunk(chunk=chunk, score=score, source="active"))
            score -= 1
        return results

    def retrieve(self, tokens: list[str], exclude_files: set[str], budget: int) -> list[RetrievedChunk]:
        if budget <= 0 or not tokens:
            return []
        scored: list[RetrievedChunk] = []
        for chunk in self.store.chunks():
            if chunk.file in exclude_files:
                continue
            score = self.score_chunk(chunk, tokens)
            if score <= 0:
                continue
            scored.append(RetrievedChunk(chunk=chunk, score=score, source="retrieved"))
        # sorted() is stable: equal scores keep store insertion order
        scored = sorted(scored, key=lambda item: item.score, reverse=True)
        return scored[:budget]

    def score_chunk(self, chunk: Chunk, tokens: list[str]) -> int:
        if not tokens:
            return 0
        occurrences = sum(chunk.content_lower.count(token) for token in tokens)
        headings = [heading.lower() for heading in chunk.headings]
        heading_hits = sum(1 for token in tokens if any(token in heading for heading in headings))
        return self.config.token_weight * occurrences + self.config.heading_weight * heading_hits

    async def mention_chunks(self, paths: list[str]) -> list[RetrievedChunk]:
        results: list[RetrievedChunk] = []
        score = self.config.pinned_score
        for path in dict.fromkeys(paths):
            chunks = await self.indexer.ensure_file_chunks(path)
            if not chunks:
                continue
            results.append(RetrievedChunk(chunk=chunks[0], score=score, source="mention"))
            score -= 1
        return results
