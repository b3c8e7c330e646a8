"""Query tokenising, snippet sanitising and context prompt assembly."""

from __future__ import annotations

import re

from vault_assistant.types import Chunk, ChunkSource, RetrievedChunk

_MARKDOWN_IMAGE = re.compile(r"!\[[^\]]*\]\([^)]+\)")
_WIKI_EMBED = re.compile(r"!\[\[[^\]]+\]\]")
_MARKDOWN_LINK = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_HTML_IMAGE = re.compile(r"<img[^>]*>", flags=re.IGNORECASE)
_INLINE_SPACE = re.compile(r"[\t\f\r]+")
_BLANK_RUNS = re.compile(r"\n{3,}")

_PROMPT_HEADER = "Context snippets:"
_PROMPT_FOOTER = "Use the context above when answering. Cite the snippet numbers when relevant."


def tokenize(text: str, min_length: int = 3) -> list[str]:
    """Lowercase alphanumeric runs of at least `min_length` characters."""

    pattern = re.compile(rf"[a-z0-9]{{{min_length},}}")
    return pattern.findall(text.lower())


def sanitize_for_prompt(text: str) -> str:
    """Strip image embeds and collapse links to their text."""

    out = _MARKDOWN_IMAGE.sub("", text)
    out = _WIKI_EMBED.sub("", out)
    out = _MARKDOWN_LINK.sub(r"\1", out)
    out = _HTML_IMAGE.sub("", out)
    out = _INLINE_SPACE.sub(" ", out)
    return _BLANK_RUNS.sub("\n\n", out)


def format_location(chunk: Chunk) -> str:
    if not chunk.headings:
        return chunk.file
    return " > ".join([chunk.file, *chunk.headings])


def build_prompt(
    active: list[RetrievedChunk],
    retrieved: list[RetrievedChunk],
    mentions: list[RetrievedChunk] | None = None,
) -> str:
    """Assemble the numbered context block.

    Entries appear as active, then retrieved, then mentions. Entries whose
    text sanitises to nothing are dropped here only; they stay in the
    context lists shown to the user. Returns an empty string when no entry
    survives.
    """

    sections: list[str] = []
    ordered: list[tuple[RetrievedChunk, ChunkSource]] = [
        *((entry, entry.source) for entry in active),
        *((entry, entry.source) for entry in retrieved),
        *((entry, "mention") for entry in mentions or []),
    ]
    for entry, source in ordered:
        clean = sanitize_for_prompt(entry.chunk.content).strip()
        if not clean:
            continue
        sections.append(f"{len(sections) + 1}. ({source}) {format_location(entry.chunk)}\n{clean}")

    if not sections:
        return ""
    body = "\n\n".join(sections)
    return f"{_PROMPT_HEADER}\n{body}\n\n{_PROMPT_FOOTER}"
