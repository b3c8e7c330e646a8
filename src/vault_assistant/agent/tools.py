"""Built-in tool implementations for the vault assistant."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

import httpx
from pydantic import BaseModel, Field

from vault_assistant.agent.patch import ApplyPatchTool
from vault_assistant.agent.registry import ToolProvider, ToolSpec
from vault_assistant.agent.web import WebFetchTool, WebSearchTool
from vault_assistant.config import STATE_DIR, RiskLevel, ToolSettings
from vault_assistant.ingest.vault import DocumentSource, DocumentStat, file_name, has_extension, is_hidden
from vault_assistant.types import ToolResult

LOGGER = logging.getLogger(__name__)

SettingsGetter = Callable[[], ToolSettings]

_GLOB_CHARS = ("*", "?", "[")


class FindInput(BaseModel):
    pattern: str = Field(min_length=1, description="Glob pattern (e.g. **/*.md) or fuzzy search query")
    include_hidden: bool = Field(default=False, description="Include hidden files in results")
    max_results: int | None = Field(default=None, ge=1, description="Maximum number of results to return")


class GrepInput(BaseModel):
    pattern: str = Field(min_length=1, description="Regex pattern to search for")
    file_pattern: str | None = Field(default=None, description="Glob pattern to limit search to specific files")
    file_list: list[str] | None = Field(
        default=None, description="Explicit list of file paths to search (overrides file_pattern)"
    )
    context_lines: int | None = Field(default=None, ge=0, description="Lines of context around each match")
    max_matches: int | None = Field(default=None, ge=1, description="Maximum number of matches to return")


class ReadInput(BaseModel):
    path: str = Field(min_length=1, description="File path relative to the vault root")
    start_line: int | None = Field(default=None, ge=1, description="First line to read (1-indexed)")
    end_line: int | None = Field(default=None, ge=1, description="Last line to read (1-indexed, inclusive)")
    max_bytes: int | None = Field(default=None, ge=1, description="Maximum file size to read in bytes")


def is_glob_pattern(pattern: str) -> bool:
    return any(char in pattern for char in _GLOB_CHARS)


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a vault glob into an anchored regex.

    `**` crosses folders (`**/` also matches no folder at all), `*` and `?`
    stay inside one path segment and `[...]` is a character class.
    """

    parts: list[str] = []
    index = 0
    while index < len(pattern):
        char = pattern[index]
        if pattern.startswith("**/", index):
            parts.append("(?:.*/)?")
            index += 3
            continue
        if pattern.startswith("**", index):
            parts.append(".*")
            index += 2
            continue
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        elif char == "[":
            close = pattern.find("]", index + 1)
            if close == -1:
                parts.append(re.escape(char))
            else:
                body = pattern[index + 1 : close]
                if body.startswith("!"):
                    body = "^" + body[1:]
                parts.append(f"[{body}]")
                index = close + 1
                continue
        else:
            parts.append(re.escape(char))
        index += 1
    return re.compile("^" + "".join(parts) + "$")


def fuzzy_score(query: str, text: str) -> int:
    """Subsequence score: one point per matched char, +5 for adjacent matches."""

    query_index = 0
    score = 0
    last_match = -1
    for position, char in enumerate(text):
        if query_index >= len(query):
            break
        if char == query[query_index]:
            score += 1
            if last_match >= 0 and position == last_match + 1:
                score += 5
            last_match = position
            query_index += 1
    return score if query_index == len(query) else 0


def rank_path(query: str, path: str) -> int:
    name = file_name(path).lower()
    lowered = path.lower()
    if name == query:
        return 1000
    if name.startswith(query):
        return 500
    if query in name:
        return 250
    if query in lowered:
        return 100
    return fuzzy_score(query, lowered)


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def _describe(path: str, stat: DocumentStat) -> dict[str, object]:
    return {
        "path": path,
        "modified": _iso(stat.mtime),
        "created": _iso(stat.ctime),
        "size": stat.size,
    }


def build_find_tool(source: DocumentSource, settings: SettingsGetter) -> ToolSpec:
    async def _find(input_data: FindInput) -> ToolResult:
        max_results = input_data.max_results or settings().find_max_results
        files = [
            path for path in source.list_files() if input_data.include_hidden or not is_hidden(path)
        ]

        if is_glob_pattern(input_data.pattern):
            regex = glob_to_regex(input_data.pattern)
            matches = [path for path in files if regex.match(path)]
        else:
            query = input_data.pattern.lower()
            scored = [(rank_path(query, path), path) for path in files]
            ranked = sorted((item for item in scored if item[0] > 0), key=lambda item: item[0], reverse=True)
            matches = [path for _, path in ranked]

        results = [_describe(path, source.stat(path)) for path in matches[:max_results]]
        return ToolResult(
            success=True,
            data=results,
            metadata={
                "total_matches": len(matches),
                "returned": len(results),
                "truncated": len(matches) > max_results,
            },
        )

    return ToolSpec(
        name="find",
        description="Search for files in the vault by name or path pattern using glob patterns or fuzzy matching",
        args_schema=FindInput,
        handler=_find,
        risk_level=RiskLevel.SAFE,
        tags=["vault", "search"],
    )


def build_grep_tool(source: DocumentSource, settings: SettingsGetter) -> ToolSpec:
    async def _grep(input_data: GrepInput) -> ToolResult:
        current = settings()
        context_lines = current.grep_context_lines if input_data.context_lines is None else input_data.context_lines
        max_matches = input_data.max_matches or current.grep_max_matches

        try:
            regex = re.compile(input_data.pattern, flags=re.MULTILINE)
        except re.error as exc:
            return ToolResult.failure(f"Invalid regex pattern: {exc}")

        files = [path for path in source.list_files() if has_extension(path, (".md",))]
        if input_data.file_list:
            allowed = set(input_data.file_list)
            files = [path for path in files if path in allowed]
        else:
            files = [path for path in files if not is_hidden(path)]
            if input_data.file_pattern:
                file_regex = glob_to_regex(input_data.file_pattern)
                files = [path for path in files if file_regex.match(path)]

        matches: list[dict[str, object]] = []
        total = 0
        for path in files:
            try:
                lines = source.read(path).split("\n")
            except (OSError, UnicodeDecodeError, ValueError):
                LOGGER.debug("grep skipped unreadable %s", path, exc_info=True)
                continue
            for number, line in enumerate(lines):
                if not regex.search(line):
                    continue
                total += 1
                if len(matches) >= max_matches:
                    continue
                first = max(0, number - context_lines)
                last = min(len(lines) - 1, number + context_lines)
                matches.append(
                    {
                        "file": path,
                        "line": number + 1,
                        "match": line,
                        "context": "\n".join(lines[first : last + 1]),
                    }
                )

        return ToolResult(
            success=True,
            data=matches,
            metadata={
                "total_matches": total,
                "returned": len(matches),
                "truncated": total > max_matches,
                "files_searched": len(files),
            },
        )

    return ToolSpec(
        name="grep",
        description="Search file contents using regex patterns with surrounding context",
        args_schema=GrepInput,
        handler=_grep,
        risk_level=RiskLevel.LOW,
        tags=["vault", "search"],
    )


def build_read_tool(source: DocumentSource, settings: SettingsGetter) -> ToolSpec:
    async def _read(input_data: ReadInput) -> ToolResult:
        path = input_data.path
        max_bytes = input_data.max_bytes or settings().read_max_bytes

        if not source.exists(path):
            return ToolResult.failure(f"File not found: {path}")
        if source.is_dir(path):
            return ToolResult.failure(f"Path is a directory, not a file: {path}")

        stat = source.stat(path)
        if stat.size > max_bytes:
            return ToolResult.failure(
                f"File size ({stat.size} bytes) exceeds maximum allowed ({max_bytes} bytes)"
            )

        content = source.read(path)
        partial = input_data.start_line is not None or input_data.end_line is not None
        if partial:
            lines = content.split("\n")
            start = (input_data.start_line or 1) - 1
            end = min(len(lines), input_data.end_line or len(lines))
            if start >= len(lines):
                return ToolResult.failure(
                    f"Start line {input_data.start_line} exceeds file length ({len(lines)} lines)"
                )
            if end <= start:
                return ToolResult.failure(
                    f"End line {input_data.end_line} is before start line {input_data.start_line}"
                )
            content = "\n".join(lines[start:end])

        data = _describe(path, stat)
        data["content"] = content
        return ToolResult(
            success=True,
            data=data,
            metadata={
                "lines": len(content.split("\n")),
                "bytes": len(content.encode("utf-8")),
                "partial": partial,
            },
        )

    return ToolSpec(
        name="read",
        description="Retrieve full or partial file contents safely",
        args_schema=ReadInput,
        handler=_read,
        risk_level=RiskLevel.LOW,
        tags=["vault", "read"],
    )


class BuiltInToolProvider(ToolProvider):
    """Standard vault and network tools."""

    id = "builtin"
    name = "Built-in Tools"
    description = "Standard file system and network tools for the vault assistant"
    version = "1.0.0"

    def __init__(
        self,
        source: DocumentSource,
        settings: ToolSettings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        backup_dir: str | Path = f"{STATE_DIR}/backups",
    ) -> None:
        self.source = source
        self.settings = settings or ToolSettings()
        self.patch_tool = ApplyPatchTool(source, backup_dir=backup_dir)
        self.search_tool = WebSearchTool(self.settings, client=http_client)
        self.fetch_tool = WebFetchTool(self.settings, client=http_client)

    def tools(self) -> list[ToolSpec]:
        return [
            build_find_tool(self.source, self._current_settings),
            build_grep_tool(self.source, self._current_settings),
            build_read_tool(self.source, self._current_settings),
            self.patch_tool.spec(),
            self.search_tool.spec(),
            self.fetch_tool.spec(),
        ]

    def update_settings(self, settings: ToolSettings) -> None:
        self.settings = settings
        self.search_tool.update_settings(settings)
        self.fetch_tool.update_settings(settings)

    async def shutdown(self) -> None:
        await self.search_tool.aclose()
        await self.fetch_tool.aclose()

    def _current_settings(self) -> ToolSettings:
        return self.settings
