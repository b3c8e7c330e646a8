"""Line-range file edits with backups, diffs and undo."""

from __future__ import annotations

import difflib
import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field

from vault_assistant.agent.registry import ToolSpec
from vault_assistant.config import STATE_DIR, RiskLevel
from vault_assistant.ingest.vault import DocumentSource, file_name
from vault_assistant.types import ToolResult

LOGGER = logging.getLogger(__name__)


class PatchOperation(BaseModel):
    start_line: int = Field(ge=1, description="First line to replace (1-indexed)")
    end_line: int = Field(
        ge=0, description="Last line to replace (1-indexed, inclusive); below start_line inserts before it"
    )
    new_content: str = Field(description="Replacement text; may span several lines")


class ApplyPatchInput(BaseModel):
    path: str = Field(min_length=1, description="File path to modify")
    patches: list[PatchOperation] = Field(min_length=1, description="Edit operations to apply")


@dataclass(slots=True)
class _UndoEntry:
    path: str
    content: str


def apply_patches(content: str, patches: list[PatchOperation]) -> str:
    """Splice every operation into `content`, bottom-most first.

    Applying from the end keeps the line numbers of earlier operations valid.
    """

    lines = content.split("\n")
    for patch in sorted(patches, key=lambda item: item.start_line, reverse=True):
        if patch.start_line > len(lines) + 1:
            raise ValueError(f"Start line {patch.start_line} exceeds file length ({len(lines)} lines)")
        start = patch.start_line - 1
        end = max(start, min(len(lines), patch.end_line))
        lines[start:end] = patch.new_content.split("\n")
    return "\n".join(lines)


def unified_diff(path: str, before: str, after: str) -> str:
    return "\n".join(
        difflib.unified_diff(
            before.split("\n"),
            after.split("\n"),
            fromfile=f"a/{path}",
            tofile=f"b/{path}",
            lineterm="",
        )
    )


def diff_stats(before: str, after: str) -> tuple[int, int]:
    """Count added and removed lines between two versions of a document."""

    added = removed = 0
    matcher = difflib.SequenceMatcher(None, before.split("\n"), after.split("\n"), autojunk=False)
    for tag, first_start, first_end, second_start, second_end in matcher.get_opcodes():
        if tag in ("replace", "delete"):
            removed += first_end - first_start
        if tag in ("replace", "insert"):
            added += second_end - second_start
    return added, removed


def checksum(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class ApplyPatchTool:
    """The only tool that writes to the vault.

    Every execution stores the pre-image twice: as a backup file under the
    hidden backup folder and in the in-memory undo stack keyed by the
    execution id.
    """

    name = "apply_patch"
    description = "Propose and apply file edits with diff preview and undo support"

    def __init__(self, source: DocumentSource, backup_dir: str | Path = f"{STATE_DIR}/backups") -> None:
        self.source = source
        self.backup_dir = Path(backup_dir).as_posix().strip("/")
        self._undo_stack: dict[str, _UndoEntry] = {}

    def spec(self) -> ToolSpec:
        return ToolSpec(
            name=self.name,
            description=self.description,
            args_schema=ApplyPatchInput,
            handler=self.execute,
            risk_level=RiskLevel.HIGH,
            can_bypass=False,
            requires_preview=True,
            preview=self.preview,
            undo=self.undo,
            tags=["vault", "write"],
        )

    async def preview(self, input_data: ApplyPatchInput) -> str:
        original = self._load(input_data.path)
        updated = apply_patches(original, input_data.patches)
        return unified_diff(input_data.path, original, updated)

    async def execute(self, input_data: ApplyPatchInput) -> ToolResult:
        path = input_data.path
        if not self.source.exists(path):
            return ToolResult.failure(f"File not found: {path}")
        if self.source.is_dir(path):
            return ToolResult.failure(f"Path is a directory, not a file: {path}")

        original = self.source.read(path)
        try:
            updated = apply_patches(original, input_data.patches)
        except ValueError as exc:
            return ToolResult.failure(str(exc))
        if updated == original:
            return ToolResult.failure("Patch does not change the file")

        execution_id = f"patch-{int(time.time() * 1000)}-{secrets.token_hex(5)}"
        backup_path = self._create_backup(path, original, execution_id)
        self.source.write(path, updated)
        self._undo_stack[execution_id] = _UndoEntry(path=path, content=original)

        diff = unified_diff(path, original, updated)
        added, removed = diff_stats(original, updated)
        LOGGER.info("Patched %s (+%d -%d), backup at %s", path, added, removed, backup_path)
        return ToolResult(
            success=True,
            execution_id=execution_id,
            data={
                "modified": True,
                "diff": diff,
                "backup_path": backup_path,
                "checksum_before": checksum(original),
                "checksum_after": checksum(updated),
            },
            metadata={
                "patches": len(input_data.patches),
                "lines_added": added,
                "lines_removed": removed,
            },
        )

    async def undo(self, execution_id: str) -> None:
        entry = self._undo_stack.pop(execution_id, None)
        if entry is None:
            raise ValueError(f"No undo information found for execution ID: {execution_id}")
        self.source.write(entry.path, entry.content)
        LOGGER.info("Restored %s from execution %s", entry.path, execution_id)

    def can_undo(self, execution_id: str) -> bool:
        return execution_id in self._undo_stack

    def _load(self, path: str) -> str:
        if not self.source.exists(path) or self.source.is_dir(path):
            raise ValueError(f"File not found: {path}")
        return self.source.read(path)

    def _create_backup(self, path: str, content: str, execution_id: str) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        backup_path = f"{self.backup_dir}/{execution_id}-{timestamp}-{file_name(path)}"
        self.source.write(backup_path, content)
        return backup_path
