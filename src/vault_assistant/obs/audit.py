"""Tool audit trail: sanitised NDJSON records with retention and rotation."""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from vault_assistant.config import STATE_DIR, ToolSettings
from vault_assistant.types import ToolExecutionLog

LOGGER = logging.getLogger(__name__)

LOG_FILE_NAME = "tools.log"
DEFAULT_LOG_DIR = f"{STATE_DIR}/logs"
REDACTED = "[REDACTED]"

_PATH_KEYS = frozenset({"path", "url", "file", "file_list", "file_pattern", "backup_path"})
_URL_VALUE = re.compile(r"^[a-z][a-z0-9+.-]*://", flags=re.IGNORECASE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditLogger:
    """Append-only audit log of tool executions, denials and undos.

    Entries are kept in memory for `get_logs` and written to disk in batches:
    when `audit_batch_size` entries are pending, on `flush()` and on
    `shutdown()`. A crash between batches loses at most the pending batch.
    """

    def __init__(
        self,
        settings: ToolSettings,
        log_dir: str | Path = DEFAULT_LOG_DIR,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings
        self.log_dir = Path(log_dir)
        self._clock = clock
        self._entries: list[ToolExecutionLog] = []
        self._pending: list[ToolExecutionLog] = []

    @property
    def log_path(self) -> Path:
        return self.log_dir / LOG_FILE_NAME

    @property
    def pending(self) -> int:
        return len(self._pending)

    def initialize(self) -> None:
        if not self.settings.enable_audit_log:
            return
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self._load()
            self._rotate_if_needed()
        except OSError:
            LOGGER.warning("Failed to initialise audit log in %s", self.log_dir, exc_info=True)

    def shutdown(self) -> None:
        self.flush()

    def log_execution(self, entry: ToolExecutionLog) -> None:
        if not self.settings.enable_audit_log:
            return
        record = self.sanitize(entry)
        self._entries.append(record)
        self._pending.append(record)
        if len(self._pending) >= self.settings.audit_batch_size:
            self.flush()

    def log_consent_denied(self, tool_name: str, parameters: dict[str, Any]) -> None:
        self.log_execution(
            ToolExecutionLog(
                timestamp=self._timestamp(),
                tool=tool_name,
                execution_id="denied",
                parameters=dict(parameters),
                result={"success": False, "error": "Consent denied"},
                duration_ms=0.0,
            )
        )

    def log_undo(self, tool_name: str, execution_id: str) -> None:
        self.log_execution(
            ToolExecutionLog(
                timestamp=self._timestamp(),
                tool=tool_name,
                execution_id=f"undo-{execution_id}",
                parameters={"original_execution_id": execution_id},
                result={"success": True},
                duration_ms=0.0,
            )
        )

    def get_logs(self, limit: int | None = None) -> list[ToolExecutionLog]:
        if limit:
            return self._entries[-limit:]
        return list(self._entries)

    def clear_logs(self) -> None:
        self._entries = []
        self._pending = []
        try:
            self.log_path.unlink(missing_ok=True)
        except OSError:
            LOGGER.warning("Failed to clear audit log", exc_info=True)

    def update_settings(self, settings: ToolSettings) -> None:
        self.settings = settings

    def flush(self) -> None:
        if not self._pending:
            return
        batch, self._pending = self._pending, []
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a", encoding="utf-8") as handle:
                for record in batch:
                    handle.write(json.dumps(record.to_dict(), ensure_ascii=False, default=str) + "\n")
        except OSError:
            LOGGER.warning("Failed to persist %d audit entries", len(batch), exc_info=True)
            return
        self._rotate_if_needed()

    def sanitize(self, entry: ToolExecutionLog) -> ToolExecutionLog:
        parameters: dict[str, Any] = dict(entry.parameters)
        if not self.settings.log_parameter_values:
            parameters = {"_redacted": True}
        if self.settings.anonymize_log:
            parameters = {key: _anonymize(key, value) for key, value in parameters.items()}
        return ToolExecutionLog(
            timestamp=entry.timestamp,
            tool=entry.tool,
            execution_id=entry.execution_id,
            parameters=parameters,
            result=entry.result,
            duration_ms=entry.duration_ms,
        )

    def rotated_files(self) -> list[Path]:
        if not self.log_dir.exists():
            return []
        return sorted(self.log_dir.glob("tools-*.log"))

    def _timestamp(self) -> str:
        return self._clock().isoformat()

    def _load(self) -> None:
        if not self.log_path.exists():
            return
        loaded: list[ToolExecutionLog] = []
        for line in self.log_path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                loaded.append(ToolExecutionLog.from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError):
                LOGGER.debug("Skipping malformed audit line")
        kept = self._prune(loaded)
        self._entries = kept
        if len(kept) != len(loaded):
            self._rewrite(kept)

    def _prune(self, entries: list[ToolExecutionLog]) -> list[ToolExecutionLog]:
        days = self.settings.audit_log_retention_days
        if days <= 0:
            return entries
        cutoff = self._clock() - timedelta(days=days)
        kept = []
        for entry in entries:
            try:
                stamp = datetime.fromisoformat(entry.timestamp)
            except ValueError:
                continue
            if stamp.tzinfo is None:
                stamp = stamp.replace(tzinfo=timezone.utc)
            if stamp >= cutoff:
                kept.append(entry)
        return kept

    def _rewrite(self, entries: list[ToolExecutionLog]) -> None:
        lines = [json.dumps(entry.to_dict(), ensure_ascii=False, default=str) for entry in entries]
        self.log_path.write_text("".join(line + "\n" for line in lines), encoding="utf-8")

    def _rotate_if_needed(self) -> None:
        try:
            if not self.log_path.exists() or self.log_path.stat().st_size < self.settings.audit_max_bytes:
                return
            suffix = self._clock().strftime("%Y-%m-%dT%H-%M-%S-%f")
            target = self.log_dir / f"tools-{suffix}.log"
            self.log_path.rename(target)
            LOGGER.info("Rotated audit log to %s", target.name)
            rotated = self.rotated_files()
            excess = len(rotated) - self.settings.audit_max_rotated
            for stale in rotated[: max(0, excess)]:
                stale.unlink(missing_ok=True)
        except OSError:
            LOGGER.warning("Failed to rotate audit log", exc_info=True)


def _anonymize(key: str, value: Any) -> Any:
    if key in _PATH_KEYS:
        return REDACTED
    if isinstance(value, str) and _URL_VALUE.match(value):
        return REDACTED
    return value


class Timer:
    """Simple context timer used around tool executions."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
