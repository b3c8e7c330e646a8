"""Configuration models for the vault assistant."""

from __future__ import annotations

import json
import logging
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

LOGGER = logging.getLogger(__name__)

STATE_DIR = ".vault-assistant"


class RiskLevel(str, Enum):
    SAFE = "safe"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ConsentMode(str, Enum):
    ALWAYS_ASK = "always_ask"
    SESSION_ALLOW = "session_allow"
    ALWAYS_ALLOW = "always_allow"
    NEVER_ALLOW = "never_allow"


class IndexConfig(BaseModel):
    """Configures which documents are indexed and how the snapshot is kept."""

    enabled: bool = True
    exclude_folders: list[str] = Field(default_factory=list)
    extensions: tuple[str, ...] = (".md",)
    chunk_chars: int = Field(default=800, ge=100)
    save_debounce_seconds: float = Field(default=2.5, ge=0.0)
    index_path: str = f"{STATE_DIR}/index/index.json"

    def excluded_prefixes(self) -> list[str]:
        return [folder.strip() for folder in self.exclude_folders if folder.strip()]


class RetrievalConfig(BaseModel):
    """Configures lexical scoring and the per-request context budget."""

    max_context: int = Field(default=4, ge=1)
    min_token_length: int = Field(default=3, ge=1)
    token_weight: int = Field(default=5, ge=0)
    heading_weight: int = Field(default=10, ge=0)
    pinned_score: int = Field(default=1000, ge=1)


def _default_consent_modes() -> dict[str, ConsentMode]:
    return {
        "find": ConsentMode.SESSION_ALLOW,
        "grep": ConsentMode.SESSION_ALLOW,
        "read": ConsentMode.SESSION_ALLOW,
        "apply_patch": ConsentMode.ALWAYS_ASK,
        "web_search": ConsentMode.ALWAYS_ASK,
        "web_fetch": ConsentMode.ALWAYS_ASK,
    }


def _default_rate_limits() -> dict[str, int]:
    return {
        "find": 100,
        "grep": 60,
        "read": 100,
        "apply_patch": 10,
        "web_search": 10,
        "web_fetch": 20,
    }


class ToolSettings(BaseModel):
    """Tool enablement, consent, rate limiting, network and audit policy."""

    enabled_tools: list[str] = Field(default_factory=lambda: ["find", "grep", "read"])
    consent_mode: dict[str, ConsentMode] = Field(default_factory=_default_consent_modes)
    developer_mode: bool = False
    print_logs: bool = False

    rate_limits: dict[str, int] = Field(default_factory=_default_rate_limits)
    default_rate_limit: int = Field(default=60, ge=1)
    global_rate_limit: int = Field(default=200, ge=1)

    cache_enabled: bool = True
    cache_ttl_seconds: float = Field(default=3600.0, ge=0.0)

    web_search_endpoint: str = "http://localhost:11434"
    web_search_api_key: str | None = None
    web_search_model: str = "llama3.2"
    web_search_max_results: int = Field(default=5, ge=1)
    allowed_domains: list[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1"])
    allow_all_domains: bool = False
    block_external_requests: bool = False
    https_only: bool = True
    max_response_size: int = Field(default=10 * 1024 * 1024, ge=1)
    web_fetch_max_bytes: int = Field(default=512_000, ge=1)

    enable_audit_log: bool = True
    audit_log_retention_days: int = Field(default=30, ge=0)
    log_parameter_values: bool = True
    anonymize_log: bool = False
    audit_batch_size: int = Field(default=100, ge=1)
    audit_max_bytes: int = Field(default=10 * 1024 * 1024, ge=1)
    audit_max_rotated: int = Field(default=5, ge=0)

    find_max_results: int = Field(default=50, ge=1)
    grep_context_lines: int = Field(default=2, ge=0)
    grep_max_matches: int = Field(default=100, ge=1)
    read_max_bytes: int = Field(default=1024 * 1024, ge=1)

    def rate_limit_for(self, tool_name: str) -> int:
        return self.rate_limits.get(tool_name) or self.default_rate_limit


_DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant working inside the user's note vault. "
    "Answer the user's question based on the provided context. "
    "Use the available tools when the context is not enough, and say so "
    "when you cannot verify something."
)


class AgentConfig(BaseModel):
    """Configures the conversation loop and its safety limits."""

    system_prompt: str = _DEFAULT_SYSTEM_PROMPT
    max_tool_rounds: int = Field(default=8, ge=1)
    idle_timeout_seconds: float = Field(default=25.0, gt=0.0)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2048, ge=1)
    max_history_messages: int = Field(default=40, ge=2)


class AssistantSettings(BaseModel):
    """Top-level settings document persisted by the host."""

    model: str = "gpt-4o-mini"
    index: IndexConfig = Field(default_factory=IndexConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    tools: ToolSettings = Field(default_factory=ToolSettings)
    agent: AgentConfig = Field(default_factory=AgentConfig)

    @classmethod
    def load(cls, path: str | Path) -> "AssistantSettings":
        """Load settings from JSON, falling back to defaults.

        Missing keys take their defaults; a missing or unreadable file yields
        the default settings rather than an error.
        """

        settings_path = Path(path)
        if not settings_path.exists():
            return cls()
        try:
            payload = json.loads(settings_path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("settings file must contain a JSON object")
            return cls.model_validate(payload)
        except (OSError, ValueError, ValidationError):
            LOGGER.warning("Ignoring unreadable settings file %s", settings_path, exc_info=True)
            return cls()

    def save(self, path: str | Path) -> None:
        settings_path = Path(path)
        settings_path.parent.mkdir(parents=True, exist_ok=True)
        settings_path.write_text(self.model_dump_json(indent=2), encoding="utf-8")
