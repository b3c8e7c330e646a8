"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

ChunkSource = Literal["active", "retrieved", "mention"]


@dataclass(slots=True)
class Chunk:
    """A contiguous fragment of one vault document."""

    id: str
    file: str
    headings: list[str]
    content: str
    updated: float
    start: int = 0
    end: int = 0
    content_lower: str = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.content_lower = self.content.lower()

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "file": self.file,
            "headings": list(self.headings),
            "content": self.content,
            "updated": self.updated,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Chunk":
        return cls(
            id=str(record["id"]),
            file=str(record["file"]),
            headings=[str(heading) for heading in record["headings"]],
            content=str(record["content"]),
            updated=float(record["updated"]),
        )


@dataclass(slots=True)
class RetrievedChunk:
    """A scored reference to a chunk plus where it came from."""

    chunk: Chunk
    score: float
    source: ChunkSource


@dataclass(slots=True)
class RAGContext:
    """Per-request retrieval bundle."""

    active: list[RetrievedChunk] = field(default_factory=list)
    retrieved: list[RetrievedChunk] = field(default_factory=list)
    mentions: list[RetrievedChunk] = field(default_factory=list)
    prompt: str = ""
    missing: list[str] = field(default_factory=list)

    @property
    def has_context(self) -> bool:
        return bool(self.prompt)

    def all_chunks(self) -> list[RetrievedChunk]:
        return [*self.active, *self.retrieved, *self.mentions]


@dataclass(slots=True)
class ToolResult:
    """Outcome of one tool execution."""

    success: bool
    data: Any = None
    error: str | None = None
    execution_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, error: str, **metadata: Any) -> "ToolResult":
        return cls(success=False, error=error, metadata=dict(metadata))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = self.error
        if self.execution_id is not None:
            payload["execution_id"] = self.execution_id
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


@dataclass(slots=True)
class ToolExecutionLog:
    """Immutable audit record of one invocation, denial or undo."""

    timestamp: str
    tool: str
    execution_id: str
    parameters: dict[str, Any]
    result: dict[str, Any]
    duration_ms: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "tool": self.tool,
            "execution_id": self.execution_id,
            "parameters": self.parameters,
            "result": self.result,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ToolExecutionLog":
        return cls(
            timestamp=str(payload["timestamp"]),
            tool=str(payload["tool"]),
            execution_id=str(payload.get("execution_id", "unknown")),
            parameters=dict(payload.get("parameters") or {}),
            result=dict(payload.get("result") or {}),
            duration_ms=float(payload.get("duration_ms", 0.0)),
        )


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed tool call."""

    name: str
    input_payload: dict[str, Any]
    output_preview: str
    latency_ms: float
    success: bool = True
