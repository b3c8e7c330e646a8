"""Tool registry built on Pydantic v2 models."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from time import perf_counter
from typing import Any

from langchain_core.tools import StructuredTool
from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from vault_assistant.config import RiskLevel, ToolSettings
from vault_assistant.types import ToolResult, ToolTrace

LOGGER = logging.getLogger(__name__)

ToolHandler = Callable[[BaseModel], Awaitable[ToolResult]]
PreviewHandler = Callable[[BaseModel], Awaitable[str]]
UndoHandler = Callable[[str], Awaitable[None]]


class ToolSpec(BaseModel):
    """Declarative tool specification for registration and validation."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    name: str
    description: str
    args_schema: type[BaseModel]
    handler: ToolHandler
    risk_level: RiskLevel = RiskLevel.SAFE
    can_bypass: bool = True
    requires_preview: bool = False
    network: bool = False
    preview: PreviewHandler | None = None
    undo: UndoHandler | None = None
    tags: list[str] = Field(default_factory=list)

    def validate_payload(self, payload: dict[str, Any]) -> BaseModel:
        return self.args_schema.model_validate(payload)

    async def invoke(self, payload: dict[str, Any]) -> ToolResult:
        data = self.validate_payload(payload)
        return await self.handler(data)

    async def render_preview(self, payload: dict[str, Any]) -> str:
        if self.preview is None:
            return ""
        return await self.preview(self.validate_payload(payload))


class ToolProvider(ABC):
    """A named bundle of tools registered and removed together."""

    id: str = ""
    name: str = ""
    description: str = ""
    version: str = "0.1.0"

    @abstractmethod
    def tools(self) -> list[ToolSpec]:
        raise NotImplementedError

    async def initialize(self) -> None:
        return None

    async def shutdown(self) -> None:
        return None

    def update_settings(self, settings: ToolSettings) -> None:
        return None


class ToolRegistry:
    """Stores tool specs and exports LangChain-compatible tool objects.

    Enablement is policy held in `ToolSettings`: every registered tool can be
    resolved, but only tools named in `enabled_tools` are listed as available
    to the model.
    """

    def __init__(self, settings: ToolSettings | None = None) -> None:
        self.settings = settings or ToolSettings()
        self._tools: dict[str, ToolSpec] = {}
        self._providers: dict[str, ToolProvider] = {}
        self._provider_tools: dict[str, list[str]] = {}
        self._observer: Callable[[ToolTrace], None] | None = None

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    async def register_provider(self, provider: ToolProvider) -> None:
        if provider.id in self._providers:
            raise ValueError(f"Provider already registered: {provider.id}")
        specs = provider.tools()
        names = [spec.name for spec in specs]
        collisions = sorted({name for name in names if name in self._tools or names.count(name) > 1})
        if collisions:
            raise ValueError(f"Tool name conflict in provider {provider.id}: {', '.join(collisions)}")

        await provider.initialize()
        for spec in specs:
            self._tools[spec.name] = spec
        self._providers[provider.id] = provider
        self._provider_tools[provider.id] = names
        LOGGER.info("Registered provider %s with %d tools", provider.id, len(names))

    async def unregister_provider(self, provider_id: str) -> None:
        provider = self._providers.pop(provider_id, None)
        if provider is None:
            return
        for name in self._provider_tools.pop(provider_id, []):
            self._tools.pop(name, None)
        await provider.shutdown()
        LOGGER.info("Unregistered provider %s", provider_id)

    def providers(self) -> list[ToolProvider]:
        return list(self._providers.values())

    def update_settings(self, settings: ToolSettings) -> None:
        self.settings = settings
        for provider in self._providers.values():
            provider.update_settings(settings)

    def set_observer(self, observer: Callable[[ToolTrace], None] | None) -> None:
        """Set an optional callback invoked after each tool execution."""
        self._observer = observer

    def resolve(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def is_enabled(self, name: str) -> bool:
        return name in self.settings.enabled_tools

    def list_available(self) -> list[ToolSpec]:
        return [spec for spec in self._tools.values() if self.is_enabled(spec.name)]

    def specs(self) -> list[ToolSpec]:
        return list(self._tools.values())

    async def execute(self, name: str, payload: dict[str, Any]) -> ToolResult:
        spec = self._tools.get(name)
        if spec is None:
            return ToolResult.failure(f"Tool '{name}' not found")
        return await self._execute_spec(spec, payload)

    def as_langchain_tools(self, names: list[str] | None = None) -> list[StructuredTool]:
        tools: list[StructuredTool] = []
        for spec in self._select(names):
            tools.append(
                StructuredTool.from_function(
                    name=spec.name,
                    description=spec.description,
                    args_schema=spec.args_schema,
                    coroutine=self._build_coroutine(spec),
                )
            )
        return tools

    def tool_schemas(self, names: list[str] | None = None) -> list[dict[str, Any]]:
        """OpenAI-style function schemas for the selected tools."""

        return [convert_to_openai_tool(tool) for tool in self.as_langchain_tools(names)]

    async def shutdown(self) -> None:
        for provider_id in list(self._providers):
            await self.unregister_provider(provider_id)

    def _select(self, names: list[str] | None) -> list[ToolSpec]:
        if names is None:
            return self.list_available()
        return [self._tools[name] for name in names if name in self._tools]

    def _build_coroutine(self, spec: ToolSpec) -> Callable[..., Awaitable[str]]:
        async def _callable(**kwargs: Any) -> str:
            result = await self._execute_spec(spec, kwargs)
            return json.dumps(result.to_dict(), ensure_ascii=False, default=str)

        return _callable

    async def _execute_spec(self, spec: ToolSpec, payload: dict[str, Any]) -> ToolResult:
        start = perf_counter()
        try:
            result = await spec.invoke(payload)
        except ValidationError as exc:
            result = ToolResult.failure(f"Invalid parameters for '{spec.name}': {_validation_summary(exc)}")
        except Exception as exc:
            LOGGER.exception("Tool %s raised", spec.name)
            result = ToolResult.failure(str(exc) or exc.__class__.__name__)
        latency_ms = (perf_counter() - start) * 1000.0

        if self._observer is not None:
            preview = result.error if not result.success else json.dumps(result.data, default=str)
            self._observer(
                ToolTrace(
                    name=spec.name,
                    input_payload=payload,
                    output_preview=(preview or "")[:320],
                    latency_ms=latency_ms,
                    success=result.success,
                )
            )
        return result


def _validation_summary(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "input"
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(parts)
