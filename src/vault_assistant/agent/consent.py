"""Per-invocation consent gate for tool calls."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from vault_assistant.agent.cancellation import CancellationToken
from vault_assistant.agent.registry import ToolSpec
from vault_assistant.config import ConsentMode, RiskLevel, ToolSettings

LOGGER = logging.getLogger(__name__)


class ConsentChoice(str, Enum):
    ONCE = "once"
    SESSION = "session"
    ALWAYS = "always"
    NEVER = "never"


@dataclass(slots=True)
class ConsentRequest:
    tool: ToolSpec
    parameters: dict[str, Any]
    preview: str | None = None
    options: list[ConsentChoice] = field(default_factory=list)


@dataclass(slots=True)
class ConsentResponse:
    approved: bool
    choice: ConsentChoice = ConsentChoice.ONCE


class ConsentPrompter(Protocol):
    async def prompt(self, request: ConsentRequest) -> ConsentResponse:
        """Ask the user and wait for a decision."""


class StaticConsentPrompter:
    """Answers every prompt the same way; used headless and in tests."""

    def __init__(self, approve: bool = False, choice: ConsentChoice = ConsentChoice.ONCE) -> None:
        self.approve = approve
        self.choice = choice
        self.requests: list[ConsentRequest] = []

    async def prompt(self, request: ConsentRequest) -> ConsentResponse:
        self.requests.append(request)
        choice = self.choice if self.choice in request.options else ConsentChoice.ONCE
        return ConsentResponse(approved=self.approve, choice=choice)


class ConsentManager:
    """Decides whether a tool invocation may proceed.

    Decision order:
    1. `never_allow` denies without prompting.
    2. Developer mode approves `safe` tools.
    3. `always_allow` approves tools that can bypass consent.
    4. `session_allow` approves tools already granted in this session.
    5. Everything else prompts; non-bypassable tools always end up here.

    Session grants are keyed by tool name only and live in memory.
    """

    def __init__(
        self,
        settings: ToolSettings,
        prompter: ConsentPrompter,
        on_mode_change: Callable[[str, ConsentMode], None] | None = None,
    ) -> None:
        self.settings = settings
        self.prompter = prompter
        self.on_mode_change = on_mode_change
        self._session: set[str] = set()

    def mode_for(self, tool_name: str) -> ConsentMode:
        return self.settings.consent_mode.get(tool_name, ConsentMode.ALWAYS_ASK)

    def has_session_grant(self, tool_name: str) -> bool:
        return tool_name in self._session

    async def request_consent(
        self,
        tool: ToolSpec,
        parameters: dict[str, Any],
        cancel: CancellationToken | None = None,
    ) -> bool:
        mode = self.mode_for(tool.name)

        if mode == ConsentMode.NEVER_ALLOW:
            return False
        if self.settings.developer_mode and tool.risk_level == RiskLevel.SAFE:
            return True
        if mode == ConsentMode.ALWAYS_ALLOW and tool.can_bypass:
            return True
        if mode == ConsentMode.SESSION_ALLOW and tool.name in self._session:
            return True

        request = ConsentRequest(
            tool=tool,
            parameters=parameters,
            preview=await self._preview(tool, parameters),
            options=self._options(tool),
        )
        if cancel is not None:
            response = await cancel.guard(self.prompter.prompt(request))
        else:
            response = await self.prompter.prompt(request)
        self._apply(tool, response)
        return response.approved

    def clear_session(self) -> None:
        self._session.clear()

    def update_settings(self, settings: ToolSettings) -> None:
        self.settings = settings

    def _options(self, tool: ToolSpec) -> list[ConsentChoice]:
        if tool.can_bypass:
            return [ConsentChoice.ONCE, ConsentChoice.SESSION, ConsentChoice.ALWAYS, ConsentChoice.NEVER]
        return [ConsentChoice.ONCE, ConsentChoice.NEVER]

    async def _preview(self, tool: ToolSpec, parameters: dict[str, Any]) -> str | None:
        if not tool.requires_preview or tool.preview is None:
            return None
        try:
            return await tool.render_preview(parameters)
        except Exception as exc:
            return f"Preview failed: {exc}"

    def _apply(self, tool: ToolSpec, response: ConsentResponse) -> None:
        if response.approved:
            if response.choice == ConsentChoice.SESSION and tool.can_bypass:
                self._session.add(tool.name)
            elif response.choice == ConsentChoice.ALWAYS and tool.can_bypass:
                self._set_mode(tool.name, ConsentMode.ALWAYS_ALLOW)
        elif response.choice == ConsentChoice.NEVER:
            self._set_mode(tool.name, ConsentMode.NEVER_ALLOW)

    def _set_mode(self, tool_name: str, mode: ConsentMode) -> None:
        modes = dict(self.settings.consent_mode)
        modes[tool_name] = mode
        self.settings = self.settings.model_copy(update={"consent_mode": modes})
        LOGGER.info("Consent mode for %s set to %s", tool_name, mode.value)
        if self.on_mode_change is not None:
            self.on_mode_change(tool_name, mode)
