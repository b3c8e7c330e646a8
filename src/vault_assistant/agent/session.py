"""Conversation state for one chat panel."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

from vault_assistant.agent.cancellation import CancellationToken
from vault_assistant.agent.channel import ChatMessage
from vault_assistant.agent.orchestrator import CANCELLED_PLACEHOLDER, ToolOrchestrator, TurnResult
from vault_assistant.ingest.vault import ActiveDocument

LOGGER = logging.getLogger(__name__)

WorkspaceProbe = Callable[[], ActiveDocument | None]


class SessionBusy(RuntimeError):
    """Raised when a send is attempted while another one is streaming."""


class ChatSession:
    """Owns history and the cancellation token of the in-flight send.

    History keeps user messages and final assistant answers only; tool turns
    stay inside the orchestrator's per-turn transcript.
    """

    def __init__(
        self,
        orchestrator: ToolOrchestrator,
        workspace: WorkspaceProbe | None = None,
        max_history: int = 40,
    ) -> None:
        self.orchestrator = orchestrator
        self.workspace = workspace
        self.max_history = max_history
        self.history: list[ChatMessage] = []
        self._token: CancellationToken | None = None

    @property
    def is_streaming(self) -> bool:
        return self._token is not None

    async def send(
        self,
        text: str,
        mentions: Sequence[str] = (),
        *,
        on_token: Callable[[str], None] | None = None,
    ) -> TurnResult:
        if self._token is not None:
            raise SessionBusy("A request is already in progress")
        message = text.strip()
        if not message:
            raise ValueError("Message must not be empty")

        token = CancellationToken()
        self._token = token
        try:
            active = self.workspace() if self.workspace is not None else None
            result = await self.orchestrator.run_turn(
                message,
                history=list(self.history),
                active=active,
                mentions=mentions,
                cancel=token,
                on_token=on_token,
            )
        finally:
            self._token = None

        answer = result.answer
        if result.status == "cancelled" and not answer.strip():
            answer = CANCELLED_PLACEHOLDER
        self.history.append(ChatMessage(role="user", content=message))
        self.history.append(ChatMessage(role="assistant", content=answer))
        self._trim()
        return result

    def cancel(self) -> bool:
        if self._token is None:
            return False
        self._token.cancel()
        return True

    def clear(self) -> None:
        self.history = []

    def last_assistant_response(self) -> str | None:
        for message in reversed(self.history):
            if message.role == "assistant" and message.content.strip():
                return message.content
        return None

    def _trim(self) -> None:
        if len(self.history) > self.max_history:
            self.history = self.history[-self.max_history :]
