"""Conversation loop: context, streaming, gated tool calls, recovery."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from vault_assistant.agent.cancellation import CancellationToken, OperationCancelled, StreamIdleTimeout
from vault_assistant.agent.channel import (
    ChatChannel,
    ChatMessage,
    GenerationOptions,
    InvalidToolArguments,
    ToolCallRequest,
    collect_stream,
    normalize_arguments,
)
from vault_assistant.agent.executor import ToolExecutor
from vault_assistant.agent.fallback import NO_RESPONSE, EmptyResponseRecovery
from vault_assistant.agent.registry import ToolRegistry
from vault_assistant.config import AgentConfig
from vault_assistant.ingest.vault import ActiveDocument
from vault_assistant.retrieval.retriever import ContextRetriever
from vault_assistant.types import RAGContext, ToolResult

LOGGER = logging.getLogger(__name__)

CANCELLED_PLACEHOLDER = "Request cancelled"
TIMEOUT_PLACEHOLDER = "Request timed out waiting for the model."

TurnStatus = Literal["completed", "cancelled", "timeout", "error"]


@dataclass(slots=True)
class ToolCallRecord:
    call: ToolCallRequest
    result: ToolResult

    def to_dict(self) -> dict[str, Any]:
        return {"call": self.call.to_dict(), "result": self.result.to_dict()}


@dataclass(slots=True)
class TurnResult:
    answer: str = ""
    status: TurnStatus = "completed"
    messages: list[ChatMessage] = field(default_factory=list)
    context: RAGContext | None = None
    tool_results: list[ToolCallRecord] = field(default_factory=list)
    tool_rounds: int = 0
    notices: list[str] = field(default_factory=list)
    missing_mentions: list[str] = field(default_factory=list)
    recovery_tier: int = 0


class ToolOrchestrator:
    """Runs one user message to completion.

    Steps:
    1. Build retrieval context and the prompt (system, context, history,
       user message).
    2. Stream an assistant reply with the enabled tools attached.
    3. When the reply requests tools, run them one after another through the
       gated executor, append each result as a `tool` turn and stream again.
    4. Stop when a reply has no tool calls or the round ceiling is reached.
    5. If no visible text was produced after tool rounds, run the recovery
       cascade.

    Cancellation and the idle watchdog unwind the loop from any suspension
    point; completed tool executions are not rolled back.
    """

    def __init__(
        self,
        channel: ChatChannel,
        retriever: ContextRetriever,
        registry: ToolRegistry,
        executor: ToolExecutor,
        config: AgentConfig | None = None,
    ) -> None:
        self.channel = channel
        self.retriever = retriever
        self.registry = registry
        self.executor = executor
        self.config = config or AgentConfig()
        self.recovery = EmptyResponseRecovery(channel, self.config)

    def update_config(self, config: AgentConfig) -> None:
        self.config = config
        self.recovery.config = config

    async def run_turn(
        self,
        message: str,
        *,
        history: Sequence[ChatMessage] = (),
        active: ActiveDocument | None = None,
        mentions: Sequence[str] = (),
        cancel: CancellationToken | None = None,
        on_token: Callable[[str], None] | None = None,
    ) -> TurnResult:
        cancel = cancel or CancellationToken()
        turn = TurnResult()
        texts: list[str] = []
        partial: list[str] = []

        try:
            context = await cancel.guard(self.retriever.get_context(message, active=active, mentions=mentions))
            turn.context = context
            turn.missing_mentions = list(context.missing)
            for name in context.missing:
                turn.notices.append(f"Could not find a document matching '{name}'")

            user = ChatMessage(role="user", content=message)
            conversation = self._prompt(context, history, user)
            turn.messages.append(user)
            tools = self.registry.tool_schemas() or None
            options = GenerationOptions(temperature=self.config.temperature, max_tokens=self.config.max_tokens)

            while True:
                partial.clear()
                reply = await collect_stream(
                    self.channel,
                    conversation,
                    cancel=cancel,
                    idle_timeout=self.config.idle_timeout_seconds,
                    tools=tools,
                    options=options,
                    on_token=on_token,
                    partial=partial,
                )
                partial.clear()
                if reply.content.strip():
                    texts.append(reply.content)

                if not reply.tool_calls:
                    conversation.append(reply)
                    turn.messages.append(reply)
                    break

                if turn.tool_rounds >= self.config.max_tool_rounds:
                    # calls left unanswered would make the transcript invalid
                    closing = ChatMessage(role="assistant", content=reply.content)
                    conversation.append(closing)
                    turn.messages.append(closing)
                    turn.notices.append(
                        f"Stopped after {self.config.max_tool_rounds} tool rounds without a final answer"
                    )
                    LOGGER.warning("Tool round ceiling reached (%d)", self.config.max_tool_rounds)
                    break

                turn.tool_rounds += 1
                conversation.append(reply)
                turn.messages.append(reply)
                for index, call in enumerate(reply.tool_calls):
                    if call.id is None:
                        call.id = f"call_{turn.tool_rounds}_{index}"
                    result = await self._run_tool(call, cancel)
                    turn.tool_results.append(ToolCallRecord(call=call, result=result))
                    if not result.success:
                        turn.notices.append(f"{call.name}: {result.error}")
                    tool_message = ChatMessage(
                        role="tool",
                        content=json.dumps(result.to_dict(), ensure_ascii=False, default=str),
                        tool_call_id=call.id,
                        name=call.name,
                    )
                    conversation.append(tool_message)
                    turn.messages.append(tool_message)

            turn.answer = "\n\n".join(texts)
            if not turn.answer.strip():
                if turn.tool_rounds > 0:
                    turn.answer, turn.recovery_tier = await self.recovery.recover(
                        conversation, cancel=cancel, on_token=on_token
                    )
                else:
                    turn.answer = NO_RESPONSE
                turn.messages.append(ChatMessage(role="assistant", content=turn.answer))
            return turn

        except OperationCancelled:
            LOGGER.info("Turn cancelled")
            turn.status = "cancelled"
            turn.context = None
            turn.answer = self._partial_answer(texts, partial) or CANCELLED_PLACEHOLDER
        except StreamIdleTimeout as exc:
            LOGGER.warning("Turn timed out: %s", exc)
            turn.status = "timeout"
            turn.notices.append(str(exc))
            turn.answer = self._partial_answer(texts, partial) or TIMEOUT_PLACEHOLDER
        except Exception as exc:
            LOGGER.exception("Turn failed")
            turn.status = "error"
            turn.notices.append(f"Error: {exc}")
            turn.answer = self._partial_answer(texts, partial) or f"Error: {exc}"
        turn.messages.append(ChatMessage(role="assistant", content=turn.answer))
        return turn

    def _prompt(
        self,
        context: RAGContext,
        history: Sequence[ChatMessage],
        user: ChatMessage,
    ) -> list[ChatMessage]:
        messages = [ChatMessage(role="system", content=self.config.system_prompt)]
        if context.has_context:
            messages.append(ChatMessage(role="system", content=context.prompt))
        messages.extend(history)
        messages.append(user)
        return messages

    async def _run_tool(self, call: ToolCallRequest, cancel: CancellationToken) -> ToolResult:
        try:
            arguments = normalize_arguments(call.arguments)
        except InvalidToolArguments as exc:
            return ToolResult.failure(str(exc))
        call.arguments = arguments
        return await self.executor.execute(call.name, arguments, cancel)

    @staticmethod
    def _partial_answer(texts: list[str], partial: list[str]) -> str:
        parts = [*texts]
        streamed = "".join(partial)
        if streamed.strip():
            parts.append(streamed)
        return "\n\n".join(parts)
