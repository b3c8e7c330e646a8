"""Streaming chat channel contract and its LangChain adapter."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from vault_assistant.agent.cancellation import CancellationToken

Role = Literal["system", "user", "assistant", "tool"]


class InvalidToolArguments(ValueError):
    """Tool-call arguments that are neither a JSON object nor a mapping."""


@dataclass(slots=True)
class ToolCallRequest:
    name: str
    arguments: dict[str, Any] | str = field(default_factory=dict)
    id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass(slots=True)
class ChatMessage:
    role: Role
    content: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            payload["name"] = self.name
        return payload


@dataclass(slots=True)
class StreamEvent:
    """`content` events carry a text fragment; the last event is `message`."""

    type: Literal["content", "message"]
    content: str = ""
    message: ChatMessage | None = None


@dataclass(slots=True)
class GenerationOptions:
    temperature: float | None = None
    max_tokens: int | None = None

    def as_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        if self.max_tokens is not None:
            kwargs["max_tokens"] = self.max_tokens
        return kwargs


def normalize_arguments(raw: Any) -> dict[str, Any]:
    """Resolve a tool-call argument payload into a plain dict.

    Accepts a mapping or a JSON object string; empty input means no
    arguments. Anything else raises `InvalidToolArguments`.
    """

    if raw is None:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise InvalidToolArguments(f"Tool arguments are not valid JSON: {exc.msg}") from exc
        if not isinstance(parsed, dict):
            raise InvalidToolArguments("Tool arguments must be a JSON object")
        return parsed
    raise InvalidToolArguments(f"Unsupported tool argument payload: {type(raw).__name__}")


class ChatChannel(Protocol):
    def stream(
        self,
        messages: Sequence[ChatMessage],
        *,
        tools: list[dict[str, Any]] | None = None,
        options: GenerationOptions | None = None,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield content fragments, then exactly one terminal message event."""

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        *,
        options: GenerationOptions | None = None,
        cancel: CancellationToken | None = None,
    ) -> ChatMessage:
        """Single-shot request without streaming or tools."""


def to_langchain_messages(messages: Sequence[ChatMessage]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for message in messages:
        if message.role == "system":
            converted.append(SystemMessage(content=message.content))
        elif message.role == "user":
            converted.append(HumanMessage(content=message.content))
        elif message.role == "assistant":
            tool_calls = []
            for index, call in enumerate(message.tool_calls):
                try:
                    args = normalize_arguments(call.arguments)
                except InvalidToolArguments:
                    args = {}
                tool_calls.append(
                    {"name": call.name, "args": args, "id": call.id or f"call_{index}", "type": "tool_call"}
                )
            converted.append(AIMessage(content=message.content, tool_calls=tool_calls))
        else:
            converted.append(
                ToolMessage(content=message.content, tool_call_id=message.tool_call_id or message.name or "tool")
            )
    return converted


def text_of(content: Any) -> str:
    """Flatten LangChain message content (string or content blocks) to text."""

    if isinstance(content, str):
        return content
    parts: list[str] = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(str(block.get("text", "")))
    return "".join(parts)


def from_langchain_message(message: AIMessage) -> ChatMessage:
    calls = [
        ToolCallRequest(name=call["name"], arguments=dict(call.get("args") or {}), id=call.get("id"))
        for call in message.tool_calls
    ]
    calls.extend(
        ToolCallRequest(name=call.get("name") or "", arguments=call.get("args") or "", id=call.get("id"))
        for call in getattr(message, "invalid_tool_calls", None) or []
    )
    return ChatMessage(role="assistant", content=text_of(message.content), tool_calls=calls)


class LangChainChatChannel:
    """Adapts any `BaseChatModel` (e.g. `ChatOpenAI`) to `ChatChannel`."""

    def __init__(self, model: BaseChatModel) -> None:
        self.model = model

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        *,
        tools: list[dict[str, Any]] | None = None,
        options: GenerationOptions | None = None,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        runnable: Any = self.model.bind_tools(tools) if tools else self.model
        kwargs = options.as_kwargs() if options else {}
        aggregate: AIMessageChunk | None = None

        async for chunk in runnable.astream(to_langchain_messages(messages), **kwargs):
            if cancel is not None:
                cancel.raise_if_cancelled()
            aggregate = chunk if aggregate is None else aggregate + chunk
            fragment = text_of(chunk.content)
            if fragment:
                yield StreamEvent(type="content", content=fragment)

        final = from_langchain_message(aggregate) if aggregate is not None else ChatMessage(role="assistant")
        yield StreamEvent(type="message", message=final)

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        *,
        options: GenerationOptions | None = None,
        cancel: CancellationToken | None = None,
    ) -> ChatMessage:
        kwargs = options.as_kwargs() if options else {}
        call = self.model.ainvoke(to_langchain_messages(messages), **kwargs)
        response = await cancel.guard(call) if cancel is not None else await call
        return from_langchain_message(response)


async def collect_stream(
    channel: ChatChannel,
    messages: Sequence[ChatMessage],
    *,
    cancel: CancellationToken,
    idle_timeout: float,
    tools: list[dict[str, Any]] | None = None,
    options: GenerationOptions | None = None,
    on_token: Callable[[str], None] | None = None,
    partial: list[str] | None = None,
) -> ChatMessage:
    """Drain one streaming request into its terminal message.

    Every read is awaited through `cancel.guard` with `idle_timeout`, so a
    stalled backend raises `StreamIdleTimeout` and a cancelled send raises
    `OperationCancelled`. Fragments are forwarded to `on_token` and appended
    to `partial` as they arrive.
    """

    stream = channel.stream(messages, tools=tools, options=options, cancel=cancel)
    fragments: list[str] = [] if partial is None else partial
    final: ChatMessage | None = None
    try:
        while True:
            event = await cancel.guard(_next_event(stream), timeout=idle_timeout)
            if event is None:
                break
            if event.type == "content" and event.content:
                fragments.append(event.content)
                if on_token is not None:
                    on_token(event.content)
            elif event.type == "message":
                final = event.message
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()

    if final is None:
        return ChatMessage(role="assistant", content="".join(fragments))
    if not final.content and fragments:
        final.content = "".join(fragments)
    return final


async def _next_event(stream: AsyncIterator[StreamEvent]) -> StreamEvent | None:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None
