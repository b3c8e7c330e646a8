import asyncio
from pathlib import Path

from vault_assistant.agent.cancellation import CancellationToken
from vault_assistant.agent.channel import ChatMessage, StreamEvent, ToolCallRequest
from vault_assistant.agent.consent import ConsentChoice, ConsentManager, StaticConsentPrompter
from vault_assistant.agent.executor import CONSENT_DENIED, ToolExecutor
from vault_assistant.agent.fallback import ANSWER_NOW_INSTRUCTION, NO_RESPONSE
from vault_assistant.agent.orchestrator import TIMEOUT_PLACEHOLDER, ToolOrchestrator
from vault_assistant.agent.rate_limit import RateLimiter
from vault_assistant.agent.registry import ToolRegistry
from vault_assistant.agent.tools import BuiltInToolProvider
from vault_assistant.config import AgentConfig, ToolSettings
from vault_assistant.ingest.indexer import VaultIndexer
from vault_assistant.ingest.store import ChunkStore
from vault_assistant.ingest.vault import FileSystemVault
from vault_assistant.obs.audit import AuditLogger
from vault_assistant.retrieval.retriever import ContextRetriever


class ScriptedChannel:
    """Replays canned assistant replies and records every request."""

    def __init__(self, replies: list[ChatMessage], completion: str = "", stall: bool = False) -> None:
        self.replies = list(replies)
        self.completion = completion
        self.stall = stall
        self.requests: list[tuple[list[ChatMessage], list | None]] = []

    async def stream(self, messages, *, tools=None, options=None, cancel=None):
        self.requests.append((list(messages), tools))
        reply = self.replies.pop(0) if self.replies else ChatMessage(role="assistant")
        if reply.content:
            yield StreamEvent(type="content", content=reply.content)
        if self.stall:
            await asyncio.sleep(30)
        yield StreamEvent(type="message", message=reply)

    async def complete(self, messages, *, options=None, cancel=None):
        return ChatMessage(role="assistant", content=self.completion)


def _call(name: str, arguments: dict | str) -> ChatMessage:
    return ChatMessage(role="assistant", tool_calls=[ToolCallRequest(name=name, arguments=arguments)])


def _text(content: str) -> ChatMessage:
    return ChatMessage(role="assistant", content=content)


def _pipeline(tmp_path: Path, channel: ScriptedChannel, *, approve: bool = True, **agent: object):
    vault = FileSystemVault(tmp_path)
    vault.write("Notes/A.md", "# Intro\nHello world")
    vault.write("Notes/B.md", "## Todo\nTODO buy milk")
    store = ChunkStore()
    indexer = VaultIndexer(vault, store, tmp_path / ".vault-assistant/index/index.json")
    asyncio.run(indexer.rebuild())

    settings = ToolSettings(enabled_tools=["find", "grep", "read", "apply_patch"])
    registry = ToolRegistry(settings)
    asyncio.run(registry.register_provider(BuiltInToolProvider(vault, settings)))
    prompter = StaticConsentPrompter(approve=approve, choice=ConsentChoice.SESSION)
    audit = AuditLogger(settings, log_dir=tmp_path / "logs")
    executor = ToolExecutor(registry, ConsentManager(settings, prompter), RateLimiter(settings), audit)
    orchestrator = ToolOrchestrator(
        channel, ContextRetriever(store, indexer), registry, executor, AgentConfig(**agent)
    )
    return orchestrator, vault, audit, prompter


def test_tool_round_feeds_result_back_to_model(tmp_path: Path) -> None:
    channel = ScriptedChannel([_call("read", {"path": "Notes/B.md"}), _text("You still need milk.")])
    orchestrator, _, audit, _ = _pipeline(tmp_path, channel)
    tokens: list[str] = []

    turn = asyncio.run(orchestrator.run_turn("what is on my todo list?", on_token=tokens.append))

    assert turn.status == "completed"
    assert turn.answer == "You still need milk."
    assert turn.tool_rounds == 1
    assert tokens == ["You still need milk."]

    first_messages, tools = channel.requests[0]
    assert [tool["function"]["name"] for tool in tools] == ["find", "grep", "read", "apply_patch"]
    assert first_messages[1].role == "system"
    assert "Notes/B.md > Todo" in first_messages[1].content

    second_messages, _ = channel.requests[1]
    tool_message = second_messages[-1]
    assert tool_message.role == "tool"
    assert tool_message.tool_call_id == "call_1_0"
    assert "TODO buy milk" in tool_message.content
    assert second_messages[-2].tool_calls[0].id == "call_1_0"

    [record] = turn.tool_results
    assert record.result.success
    assert record.result.execution_id.startswith("exec-")
    assert [entry.tool for entry in audit.get_logs()] == ["read"]


def test_round_ceiling_stops_and_recovers_answer(tmp_path: Path) -> None:
    looping = [_call("find", {"pattern": "*.md"}) for _ in range(3)]
    channel = ScriptedChannel([*looping, _text("Here is what I found.")])
    orchestrator, _, _, _ = _pipeline(tmp_path, channel, max_tool_rounds=2)

    turn = asyncio.run(orchestrator.run_turn("list my notes"))

    assert turn.tool_rounds == 2
    assert "Stopped after 2 tool rounds without a final answer" in turn.notices
    assert turn.answer == "Here is what I found."
    assert turn.recovery_tier == 1
    recovery_messages, recovery_tools = channel.requests[-1]
    assert recovery_tools is None
    assert recovery_messages[-1].content == ANSWER_NOW_INSTRUCTION
    assert recovery_messages[-2].role == "assistant"
    assert recovery_messages[-2].tool_calls == []


def test_recovery_falls_back_to_single_request_then_placeholder(tmp_path: Path) -> None:
    second_tier = ScriptedChannel([_call("find", {"pattern": "*.md"}), _text("")], completion="From the list.")
    orchestrator, _, _, _ = _pipeline(tmp_path, second_tier)
    turn = asyncio.run(orchestrator.run_turn("list my notes"))
    assert (turn.answer, turn.recovery_tier) == ("From the list.", 2)

    third_tier = ScriptedChannel([_call("find", {"pattern": "*.md"}), _text("")])
    orchestrator, _, _, _ = _pipeline(tmp_path / "again", third_tier)
    turn = asyncio.run(orchestrator.run_turn("list my notes"))
    assert (turn.answer, turn.recovery_tier) == (NO_RESPONSE, 3)


def test_empty_reply_without_tools_gets_placeholder(tmp_path: Path) -> None:
    channel = ScriptedChannel([_text("")])
    orchestrator, _, _, _ = _pipeline(tmp_path, channel)

    turn = asyncio.run(orchestrator.run_turn("hello"))

    assert turn.answer == NO_RESPONSE
    assert turn.recovery_tier == 0
    assert len(channel.requests) == 1


def test_bad_arguments_and_denied_consent_are_reported_to_model(tmp_path: Path) -> None:
    patch = {"path": "Notes/A.md", "patches": [{"start_line": 2, "end_line": 2, "new_content": "Bye"}]}
    channel = ScriptedChannel(
        [
            ChatMessage(
                role="assistant",
                tool_calls=[
                    ToolCallRequest(name="read", arguments="{not json", id="r1"),
                    ToolCallRequest(name="apply_patch", arguments=patch, id="p1"),
                ],
            ),
            _text("I could not change the note."),
        ]
    )
    orchestrator, vault, audit, prompter = _pipeline(tmp_path, channel, approve=False)

    turn = asyncio.run(orchestrator.run_turn("change my intro"))

    read_record, patch_record = turn.tool_results
    assert read_record.result.error.startswith("Tool arguments are not valid JSON")
    assert patch_record.result.error == CONSENT_DENIED
    assert vault.read("Notes/A.md") == "# Intro\nHello world"
    assert [request.tool.name for request in prompter.requests] == ["apply_patch"]
    assert prompter.requests[0].preview.startswith("--- a/Notes/A.md")
    assert [entry.execution_id for entry in audit.get_logs()] == ["denied"]
    assert turn.answer == "I could not change the note."
    assert len(turn.notices) == 2


def test_missing_mention_is_reported(tmp_path: Path) -> None:
    channel = ScriptedChannel([_text("Done.")])
    orchestrator, _, _, _ = _pipeline(tmp_path, channel)

    turn = asyncio.run(orchestrator.run_turn("summarise", mentions=["Notes/A", "Ghost"]))

    assert turn.missing_mentions == ["Ghost"]
    assert "Could not find a document matching 'Ghost'" in turn.notices
    assert [entry.chunk.file for entry in turn.context.mentions] == ["Notes/A.md"]


def test_cancel_keeps_partial_text(tmp_path: Path) -> None:
    channel = ScriptedChannel([_text("Partial answer")], stall=True)
    orchestrator, _, _, _ = _pipeline(tmp_path, channel)
    token = CancellationToken()

    async def scenario():
        asyncio.get_running_loop().call_later(0.05, token.cancel)
        return await orchestrator.run_turn("hello", cancel=token)

    turn = asyncio.run(scenario())

    assert turn.status == "cancelled"
    assert turn.answer == "Partial answer"
    assert turn.context is None


def test_idle_stream_times_out(tmp_path: Path) -> None:
    channel = ScriptedChannel([_text("")], stall=True)
    orchestrator, _, _, _ = _pipeline(tmp_path, channel, idle_timeout_seconds=0.05)

    turn = asyncio.run(orchestrator.run_turn("hello"))

    assert turn.status == "timeout"
    assert turn.answer == TIMEOUT_PLACEHOLDER
