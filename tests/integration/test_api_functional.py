from pathlib import Path

from fastapi.testclient import TestClient

from vault_assistant.agent.channel import ChatMessage, StreamEvent, ToolCallRequest
from vault_assistant.api.main import create_app
from vault_assistant.config import AssistantSettings, IndexConfig


class _TwoStepChannel:
    """First reply reads a note, second reply answers."""

    def __init__(self) -> None:
        self.replies = [
            ChatMessage(role="assistant", tool_calls=[ToolCallRequest(name="read", arguments={"path": "Notes/B.md"})]),
            ChatMessage(role="assistant", content="Buy milk."),
        ]

    async def stream(self, messages, *, tools=None, options=None, cancel=None):
        reply = self.replies.pop(0)
        if reply.content:
            yield StreamEvent(type="content", content=reply.content)
        yield StreamEvent(type="message", message=reply)

    async def complete(self, messages, *, options=None, cancel=None):
        return ChatMessage(role="assistant")


def _write_vault(root: Path) -> None:
    (root / "Notes").mkdir(parents=True)
    (root / "Notes/A.md").write_text("# Intro\nHello world", encoding="utf-8")
    (root / "Notes/B.md").write_text("## Todo\nTODO buy milk", encoding="utf-8")


def test_api_context_chat_audit_and_tools(tmp_path: Path) -> None:
    _write_vault(tmp_path)
    app = create_app(vault_root=tmp_path, channel=_TwoStepChannel())

    with TestClient(app) as client:
        health = client.get("/health").json()
        assert health["model_configured"] is True
        assert health["indexed_chunks"] == 2
        assert health["enabled_tools"] == ["find", "grep", "read"]

        context = client.post("/context", json={"query": "todo"}).json()
        assert context["has_context"] is True
        assert "TODO buy milk" in context["prompt"]
        assert "Notes/B.md > Todo" in context["prompt"]
        assert [item["file"] for item in context["retrieved"]] == ["Notes/B.md"]

        chat = client.post("/chat", json={"message": "what should I buy?", "auto_approve": True})
        assert chat.status_code == 200
        payload = chat.json()
        assert payload["answer"] == "Buy milk."
        assert payload["status"] == "completed"
        assert payload["tool_rounds"] == 1
        assert payload["tool_results"][0]["result"]["success"] is True

        audit = client.get("/audit").json()["items"]
        assert [entry["tool"] for entry in audit] == ["read"]

        tools = {item["name"]: item for item in client.get("/tools").json()["items"]}
        assert set(tools) == {"find", "grep", "read", "apply_patch", "web_search", "web_fetch"}
        assert tools["apply_patch"]["enabled"] is False
        assert tools["apply_patch"]["can_bypass"] is False
        assert tools["read"]["consent_mode"] == "session_allow"

        rebuilt = client.post("/index/rebuild").json()
        assert rebuilt == {"chunks": 2, "files": 2}

        assert client.post("/tools/ghost/undo", json={"execution_id": "x"}).status_code == 404
        missing_undo = client.post("/tools/apply_patch/undo", json={"execution_id": "patch-0"})
        assert missing_undo.status_code == 400
        assert "No undo information" in missing_undo.json()["detail"]

    assert (tmp_path / ".vault-assistant/index/index.json").exists()


def test_api_without_model_or_index(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    _write_vault(tmp_path)
    settings = AssistantSettings(index=IndexConfig(enabled=False))

    with TestClient(create_app(settings=settings, vault_root=tmp_path)) as client:
        assert client.get("/health").json()["model_configured"] is False
        assert client.post("/chat", json={"message": "hi"}).status_code == 503
        assert client.post("/index/rebuild").status_code == 409

        mention = client.post("/context", json={"query": "anything", "mentions": ["B"]}).json()
        assert [item["file"] for item in mention["mentions"]] == ["Notes/B.md"]
