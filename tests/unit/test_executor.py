import asyncio
from pathlib import Path

from vault_assistant.agent.consent import ConsentManager, StaticConsentPrompter
from vault_assistant.agent.executor import NETWORK_BLOCKED, ToolExecutor
from vault_assistant.agent.rate_limit import RateLimiter
from vault_assistant.agent.registry import ToolRegistry
from vault_assistant.agent.tools import BuiltInToolProvider
from vault_assistant.config import ConsentMode, ToolSettings
from vault_assistant.ingest.vault import FileSystemVault
from vault_assistant.obs.audit import AuditLogger


def _executor(tmp_path: Path, **settings: object) -> tuple[ToolExecutor, FileSystemVault]:
    vault = FileSystemVault(tmp_path / "vault")
    vault.write("a.md", "first\nsecond")
    tool_settings = ToolSettings(**settings)
    registry = ToolRegistry(tool_settings)
    asyncio.run(registry.register_provider(BuiltInToolProvider(vault, tool_settings)))
    executor = ToolExecutor(
        registry,
        ConsentManager(tool_settings, StaticConsentPrompter(approve=True)),
        RateLimiter(tool_settings),
        AuditLogger(tool_settings, log_dir=tmp_path / "logs"),
    )
    return executor, vault


def test_gates_refuse_before_running_tool(tmp_path: Path) -> None:
    executor, _ = _executor(
        tmp_path,
        enabled_tools=["read", "web_fetch"],
        block_external_requests=True,
        rate_limits={"read": 1},
    )

    def error(name: str, params: dict) -> str | None:
        return asyncio.run(executor.execute(name, params)).error

    assert error("nope", {}) == "Tool 'nope' not found"
    assert error("grep", {"pattern": "x"}) == "Tool 'grep' is not enabled"
    assert error("web_fetch", {"url": "https://localhost/"}) == NETWORK_BLOCKED
    assert error("read", {"path": "a.md"}) is None
    assert error("read", {"path": "a.md"}) == "Rate limit exceeded for tool 'read'. Please wait and try again."
    assert [entry.tool for entry in executor.audit.get_logs()] == ["read"]


def test_patch_then_undo_restores_content(tmp_path: Path) -> None:
    executor, vault = _executor(
        tmp_path,
        enabled_tools=["apply_patch"],
        consent_mode={"apply_patch": ConsentMode.ALWAYS_ALLOW},
    )
    params = {"path": "a.md", "patches": [{"start_line": 1, "end_line": 1, "new_content": "FIRST"}]}

    result = asyncio.run(executor.execute("apply_patch", params))
    assert result.success
    assert result.execution_id.startswith("patch-")
    assert vault.read("a.md") == "FIRST\nsecond"
    # non-bypassable tools still prompt under always_allow
    assert len(executor.consent.prompter.requests) == 1

    undone = asyncio.run(executor.undo("apply_patch", result.execution_id))
    again = asyncio.run(executor.undo("apply_patch", result.execution_id))
    unsupported = asyncio.run(executor.undo("read", "exec-1"))

    assert undone.success and undone.execution_id == f"undo-{result.execution_id}"
    assert vault.read("a.md") == "first\nsecond"
    assert again.error.startswith("No undo information found")
    assert unsupported.error == "Tool 'read' does not support undo"
    assert [entry.execution_id for entry in executor.audit.get_logs()] == [
        result.execution_id,
        f"undo-{result.execution_id}",
    ]
