"""FastAPI entrypoint for index, context, tool and chat endpoints."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from vault_assistant.agent.channel import ChatChannel, LangChainChatChannel
from vault_assistant.agent.consent import ConsentManager, StaticConsentPrompter
from vault_assistant.agent.executor import ToolExecutor
from vault_assistant.agent.orchestrator import ToolOrchestrator
from vault_assistant.agent.rate_limit import RateLimiter
from vault_assistant.agent.registry import ToolRegistry
from vault_assistant.agent.session import ChatSession, SessionBusy
from vault_assistant.agent.tools import BuiltInToolProvider
from vault_assistant.config import STATE_DIR, AssistantSettings, ConsentMode
from vault_assistant.ingest.indexer import VaultIndexer
from vault_assistant.ingest.store import ChunkStore
from vault_assistant.ingest.vault import ActiveDocument, FileSystemVault
from vault_assistant.obs.audit import AuditLogger
from vault_assistant.obs.logs import configure_logging
from vault_assistant.retrieval.retriever import ContextRetriever
from vault_assistant.types import RetrievedChunk

SETTINGS_FILE = f"{STATE_DIR}/settings.json"


def _create_channel(settings: AssistantSettings) -> ChatChannel | None:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return None

    from langchain_openai import ChatOpenAI

    model = ChatOpenAI(model=os.getenv("OPENAI_MODEL", settings.model), temperature=settings.agent.temperature)
    return LangChainChatChannel(model)


@dataclass(slots=True)
class AssistantRuntime:
    """Every long-lived component of one vault, wired together."""

    settings: AssistantSettings
    settings_path: Path
    vault: FileSystemVault
    store: ChunkStore
    indexer: VaultIndexer
    retriever: ContextRetriever
    registry: ToolRegistry
    consent: ConsentManager
    audit: AuditLogger
    executor: ToolExecutor
    channel: ChatChannel | None
    session: ChatSession | None

    async def start(self) -> None:
        await self.indexer.initialize()
        self.audit.initialize()
        await self.registry.register_provider(BuiltInToolProvider(self.vault, self.settings.tools))

    async def stop(self) -> None:
        await self.indexer.shutdown()
        self.audit.shutdown()
        await self.registry.shutdown()

    def persist_consent_mode(self, tool_name: str, mode: ConsentMode) -> None:
        modes = dict(self.settings.tools.consent_mode)
        modes[tool_name] = mode
        tools = self.settings.tools.model_copy(update={"consent_mode": modes})
        self.settings = self.settings.model_copy(update={"tools": tools})
        self.settings.save(self.settings_path)


def build_runtime(
    vault_root: str | Path,
    settings: AssistantSettings | None = None,
    channel: ChatChannel | None = None,
) -> AssistantRuntime:
    vault = FileSystemVault(vault_root)
    settings_path = vault.root / SETTINGS_FILE
    settings = settings or AssistantSettings.load(settings_path)
    configure_logging(settings.tools.print_logs)

    store = ChunkStore()
    indexer = VaultIndexer(vault, store, vault.root / settings.index.index_path, config=settings.index)
    retriever = ContextRetriever(store, indexer, settings.retrieval)
    registry = ToolRegistry(settings.tools)
    consent = ConsentManager(settings.tools, StaticConsentPrompter(approve=False))
    audit = AuditLogger(settings.tools, vault.root / STATE_DIR / "logs")
    executor = ToolExecutor(registry, consent, RateLimiter(settings.tools), audit, settings.tools)

    session = None
    if channel is not None:
        orchestrator = ToolOrchestrator(channel, retriever, registry, executor, settings.agent)
        session = ChatSession(orchestrator, max_history=settings.agent.max_history_messages)

    runtime = AssistantRuntime(
        settings=settings,
        settings_path=settings_path,
        vault=vault,
        store=store,
        indexer=indexer,
        retriever=retriever,
        registry=registry,
        consent=consent,
        audit=audit,
        executor=executor,
        channel=channel,
        session=session,
    )
    consent.on_mode_change = runtime.persist_consent_mode
    return runtime


class ContextRequest(BaseModel):
    query: str = Field(min_length=1)
    active_path: str | None = None
    active_text: str | None = None
    cursor_offset: int | None = Field(default=None, ge=0)
    mentions: list[str] = Field(default_factory=list)


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    mentions: list[str] = Field(default_factory=list)
    active_path: str | None = None
    auto_approve: bool = False


class UndoRequest(BaseModel):
    execution_id: str = Field(min_length=1)


def _active_document(path: str | None, text: str | None = None, cursor: int | None = None) -> ActiveDocument | None:
    if not path:
        return None
    return ActiveDocument(path=path, text=text, cursor_offset=cursor)


def _chunk_payload(entry: RetrievedChunk) -> dict[str, Any]:
    return {
        "id": entry.chunk.id,
        "file": entry.chunk.file,
        "headings": entry.chunk.headings,
        "score": entry.score,
        "source": entry.source,
        "content": entry.chunk.content,
    }


def create_app(
    settings: AssistantSettings | None = None,
    vault_root: str | Path | None = None,
    channel: ChatChannel | None = None,
) -> FastAPI:
    root = Path(vault_root or os.getenv("VAULT_ROOT", "."))

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        loaded = settings or AssistantSettings.load(root / SETTINGS_FILE)
        resolved = build_runtime(root, loaded, channel or _create_channel(loaded))
        app.state.runtime = resolved
        await resolved.start()
        try:
            yield
        finally:
            await resolved.stop()

    app = FastAPI(title="Vault Assistant", version="0.1.0", lifespan=lifespan)

    def runtime_of(request: Request) -> AssistantRuntime:
        return request.app.state.runtime

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        runtime = runtime_of(request)
        return {
            "status": "ok",
            "model_configured": runtime.channel is not None,
            "index_enabled": runtime.indexer.enabled,
            "indexed_chunks": len(runtime.store),
            "enabled_tools": [spec.name for spec in runtime.registry.list_available()],
        }

    @app.post("/index/rebuild")
    async def rebuild_index(request: Request) -> dict[str, Any]:
        runtime = runtime_of(request)
        if not runtime.indexer.enabled:
            raise HTTPException(status_code=409, detail="Indexing is disabled")
        await runtime.indexer.rebuild()
        return {"chunks": len(runtime.store), "files": len(runtime.store.files())}

    @app.post("/context")
    async def context(payload: ContextRequest, request: Request) -> dict[str, Any]:
        runtime = runtime_of(request)
        rag = await runtime.retriever.get_context(
            payload.query,
            active=_active_document(payload.active_path, payload.active_text, payload.cursor_offset),
            mentions=payload.mentions,
        )
        return {
            "prompt": rag.prompt,
            "has_context": rag.has_context,
            "active": [_chunk_payload(entry) for entry in rag.active],
            "retrieved": [_chunk_payload(entry) for entry in rag.retrieved],
            "mentions": [_chunk_payload(entry) for entry in rag.mentions],
            "missing": rag.missing,
        }

    @app.get("/tools")
    async def tools(request: Request) -> dict[str, Any]:
        runtime = runtime_of(request)
        return {
            "items": [
                {
                    "name": spec.name,
                    "description": spec.description,
                    "risk_level": spec.risk_level.value,
                    "enabled": runtime.registry.is_enabled(spec.name),
                    "network": spec.network,
                    "can_bypass": spec.can_bypass,
                    "requires_preview": spec.requires_preview,
                    "consent_mode": runtime.consent.mode_for(spec.name).value,
                }
                for spec in runtime.registry.specs()
            ]
        }

    @app.post("/chat")
    async def chat(payload: ChatRequest, request: Request) -> dict[str, Any]:
        runtime = runtime_of(request)
        if runtime.session is None:
            raise HTTPException(status_code=503, detail="No chat model configured")
        runtime.consent.prompter = StaticConsentPrompter(approve=payload.auto_approve)
        if payload.active_path:
            active = _active_document(payload.active_path)
            runtime.session.workspace = lambda: active
        else:
            runtime.session.workspace = None
        try:
            result = await runtime.session.send(payload.message, payload.mentions)
        except SessionBusy as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {
            "answer": result.answer,
            "status": result.status,
            "notices": result.notices,
            "missing_mentions": result.missing_mentions,
            "tool_rounds": result.tool_rounds,
            "tool_results": [record.to_dict() for record in result.tool_results],
            "sources": [_chunk_payload(entry) for entry in result.context.all_chunks()] if result.context else [],
        }

    @app.get("/audit")
    async def audit(request: Request, limit: int = 50) -> dict[str, Any]:
        runtime = runtime_of(request)
        return {"items": [entry.to_dict() for entry in runtime.audit.get_logs(limit)]}

    @app.post("/tools/{name}/undo")
    async def undo(name: str, payload: UndoRequest, request: Request) -> dict[str, Any]:
        runtime = runtime_of(request)
        if runtime.registry.resolve(name) is None:
            raise HTTPException(status_code=404, detail=f"Tool '{name}' not found")
        result = await runtime.executor.undo(name, payload.execution_id)
        if not result.success:
            raise HTTPException(status_code=400, detail=result.error)
        return result.to_dict()

    return app


app = create_app()
