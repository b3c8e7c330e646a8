"""Vault assistant package."""

from .config import AgentConfig, AssistantSettings, IndexConfig, RetrievalConfig, ToolSettings

__all__ = ["AgentConfig", "AssistantSettings", "IndexConfig", "RetrievalConfig", "ToolSettings"]
