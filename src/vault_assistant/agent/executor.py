"""Policy-gated tool execution."""

from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any

from vault_assistant.agent.cancellation import CancellationToken
from vault_assistant.agent.consent import ConsentManager
from vault_assistant.agent.rate_limit import RateLimiter
from vault_assistant.agent.registry import ToolRegistry
from vault_assistant.config import ToolSettings
from vault_assistant.obs.audit import AuditLogger, Timer
from vault_assistant.types import ToolExecutionLog, ToolResult

LOGGER = logging.getLogger(__name__)

CONSENT_DENIED = "User denied consent for tool execution"
NETWORK_BLOCKED = "External network requests are blocked in settings"


def new_execution_id() -> str:
    return f"exec-{int(time.time() * 1000)}-{secrets.token_hex(5)}"


class ToolExecutor:
    """Runs one tool call through every gate.

    Order: resolve, enabled, network block, consent, rate limit, execute,
    audit. Each gate that refuses returns a failed `ToolResult`; only
    `OperationCancelled` from a pending consent prompt propagates.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        consent: ConsentManager,
        rate_limiter: RateLimiter,
        audit: AuditLogger,
        settings: ToolSettings | None = None,
    ) -> None:
        self.registry = registry
        self.consent = consent
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.settings = settings or registry.settings

    async def execute(
        self,
        name: str,
        parameters: dict[str, Any],
        cancel: CancellationToken | None = None,
    ) -> ToolResult:
        spec = self.registry.resolve(name)
        if spec is None:
            return ToolResult.failure(f"Tool '{name}' not found")
        if not self.registry.is_enabled(name):
            return ToolResult.failure(f"Tool '{name}' is not enabled")
        if self.settings.block_external_requests and spec.network:
            return ToolResult.failure(NETWORK_BLOCKED)

        approved = await self.consent.request_consent(spec, parameters, cancel)
        if not approved:
            self.audit.log_consent_denied(name, parameters)
            return ToolResult.failure(CONSENT_DENIED)

        if not self.rate_limiter.check_limit(name):
            return ToolResult.failure(f"Rate limit exceeded for tool '{name}'. Please wait and try again.")

        LOGGER.info("Tool request %s %s", name, parameters)
        with Timer() as timer:
            if cancel is not None:
                result = await cancel.guard(self.registry.execute(name, parameters))
            else:
                result = await self.registry.execute(name, parameters)
        if result.execution_id is None:
            result.execution_id = new_execution_id()

        self.audit.log_execution(
            ToolExecutionLog(
                timestamp=datetime.now(timezone.utc).isoformat(),
                tool=name,
                execution_id=result.execution_id,
                parameters=dict(parameters),
                result=result.to_dict(),
                duration_ms=round(timer.elapsed_ms, 3),
            )
        )
        LOGGER.info("Tool result %s success=%s duration_ms=%.1f", name, result.success, timer.elapsed_ms)
        return result

    async def undo(self, name: str, execution_id: str) -> ToolResult:
        spec = self.registry.resolve(name)
        if spec is None:
            return ToolResult.failure(f"Tool '{name}' not found")
        if spec.undo is None:
            return ToolResult.failure(f"Tool '{name}' does not support undo")
        try:
            await spec.undo(execution_id)
        except (ValueError, KeyError, OSError) as exc:
            return ToolResult.failure(str(exc))
        self.audit.log_undo(name, execution_id)
        return ToolResult(success=True, execution_id=f"undo-{execution_id}")

    def update_settings(self, settings: ToolSettings) -> None:
        self.settings = settings
        self.registry.update_settings(settings)
        self.consent.update_settings(settings)
        self.rate_limiter.update_settings(settings)
        self.audit.update_settings(settings)
