"""Sliding-window rate limiting for tool calls."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable

from vault_assistant.config import ToolSettings

WINDOW_SECONDS = 60.0


class RateLimiter:
    """Per-tool and global admissions over a rolling 60 second window.

    A timestamp stays in a window while it is strictly newer than
    `now - 60s`. Rejected calls are not recorded and nothing is queued.
    """

    def __init__(self, settings: ToolSettings, clock: Callable[[], float] = time.monotonic) -> None:
        self.settings = settings
        self._clock = clock
        self._per_tool: dict[str, deque[float]] = {}
        self._global: deque[float] = deque()

    def check_limit(self, tool_name: str) -> bool:
        now = self._clock()
        self._purge(now - WINDOW_SECONDS)

        window = self._per_tool.setdefault(tool_name, deque())
        if len(window) >= self.settings.rate_limit_for(tool_name):
            return False
        if len(self._global) >= self.settings.global_rate_limit:
            return False

        window.append(now)
        self._global.append(now)
        return True

    def usage(self, tool_name: str) -> int:
        self._purge(self._clock() - WINDOW_SECONDS)
        return len(self._per_tool.get(tool_name, ()))

    def update_settings(self, settings: ToolSettings) -> None:
        self.settings = settings

    def reset(self) -> None:
        self._per_tool.clear()
        self._global.clear()

    def _purge(self, cutoff: float) -> None:
        for window in (*self._per_tool.values(), self._global):
            while window and window[0] <= cutoff:
                window.popleft()
