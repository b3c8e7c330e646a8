"""Console diagnostics for the `vault_assistant` logger tree."""

from __future__ import annotations

import logging

ROOT_LOGGER = "vault_assistant"
_FORMAT = "[VaultAssistant] %(levelname)s %(name)s: %(message)s"


def configure_logging(enabled: bool, level: int = logging.INFO) -> logging.Logger:
    """Attach or detach the console handler; idempotent."""

    logger = logging.getLogger(ROOT_LOGGER)
    handler = next((item for item in logger.handlers if getattr(item, "_vault_assistant", False)), None)

    if not enabled:
        if handler is not None:
            logger.removeHandler(handler)
        logger.setLevel(logging.WARNING)
        return logger

    if handler is None:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._vault_assistant = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger
