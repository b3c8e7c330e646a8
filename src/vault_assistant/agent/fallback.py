"""Recovery when a tool-augmented turn ends without visible text."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

from vault_assistant.agent.cancellation import CancellationToken, OperationCancelled, StreamIdleTimeout
from vault_assistant.agent.channel import ChatChannel, ChatMessage, GenerationOptions, collect_stream
from vault_assistant.config import AgentConfig

LOGGER = logging.getLogger(__name__)

NO_RESPONSE = "No response received from the model."
ANSWER_NOW_INSTRUCTION = (
    "You have already gathered the tool results above. Do not call any more tools. "
    "Answer the user's last message now using that information; if it is not enough, say so."
)


class EmptyResponseRecovery:
    """Three-tier cascade used when the model stops after tool calls silently.

    Tier 1 streams again without tools and with an explicit answer-now
    instruction. Tier 2 sends the same conversation as a single non-streaming
    request. Tier 3 gives up with a fixed placeholder. Cancellation is never
    swallowed; other failures move on to the next tier.
    """

    def __init__(self, channel: ChatChannel, config: AgentConfig | None = None) -> None:
        self.channel = channel
        self.config = config or AgentConfig()

    async def recover(
        self,
        conversation: Sequence[ChatMessage],
        *,
        cancel: CancellationToken,
        on_token: Callable[[str], None] | None = None,
    ) -> tuple[str, int]:
        """Return `(answer, tier)` where tier is 1, 2 or 3."""

        messages = [*conversation, ChatMessage(role="system", content=ANSWER_NOW_INSTRUCTION)]
        options = GenerationOptions(temperature=self.config.temperature, max_tokens=self.config.max_tokens)

        try:
            reply = await collect_stream(
                self.channel,
                messages,
                cancel=cancel,
                idle_timeout=self.config.idle_timeout_seconds,
                options=options,
                on_token=on_token,
            )
            if reply.content.strip():
                return reply.content, 1
        except OperationCancelled:
            raise
        except StreamIdleTimeout:
            LOGGER.warning("Recovery stream timed out, trying a single request")
        except Exception:
            LOGGER.exception("Recovery stream failed, trying a single request")

        try:
            reply = await cancel.guard(
                self.channel.complete(messages, options=options, cancel=cancel),
                timeout=self.config.idle_timeout_seconds,
            )
            if reply.content.strip():
                if on_token is not None:
                    on_token(reply.content)
                return reply.content, 2
        except OperationCancelled:
            raise
        except StreamIdleTimeout:
            LOGGER.warning("Recovery request timed out")
        except Exception:
            LOGGER.exception("Recovery request failed")

        return NO_RESPONSE, 3
