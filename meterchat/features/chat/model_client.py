"""
Chat model client.

Defines the interface the chat service needs from a hosted language model
and the Groq implementation of it. Provider errors are logged with detail and
re-raised as UpstreamModelError so nothing upstream leaks to clients.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

import groq

from meterchat.core.config import settings
from meterchat.core.errors import UpstreamModelError
from meterchat.models.conversation import Turn

logger = logging.getLogger("meterchat")


@dataclass(frozen=True)
class Completion:
    """Single reply from the model with its token accounting."""
    text: str
    input_tokens: int
    output_tokens: int


class ChatModel(Protocol):
    def complete(self, turns: Sequence[Turn]) -> Completion:
        """
        Send the full turn history and return the reply.

        Raises:
            UpstreamModelError: Any provider failure
        """
        ...


class GroqChatModel:
    """Groq implementation of ChatModel."""

    def __init__(
        self,
        client: Optional[Any] = None,
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ):
        self._client = client
        self.model = model or settings.GROQ_MODEL
        self.max_tokens = max_tokens or settings.MODEL_MAX_TOKENS

    @property
    def client(self):
        if self._client is None:
            self._client = groq.Groq(api_key=settings.GROQ_API_KEY)
        return self._client

    def complete(self, turns: Sequence[Turn]) -> Completion:
        try:
            # Client construction raises GroqError when no API key is configured
            response = self.client.chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": turn.role, "content": turn.content} for turn in turns],
            )
        except groq.GroqError as e:
            logger.error(f"[chat] model request failed: {e}", extra={"error_code": "upstream_error"})
            raise UpstreamModelError(cause=str(e))

        if not response.choices or not response.choices[0].message.content:
            logger.error("[chat] model returned an empty reply", extra={"error_code": "upstream_error"})
            raise UpstreamModelError(cause="empty reply")

        usage = response.usage
        return Completion(
            text=response.choices[0].message.content,
            input_tokens=(usage.prompt_tokens if usage else 0) or 0,
            output_tokens=(usage.completion_tokens if usage else 0) or 0,
        )


def get_chat_model() -> ChatModel:
    return GroqChatModel()
