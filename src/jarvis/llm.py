"""Chat completion service.

The core only depends on the CompletionService Protocol; GroqCompletionService
is the concrete implementation wrapping AsyncGroq.
"""

import logging
from collections.abc import Sequence
from typing import Any, Protocol

import groq
from groq import AsyncGroq

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "llama-3.1-70b-versatile"


class ServiceError(Exception):
    """The completion service failed, timed out, or returned nothing usable."""


class CompletionService(Protocol):
    """Protocol for chat completion access."""

    async def complete(
        self,
        system: str | None,
        messages: Sequence[dict[str, str]],
        max_tokens: int,
    ) -> str:
        """Complete a conversation and return the reply text."""
        ...


class GroqCompletionService:
    """CompletionService implementation that wraps AsyncGroq.

    Example:
        from groq import AsyncGroq
        from jarvis.llm import GroqCompletionService

        llm = GroqCompletionService(AsyncGroq(api_key="..."))
        reply = await llm.complete("You are Jarvis", [{"role": "user", "content": "Hi"}], 300)
    """

    def __init__(
        self,
        client: AsyncGroq,
        model: str = DEFAULT_MODEL,
    ) -> None:
        """Initialize the Groq wrapper.

        Args:
            client: The AsyncGroq client instance to wrap.
            model: The model to use for completions.
        """
        self._client = client
        self._model = model

    @property
    def model(self) -> str:
        """Return the model being used."""
        return self._model

    async def complete(
        self,
        system: str | None,
        messages: Sequence[dict[str, str]],
        max_tokens: int,
    ) -> str:
        """Complete a conversation and return the text response.

        Args:
            system: Optional system prompt to set context.
            messages: Conversation so far, oldest first.
            max_tokens: Upper bound on generated tokens.

        Returns:
            The LLM's text response.

        Raises:
            ServiceError: On API errors or an empty response.
        """
        payload: list[dict[str, Any]] = []

        if system:
            payload.append({"role": "system", "content": system})

        payload.extend({"role": m["role"], "content": m["content"]} for m in messages)

        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=payload,
                max_tokens=max_tokens,
            )
        except groq.APIError as e:
            raise ServiceError(f"Completion request failed: {e}") from e

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as e:
            raise ServiceError(f"Malformed completion response: {e}") from e

        if not content or not content.strip():
            raise ServiceError("Completion returned no content")

        return content
