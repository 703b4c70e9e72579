"""OpenAI chat completions, blocking and streamed."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from openai import AsyncOpenAI

from .config import config
from .errors import GenerationError

logger = config.get_logger(__name__)

ChatMessage = dict[str, Any]


class ChatService:
    """Thin adapter over the OpenAI chat completions API."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        """Initialize the ChatService.

        Args:
            api_key: OpenAI API key. If None,
                reads from OPENAI_API_KEY environment variable.
            model: Chat model name. If None, uses config.CHAT_MODEL.
            max_tokens: Completion token limit. If None, uses config.CHAT_MAX_TOKENS.
            temperature: Sampling temperature. If None, uses config.CHAT_TEMPERATURE.
            client: Preconfigured async OpenAI client.
        """
        if client is None:
            default_headers = config.get_api_headers()
            client = AsyncOpenAI(
                api_key=api_key or config.get_openai_api_key(),
                base_url=config.OPENAI_BASE_URL,
                default_headers=default_headers or None,
            )
        self.client = client
        self.model = model or config.CHAT_MODEL
        self.max_tokens = config.CHAT_MAX_TOKENS if max_tokens is None else max_tokens
        self.temperature = (
            config.CHAT_TEMPERATURE if temperature is None else temperature
        )

    async def complete(
        self,
        messages: list[ChatMessage],
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        """Generate a full completion.

        Returns:
            The completion text, stripped; empty if the model returned nothing.

        Raises:
            GenerationError: If the provider call fails.
        """
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,  # pyright: ignore[reportArgumentType]
                max_tokens=self.max_tokens if max_tokens is None else max_tokens,
                temperature=self.temperature if temperature is None else temperature,
            )
        except Exception as exc:
            logger.exception("Error generating completion")
            msg = f"Generation provider failed: {exc}"
            raise GenerationError(msg) from exc

        answer = response.choices[0].message.content if response.choices else None
        return answer.strip() if answer else ""

    async def stream(
        self,
        messages: list[ChatMessage],
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[str]:
        """Yield completion text fragments in provider order.

        Closing the iterator closes the underlying HTTP stream.

        Yields:
            Non-empty content deltas.

        Raises:
            GenerationError: If the provider call fails before or mid-stream.
        """
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,  # pyright: ignore[reportArgumentType]
                max_tokens=self.max_tokens if max_tokens is None else max_tokens,
                temperature=self.temperature if temperature is None else temperature,
                stream=True,
            )
        except Exception as exc:
            logger.exception("Error starting completion stream")
            msg = f"Generation provider failed: {exc}"
            raise GenerationError(msg) from exc

        try:
            async for chunk in response:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except Exception as exc:
            logger.exception("Completion stream failed")
            msg = f"Generation stream failed: {exc}"
            raise GenerationError(msg) from exc
        finally:
            await response.close()
