import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Sequence

from openai import AsyncOpenAI, OpenAIError

from ..exceptions import CompletionError
from ..models import ChatTurn
from ..settings import Settings

logger = logging.getLogger(__name__)

EMPTY_REPLY = "…"


def build_messages(
    system_instruction: str,
    history: Sequence[ChatTurn],
    new_message: str,
) -> List[Dict[str, str]]:
    """Chat payload: system instruction, prior turns in order, then the new user turn."""
    messages: List[Dict[str, str]] = [{"role": "system", "content": system_instruction}]
    messages.extend({"role": turn.role, "content": turn.content} for turn in history)
    messages.append({"role": "user", "content": new_message})
    return messages


class CompletionClient(ABC):
    """Text generation over a full conversation. Failures raise ``CompletionError``."""

    @abstractmethod
    async def complete(
        self,
        system_instruction: str,
        history: Sequence[ChatTurn],
        new_message: str,
    ) -> str:
        ...


class OpenAICompletionClient(CompletionClient):
    """Completion through any OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        temperature: float = 0.4,
        max_tokens: int = 1500,
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAICompletionClient":
        """Build the client from settings; a missing API key is a configuration error."""
        if not settings.openai_api_key:
            raise CompletionError("OPENAI_API_KEY is not set")
        client = AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout=settings.completion_timeout_seconds,
            max_retries=0,
        )
        return cls(
            client=client,
            model=settings.model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
        )

    async def complete(
        self,
        system_instruction: str,
        history: Sequence[ChatTurn],
        new_message: str,
    ) -> str:
        messages = build_messages(system_instruction, history, new_message)
        logger.debug("Requesting completion model=%s turns=%d", self._model, len(messages))
        try:
            response: Any = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except OpenAIError as e:
            logger.error("Completion request failed: %s", e)
            raise CompletionError(str(e)) from e

        if not response.choices:
            logger.warning("Completion returned no choices")
            return EMPTY_REPLY
        content = response.choices[0].message.content
        return content if content else EMPTY_REPLY


class UnconfiguredCompletionClient(CompletionClient):
    """Stand-in used when no API key is configured; every call fails."""

    def __init__(self, reason: str) -> None:
        self._reason = reason

    async def complete(
        self,
        system_instruction: str,
        history: Sequence[ChatTurn],
        new_message: str,
    ) -> str:
        raise CompletionError(self._reason)
