from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Sequence

import openai
from openai import AsyncOpenAI

from advisor.models.chat import Turn
from advisor.services.errors import (
    UpstreamError,
    UpstreamProtocolError,
    UpstreamTransientError,
)
from advisor.services.prompt import SystemInstruction, get_system_instruction
from advisor.services.settings import settings

logger = logging.getLogger(__name__)

# Fragments of the error messages the model API returns for badly ordered
# conversation histories.
ROLE_ORDERING_MARKERS = (
    "first content should be with role 'user'",
    "alternate between user and model",
    "roles must alternate",
    "please ensure that multiturn requests",
)


class LLMClient:
    """Wrapper around the Gemini OpenAI-compatible chat completions API."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        system_instruction: SystemInstruction | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        if client is None:
            api_key = api_key or settings.google_api_key
            if not api_key:
                raise ValueError(
                    "GOOGLE_API_KEY is not configured. Set it in the environment before starting the service."
                )
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url or settings.gemini_base_url,
                timeout=settings.upstream_timeout_seconds,
            )
        self._client = client
        self._model = model or settings.gemini_model
        self._instruction = system_instruction or get_system_instruction()

    def build_messages(self, contents: Sequence[Turn]) -> list[dict[str, Any]]:
        return [
            self._instruction.as_message(),
            *(self._to_message(turn) for turn in contents),
        ]

    async def stream_reply(self, contents: Sequence[Turn]) -> AsyncIterator[Any]:
        """Yield raw completion chunks for a history ending with a user turn.

        SDK failures, whether raised when the stream opens or while it is
        consumed, are re-raised as ``UpstreamError`` subclasses.
        """
        messages = self.build_messages(contents)
        logger.debug(
            "Requesting completion from %s with %d history turn(s)",
            self._model,
            len(contents),
        )
        try:
            stream = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                response_format={"type": "text"},
                stream=True,
            )
            async with stream:
                async for chunk in stream:
                    yield chunk
        except openai.APIError as exc:
            raise self._translate_error(exc) from exc

    @staticmethod
    def _to_message(turn: Turn) -> dict[str, str]:
        return {"role": turn.role, "content": turn.text}

    @staticmethod
    def _translate_error(exc: openai.APIError) -> UpstreamError:
        message = str(exc)
        if isinstance(exc, openai.BadRequestError) and _mentions_role_ordering(message):
            return UpstreamProtocolError(message)
        if isinstance(
            exc,
            (
                openai.APIConnectionError,
                openai.RateLimitError,
                openai.InternalServerError,
            ),
        ):
            # APITimeoutError is a subclass of APIConnectionError.
            return UpstreamTransientError(message)
        if _mentions_role_ordering(message):
            return UpstreamProtocolError(message)
        return UpstreamError(message)


def _mentions_role_ordering(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in ROLE_ORDERING_MARKERS)
