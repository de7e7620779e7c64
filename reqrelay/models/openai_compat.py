"""OpenAI-compatible chat completions provider (OpenAI, vLLM, Ollama, ...) via the OpenAI client."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional, Sequence

import httpx
from openai import AsyncOpenAI

from reqrelay.models.streaming import build_messages

logger = logging.getLogger(__name__)


class OpenAICompatProvider:
    """One client per opened stream; SDK retries are off so one call is one upstream request."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model_name: str,
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        connect_timeout: float = 10.0,
        read_timeout: float = 120.0,
    ) -> None:
        self._base_url = base_url
        self._api_key = api_key
        self._model_name = model_name
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = httpx.Timeout(read_timeout, connect=connect_timeout)

    @property
    def model_name(self) -> str:
        return self._model_name

    def _create_client(self) -> AsyncOpenAI:
        return AsyncOpenAI(
            base_url=self._base_url,
            api_key=self._api_key,
            max_retries=0,
            http_client=httpx.AsyncClient(timeout=self._timeout),
        )

    async def open_stream(
        self, role: str, prompt: str, *, file_ids: Sequence[str] = ()
    ) -> AsyncIterator[str]:
        client = self._create_client()
        kwargs: dict[str, Any] = {}
        if self._temperature is not None:
            kwargs["temperature"] = self._temperature
        if self._max_tokens is not None:
            kwargs["max_tokens"] = self._max_tokens
        try:
            stream = await client.chat.completions.create(
                model=self._model_name,
                messages=build_messages(role, prompt, file_ids),
                stream=True,
                **kwargs,
            )
        except BaseException:
            await client.close()
            raise
        logger.debug("openai stream opened", extra={"model": self._model_name})
        return self._deltas(client, stream)

    async def _deltas(self, client: AsyncOpenAI, stream: Any) -> AsyncIterator[str]:
        try:
            async for chunk in stream:
                delta = chunk.choices[0].delta if chunk.choices else None
                if delta and getattr(delta, "content", None):
                    yield delta.content
        finally:
            await stream.close()
            await client.close()
