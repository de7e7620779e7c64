"""DashScope (Qwen) compatible-mode streaming over raw SSE. See https://help.aliyun.com/zh/model-studio/."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Optional, Sequence

import httpx

from reqrelay.models.streaming import build_messages

logger = logging.getLogger(__name__)

DONE_MARKER = b"[DONE]"


class UpstreamStreamError(Exception):
    """Error frame received inside an already open SSE stream."""


def _completions_url(base_url: str) -> str:
    """Compatible-mode root (e.g. https://dashscope.aliyuncs.com/compatible-mode/v1) to completions URL."""
    u = (base_url or "").rstrip("/")
    if u.endswith("/chat/completions"):
        return u
    return f"{u}/chat/completions"


def is_dashscope_config(base_url: str | None, model: str | None) -> bool:
    """Heuristic: DashScope host or a Qwen model name."""
    return "dashscope" in (base_url or "") or "qwen" in (model or "").lower()


def parse_sse_data(raw: bytes) -> Optional[str]:
    """Content delta from one `data:` payload; None for frames without content.

    Raises UpstreamStreamError for error payloads.
    """
    try:
        data = json.loads(raw.decode("utf-8", errors="replace"))
    except json.JSONDecodeError:
        logger.warning("skipping malformed SSE frame", extra={"frame": raw[:200]})
        return None
    if not isinstance(data, dict):
        return None
    err = data.get("error")
    if err:
        msg = err.get("message", "") if isinstance(err, dict) else str(err)
        raise UpstreamStreamError(msg or "upstream error frame")
    choices = data.get("choices") or []
    if not choices:
        return None
    delta = choices[0].get("delta") or {}
    return delta.get("content") or None


class DashScopeProvider:
    """Posts an OpenAI-format body with stream=true and yields delta content from the SSE body."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model_name: str = "qwen-long",
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        connect_timeout: float = 10.0,
        read_timeout: float = 120.0,
    ) -> None:
        self._url = _completions_url(base_url)
        self._api_key = api_key
        self._model_name = model_name or "qwen-long"
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = httpx.Timeout(read_timeout, connect=connect_timeout)

    @property
    def model_name(self) -> str:
        return self._model_name

    def _body(self, role: str, prompt: str, file_ids: Sequence[str]) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self._model_name,
            "messages": build_messages(role, prompt, file_ids),
            "stream": True,
        }
        if self._temperature is not None:
            body["temperature"] = self._temperature
        if self._max_tokens is not None:
            body["max_tokens"] = self._max_tokens
        return body

    async def open_stream(
        self, role: str, prompt: str, *, file_ids: Sequence[str] = ()
    ) -> AsyncIterator[str]:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        client = httpx.AsyncClient(timeout=self._timeout)
        try:
            request = client.build_request(
                "POST", self._url, json=self._body(role, prompt, file_ids), headers=headers
            )
            resp = await client.send(request, stream=True)
            if resp.is_error:
                await resp.aread()
                await resp.aclose()
                logger.warning(
                    "dashscope request failed",
                    extra={"status": resp.status_code, "body": resp.text[:500]},
                )
                resp.raise_for_status()
        except BaseException:
            await client.aclose()
            raise
        return self._deltas(client, resp)

    async def _deltas(self, client: httpx.AsyncClient, resp: httpx.Response) -> AsyncIterator[str]:
        try:
            buf = b""
            async for chunk in resp.aiter_bytes():
                # A CRLF pair can straddle two network chunks
                buf = (buf + chunk).replace(b"\r\n", b"\n")
                while b"\n\n" in buf:
                    part, buf = buf.split(b"\n\n", 1)
                    for line in part.split(b"\n"):
                        line = line.strip()
                        if not line.startswith(b"data:"):
                            continue
                        raw = line[5:].strip()
                        if raw == DONE_MARKER:
                            return
                        if not raw:
                            continue
                        content = parse_sse_data(raw)
                        if content:
                            yield content
            # Trailing frame without blank line
            tail = buf.strip()
            if tail.startswith(b"data:"):
                raw = tail[5:].strip()
                if raw and raw != DONE_MARKER:
                    content = parse_sse_data(raw)
                    if content:
                        yield content
        finally:
            await resp.aclose()
            await client.aclose()
