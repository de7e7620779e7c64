"""Streaming contract for model providers.

Every provider exposes `open_stream(role, prompt, file_ids=...)`. Awaiting it
establishes the upstream connection (HTTP status and auth are checked there);
the returned async iterator yields content deltas as plain strings. Closing the
iterator (`aclose`) closes the connection.

- OpenAI Chat Completions stream: delta.content per chunk.
- DashScope / raw OpenAI-format SSE: `data: {...}` frames, `data: [DONE]` at the end.

The relay classifies failures by where they happen: inside the await is
UpstreamUnavailable, during iteration is StreamInterrupted.
"""

from __future__ import annotations

from typing import AsyncIterator, Protocol, Sequence, runtime_checkable

from reqrelay.core.schemas import file_ref


@runtime_checkable
class ModelProvider(Protocol):
    """Protocol for providers that support token streaming."""

    async def open_stream(
        self, role: str, prompt: str, *, file_ids: Sequence[str] = ()
    ) -> AsyncIterator[str]:
        """Open the upstream stream and return an iterator of content deltas."""
        ...


def build_messages(role: str, prompt: str, file_ids: Sequence[str] = ()) -> list[dict[str, str]]:
    """System role, then the file references as one system message, then the prompt."""
    messages: list[dict[str, str]] = []
    if role:
        messages.append({"role": "system", "content": role})
    if file_ids:
        messages.append({"role": "system", "content": ",".join(file_ref(f) for f in file_ids)})
    messages.append({"role": "user", "content": prompt})
    return messages
