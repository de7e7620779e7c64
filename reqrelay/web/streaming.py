"""Bridge an async chunk iterator into a WSGI response body."""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncGenerator, Iterator

SSE_DONE = "data: [DONE]\n\n"

_END = object()


async def _next_or_end(agen: AsyncGenerator[str, None]) -> Any:
    try:
        return await agen.__anext__()
    except StopAsyncIteration:
        return _END


def iter_sync(agen: AsyncGenerator[str, None]) -> Iterator[str]:
    """Drive `agen` on a private event loop, one item per `next()`.

    Pull-based: nothing is read from upstream until the server asks for the
    next body item. Closing this generator (client disconnect) closes `agen`,
    which closes the upstream stream.
    """
    loop = asyncio.new_event_loop()
    try:
        while True:
            item = loop.run_until_complete(_next_or_end(agen))
            if item is _END:
                return
            yield item
    finally:
        try:
            loop.run_until_complete(agen.aclose())
            loop.run_until_complete(loop.shutdown_asyncgens())
        finally:
            loop.close()


def sse_content(chunk: str) -> str:
    return f"data: {json.dumps({'content': chunk}, ensure_ascii=False)}\n\n"


def sse_error(message: str, kind: str) -> str:
    return f"data: {json.dumps({'error': message, 'kind': kind}, ensure_ascii=False)}\n\n"
