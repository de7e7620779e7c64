"""Streaming Relay: one generation request, one upstream stream, chunks forwarded in order.

Two ways to consume a relay:

- `relay(request, on_chunk)`: push. `on_chunk` is called once per chunk, in
  arrival order; if it returns an awaitable, the next chunk is not pulled from
  upstream until it resolves.
- `stream(request)`: pull. An async iterator fed through a bounded ChunkChannel.
  Closing the iterator early cancels the producer and closes upstream.

The relay never retries. Failures are raised as RelayError subclasses after the
chunks that preceded them were delivered.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

from reqrelay.core.errors import (
    ConsumerGone,
    InvalidInput,
    StreamInterrupted,
    UpstreamUnavailable,
)
from reqrelay.core.schemas import GenerationRequest
from reqrelay.models.streaming import ModelProvider

logger = logging.getLogger(__name__)

ChunkSink = Callable[[str], Union[Awaitable[None], None]]

DEFAULT_MAX_PENDING = 16


async def _close_upstream(upstream: Any) -> None:
    aclose = getattr(upstream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as e:
        # The outcome is already decided; a failing close must not replace it
        logger.warning("upstream close failed", extra={"error": str(e)})


class StreamSession:
    """Per-call state: the request, the open upstream iterator and the delivery count."""

    def __init__(self, request: GenerationRequest) -> None:
        self.session_id = uuid.uuid4().hex[:12]
        self.request = request
        self.upstream: Optional[AsyncIterator[str]] = None
        self.delivered = 0
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.upstream is not None:
            await _close_upstream(self.upstream)


_CLOSED = object()


class ChunkChannel:
    """Bounded single-producer/single-consumer channel of chunks.

    `send` suspends while `maxsize` chunks are pending. `close(error)` ends the
    stream; the consumer sees remaining chunks first, then the error (if any).
    """

    def __init__(self, maxsize: int = DEFAULT_MAX_PENDING) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize)
        self._error: Optional[BaseException] = None
        self._closed = False
        self._detached = False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def send(self, chunk: str) -> None:
        if self._detached:
            raise ConsumerGone("channel consumer detached")
        if self._closed:
            raise RuntimeError("send on closed channel")
        await self._queue.put(chunk)

    async def close(self, error: Optional[BaseException] = None) -> None:
        if self._closed:
            return
        self._closed = True
        self._error = error
        if not self._detached:
            await self._queue.put(_CLOSED)

    def detach(self) -> None:
        """Consumer is gone: later sends raise ConsumerGone."""
        self._detached = True

    def __aiter__(self) -> "ChunkChannel":
        return self

    async def __anext__(self) -> str:
        if self._detached:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._detached = True
            if self._error is not None:
                raise self._error
            raise StopAsyncIteration
        return item


class StreamingRelay:
    """Forwards one provider stream per call. Holds no per-call state itself."""

    def __init__(self, provider: ModelProvider, *, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        self._provider = provider
        self._max_pending = max_pending

    @staticmethod
    def validate(request: GenerationRequest) -> None:
        if not request.file_ids:
            raise InvalidInput("file_ids must not be empty")
        if any(not fid or not fid.strip() for fid in request.file_ids):
            raise InvalidInput("file_ids must not contain blank identifiers")

    async def _open(self, session: StreamSession) -> AsyncIterator[str]:
        request = session.request
        try:
            return await self._provider.open_stream(
                request.role, request.render_prompt(), file_ids=request.file_ids
            )
        except Exception as e:
            logger.warning(
                "upstream unavailable",
                extra={"session_id": session.session_id, "error": str(e)},
            )
            raise UpstreamUnavailable(f"could not open upstream stream: {e}") from e

    async def relay(self, request: GenerationRequest, on_chunk: ChunkSink) -> None:
        """Deliver every upstream chunk to `on_chunk`; return on natural end of stream."""
        self.validate(request)
        session = StreamSession(request)
        logger.info(
            "relay started",
            extra={"session_id": session.session_id, "file_count": len(request.file_ids)},
        )
        session.upstream = await self._open(session)
        try:
            while True:
                try:
                    chunk = await session.upstream.__anext__()
                except StopAsyncIteration:
                    break
                except Exception as e:
                    logger.warning(
                        "upstream stream interrupted",
                        extra={
                            "session_id": session.session_id,
                            "delivered": session.delivered,
                            "error": str(e),
                        },
                    )
                    raise StreamInterrupted(
                        f"upstream stream failed after {session.delivered} chunks: {e}",
                        delivered=session.delivered,
                    ) from e
                try:
                    result = on_chunk(chunk)
                    if inspect.isawaitable(result):
                        await result
                except ConsumerGone as e:
                    e.delivered = session.delivered
                    logger.info(
                        "consumer gone",
                        extra={"session_id": session.session_id, "delivered": session.delivered},
                    )
                    raise
                except Exception as e:
                    logger.info(
                        "consumer gone",
                        extra={"session_id": session.session_id, "delivered": session.delivered},
                    )
                    raise ConsumerGone(
                        f"sink failed after {session.delivered} chunks: {e}",
                        delivered=session.delivered,
                    ) from e
                session.delivered += 1
        except asyncio.CancelledError:
            logger.info(
                "relay cancelled",
                extra={"session_id": session.session_id, "delivered": session.delivered},
            )
            raise
        finally:
            await session.close()
        logger.info(
            "relay completed",
            extra={"session_id": session.session_id, "delivered": session.delivered},
        )

    async def stream(
        self, request: GenerationRequest, *, max_pending: Optional[int] = None
    ) -> AsyncIterator[str]:
        """Pull-based relay over a bounded channel. Raises the relay's error after the chunks before it."""
        self.validate(request)
        channel = ChunkChannel(max_pending or self._max_pending)

        async def _produce() -> None:
            error: Optional[Exception] = None
            try:
                await self.relay(request, channel.send)
            except Exception as e:
                error = e
            # Failures reach the consumer through the channel, after the chunks before them
            await channel.close(error)

        producer = asyncio.create_task(_produce())
        try:
            async for chunk in channel:
                yield chunk
        finally:
            channel.detach()
            if not producer.done():
                producer.cancel()
            # Waits for the upstream close to finish
            await asyncio.gather(producer, return_exceptions=True)
