"""Server-sent event relay between a text-delta source and the HTTP transport."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from fastapi.responses import StreamingResponse

logger = logging.getLogger(__name__)

DONE_FRAME = "data: [DONE]\n\n"
FAILURE_MESSAGE = "Failed to generate response"
SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}

_CLOSE = object()


def format_event(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


class StreamRelay:
    """Frames text deltas as SSE events with one frame of buffering.

    The producer task pulls deltas from ``source`` and puts framed events on a
    one-slot queue, so it suspends until the transport has taken the previous
    frame. After the source is exhausted the joined text is handed to
    ``on_complete`` (persistence), and only then is ``[DONE]`` framed. Any
    failure, including one raised by ``on_complete``, produces a single error
    frame instead and nothing is persisted.
    """

    def __init__(
        self,
        source: AsyncIterator[str],
        on_complete: Optional[Callable[[str], Awaitable[None]]] = None,
        *,
        error_message: str = FAILURE_MESSAGE,
    ) -> None:
        self.source = source
        self.on_complete = on_complete
        self.error_message = error_message
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)

    async def _produce(self) -> None:
        parts: List[str] = []
        try:
            async for chunk in self.source:
                if not chunk:
                    continue
                parts.append(chunk)
                await self._queue.put(format_event({"chunk": chunk}))
            if self.on_complete is not None:
                await self.on_complete("".join(parts))
            await self._queue.put(DONE_FRAME)
        except Exception:
            logger.exception("Stream failed after %d chunk(s)", len(parts))
            await self._queue.put(format_event({"error": self.error_message}))
        # Skipped on cancellation; nobody is reading the queue then.
        await self._queue.put(_CLOSE)

    async def events(self) -> AsyncIterator[str]:
        producer = asyncio.create_task(self._produce(), name="sse-producer")
        try:
            while True:
                frame = await self._queue.get()
                if frame is _CLOSE:
                    break
                yield frame
        finally:
            # Client gone or stream finished: never leave the producer running.
            if not producer.done():
                producer.cancel()
                logger.info("Stream consumer closed early; producer cancelled")
            await asyncio.gather(producer, return_exceptions=True)


def sse_response(relay: StreamRelay) -> StreamingResponse:
    return StreamingResponse(relay.events(), media_type="text/event-stream", headers=SSE_HEADERS)
