"""Producer/consumer bridge between the chat engine and the SSE response.

A background task pumps engine events into a bounded queue; the HTTP writer
drains it. Cancelling the stream (client disconnect) cancels the task, which
closes the engine generator and with it the provider stream, so no partial
answer is ever persisted.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator

from app.core.errors import StreamInterrupted
from app.services.orchestrator import ChatEvent

logger = logging.getLogger(__name__)

_EOF = object()


def format_sse(payload: dict) -> str:
    """Format a single SSE ``data:`` frame."""
    return f"data: {json.dumps(payload)}\n\n"


class ChatStream:
    def __init__(self, source: AsyncIterator[ChatEvent], maxsize: int = 64) -> None:
        self._source = source
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        try:
            async for event in self._source:
                await self._queue.put(event)
        except Exception:
            logger.exception("Chat stream producer failed")
            await self._queue.put(
                ChatEvent.failure(StreamInterrupted("The assistant could not complete the answer"))
            )
        finally:
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                await aclose()
        await self._queue.put(_EOF)

    async def events(self) -> AsyncIterator[ChatEvent]:
        """Yield events in order until the producer finishes."""
        self.start()
        try:
            while True:
                item = await self._queue.get()
                if item is _EOF:
                    break
                yield item
        finally:
            self.cancel()

    async def sse(self) -> AsyncIterator[str]:
        async for event in self.events():
            yield format_sse(event.to_dict())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            logger.info("Chat stream cancelled by consumer")
            self._task.cancel()

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
