"""Process-wide admission gate for model provider calls.

Embedding batches and chat completions share one semaphore so a burst of
ingestion cannot starve chat (or the reverse) beyond the configured bound.
"""

from __future__ import annotations

import asyncio


class ModelGate:
    """Async context manager bounding concurrent provider calls."""

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def __aenter__(self) -> ModelGate:
        await self._semaphore.acquire()
        self._in_flight += 1
        return self

    async def __aexit__(self, *exc_info) -> None:
        self._in_flight -= 1
        self._semaphore.release()
