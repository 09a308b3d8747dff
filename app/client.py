"""HTTP client for the Sourcebot API, used by the dashboard and the widget backend.

The client is an explicit object: construct one per base URL / token and
close it when done (or use it as an async context manager).
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import httpx

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"completed", "failed"})


class SourcebotAPIError(Exception):
    def __init__(self, status_code: int, detail: str, code: str | None = None) -> None:
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail
        self.code = code


@dataclass
class StreamEvent:
    type: str
    data: dict = field(default_factory=dict)

    @property
    def content(self) -> str:
        return self.data.get("content", "")


class SSEDecoder:
    """Incremental decoder for ``data:`` framed server-sent events.

    Feed it text as it arrives; complete events come out once their blank
    line terminator is seen. A literal ``[DONE]`` payload ends the stream.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._data: list[str] = []
        self.finished = False

    def feed(self, text: str) -> list[StreamEvent]:
        if self.finished:
            return []
        self._buffer += text.replace("\r\n", "\n")
        events: list[StreamEvent] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            event = self._line(line)
            if event is not None:
                events.append(event)
            if self.finished:
                break
        return events

    def flush(self) -> list[StreamEvent]:
        """Emit whatever is buffered when the connection closes."""
        events = self.feed("\n\n") if (self._buffer or self._data) else []
        self.finished = True
        return events

    def _line(self, line: str) -> StreamEvent | None:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None  # comment / keep-alive
        name, _, value = line.partition(":")
        if name == "data":
            self._data.append(value[1:] if value.startswith(" ") else value)
        return None

    def _dispatch(self) -> StreamEvent | None:
        if not self._data:
            return None
        payload = "\n".join(self._data)
        self._data = []
        if payload.strip() == "[DONE]":
            self.finished = True
            return StreamEvent(type="done")
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Dropping malformed SSE payload: %.80s", payload)
            return None
        event = StreamEvent(type=data.get("type", "message"), data=data)
        if event.type in ("done", "error"):
            self.finished = True
        return event


class SourcebotClient:
    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def __aenter__(self) -> SourcebotClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── Sources ──────────────────────────────────────────────

    async def add_url(self, bot_id: uuid.UUID | str, url: str, name: str | None = None) -> dict:
        return await self._request("POST", f"/v1/bots/{bot_id}/sources", json={"url": url, "name": name})

    async def add_text(self, bot_id: uuid.UUID | str, name: str, content: str) -> dict:
        return await self._request(
            "POST", f"/v1/bots/{bot_id}/sources/text", json={"name": name, "content": content},
        )

    async def upload_file(
        self, bot_id: uuid.UUID | str, filename: str, content: bytes, content_type: str | None = None,
    ) -> dict:
        files = {"file": (filename, content, content_type or "application/octet-stream")}
        return await self._request("POST", f"/v1/bots/{bot_id}/sources/upload", files=files)

    async def crawl_sitemap(self, bot_id: uuid.UUID | str, url: str, limit: int | None = None) -> dict:
        return await self._request(
            "POST", f"/v1/bots/{bot_id}/sources/sitemap", json={"url": url, "limit": limit},
        )

    async def list_sources(self, bot_id: uuid.UUID | str) -> list[dict]:
        return await self._request("GET", f"/v1/bots/{bot_id}/sources")

    async def get_source(self, bot_id: uuid.UUID | str, source_id: uuid.UUID | str) -> dict:
        return await self._request("GET", f"/v1/bots/{bot_id}/sources/{source_id}")

    async def delete_source(self, bot_id: uuid.UUID | str, source_id: uuid.UUID | str) -> None:
        await self._request("DELETE", f"/v1/bots/{bot_id}/sources/{source_id}")

    async def wait_for_source(
        self,
        bot_id: uuid.UUID | str,
        source_id: uuid.UUID | str,
        interval: float = 2.0,
        timeout: float = 600.0,
    ) -> dict:
        """Poll until the source is completed or failed."""
        async with asyncio.timeout(timeout):
            while True:
                source = await self.get_source(bot_id, source_id)
                if source["status"] in TERMINAL_STATUSES:
                    return source
                await asyncio.sleep(interval)

    # ── Chat ─────────────────────────────────────────────────

    async def create_session(self, bot_id: uuid.UUID | str) -> dict:
        return await self._request("POST", "/v1/public/chats", json={"bot_id": str(bot_id)})

    async def list_messages(self, session_id: uuid.UUID | str) -> list[dict]:
        return await self._request("GET", f"/v1/public/chats/{session_id}/messages")

    async def stream_chat(self, session_id: uuid.UUID | str, message: str) -> AsyncIterator[StreamEvent]:
        """Yield ``token`` events, then the terminal ``done`` or ``error`` event."""
        decoder = SSEDecoder()
        async with self._http.stream(
            "POST",
            f"/v1/public/chats/{session_id}/messages",
            json={"content": message},
            headers={"Accept": "text/event-stream"},
        ) as response:
            if response.status_code >= 400:
                await response.aread()
                raise _api_error(response)
            async for text in response.aiter_text():
                for event in decoder.feed(text):
                    yield event
                if decoder.finished:
                    return
        for event in decoder.flush():
            yield event

    # ── Transport ────────────────────────────────────────────

    async def _request(self, method: str, path: str, **kwargs):
        response = await self._http.request(method, path, **kwargs)
        if response.status_code >= 400:
            raise _api_error(response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()


def _api_error(response: httpx.Response) -> SourcebotAPIError:
    try:
        body = response.json()
    except ValueError:
        return SourcebotAPIError(response.status_code, response.text or response.reason_phrase)
    detail = body.get("detail", response.reason_phrase) if isinstance(body, dict) else str(body)
    code = body.get("code") if isinstance(body, dict) else None
    return SourcebotAPIError(response.status_code, str(detail), code)
