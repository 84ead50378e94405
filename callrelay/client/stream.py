"""
Streaming SSE client with built-in reconnection, modelled on the browser's
EventSource: network drops and end-of-stream are retried with backoff, while
an HTTP error status or a non-SSE response closes the stream for good.
"""
import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

logger = logging.getLogger(__name__)


class ReadyState(enum.IntEnum):
    CONNECTING = 0
    OPEN = 1
    CLOSED = 2


@dataclass
class SseEvent:
    event: str
    data: str
    id: Optional[str] = None


class SseParser:
    """Line-oriented SSE decoder. Feed lines without their terminators."""

    def __init__(self) -> None:
        self.retry: Optional[int] = None
        self.last_event_id: Optional[str] = None
        self._event = ""
        self._data: list[str] = []

    def feed(self, line: str) -> Optional[SseEvent]:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None
        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        elif field == "id":
            self.last_event_id = value
        elif field == "retry" and value.isdigit():
            self.retry = int(value)
        return None

    def _dispatch(self) -> Optional[SseEvent]:
        if not self._data:
            self._event = ""
            return None
        ev = SseEvent(event=self._event or "message", data="\n".join(self._data), id=self.last_event_id)
        self._event = ""
        self._data = []
        return ev


StreamCallback = Callable[["EventStream"], Awaitable[None]]
EventCallback = Callable[[SseEvent], Awaitable[None]]


class EventStream:
    def __init__(
        self,
        url: str,
        client: httpx.AsyncClient,
        on_open: Optional[StreamCallback] = None,
        on_event: Optional[EventCallback] = None,
        on_error: Optional[StreamCallback] = None,
        retry_ms: int = 3000,
        max_retry_delay: float = 60.0,
    ) -> None:
        self.url = url
        self.ready_state = ReadyState.CONNECTING
        self.status_code: Optional[int] = None
        self.retry_ms = retry_ms
        self._client = client
        self._on_open = on_open
        self._on_event = on_event
        self._on_error = on_error
        self._max_retry_delay = max_retry_delay
        self._last_event_id: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self.error: Optional[Exception] = None

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        return self._task

    def close(self) -> None:
        self.ready_state = ReadyState.CLOSED
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()

    async def wait(self) -> None:
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    def _retry_delay(self, attempt: int) -> float:
        return min(self.retry_ms / 1000 * (2 ** attempt), self._max_retry_delay)

    @property
    def dead(self) -> bool:
        """True once the stream can deliver nothing more: closed, or its task has ended."""
        return self.ready_state is ReadyState.CLOSED or (self._task is not None and self._task.done())

    async def _run(self) -> None:
        try:
            await self._loop()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"Event stream failed: {type(exc).__name__}: {exc}")
            self.error = exc
            self.ready_state = ReadyState.CLOSED
            await self._notify(self._on_error)

    async def _loop(self) -> None:
        attempt = 0
        while self.ready_state is not ReadyState.CLOSED:
            self.ready_state = ReadyState.CONNECTING
            headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
            if self._last_event_id:
                headers["Last-Event-ID"] = self._last_event_id
            try:
                async with self._client.stream(
                    "GET", self.url, headers=headers,
                    timeout=httpx.Timeout(10.0, read=None),
                ) as resp:
                    self.status_code = resp.status_code
                    content_type = resp.headers.get("content-type", "")
                    if resp.status_code != 200 or not content_type.startswith("text/event-stream"):
                        logger.warning(f"Event stream refused: HTTP {resp.status_code} ({content_type or 'no content type'})")
                        self.ready_state = ReadyState.CLOSED
                        await self._notify(self._on_error)
                        return
                    self.ready_state = ReadyState.OPEN
                    attempt = 0
                    await self._notify(self._on_open)
                    await self._consume(resp)
            except httpx.HTTPError as exc:
                logger.debug(f"Event stream error: {type(exc).__name__}: {exc}")
            if self.ready_state is ReadyState.CLOSED:
                return
            self.ready_state = ReadyState.CONNECTING
            await self._notify(self._on_error)
            delay = self._retry_delay(attempt)
            attempt += 1
            await asyncio.sleep(delay)

    async def _consume(self, resp: httpx.Response) -> None:
        parser = SseParser()
        async for line in resp.aiter_lines():
            ev = parser.feed(line.rstrip("\r\n"))
            if parser.retry is not None:
                self.retry_ms = parser.retry
            if ev is None:
                continue
            if ev.id is not None:
                self._last_event_id = ev.id
            if self._on_event is not None:
                await self._on_event(ev)
            if self.ready_state is ReadyState.CLOSED:
                return

    async def _notify(self, callback: Optional[StreamCallback]) -> None:
        if callback is not None:
            await callback(self)
