"""
Agent connection channel: one live Server-Sent Events path to one agent.

A channel owns an outbound frame queue. Exactly one writer (the streaming HTTP
response iterating ``frames()``) drains it, so frames sent to the same channel
reach the wire in the order they were queued and never interleave.

State machine: OPEN -> CLOSING -> CLOSED. Only OPEN channels accept frames.
Nothing is buffered across reconnects: frames still pending when the stream
ends are failed with ``ChannelClosed``.
"""
import asyncio
import enum
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from callrelay.config import SSE_KEEPALIVE_INTERVAL, SSE_RETRY_MS

logger = logging.getLogger(__name__)


class ChannelState(str, enum.Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class ChannelClosed(Exception):
    """Raised when writing to a channel that is no longer open."""

    def __init__(self, agent: str, client_id: str) -> None:
        self.agent = agent
        self.client_id = client_id
        super().__init__(f"Channel {client_id} for agent {agent} is closed")


def format_event(event_type: str, data: dict[str, Any]) -> str:
    """Frame one SSE event with a compact JSON payload."""
    payload = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    return f"event: {event_type}\ndata: {payload}\n\n"


@dataclass
class _Frame:
    text: str
    written: asyncio.Future


class Channel:
    def __init__(
        self,
        agent: str,
        retry_ms: int = SSE_RETRY_MS,
        keepalive_interval: float = SSE_KEEPALIVE_INTERVAL,
    ) -> None:
        self.agent = agent
        self.client_id = uuid.uuid4().hex
        self.created_at = datetime.now(timezone.utc)
        self.state = ChannelState.OPEN
        self._retry_ms = retry_ms
        self._keepalive_interval = keepalive_interval
        self._queue: asyncio.Queue[Optional[_Frame]] = asyncio.Queue()
        self._inflight: Optional[_Frame] = None
        self._closed = asyncio.Event()

    def __repr__(self) -> str:
        return f"<Channel agent={self.agent!r} client_id={self.client_id} state={self.state.value}>"

    @property
    def is_open(self) -> bool:
        return self.state is ChannelState.OPEN

    def send(self, event_type: str, data: dict[str, Any]) -> asyncio.Future:
        """Queue one event. The returned future resolves once the writer has flushed it."""
        if not self.is_open:
            raise ChannelClosed(self.agent, self.client_id)
        written = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Frame(format_event(event_type, data), written))
        return written

    async def write(self, event_type: str, data: dict[str, Any], timeout: float) -> None:
        """Send one event and wait until it is on the wire.

        Raises ChannelClosed if the channel is not open or closes first, and
        asyncio.TimeoutError if the writer does not flush within ``timeout``.
        """
        written = self.send(event_type, data)
        await asyncio.wait_for(written, timeout)

    def close(self) -> None:
        """Stop accepting frames and end the stream after what is already queued."""
        if self.state is ChannelState.OPEN:
            self.state = ChannelState.CLOSING
            self._queue.put_nowait(None)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def frames(
        self,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[str]:
        """Yield the raw SSE text for this channel until it closes."""
        try:
            yield f"retry: {self._retry_ms}\n\n"
            while True:
                try:
                    frame = await asyncio.wait_for(self._queue.get(), timeout=self._keepalive_interval)
                except asyncio.TimeoutError:
                    if is_disconnected is not None and await is_disconnected():
                        logger.debug(f"Agent {self.agent} channel {self.client_id}: client went away")
                        break
                    yield ": keepalive\n\n"
                    continue
                if frame is None:
                    break
                if frame.written.done():
                    # Sender already timed out; never put the event on the wire late.
                    continue
                self._inflight = frame
                yield frame.text
                # Resumed by the response only after the chunk was sent.
                self._inflight = None
                if not frame.written.done():
                    frame.written.set_result(None)
        finally:
            self._finish()

    def _finish(self) -> None:
        if self.state is ChannelState.CLOSED:
            return
        self.state = ChannelState.CLOSED
        pending = [self._inflight] if self._inflight is not None else []
        self._inflight = None
        while not self._queue.empty():
            frame = self._queue.get_nowait()
            if frame is not None:
                pending.append(frame)
        for frame in pending:
            if not frame.written.done():
                frame.written.set_exception(ChannelClosed(self.agent, self.client_id))
        self._closed.set()
