"""
Client-side reconnect/presence agent.

Keeps one event stream open to the hub for the configured extension, reports
a connection status, and hands each ``openCustomer`` event to the host.
The hub does no reconnect bookkeeping; every reconnect here is a fresh
registration that replaces the previous channel server-side.
"""
import asyncio
import enum
import json
import logging
from typing import Callable, Optional

import httpx

from callrelay.client.host import LoggingHost, TargetHost
from callrelay.client.settings import ClientSettings
from callrelay.client.stream import EventStream, ReadyState, SseEvent
from callrelay.config import (
    LIVENESS_INTERVAL, MAX_RETRY_DELAY, MAX_UNAUTHORIZED, RECONNECT_DELAY, SSE_RETRY_MS,
)

logger = logging.getLogger(__name__)


class Status(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    MISCONFIGURED = "misconfigured"  # server refused our settings; waits for reconfigure()


StatusListener = Callable[[Status, str], None]


def _json_object(text: str) -> Optional[dict]:
    try:
        data = json.loads(text)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class PresenceAgent:
    def __init__(
        self,
        settings: ClientSettings,
        host: Optional[TargetHost] = None,
        client: Optional[httpx.AsyncClient] = None,
        liveness_interval: float = LIVENESS_INTERVAL,
        reconnect_delay: float = RECONNECT_DELAY,
        retry_ms: int = SSE_RETRY_MS,
        max_retry_delay: float = MAX_RETRY_DELAY,
        max_unauthorized: int = MAX_UNAUTHORIZED,
    ) -> None:
        self.settings = settings
        self.host = host if host is not None else LoggingHost()
        self.status = Status.DISCONNECTED
        self.reason = ""
        self.client_id: Optional[str] = None
        self._owns_client = client is None
        self._client = client if client is not None else httpx.AsyncClient()
        self._liveness_interval = liveness_interval
        self._reconnect_delay = reconnect_delay
        self._retry_ms = retry_ms
        self._max_retry_delay = max_retry_delay
        self._max_unauthorized = max_unauthorized
        self._unauthorized = 0
        self._stream: Optional[EventStream] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._liveness_task: Optional[asyncio.Task] = None
        self._listeners: list[StatusListener] = []

    @property
    def stream(self) -> Optional[EventStream]:
        return self._stream

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def _set_status(self, status: Status, reason: str) -> None:
        changed = status is not self.status or reason != self.reason
        self.status = status
        self.reason = reason
        if not changed:
            return
        logger.info(f"Status: {status.value} ({reason})")
        for listener in list(self._listeners):
            try:
                listener(status, reason)
            except Exception:
                logger.exception("Status listener failed")

    # ─────────────────────────────────────────────
    # Connection lifecycle
    # ─────────────────────────────────────────────

    async def connect(self) -> None:
        """Open a fresh stream with the current settings, replacing any open one."""
        self._cancel_reconnect()
        self._close_stream()

        missing = self.settings.missing_reason()
        if missing:
            logger.warning(f"Not connecting: {missing}")
            self._set_status(Status.DISCONNECTED, missing)
            return

        url = self.settings.sse_url()
        logger.info(f"Connecting to {self.settings.base_url()} as extension {self.settings.agent}")
        self._set_status(Status.CONNECTING, "Connecting...")
        self._stream = EventStream(
            url,
            self._client,
            on_open=self._on_open,
            on_event=self._on_event,
            on_error=self._on_error,
            retry_ms=self._retry_ms,
            max_retry_delay=self._max_retry_delay,
        )
        self._stream.start()

    async def reconfigure(self, **values: str) -> None:
        """Apply new settings and reconnect. Clears a misconfigured state."""
        if values:
            self.settings.update(**values)
        self._unauthorized = 0
        self._set_status(Status.DISCONNECTED, "Settings changed")
        await self.connect()

    async def check_liveness(self) -> None:
        """Reopen the stream if it is gone or terminally closed."""
        if self.status is Status.MISCONFIGURED:
            return
        if self._stream is None or self._stream.dead:
            logger.info("Liveness check: stream closed, reconnecting")
            await self.connect()

    async def start(self) -> None:
        await self.connect()
        if self._liveness_task is None:
            self._liveness_task = asyncio.create_task(self._liveness_loop())

    async def stop(self) -> None:
        if self._liveness_task is not None:
            self._liveness_task.cancel()
            self._liveness_task = None
        self._cancel_reconnect()
        stream = self._stream
        self._close_stream()
        if stream is not None:
            await stream.wait()
        if self._owns_client:
            await self._client.aclose()
        self._set_status(Status.DISCONNECTED, "Stopped")

    async def run_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()

    async def _liveness_loop(self) -> None:
        while True:
            await asyncio.sleep(self._liveness_interval)
            await self.check_liveness()

    async def _reconnect_later(self) -> None:
        await asyncio.sleep(self._reconnect_delay)
        self._reconnect_task = None
        await self.connect()

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _close_stream(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None

    # ─────────────────────────────────────────────
    # Stream callbacks
    # ─────────────────────────────────────────────

    async def _on_open(self, stream: EventStream) -> None:
        if stream is not self._stream:
            return
        self._unauthorized = 0
        logger.debug("Event stream open, waiting for server acknowledgement")

    async def _on_event(self, event: SseEvent) -> None:
        if event.event == "connected":
            data = _json_object(event.data)
            if data is None:
                logger.warning(f"Malformed connected event: {event.data!r}")
                data = {}
            self.client_id = data.get("clientId")
            self._set_status(Status.CONNECTED, f"Connected as ext. {self.settings.agent}")
        elif event.event == "openCustomer":
            data = _json_object(event.data)
            if data is None:
                logger.error(f"Malformed openCustomer event: {event.data!r}")
                return
            await self.handle_open_customer(str(data.get("customerID") or ""), str(data.get("phone") or ""))

    async def _on_error(self, stream: EventStream) -> None:
        if stream is not self._stream:
            return
        if stream.ready_state is not ReadyState.CLOSED:
            self._set_status(Status.CONNECTING, "Reconnecting...")
            return

        if isinstance(stream.error, httpx.InvalidURL):
            self._set_status(Status.MISCONFIGURED, "Invalid server address")
            return
        if stream.status_code == 400:
            self._set_status(Status.MISCONFIGURED, "Server rejected the extension number")
            return
        if stream.status_code == 403:
            self._unauthorized += 1
            if self._unauthorized >= self._max_unauthorized:
                self._set_status(Status.MISCONFIGURED, "Shared secret rejected by server")
                return
        self._set_status(Status.DISCONNECTED, "Connection closed")
        self._cancel_reconnect()
        self._reconnect_task = asyncio.create_task(self._reconnect_later())

    async def handle_open_customer(self, customer_id: str, phone: str) -> None:
        logger.info(f"openCustomer: customerID={customer_id!r} phone={phone!r}")
        try:
            await self.host.focus_or_open_target_window()
            await self.host.run_in_page(customer_id, phone)
        except Exception:
            logger.exception("Failed to open customer")

    async def check_registration(self) -> tuple[bool, str]:
        """Ask the server's /health whether this extension currently holds a channel."""
        missing = self.settings.missing_reason()
        if missing:
            return False, missing
        agent = self.settings.agent
        try:
            r = await self._client.get(f"{self.settings.base_url()}/health", timeout=5.0)
            r.raise_for_status()
            operators = r.json().get("connectedOperators") or []
        except (httpx.HTTPError, httpx.InvalidURL, ValueError, AttributeError) as exc:
            logger.debug(f"Health check failed: {type(exc).__name__}: {exc}")
            return False, "Cannot reach middleware server"
        if agent in operators:
            return True, f"Connected as extension {agent}"
        return False, f"Extension {agent} not yet registered with server"
