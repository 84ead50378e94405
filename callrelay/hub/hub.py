"""
Notification hub: accepts agent channel registrations and routes dispatches.

Dispatch is at-most-once and fire-and-forget. An event is only useful within
a few seconds of the call being answered, so nothing is queued for agents
that are offline and nothing is retried.
"""
import asyncio
import hmac
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from callrelay.config import DISPATCH_WRITE_TIMEOUT, SHARED_SECRET
from callrelay.db.models import DeliveryOutcome, DispatchRequest
from callrelay.hub.channel import Channel, ChannelClosed
from callrelay.hub.registry import ChannelRegistry

logger = logging.getLogger(__name__)

# (request, extension_connected, outcome) -> None
AuditSink = Callable[[DispatchRequest, bool, DeliveryOutcome], Awaitable[None]]


class InvalidRequest(Exception):
    """Raised when required routing fields are missing. Not retryable."""


class Unauthorized(Exception):
    """Raised when a registration presents the wrong shared secret."""

    def __init__(self, agent: str) -> None:
        self.agent = agent
        super().__init__(f"Invalid secret for agent {agent}")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class NotificationHub:
    def __init__(
        self,
        secret: str = SHARED_SECRET,
        registry: Optional[ChannelRegistry] = None,
        audit: Optional[AuditSink] = None,
        write_timeout: float = DISPATCH_WRITE_TIMEOUT,
        channel_factory: Callable[[str], Channel] = Channel,
    ) -> None:
        self._secret = secret
        self.registry = registry if registry is not None else ChannelRegistry()
        self._audit = audit
        self._write_timeout = write_timeout
        self._channel_factory = channel_factory

    def check_secret(self, secret: Optional[str]) -> bool:
        # An unset server secret admits nobody.
        if not self._secret or not secret:
            return False
        return hmac.compare_digest(secret.encode("utf-8"), self._secret.encode("utf-8"))

    async def register(self, agent: Optional[str], secret: Optional[str]) -> Channel:
        """Install a fresh channel for ``agent``, retiring any previous one."""
        agent = (agent or "").strip()
        if not agent:
            raise InvalidRequest("Missing agent parameter")
        if not self.check_secret(secret):
            logger.warning(f"Rejected channel for agent {agent}: invalid secret")
            raise Unauthorized(agent)

        channel = self._channel_factory(agent)
        await self.registry.install(channel)
        ack = channel.send("connected", {
            "status": "connected",
            "agent": agent,
            "clientId": channel.client_id,
            "timestamp": _now_iso(),
        })
        # Nobody awaits the acknowledgement; mark its outcome retrieved.
        ack.add_done_callback(lambda f: f.cancelled() or f.exception())
        logger.info(f"Agent {agent} connected (client {channel.client_id}, {len(self.registry)} online)")
        return channel

    async def unregister(self, channel: Channel) -> bool:
        channel.close()
        removed = await self.registry.remove(channel)
        if removed:
            logger.info(f"Agent {channel.agent} disconnected (client {channel.client_id})")
        return removed

    async def dispatch(self, request: DispatchRequest) -> DeliveryOutcome:
        """Route one call-answered event. Never raises for delivery problems."""
        if not request.customer_id and not request.phone:
            raise InvalidRequest("customerID or phone is required")

        channel = await self.registry.get(request.agent) if request.agent else None
        connected = channel is not None

        if not request.agent:
            outcome = DeliveryOutcome.NO_AGENT
        elif channel is None:
            outcome = DeliveryOutcome.NO_EXTENSION
        else:
            outcome = await self._write(channel, request)

        logger.info(
            f"Dispatch customerID={request.customer_id!r} phone={request.phone!r} "
            f"agent={request.agent!r}: {outcome.value}"
        )
        if self._audit is not None:
            try:
                await self._audit(request, connected, outcome)
            except Exception as exc:
                logger.error(f"Audit write failed: {type(exc).__name__}: {exc}")
        return outcome

    async def _write(self, channel: Channel, request: DispatchRequest) -> DeliveryOutcome:
        event = {
            "type": "openCustomer",
            "customerID": request.customer_id,
            "phone": request.phone,
            "agent": request.agent,
            "timestamp": request.received_at.isoformat(),
        }
        try:
            await channel.write("openCustomer", event, timeout=self._write_timeout)
        except (ChannelClosed, asyncio.TimeoutError) as exc:
            logger.warning(
                f"Write to agent {channel.agent} (client {channel.client_id}) failed: "
                f"{type(exc).__name__}; dropping channel"
            )
            await self.unregister(channel)
            return DeliveryOutcome.SEND_FAILED
        return DeliveryOutcome.SENT

    async def close(self) -> None:
        await self.registry.close_all()
