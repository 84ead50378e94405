"""
Registry of live agent channels.

The map from agent id to channel is the hub's only shared mutable state.
Every mutation happens under one asyncio.Lock, so retire-old-then-install-new
is a single atomic step and an unregister cannot remove a newer channel.
"""
import asyncio
import logging
from typing import Optional

from callrelay.hub.channel import Channel

logger = logging.getLogger(__name__)


class ChannelRegistry:
    def __init__(self) -> None:
        self._channels: dict[str, Channel] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._channels)

    def __contains__(self, agent: str) -> bool:
        return agent in self._channels

    async def install(self, channel: Channel) -> Optional[Channel]:
        """Make ``channel`` current for its agent. Returns the retired channel, if any."""
        async with self._lock:
            previous = self._channels.get(channel.agent)
            if previous is not None:
                previous.close()
            self._channels[channel.agent] = channel
        if previous is not None:
            logger.info(
                f"Agent {channel.agent}: channel {previous.client_id} superseded by {channel.client_id}"
            )
        return previous

    async def remove(self, channel: Channel) -> bool:
        """Drop ``channel`` only if it is still the registered one for its agent."""
        async with self._lock:
            if self._channels.get(channel.agent) is not channel:
                return False
            del self._channels[channel.agent]
        return True

    async def get(self, agent: str) -> Optional[Channel]:
        async with self._lock:
            return self._channels.get(agent)

    async def agents(self) -> list[str]:
        async with self._lock:
            return sorted(self._channels)

    async def close_all(self) -> None:
        async with self._lock:
            channels = list(self._channels.values())
            self._channels.clear()
        for ch in channels:
            ch.close()
