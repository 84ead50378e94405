"""
Data models (dataclasses) for CallRelay.
These are plain Python objects used across the hub, DB and API layers.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone


class DeliveryOutcome(str, enum.Enum):
    SENT = "SENT"                  # written to the agent's live channel
    NO_EXTENSION = "NO_EXTENSION"  # no channel registered for the agent
    SEND_FAILED = "SEND_FAILED"    # channel existed but the write failed or timed out
    NO_AGENT = "NO_AGENT"          # request carried no agent id; audit only

    @property
    def delivered(self) -> bool:
        return self is DeliveryOutcome.SENT


@dataclass
class DispatchRequest:
    agent: str
    customer_id: str
    phone: str
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class CallRecord:
    """One row of the append-only audit log."""
    id: int
    timestamp: datetime
    customer_id: str
    phone: str
    agent: str
    extension_connected: bool     # a channel was registered when the dispatch arrived
    result: str                   # DeliveryOutcome value
