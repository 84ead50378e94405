"""
Host capabilities the presence agent drives when a call arrives.

Browser builds bind these to their extension APIs (tab focus, script
injection). The CRM page automation itself lives outside this package.
"""
import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class TargetHost(Protocol):
    async def focus_or_open_target_window(self) -> None:
        """Bring the CRM window to the front, opening it if needed."""

    async def run_in_page(self, customer_id: str, phone: str) -> None:
        """Start the customer search inside the CRM page."""


class LoggingHost:
    """Default host for headless runs: records what would have happened."""

    async def focus_or_open_target_window(self) -> None:
        logger.info("Focus target window")

    async def run_in_page(self, customer_id: str, phone: str) -> None:
        logger.info(f"Open customer: customerID={customer_id!r} phone={phone!r}")
