"""Nudge delivery port.

The scheduler sweep hands a formatted nudge to whatever implements
`NudgeNotifier`; the implementation's `channel` tag ends up in the nudge log.
"""

from __future__ import annotations

from typing import Protocol


class DeliveryError(Exception):
    """A nudge could not be handed to the messaging provider.

    The sweep reverts the commitment to `scheduled` so the next pass retries.
    """

    def __init__(self, user_id: int, reason: str) -> None:
        super().__init__(f"Delivery to user {user_id} failed: {reason}")
        self.user_id = user_id
        self.reason = reason


class NudgeNotifier(Protocol):
    channel: str

    async def send_message(self, user_id: int, text: str) -> None:
        """Deliver text to the user, raising DeliveryError on failure."""
        ...
