"""Outbound message delivery to a participant's chat.

The engine only sees ``send(user_id, text)``. Delivery problems are the
notifier's business and never undo a committed dispute operation.
"""

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send(self, user_id: int, text: str) -> None: ...


class LogNotifier:
    """Used when no bot token is configured."""

    def send(self, user_id: int, text: str) -> None:
        logger.info("notify %s: %s", user_id, text.replace("\n", " | "))


def notify(notifier: Notifier | None, user_id: int | None, text: str) -> None:
    """Deliver best-effort. Failures are logged, not raised."""
    if notifier is None or user_id is None:
        return
    try:
        notifier.send(user_id, text)
    except Exception as e:
        logger.warning("Notification to %s failed: %s", user_id, e)
