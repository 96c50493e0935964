"""In-process publish/subscribe side channel for UI push and similar observers."""

from collections import defaultdict
from typing import Any, Callable

from chatdesk.logging_config import get_logger

logger = get_logger("events")

MESSAGE_RECEIVED = "message_received"
MESSAGE_SENT = "message_sent"

Subscriber = Callable[[str, dict[str, Any]], None]


class EventBus:
    def __init__(self):
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)

    def subscribe(self, event: str, callback: Subscriber) -> None:
        if callback not in self._subscribers[event]:
            self._subscribers[event].append(callback)

    def unsubscribe(self, event: str, callback: Subscriber) -> None:
        if callback in self._subscribers.get(event, []):
            self._subscribers[event].remove(callback)

    def publish(self, event: str, payload: dict[str, Any]) -> int:
        """Deliver to every subscriber. Returns how many callbacks succeeded."""
        delivered = 0
        for callback in list(self._subscribers.get(event, [])):
            try:
                callback(event, payload)
                delivered += 1
            except Exception as exc:
                # observers never break the pipeline
                logger.warning(
                    "Event subscriber failed",
                    extra={"context": {"event": event, "error": str(exc)}},
                )
        return delivered
