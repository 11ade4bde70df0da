"""
Event Broadcaster - In-process Publish/Subscribe
================================================
Fans out ProgressEvents to every live subscriber of a request id.

Delivery Rules:
- publish() is synchronous and fire-and-forget
- the subscriber set is snapshotted under the lock, handlers run outside it,
  so handlers may subscribe or unsubscribe while a publish is in progress
- a failing handler is logged and skipped; other handlers still receive
  the event
- after a terminal event is delivered the channel is closed
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable

from harborscan.jobs import ProgressEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[ProgressEvent], None]


@dataclass(frozen=True)
class Subscription:
    """Handle returned by subscribe(); pass it back to unsubscribe()."""

    id: int
    request_id: str
    handler: EventHandler


class EventBroadcaster:
    """Single-process pub/sub keyed by request id."""

    def __init__(self):
        self._channels: dict[str, dict[int, Subscription]] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def subscribe(self, request_id: str, handler: EventHandler) -> Subscription:
        with self._lock:
            subscription = Subscription(next(self._ids), request_id, handler)
            self._channels.setdefault(request_id, {})[subscription.id] = subscription
        logger.debug(f"Subscriber {subscription.id} attached to {request_id}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Detach a subscriber. Returns False if it was already gone."""
        with self._lock:
            channel = self._channels.get(subscription.request_id)
            if channel is None or subscription.id not in channel:
                return False
            del channel[subscription.id]
            if not channel:
                del self._channels[subscription.request_id]
        logger.debug(f"Subscriber {subscription.id} detached from {subscription.request_id}")
        return True

    def subscriber_count(self, request_id: str) -> int:
        with self._lock:
            return len(self._channels.get(request_id, {}))

    def publish(self, event: ProgressEvent) -> int:
        """
        Deliver an event to all current subscribers of its request id.

        Returns the number of handlers that accepted the event.
        """
        with self._lock:
            subscribers = list(self._channels.get(event.request_id, {}).values())
            if event.is_terminal:
                self._channels.pop(event.request_id, None)

        delivered = 0
        for subscription in subscribers:
            try:
                subscription.handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    f"Subscriber {subscription.id} failed handling event "
                    f"for {event.request_id}"
                )
        return delivered
