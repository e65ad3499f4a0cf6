"""
Typed publish/subscribe bus.

Listeners register with subscribe() and get back a Subscription handle;
teardown is a single unsubscribe() (or clear() for everything) instead of
matched add/remove calls keyed by strings.
"""

import logging
from typing import Any, Callable, Generic, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

TopicT = TypeVar("TopicT", bound=Hashable)
Handler = Callable[[Any], None]


class Subscription:
    """Handle returned by EventBus.subscribe()."""

    def __init__(self, bus: "EventBus", topic: Hashable, handler: Handler):
        self._bus = bus
        self.topic = topic
        self.handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._bus._remove(self)


class EventBus(Generic[TopicT]):
    """
    Synchronous fan-out of payloads to the handlers of a topic.

    A handler that raises is logged and skipped; the remaining handlers
    still run.

    Args:
        topics: Optional closed set of allowed topics. subscribe() and
            publish() refuse anything outside it.
    """

    def __init__(self, topics: Optional[set] = None):
        self._topics = frozenset(topics) if topics is not None else None
        self._subscriptions: dict[Hashable, list[Subscription]] = {}

    def _check_topic(self, topic: Hashable) -> None:
        if self._topics is not None and topic not in self._topics:
            raise ValueError(f"Unknown event topic: {topic!r}")

    def subscribe(self, topic: TopicT, handler: Handler) -> Subscription:
        self._check_topic(topic)
        subscription = Subscription(self, topic, handler)
        self._subscriptions.setdefault(topic, []).append(subscription)
        return subscription

    def publish(self, topic: TopicT, payload: Any = None) -> int:
        """Deliver payload to every handler of topic; returns the handler count."""
        self._check_topic(topic)
        delivered = 0
        for subscription in list(self._subscriptions.get(topic, ())):
            if not subscription.active:
                continue
            try:
                subscription.handler(payload)
                delivered += 1
            except Exception:
                logger.exception(f"Listener for {topic!r} failed")
        return delivered

    def listener_count(self, topic: Optional[TopicT] = None) -> int:
        if topic is not None:
            return len(self._subscriptions.get(topic, ()))
        return sum(len(subs) for subs in self._subscriptions.values())

    def clear(self) -> None:
        for subs in list(self._subscriptions.values()):
            for subscription in subs:
                subscription._active = False
        self._subscriptions.clear()

    def _remove(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.topic)
        if not subs:
            return
        if subscription in subs:
            subs.remove(subscription)
        if not subs:
            del self._subscriptions[subscription.topic]
