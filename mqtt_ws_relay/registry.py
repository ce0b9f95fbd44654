import logging
from typing import Dict, Iterator, Optional, Set

from .metrics import Metrics

logger = logging.getLogger(__name__)


class SubscriptionRegistry:
    """
    Routing state for live client connections.

    Connections are keyed by object identity. Two indexes are kept in step:
    connection -> topics (for cleanup on close) and topic -> connections (for
    fan-out). The size of a topic's connection set is its reference count; the
    broker is asked to subscribe when it goes 0 -> 1 and, when unsubscribe_idle
    is set, to unsubscribe when it goes back to 0.

    Not thread-safe: every call must come from the event loop thread.
    """

    def __init__(self, broker=None, metrics: Optional[Metrics] = None, unsubscribe_idle: bool = True):
        self._broker = broker
        self._metrics = metrics or Metrics()
        self.unsubscribe_idle = unsubscribe_idle
        # connection -> topics
        self._client_topics: Dict[object, Set[str]] = {}
        # topic -> connections
        self._subscribers: Dict[str, Set[object]] = {}

    def __contains__(self, conn) -> bool:
        return conn in self._client_topics

    def __len__(self) -> int:
        return len(self._client_topics)

    def on_connect(self, conn) -> bool:
        if conn in self._client_topics:
            return False
        self._client_topics[conn] = set()
        return True

    def on_disconnect(self, conn) -> Set[str]:
        topics = self._client_topics.pop(conn, None)
        if topics is None:
            return set()

        for topic in topics:
            subs = self._subscribers.get(topic)
            if subs is None:
                continue
            subs.discard(conn)
            if not subs:
                del self._subscribers[topic]
                if self.unsubscribe_idle:
                    self._broker_call("unsubscribe", topic)
        return topics

    def subscribe(self, conn, topic: str) -> bool:
        topics = self._client_topics.get(conn)
        if topics is None:
            logger.warning("subscribe to %r from unregistered connection ignored", topic)
            return False
        if topic in topics:
            return False

        topics.add(topic)
        subs = self._subscribers.setdefault(topic, set())
        subs.add(conn)
        if len(subs) == 1:
            self._broker_call("subscribe", topic)
        return True

    def matching(self, topic: str) -> Iterator[object]:
        # Snapshot so the generator survives mutation between yields; anything
        # disconnected before it is reached is skipped.
        for conn in tuple(self._subscribers.get(topic, ())):
            if conn in self._client_topics:
                yield conn

    def topics(self, conn) -> Set[str]:
        return set(self._client_topics.get(conn, ()))

    def active_topics(self) -> Set[str]:
        return set(self._subscribers)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    def snapshot(self):
        return {
            "connections": len(self._client_topics),
            "topics": {t: len(s) for t, s in self._subscribers.items()},
        }

    def _broker_call(self, name: str, topic: str):
        if self._broker is None:
            return
        try:
            getattr(self._broker, name)(topic)
        except Exception:
            logger.exception("broker %s(%r) failed", name, topic)
            return
        if name == "subscribe":
            self._metrics.broker_subscribes_total += 1
        else:
            self._metrics.broker_unsubscribes_total += 1
