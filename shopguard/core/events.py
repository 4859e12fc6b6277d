# shopguard/core/events.py
"""
Process-wide change notifications.

Observers (header counters, dropdowns, the HTTP layer) subscribe to a
topic and re-read state when notified. Publishers never know who is
listening. A failing subscriber is logged and skipped so one bad
observer cannot break a mutation that already succeeded remotely.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from shopguard.core.timeutils import Clock, utcnow

logger = logging.getLogger(__name__)


class ChangeTopic(str, Enum):
    SESSION = "session"
    CART = "cart"
    FAVORITES = "favorites"
    SECURITY = "security"


@dataclass
class ChangeEvent:
    topic: ChangeTopic
    reason: str
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: Any = None


class Subscriber(Protocol):
    """Anything callable with a ChangeEvent; may be sync or async"""

    def __call__(self, event: ChangeEvent) -> Any: ...


Unsubscribe = Callable[[], None]


class ChangeBus:
    """Topic-based publish/subscribe with isolated subscriber failures"""

    def __init__(self, clock: Clock = utcnow):
        self._subscribers: Dict[ChangeTopic, List[Subscriber]] = {t: [] for t in ChangeTopic}
        self._clock = clock
        self._published = 0
        self._subscriber_errors = 0

    def subscribe(self, topic: ChangeTopic, callback: Subscriber) -> Unsubscribe:
        self._subscribers[topic].append(callback)

        def unsubscribe() -> None:
            try:
                self._subscribers[topic].remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def subscriber_count(self, topic: Optional[ChangeTopic] = None) -> int:
        if topic is not None:
            return len(self._subscribers[topic])
        return sum(len(subs) for subs in self._subscribers.values())

    async def publish(
        self,
        topic: ChangeTopic,
        reason: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> ChangeEvent:
        """Deliver an event to every subscriber of ``topic`` in order"""
        event = ChangeEvent(
            topic=topic,
            reason=reason,
            payload=payload or {},
            occurred_at=self._clock()
        )
        self._published += 1

        for callback in list(self._subscribers[topic]):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._subscriber_errors += 1
                logger.error(
                    f"⚠️ Subscriber for '{topic.value}' failed on '{reason}': {e}",
                    exc_info=True
                )

        logger.debug(f"📣 {topic.value}:{reason} delivered to {len(self._subscribers[topic])} subscribers")
        return event

    def get_metrics(self) -> Dict[str, int]:
        return {
            "published": self._published,
            "subscriber_errors": self._subscriber_errors,
            "subscribers": self.subscriber_count(),
        }
