"""
In-process event stream.

Every state transition of the execution core is published as an
``Event(type, source, payload, timestamp)``. Subscribers are plain callables
or coroutine functions; a failing subscriber is logged and never breaks the
publisher.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Set


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    """One transition notification."""
    type: str
    source: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "source": self.source,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


EventCallback = Callable[[Event], Any]


@dataclass
class _Subscription:
    callback: EventCallback
    event_type: Optional[str]
    source: Optional[str]

    def matches(self, event: Event) -> bool:
        if self.event_type is not None and self.event_type != event.type:
            return False
        if self.source is not None and self.source != event.source:
            return False
        return True


class EventBus:
    """
    Publish/subscribe event stream.

    Keeps a bounded history of recent events so that pollers can read the
    stream without subscribing.
    """

    def __init__(self, history_size: int = 1000):
        self._subscriptions: List[_Subscription] = []
        self._history: Deque[Event] = deque(maxlen=history_size)
        self._lock = threading.RLock()
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(
        self,
        callback: EventCallback,
        event_type: Optional[str] = None,
        source: Optional[str] = None
    ) -> Callable[[], None]:
        """
        Register a subscriber.

        Args:
            callback: Called with each matching event (sync or async)
            event_type: Only deliver events of this type
            source: Only deliver events from this component

        Returns:
            Function that removes the subscription
        """
        subscription = _Subscription(callback, event_type, source)
        with self._lock:
            self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            with self._lock:
                if subscription in self._subscriptions:
                    self._subscriptions.remove(subscription)

        return unsubscribe

    def publish(self, source: str, event_type: str, payload: Optional[Dict[str, Any]] = None) -> Event:
        """Publish an event to all matching subscribers."""
        event = Event(type=event_type, source=source, payload=payload or {})
        with self._lock:
            self._history.append(event)
            subscribers = [s for s in self._subscriptions if s.matches(event)]

        for subscription in subscribers:
            self._deliver(subscription.callback, event)

        return event

    def _deliver(self, callback: EventCallback, event: Event) -> None:
        try:
            result = callback(event)
        except Exception as e:
            logger.error(f"Event subscriber failed for {event.source}.{event.type}: {e}")
            return

        if asyncio.iscoroutine(result):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                result.close()
                logger.warning(
                    f"Async subscriber for {event.source}.{event.type} dropped: no running event loop"
                )
                return
            task = loop.create_task(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Async event subscriber failed: {task.exception()}")

    def recent(self, limit: int = 50, event_type: Optional[str] = None,
               source: Optional[str] = None) -> List[Event]:
        """Most recent events, oldest first."""
        with self._lock:
            events = [
                e for e in self._history
                if (event_type is None or e.type == event_type)
                and (source is None or e.source == source)
            ]
        return events[-limit:]

    def clear(self) -> None:
        """Drop history and subscribers."""
        with self._lock:
            self._history.clear()
            self._subscriptions.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)


__all__ = ["Event", "EventBus", "EventCallback"]
