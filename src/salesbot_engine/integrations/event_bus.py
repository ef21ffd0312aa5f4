"""
In-process event bus for execution lifecycle notifications
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List


logger = logging.getLogger(__name__)

EXECUTION_EVENTS_TOPIC = "salesbot.execution.events"


@dataclass
class Event:
    topic: str
    name: str
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventBus:
    """Fan-out of lifecycle events to async or sync subscribers"""

    def __init__(self):
        self.subscribers: Dict[str, List[Callable]] = {}
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, name: str, payload: Dict[str, Any]):
        event = Event(topic=topic, name=name, payload=payload)

        async with self._lock:
            subscribers = list(self.subscribers.get(topic, []))

        if subscribers:
            await asyncio.gather(*(self._notify_subscriber(s, event) for s in subscribers))

        logger.debug(f"Published '{name}' to '{topic}' ({len(subscribers)} subscribers)")

    async def subscribe(self, topic: str, handler: Callable):
        async with self._lock:
            self.subscribers.setdefault(topic, []).append(handler)
        logger.info(f"Subscribed to topic '{topic}'")

    async def unsubscribe(self, topic: str, handler: Callable):
        async with self._lock:
            handlers = self.subscribers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)
            if not handlers:
                self.subscribers.pop(topic, None)
        logger.info(f"Unsubscribed from topic '{topic}'")

    async def _notify_subscriber(self, subscriber: Callable, event: Event):
        # subscriber errors are logged, never raised to the publisher
        try:
            if asyncio.iscoroutinefunction(subscriber):
                await subscriber(event)
            else:
                subscriber(event)
        except Exception as e:
            logger.error(f"Error notifying subscriber for '{event.topic}': {e}", exc_info=True)
