"""
Connection-scoped publish/subscribe.

Every subscriber gets its own queue and delivery task, so a slow observer
never delays another one and each observer sees events in publish order.
Consecutive events waiting in a queue are handed over as one batch. Queues
are bounded; an observer that falls behind loses its oldest events.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from app import settings

logger = logging.getLogger(__name__)

# Event kinds
STATUS = "status"
STATUS_UPDATE = "status-update"
INSTALL_PROGRESS = "install-progress"
CONSOLE = "console"


@dataclass
class Event:
    connection_id: str
    kind: str
    data: Any
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        data = self.data
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="json")
        elif isinstance(data, list):
            data = [d.model_dump(mode="json") if hasattr(d, "model_dump") else d for d in data]
        return {
            "type": self.kind,
            "connection_id": self.connection_id,
            "timestamp": self.timestamp.isoformat(),
            "data": data,
        }


Observer = Callable[[List[Event]], Any]


class Subscription:
    def __init__(
        self,
        bus: "EventBus",
        connection_id: str,
        observer: Observer,
        kinds: Optional[Set[str]] = None,
        max_pending: Optional[int] = None,
    ):
        self.bus = bus
        self.connection_id = connection_id
        self.observer = observer
        self.kinds = set(kinds) if kinds else None
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending or settings.EVENT_QUEUE_SIZE)
        self.task: Optional[asyncio.Task] = None
        self.closed = False
        self.dropped = 0

    def wants(self, event: Event) -> bool:
        return self.kinds is None or event.kind in self.kinds

    def offer(self, event: Event):
        """Queues ``event``; a full queue drops its oldest event."""
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning(f"Event observer for {self.connection_id} is lagging, {self.dropped} events dropped")
        self.queue.put_nowait(event)

    def start(self):
        self.task = asyncio.get_running_loop().create_task(self._deliver())

    async def _deliver(self):
        while True:
            batch = [await self.queue.get()]
            while not self.queue.empty():
                batch.append(self.queue.get_nowait())
            try:
                result = self.observer(batch)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Event observer for {self.connection_id} failed: {e}")

    def close(self):
        self.bus.unsubscribe(self)


class EventBus:
    def __init__(self):
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(
        self,
        connection_id: str,
        observer: Observer,
        kinds: Optional[Set[str]] = None,
        max_pending: Optional[int] = None,
    ) -> Subscription:
        """Registers ``observer`` for events of one connection. Must be called from the event loop."""
        subscription = Subscription(self, connection_id, observer, kinds, max_pending)
        subscription.start()
        self._subscriptions.setdefault(connection_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        if subscription.closed:
            return
        subscription.closed = True
        subs = self._subscriptions.get(subscription.connection_id, [])
        if subscription in subs:
            subs.remove(subscription)
        if not subs:
            self._subscriptions.pop(subscription.connection_id, None)
        if subscription.task is not None:
            subscription.task.cancel()

    def publish(self, connection_id: str, kind: str, data: Any) -> Event:
        event = Event(connection_id=connection_id, kind=kind, data=data)
        for subscription in list(self._subscriptions.get(connection_id, [])):
            if subscription.wants(event):
                subscription.offer(event)
        return event

    def subscriber_count(self, connection_id: str) -> int:
        return len(self._subscriptions.get(connection_id, []))

    def close_connection(self, connection_id: str):
        for subscription in list(self._subscriptions.get(connection_id, [])):
            self.unsubscribe(subscription)
