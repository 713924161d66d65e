"""
Update event stream.

The orchestrator publishes state changes and download progress here.
Consumers either subscribe (async iteration) or register a plain callback.
A slow subscriber never sees stale progress pile up: pending progress
events collapse into the latest one, while state events and the final
progress event are always delivered.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

EVENT_STATE = 'state'
EVENT_PROGRESS = 'progress'


@dataclass(frozen=True)
class UpdateEvent:
    kind: str
    session_id: Optional[str]
    state: str
    downloaded_bytes: Optional[int] = None
    total_bytes: Optional[int] = None
    percent: Optional[int] = None
    final: bool = False
    error: Optional[Dict[str, Any]] = None

    @property
    def coalescable(self) -> bool:
        return self.kind == EVENT_PROGRESS and not self.final

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EventSubscription:
    """Buffered, coalescing view of the event stream for one consumer."""

    def __init__(self, bus: 'EventBus'):
        self._bus = bus
        self._pending = deque()
        self._wakeup = asyncio.Event()
        self.closed = False

    def push(self, event: UpdateEvent):
        if self.closed:
            return
        if event.coalescable and self._pending and self._pending[-1].coalescable:
            self._pending[-1] = event
        else:
            self._pending.append(event)
        self._wakeup.set()

    def pending(self) -> List[UpdateEvent]:
        return list(self._pending)

    async def get(self) -> Optional[UpdateEvent]:
        """Next event, or None once the subscription is closed and drained."""
        while not self._pending:
            if self.closed:
                return None
            self._wakeup.clear()
            await self._wakeup.wait()
        return self._pending.popleft()

    def close(self):
        self.closed = True
        self._bus.unsubscribe(self)
        self._wakeup.set()

    def __aiter__(self):
        return self

    async def __anext__(self) -> UpdateEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:

    def __init__(self):
        self._subscriptions: List[EventSubscription] = []
        self._listeners: List[Callable[[UpdateEvent], None]] = []

    def subscribe(self) -> EventSubscription:
        subscription = EventSubscription(self)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: EventSubscription):
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def add_listener(self, callback: Callable[[UpdateEvent], None]):
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[UpdateEvent], None]):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def publish(self, event: UpdateEvent):
        for subscription in list(self._subscriptions):
            subscription.push(event)
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                # A broken UI listener must not abort an install
                logger.exception(f"Update event listener {callback!r} failed")
