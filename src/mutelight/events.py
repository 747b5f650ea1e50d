"""
Typed events and the broadcast channel components publish them on.

Every subscriber gets its own unbounded asyncio.Queue, so a slow consumer
never blocks a publisher and never steals events from another consumer.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    """Base class for everything published on an EventChannel."""

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.name}


@dataclass(frozen=True)
class Connected(Event):
    user_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.name, "user_id": self.user_id}


@dataclass(frozen=True)
class Disconnected(Event):
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.name, "reason": self.reason}


@dataclass(frozen=True)
class ReconnectExhausted(Event):
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.name, "attempts": self.attempts}


@dataclass(frozen=True)
class ConnectionChanged(Event):
    """Outbound connectivity notification for UI/tray collaborators."""
    connected: bool = False
    exhausted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.name, "connected": self.connected, "exhausted": self.exhausted}


@dataclass(frozen=True)
class AttributesObserved(Event):
    attributes: Any = None  # VoiceAttributes

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.name, "attributes": self.attributes.to_dict()}


@dataclass(frozen=True)
class StateChanged(Event):
    state: Any = None       # EffectiveState
    attributes: Any = None  # VoiceAttributes
    previous: Any = None    # EffectiveState

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.name,
            "state": self.state.value,
            "previous": self.previous.value if self.previous is not None else None,
            "attributes": self.attributes.to_dict() if self.attributes is not None else None,
        }


@dataclass(frozen=True)
class DeviceStatusChanged(Event):
    status: Any = None  # DeviceStatus

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.name, "status": self.status.to_dict()}


@dataclass(frozen=True)
class LightingApplied(Event):
    state: Any = None   # EffectiveState
    report: Any = None  # FanoutReport
    finished_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.name,
            "state": self.state.value,
            "report": self.report.to_dict(),
            "finished_at": self.finished_at.isoformat(),
        }


class Subscription:
    """One consumer's view of an EventChannel. Async-iterable until closed."""

    def __init__(self, channel: "EventChannel"):
        self._channel = channel
        self._queue: "asyncio.Queue[Optional[Event]]" = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return self._queue.qsize()

    def _put(self, event: Optional[Event]) -> None:
        self._queue.put_nowait(event)

    async def get(self) -> Optional[Event]:
        """Next event, or None once the subscription is closed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def get_nowait(self) -> Optional[Event]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> List[Event]:
        """Everything queued right now, without waiting."""
        events = []
        while True:
            event = self.get_nowait()
            if event is None:
                return events
            events.append(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._channel._remove(self)
        # Wake a consumer blocked in get()
        self._put(None)

    def __aiter__(self) -> AsyncIterator[Event]:
        return self

    async def __anext__(self) -> Event:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventChannel:
    """Broadcast channel of typed events."""

    def __init__(self, name: str = "events"):
        self.name = name
        self._subscribers: List[Subscription] = []

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        self._subscribers.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: Event) -> None:
        logger.debug("[%s] %s", self.name, event.name)
        for subscription in list(self._subscribers):
            subscription._put(event)

    def close(self) -> None:
        for subscription in list(self._subscribers):
            subscription.close()
