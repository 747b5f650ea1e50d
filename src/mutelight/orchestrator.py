"""
Wires resolved voice state to lighting.

Consumes the internal event channel, launches a lighting fan-out per state
change and republishes what outer collaborators (tray, UI, CLI) care about
on the notification channel.
"""

import asyncio
import logging
from typing import Callable, Iterable, List, Optional, Set

from .config import Device, Zone
from .events import (
    Connected,
    ConnectionChanged,
    DeviceStatusChanged,
    Disconnected,
    Event,
    EventChannel,
    LightingApplied,
    ReconnectExhausted,
    StateChanged,
)
from .lighting import LightingController

logger = logging.getLogger(__name__)


class Orchestrator:
    """Fan state changes out to the lighting controller."""

    def __init__(
        self,
        events: EventChannel,
        lighting: LightingController,
        get_devices: Callable[[], Iterable[Device]],
        get_zones: Callable[[], Iterable[Zone]],
        notifications: Optional[EventChannel] = None,
    ):
        self._events = events
        self._lighting = lighting
        self._get_devices = get_devices
        self._get_zones = get_zones
        self.notifications = notifications or EventChannel("notifications")

        self._subscription = None
        self._task: Optional[asyncio.Task] = None
        self._deliveries: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._subscription = self._events.subscribe()
        self._task = asyncio.create_task(self._run())

    async def stop(self, wait_deliveries: bool = True) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._task is not None:
            await self._task
            self._task = None
        if wait_deliveries:
            await self.drain()

    async def drain(self) -> None:
        """Wait for every in-flight lighting fan-out to finish."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    async def _run(self) -> None:
        async for event in self._subscription:
            try:
                self.handle(event)
            except Exception:
                logger.exception("Failed to handle %s", event.name)

    def handle(self, event: Event) -> None:
        if isinstance(event, StateChanged):
            self.notifications.publish(event)
            self._deliver(event)
        elif isinstance(event, (Connected, Disconnected)):
            self.notifications.publish(ConnectionChanged(connected=isinstance(event, Connected)))
        elif isinstance(event, ReconnectExhausted):
            self.notifications.publish(ConnectionChanged(connected=False, exhausted=True))
        elif isinstance(event, DeviceStatusChanged):
            self.notifications.publish(event)

    def _deliver(self, event: StateChanged) -> asyncio.Task:
        # Read the target set now; later config edits apply to the next change
        devices: List[Device] = list(self._get_devices())
        zones: List[Zone] = list(self._get_zones())
        task = asyncio.create_task(self._apply(event, devices, zones))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)
        return task

    async def _apply(self, event: StateChanged, devices: List[Device], zones: List[Zone]) -> None:
        report = await self._lighting.apply_all(devices, zones, event.state)
        self.notifications.publish(LightingApplied(state=event.state, report=report))
