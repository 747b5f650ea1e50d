"""Device reachability tracking.

Every write and probe reports its result here, keyed by device address.
Flipping between online and offline publishes a DeviceStatusChanged event.

Usage:
    cache = DeviceStatusCache(events)
    cache.mark_online("192.168.1.40")
    cache.mark_offline("192.168.1.41", "timeout")
    cache.status()  # {"192.168.1.40": {"online": True, ...}, ...}
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .events import DeviceStatusChanged, EventChannel

logger = logging.getLogger(__name__)


@dataclass
class DeviceStatus:
    """Last known reachability of one device address."""
    address: str
    online: bool = False
    last_seen: float = 0.0  # 0 = never reached
    error: str = ""
    checked_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "online": self.online,
            "last_seen": round(self.last_seen, 1) if self.last_seen else None,
            "error": self.error or None,
        }


class DeviceStatusCache:
    """Last-write-wins map of address -> DeviceStatus."""

    def __init__(self, events: Optional[EventChannel] = None) -> None:
        self._events = events
        self._statuses: Dict[str, DeviceStatus] = {}

    def get(self, address: str) -> Optional[DeviceStatus]:
        return self._statuses.get(address)

    def is_online(self, address: str) -> Optional[bool]:
        """Cached reachability, or None if the address was never contacted."""
        status = self._statuses.get(address)
        return status.online if status is not None else None

    def mark_online(self, address: str) -> DeviceStatus:
        now = time.time()
        return self._update(address, online=True, error="", last_seen=now, checked_at=now)

    def mark_offline(self, address: str, error: str = "") -> DeviceStatus:
        return self._update(address, online=False, error=error, checked_at=time.time())

    def _update(self, address: str, **changes: Any) -> DeviceStatus:
        status = self._statuses.get(address)
        was_online = status.online if status is not None else None
        if status is None:
            status = DeviceStatus(address=address)
            self._statuses[address] = status
        for key, value in changes.items():
            setattr(status, key, value)

        if was_online != status.online:
            if status.online:
                logger.info("Device %s is online", address)
            else:
                logger.warning("Device %s is offline: %s", address, status.error or "unreachable")
            if self._events is not None:
                snapshot = DeviceStatus(**vars(status))
                self._events.publish(DeviceStatusChanged(status=snapshot))
        return status

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {address: s.to_dict() for address, s in self._statuses.items()}

    def clear(self) -> None:
        self._statuses.clear()
