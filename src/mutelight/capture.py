"""
Capture and restore of a device's own state.

Before MuteLight takes over a device its current state can be captured, and
later written back byte for byte. Captures live for the process lifetime.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import ErrorType, Outcome
from .lighting import LightingController

logger = logging.getLogger(__name__)


@dataclass
class CapturedDeviceState:
    device_id: str
    address: str
    raw_state: bytes
    captured_at: datetime = field(default_factory=datetime.now)

    @property
    def state(self) -> Optional[Dict[str, Any]]:
        try:
            parsed = json.loads(self.raw_state)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "address": self.address,
            "captured_at": self.captured_at.isoformat(),
            "state": self.state,
        }


class StateCaptureStore:
    """One live capture per device id; a new capture replaces the old one."""

    def __init__(self, lighting: LightingController):
        self._lighting = lighting
        self._captures: Dict[str, CapturedDeviceState] = {}

    def get(self, device_id: str) -> Optional[CapturedDeviceState]:
        return self._captures.get(device_id)

    def captured_device_ids(self) -> List[str]:
        return list(self._captures)

    def discard(self, device_id: str) -> bool:
        return self._captures.pop(device_id, None) is not None

    async def capture(self, device_id: str, address: str) -> Outcome:
        """Read and store the device's current state. Data is the capture."""
        outcome = await self._lighting.get_state_raw(address)
        if not outcome.ok:
            logger.warning("Could not capture state of %s (%s): %s", device_id, address, outcome.message)
            return outcome

        captured = CapturedDeviceState(device_id=device_id, address=address, raw_state=outcome.data)
        self._captures[device_id] = captured
        logger.info("Captured state of %s (%s)", device_id, address)
        return Outcome.success(captured)

    async def restore(self, device_id: str) -> Outcome:
        """Write the captured state back exactly as it was read."""
        captured = self._captures.get(device_id)
        if captured is None:
            return Outcome.failure(f"No captured state for device {device_id}", ErrorType.CONFIG)

        outcome = await self._lighting.post_raw(captured.address, captured.raw_state)
        if outcome.ok:
            logger.info("Restored original state of %s", device_id)
        else:
            logger.warning("Restoring %s failed: %s", device_id, outcome.message)
        return outcome

    async def capture_all(self, devices: Iterable[Tuple[str, str]]) -> Dict[str, Outcome]:
        """Capture each (device_id, address) pair."""
        return {device_id: await self.capture(device_id, address) for device_id, address in devices}

    async def restore_all(self) -> Dict[str, Outcome]:
        return {device_id: await self.restore(device_id) for device_id in list(self._captures)}
