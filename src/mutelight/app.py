"""
MuteLight application: builds the components and exposes the commands a UI
or CLI drives.

Every command returns an Outcome; nothing raises to the caller.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import aiohttp

from .capture import StateCaptureStore
from .config import ConfigManager, Device, EffectConfig, Settings, validate_address
from .errors import ConfigurationError, ErrorType, Outcome, RetryConfig
from .events import EventChannel
from .lighting import LightingController
from .orchestrator import Orchestrator
from .rpc.base import RpcClient
from .rpc.ipc import DiscordIpcClient
from .status import DeviceStatusCache
from .supervisor import ConnectionSupervisor
from .voice_source import VoiceStateSource
from .voice_state import StateResolver

logger = logging.getLogger(__name__)


def _device_retry(settings: Settings) -> RetryConfig:
    return RetryConfig(
        max_attempts=settings.device_retry_attempts,
        initial_delay=settings.device_retry_delay_s,
        linear=True,
    )


class MuteLightApp:
    """Composition root. Components are injectable for tests."""

    def __init__(
        self,
        config: ConfigManager,
        client: Optional[RpcClient] = None,
        http_session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        settings = config.get_settings()
        discord = config.get_discord()

        self.events = EventChannel("events")
        self.status = DeviceStatusCache(self.events)
        self.lighting = LightingController(
            session=http_session,
            timeout=settings.device_timeout_s,
            probe_timeout=settings.probe_timeout_s,
            retry=_device_retry(settings),
            status=self.status,
            sleep=sleep,
        )
        self.capture = StateCaptureStore(self.lighting)
        self.resolver = StateResolver(self.events)

        self.client = client or DiscordIpcClient(
            discord.client_id,
            discord.client_secret,
            ipc_path=discord.ipc_path,
        )
        self.source = VoiceStateSource(
            self.client,
            self.resolver,
            self.events,
            poll_interval=settings.polling_interval_ms / 1000,
        )
        self.supervisor = ConnectionSupervisor(
            self.client,
            self.source,
            self.events,
            base_delay=settings.reconnect_base_delay_s,
            max_attempts=settings.max_reconnect_attempts,
            sleep=sleep,
        )
        self.orchestrator = Orchestrator(
            self.events,
            self.lighting,
            get_devices=config.get_devices,
            get_zones=config.get_zones,
        )

    @property
    def notifications(self) -> EventChannel:
        return self.orchestrator.notifications

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, capture_devices: bool = False) -> Outcome:
        """Start handling events and connect to the voice client.

        A failed connect still leaves the app running with reconnects
        scheduled; the returned outcome reports the first attempt.
        """
        self.orchestrator.start()
        if capture_devices:
            await self.capture.capture_all((d.id, d.address) for d in self.config.get_devices())
        return await self.supervisor.connect()

    async def stop(self, restore: Optional[bool] = None) -> Outcome:
        if restore is None:
            restore = self.config.get_settings().restore_on_exit
        await self.supervisor.disconnect()
        await self.orchestrator.stop()

        failed = []
        if restore:
            for device_id, outcome in (await self.capture.restore_all()).items():
                if not outcome.ok:
                    failed.append(device_id)
        await self.lighting.close()
        self.events.close()
        if failed:
            return Outcome.failure(f"Could not restore: {', '.join(failed)}")
        return Outcome.success()

    async def reconnect(self) -> Outcome:
        """Explicit reconnect; also clears an exhausted reconnect budget."""
        return await self.supervisor.connect()

    def update_settings(self, **changes: Any) -> Outcome:
        outcome = self.config.update_settings(**changes)
        if not outcome.ok:
            return outcome
        settings = self.config.get_settings()
        interval = settings.polling_interval_ms / 1000
        if interval != self.source.poll_interval:
            self.source.set_poll_interval(interval)
        self.supervisor.configure(
            base_delay=settings.reconnect_base_delay_s,
            max_attempts=settings.max_reconnect_attempts,
        )
        self.lighting.configure(
            timeout=settings.device_timeout_s,
            probe_timeout=settings.probe_timeout_s,
            retry=_device_retry(settings),
        )
        return outcome

    # ------------------------------------------------------------------
    # Device commands
    # ------------------------------------------------------------------

    def _device(self, device_id: str) -> Optional[Device]:
        return self.config.get_device(device_id)

    @staticmethod
    def _not_found(device_id: str) -> Outcome:
        return Outcome.failure(f"Device not found: {device_id}", ErrorType.CONFIG)

    async def test_connection(self, address: str) -> Outcome:
        valid, error = validate_address(address)
        if not valid:
            return Outcome.failure(error, ErrorType.CONFIG)
        online = await self.lighting.is_online(address)
        if not online:
            status = self.status.get(address)
            reason = status.error if status is not None and status.error else "not reachable"
            return Outcome.failure(f"{address}: {reason}")
        return Outcome.success({"online": True})

    async def preview_color(
        self,
        device_id: str,
        color: Any,
        brightness: int = 255,
        effect: Optional[Union[EffectConfig, Dict[str, Any]]] = None,
        zone_id: Optional[str] = None,
    ) -> Outcome:
        """Show a color on a device (or one of its zones) without changing config."""
        device = self._device(device_id)
        if device is None:
            return self._not_found(device_id)
        if isinstance(effect, dict):
            try:
                effect = EffectConfig.from_dict(effect)
            except ConfigurationError as e:
                return Outcome.from_error(e)

        if zone_id is not None:
            zone = next((z for z in self.config.get_zones(device_id) if z.id == zone_id), None)
            if zone is None:
                return Outcome.failure(f"Zone not found: {zone_id}", ErrorType.CONFIG)
            return await self.lighting.set_zone_color(
                device.address, zone.start_led, zone.end_led, color, brightness)
        return await self.lighting.set_device_color(device.address, color, brightness, effect=effect)

    async def restore_current_state(self, device_id: str) -> Outcome:
        """Reapply the current voice state to one device after a preview."""
        device = self._device(device_id)
        if device is None:
            return self._not_found(device_id)
        report = await self.lighting.apply_all(
            [device], self.config.get_zones(device_id), self.resolver.current)
        if not report.ok:
            return Outcome.failure(f"Failed targets: {', '.join(report.failed)}")
        return Outcome.success(report.to_dict())

    async def get_effects(self, device_id: str) -> Outcome:
        device = self._device(device_id)
        if device is None:
            return self._not_found(device_id)
        return await self.lighting.get_effects(device.address)

    async def capture_state(self, device_id: str) -> Outcome:
        device = self._device(device_id)
        if device is None:
            return self._not_found(device_id)
        outcome = await self.capture.capture(device.id, device.address)
        if not outcome.ok:
            return outcome
        return Outcome.success(outcome.data.to_dict())

    async def restore_original(self, device_id: str) -> Outcome:
        if self._device(device_id) is None and self.capture.get(device_id) is None:
            return self._not_found(device_id)
        return await self.capture.restore(device_id)

    async def check_devices(self) -> Dict[str, bool]:
        """Probe every configured device once."""
        devices = self.config.get_devices()
        results = await asyncio.gather(*(self.lighting.is_online(d.address) for d in devices))
        return {device.id: online for device, online in zip(devices, results)}

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def voice_status(self) -> Dict[str, Any]:
        return {
            "state": self.resolver.current.value,
            "attributes": self.source.attributes.to_dict(),
            "connection": self.supervisor.status(),
        }

    def device_statuses(self) -> Dict[str, Dict[str, Any]]:
        return self.status.status()
