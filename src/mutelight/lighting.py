"""
Lighting delivery to WLED devices over their JSON HTTP API.

Turns an effective voice state into a per-target wire payload and posts it
with a per-call timeout and linear retry. Targets are independent: one
device failing never blocks or aborts another.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import aiohttp

from .config import (
    RGB,
    Device,
    EffectConfig,
    Zone,
    parse_color,
    validate_address,
)
from .defaults import DEFAULT_EFFECT, resolve_light_config, resolve_transition_ms
from .errors import (
    ConfigurationError,
    ErrorType,
    Outcome,
    RetryConfig,
    TransientError,
    retry_with_backoff_async,
)
from .status import DeviceStatusCache
from .voice_state import EffectiveState

logger = logging.getLogger(__name__)

# Entries in a device's effect list that are not selectable effects
RESERVED_EFFECT_NAMES = frozenset({"RSVD", "-"})


def clamp_brightness(value: float) -> int:
    return max(0, min(255, int(round(value))))


def transition_deciseconds(transition_ms: int) -> Optional[int]:
    """WLED transitions are in tenths of a second; 0 means omit the field."""
    if transition_ms and transition_ms > 0:
        # Half-up: 250 ms is 3, 50 ms is 1
        return int(transition_ms / 100 + 0.5)
    return None


def build_device_payload(
    color: RGB,
    brightness: int,
    transition_ms: int = 0,
    effect: Optional[EffectConfig] = None,
) -> Dict[str, Any]:
    """Payload that paints a whole device one color, with an effect."""
    effect = (effect or DEFAULT_EFFECT).clamped()
    payload: Dict[str, Any] = {
        "on": True,
        "bri": clamp_brightness(brightness),
        "seg": [{
            "col": [list(color)],
            "fx": effect.effect_id,
            "sx": effect.speed,
            "ix": effect.intensity,
        }],
    }
    transition = transition_deciseconds(transition_ms)
    if transition is not None:
        payload["transition"] = transition
    return payload


def build_zone_payload(
    start_led: int,
    end_led: int,
    color: RGB,
    brightness: int,
    transition_ms: int = 0,
) -> Dict[str, Any]:
    """Payload that paints the LED range [start_led, end_led] of a device."""
    payload: Dict[str, Any] = {
        "on": True,
        "bri": clamp_brightness(brightness),
        "seg": {"i": [start_led, list(color), end_led]},
    }
    transition = transition_deciseconds(transition_ms)
    if transition is not None:
        payload["transition"] = transition
    return payload


@dataclass(frozen=True)
class LightTarget:
    """A whole device, or one zone of it."""
    device: Device
    zone: Optional[Zone] = None

    @property
    def key(self) -> str:
        if self.zone is None:
            return self.device.id
        return f"{self.device.id}/{self.zone.id}"

    @property
    def address(self) -> str:
        return self.device.address

    @property
    def label(self) -> str:
        if self.zone is None:
            return self.device.name
        return f"{self.device.name}/{self.zone.name}"


def targets_for(devices: Iterable[Device], zones: Iterable[Zone] = ()) -> List[LightTarget]:
    """Expand devices into targets: one per zone, or the whole device if it has none."""
    zones = list(zones)
    targets = []
    for device in devices:
        device_zones = [z for z in zones if z.device_id == device.id]
        if device_zones:
            targets.extend(LightTarget(device, zone) for zone in device_zones)
        else:
            targets.append(LightTarget(device))
    return targets


@dataclass
class FanoutReport:
    """Per-target outcomes of one apply_all call."""
    state: EffectiveState
    results: Dict[str, Outcome] = field(default_factory=dict)

    @property
    def succeeded(self) -> List[str]:
        return [k for k, o in self.results.items() if o.ok and not o.skipped]

    @property
    def skipped(self) -> List[str]:
        return [k for k, o in self.results.items() if o.skipped]

    @property
    def failed(self) -> List[str]:
        return [k for k, o in self.results.items() if not o.ok]

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": {k: self.results[k].message for k in self.failed},
        }


class LightingController:
    """
    Send state payloads to WLED devices.

    Reuses a single aiohttp session. All public coroutines return an Outcome
    (or a FanoutReport) and never raise.
    """

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 5.0,
        probe_timeout: float = 3.0,
        retry: Optional[RetryConfig] = None,
        status: Optional[DeviceStatusCache] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize controller.

        Args:
            session: Shared HTTP session (created lazily when None)
            timeout: Per-request timeout for writes and reads, in seconds
            probe_timeout: Timeout of the reachability probe, in seconds
            retry: Write retry policy (default 3 attempts, 1 s x attempt)
            status: Device status cache updated by every write and probe
            sleep: Awaitable used between retry attempts
        """
        self._session = session
        self._owns_session = session is None
        self._timeout = timeout
        self._probe_timeout = probe_timeout
        self._retry = retry or RetryConfig(max_attempts=3, initial_delay=1.0, linear=True)
        self.status = status or DeviceStatusCache()
        self._sleep = sleep

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create reusable HTTP session."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=20, limit_per_host=4)
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                connector=connector,
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def configure(
        self,
        timeout: Optional[float] = None,
        probe_timeout: Optional[float] = None,
        retry: Optional[RetryConfig] = None,
    ) -> None:
        if timeout is not None:
            self._timeout = timeout
        if probe_timeout is not None:
            self._probe_timeout = probe_timeout
        if retry is not None:
            self._retry = retry

    # ------------------------------------------------------------------
    # State mapping
    # ------------------------------------------------------------------

    def build_payload(self, target: LightTarget, state: EffectiveState) -> Optional[Dict[str, Any]]:
        """Wire payload for a target in a state, or None if the state is disabled."""
        config = resolve_light_config(state, target.device, target.zone)
        if not config.enabled:
            return None
        transition_ms = resolve_transition_ms(target.device, target.zone)
        if target.zone is not None:
            return build_zone_payload(
                target.zone.start_led,
                target.zone.end_led,
                config.color,
                config.brightness,
                transition_ms,
            )
        return build_device_payload(config.color, config.brightness, transition_ms, config.effect)

    async def apply(self, target: LightTarget, state: EffectiveState) -> Outcome:
        """Show ``state`` on one target."""
        payload = self.build_payload(target, state)
        if payload is None:
            logger.debug("%s skipped: state %s disabled", target.label, state.value)
            return Outcome.skip(f"{state.value} disabled for {target.label}")
        return await self.send_state(target.address, payload)

    async def apply_targets(self, targets: Iterable[LightTarget], state: EffectiveState) -> FanoutReport:
        targets = list(targets)
        report = FanoutReport(state=state)
        if not targets:
            return report

        results = await asyncio.gather(
            *(self.apply(target, state) for target in targets),
            return_exceptions=True,
        )
        for target, result in zip(targets, results):
            if isinstance(result, BaseException):
                # apply() does not raise; keep the fan-out whole if it ever does
                logger.error("Unexpected error applying %s to %s: %s", state.value, target.label, result)
                result = Outcome.from_error(result)
            report.results[target.key] = result

        if report.failed:
            logger.warning("State %s: %d/%d targets failed (%s)",
                           state.value, len(report.failed), len(targets), ", ".join(report.failed))
        else:
            logger.info("State %s applied to %d targets", state.value, len(targets))
        return report

    async def apply_all(
        self,
        devices: Iterable[Device],
        zones: Iterable[Zone],
        state: EffectiveState,
    ) -> FanoutReport:
        """Show ``state`` on every device and zone concurrently."""
        return await self.apply_targets(targets_for(devices, zones), state)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def send_state(self, address: str, payload: Dict[str, Any]) -> Outcome:
        """POST a state payload with retry."""
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        return await self._post_with_retry(address, body)

    async def post_raw(self, address: str, body: bytes) -> Outcome:
        """POST a body verbatim, e.g. a previously captured state."""
        return await self._post_with_retry(address, body)

    async def set_device_color(
        self,
        address: str,
        color: Any,
        brightness: int = 255,
        transition_ms: int = 0,
        effect: Optional[EffectConfig] = None,
    ) -> Outcome:
        try:
            rgb = parse_color(color)
        except ConfigurationError as e:
            return Outcome.from_error(e)
        logger.debug("Setting device color: %s -> %s (bri %s)", address, rgb, brightness)
        return await self.send_state(address, build_device_payload(rgb, brightness, transition_ms, effect))

    async def set_zone_color(
        self,
        address: str,
        start_led: int,
        end_led: int,
        color: Any,
        brightness: int = 255,
        transition_ms: int = 0,
    ) -> Outcome:
        if start_led < 0 or start_led > end_led:
            return Outcome.failure(f"Invalid LED range [{start_led}, {end_led}]", ErrorType.CONFIG)
        try:
            rgb = parse_color(color)
        except ConfigurationError as e:
            return Outcome.from_error(e)
        logger.debug("Setting zone color: %s [%d-%d] -> %s", address, start_led, end_led, rgb)
        payload = build_zone_payload(start_led, end_led, rgb, brightness, transition_ms)
        return await self.send_state(address, payload)

    async def _post_with_retry(self, address: str, body: bytes) -> Outcome:
        valid, error = validate_address(address)
        if not valid:
            return Outcome.failure(error, ErrorType.CONFIG)

        url = f"http://{address}/json/state"

        async def attempt():
            session = await self._get_session()
            async with session.post(
                url,
                data=body,
                headers={"Content-Type": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as response:
                if response.status < 200 or response.status >= 300:
                    raise TransientError(f"HTTP {response.status}")
                await response.read()

        def on_failure(n, e):
            logger.warning("Device request failed for %s (attempt %d/%d): %s",
                           address, n, self._retry.max_attempts, _describe(e))

        try:
            await retry_with_backoff_async(attempt, self._retry, sleep=self._sleep, on_failure=on_failure)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.status.mark_offline(address, _describe(e))
            return Outcome.failure(f"{address}: {_describe(e)}")

        self.status.mark_online(address)
        return Outcome.success()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _get(self, address: str, path: str, timeout: Optional[float] = None) -> bytes:
        valid, error = validate_address(address)
        if not valid:
            raise ConfigurationError(error)
        session = await self._get_session()
        async with session.get(
            f"http://{address}{path}",
            timeout=aiohttp.ClientTimeout(total=timeout or self._timeout),
        ) as response:
            if response.status < 200 or response.status >= 300:
                raise TransientError(f"HTTP {response.status}")
            return await response.read()

    async def _get_json(self, address: str, path: str) -> Outcome:
        try:
            body = await self._get(address, path)
            return Outcome.success(json.loads(body))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("GET %s from %s failed: %s", path, address, _describe(e))
            return Outcome.from_error(e)

    async def is_online(self, address: str) -> bool:
        """Probe /json/info once, without retry, and record the result."""
        try:
            await self._get(address, "/json/info", timeout=self._probe_timeout)
        except asyncio.CancelledError:
            raise
        except ConfigurationError as e:
            logger.warning("Cannot probe %s: %s", address, e)
            return False
        except Exception as e:
            self.status.mark_offline(address, _describe(e))
            return False
        self.status.mark_online(address)
        return True

    async def get_info(self, address: str) -> Outcome:
        return await self._get_json(address, "/json/info")

    async def get_state(self, address: str) -> Outcome:
        """Current device state, parsed."""
        return await self._get_json(address, "/json/state")

    async def get_state_raw(self, address: str) -> Outcome:
        """Current device state as the exact response bytes."""
        try:
            return Outcome.success(await self._get(address, "/json/state"))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Reading state from %s failed: %s", address, _describe(e))
            return Outcome.from_error(e)

    async def get_effects(self, address: str) -> Outcome:
        """Selectable effects as [{"id": n, "name": ...}], id = list index."""
        outcome = await self._get_json(address, "/json")
        if not outcome.ok:
            return outcome
        data = outcome.data if isinstance(outcome.data, dict) else {}
        names = data.get("effects")
        if not isinstance(names, list):
            return Outcome.failure(f"{address}: response has no effect list")
        effects = [
            {"id": index, "name": name}
            for index, name in enumerate(names)
            if isinstance(name, str) and name not in RESERVED_EFFECT_NAMES
        ]
        return Outcome.success(effects)


def _describe(error: BaseException) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "timeout"
    return str(error) or type(error).__name__
