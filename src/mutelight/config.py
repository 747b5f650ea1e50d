"""
Configuration system for MuteLight.

Device, zone and settings records are owned by the configuration store; the
core only reads them through ConfigManager accessors and never persists them.
"""

import json
import logging
import os
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import yaml

from .errors import ConfigurationError, ErrorType, Outcome
from .voice_state import EffectiveState

logger = logging.getLogger(__name__)

RGB = Tuple[int, int, int]

CONFIG_ENV = "MUTELIGHT_CONFIG"
CLIENT_ID_ENV = "DISCORD_CLIENT_ID"
CLIENT_SECRET_ENV = "DISCORD_CLIENT_SECRET"

_HEX_COLOR = re.compile(r"^#?([0-9a-fA-F]{6})$")
_HOSTNAME_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")


def parse_color(value: Union[str, int, Sequence[int]]) -> RGB:
    """
    Normalize a color to an (r, g, b) tuple.

    Accepts "#RRGGBB", "RRGGBB", an int 0xRRGGBB, or a 3-item sequence.

    Raises:
        ConfigurationError: if the value is not a valid color
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid color: {value!r}")
    if isinstance(value, str):
        match = _HEX_COLOR.match(value.strip())
        if not match:
            raise ConfigurationError(f"Invalid color: {value!r}")
        n = int(match.group(1), 16)
        return ((n >> 16) & 0xFF, (n >> 8) & 0xFF, n & 0xFF)
    if isinstance(value, int):
        if not 0 <= value <= 0xFFFFFF:
            raise ConfigurationError(f"Invalid color: {value!r}")
        return ((value >> 16) & 0xFF, (value >> 8) & 0xFF, value & 0xFF)
    try:
        r, g, b = value
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid color: {value!r}") from None
    channels = (r, g, b)
    if not all(isinstance(c, int) and not isinstance(c, bool) and 0 <= c <= 255 for c in channels):
        raise ConfigurationError(f"Invalid color: {value!r}")
    return channels


def color_to_hex(color: RGB) -> str:
    return "#{:02x}{:02x}{:02x}".format(*color)


def validate_address(address: str) -> Tuple[bool, Optional[str]]:
    """Check a device address of the form host or host:port."""
    if not isinstance(address, str) or not address.strip():
        return False, "Device address is empty"
    host, sep, port = address.strip().rpartition(":")
    if not sep:
        host, port = port, ""
    elif not port.isdigit() or not 1 <= int(port) <= 65535:
        return False, f"Invalid port in device address: {address!r}"

    parts = host.split(".")
    if all(p.isdigit() for p in parts):
        if len(parts) != 4 or not all(0 <= int(p) <= 255 for p in parts):
            return False, f"Invalid IPv4 device address: {address!r}"
        return True, None
    if len(host) > 253 or not all(_HOSTNAME_LABEL.match(p) for p in parts):
        return False, f"Invalid device address: {address!r}"
    return True, None


def _clamp_byte(value: int) -> int:
    return max(0, min(255, int(value)))


_TRUE_STRINGS = ("true", "yes", "on", "1")
_FALSE_STRINGS = ("false", "no", "off", "0")


def _coerce(name: str, value: Any, kind: type) -> Any:
    """Convert a config value read from YAML/JSON (or a caller) to ``kind``."""
    if kind is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return bool(value)
        if isinstance(value, str) and value.strip().lower() in _TRUE_STRINGS + _FALSE_STRINGS:
            return value.strip().lower() in _TRUE_STRINGS
        raise ConfigurationError(f"{name} must be true or false, got {value!r}")
    if kind in (int, float) and isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be {kind.__name__}, got {value!r}") from None


def _optional_int(name: str, value: Any) -> Optional[int]:
    return None if value is None else _coerce(name, value, int)


@dataclass
class EffectConfig:
    """Device effect selection. Effect id 0 is solid."""
    effect_id: int = 0
    speed: int = 128
    intensity: int = 128

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EffectConfig":
        return cls(
            effect_id=_coerce("effect_id", data.get("effect_id", data.get("effectId", 0)), int),
            speed=_coerce("speed", data.get("speed", 128), int),
            intensity=_coerce("intensity", data.get("intensity", 128), int),
        )

    def clamped(self) -> "EffectConfig":
        return EffectConfig(
            effect_id=max(0, int(self.effect_id)),
            speed=_clamp_byte(self.speed),
            intensity=_clamp_byte(self.intensity),
        )


@dataclass
class StateLightConfig:
    """How a device or zone looks in one effective state."""
    color: RGB = (255, 255, 255)
    brightness: int = 255
    enabled: bool = True
    effect: Optional[EffectConfig] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "color": color_to_hex(self.color),
            "brightness": self.brightness,
            "enabled": self.enabled,
        }
        if self.effect is not None:
            result["effect"] = self.effect.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateLightConfig":
        effect = data.get("effect")
        return cls(
            color=parse_color(data.get("color", "#ffffff")),
            brightness=_coerce("brightness", data.get("brightness", 255), int),
            enabled=_coerce("enabled", data.get("enabled", True), bool),
            effect=EffectConfig.from_dict(effect) if effect else None,
        )


def _state_colors_from_dict(data: Optional[Dict[str, Any]]) -> Dict[EffectiveState, StateLightConfig]:
    result = {}
    for key, value in (data or {}).items():
        try:
            state = EffectiveState.parse(key)
        except ValueError:
            raise ConfigurationError(f"Unknown voice state in state_colors: {key!r}") from None
        result[state] = StateLightConfig.from_dict(value)
    return result


def _state_colors_to_dict(state_colors: Dict[EffectiveState, StateLightConfig]) -> Dict[str, Any]:
    return {state.value: cfg.to_dict() for state, cfg in state_colors.items()}


def _optional_color(value: Any) -> Optional[RGB]:
    return parse_color(value) if value is not None else None


@dataclass
class Device:
    """A whole lighting device."""
    id: str
    name: str
    address: str
    state_colors: Dict[EffectiveState, StateLightConfig] = field(default_factory=dict)
    default_brightness: Optional[int] = None
    transition_time_ms: Optional[int] = None
    # Two-color configuration kept from older setups
    muted_color: Optional[RGB] = None
    unmuted_color: Optional[RGB] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "address": self.address,
        }
        if self.state_colors:
            result["state_colors"] = _state_colors_to_dict(self.state_colors)
        if self.default_brightness is not None:
            result["default_brightness"] = self.default_brightness
        if self.transition_time_ms is not None:
            result["transition_time_ms"] = self.transition_time_ms
        if self.muted_color is not None:
            result["muted_color"] = color_to_hex(self.muted_color)
        if self.unmuted_color is not None:
            result["unmuted_color"] = color_to_hex(self.unmuted_color)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Device":
        address = data.get("address", data.get("ip_address"))
        if "id" not in data or address is None:
            raise ConfigurationError(f"Device entry needs an id and an address: {data!r}")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            address=str(address),
            state_colors=_state_colors_from_dict(data.get("state_colors")),
            default_brightness=_optional_int("default_brightness", data.get("default_brightness")),
            transition_time_ms=_optional_int("transition_time_ms", data.get("transition_time_ms")),
            muted_color=_optional_color(data.get("muted_color")),
            unmuted_color=_optional_color(data.get("unmuted_color")),
        )

    def validate(self) -> Tuple[bool, Optional[str]]:
        valid, error = validate_address(self.address)
        if not valid:
            return False, f"Device {self.id}: {error}"
        if self.transition_time_ms is not None and self.transition_time_ms < 0:
            return False, f"Device {self.id}: transition_time_ms must be >= 0"
        return True, None


@dataclass
class Zone:
    """A contiguous LED range of a device, addressed as its own target."""
    id: str
    name: str
    device_id: str
    start_led: int
    end_led: int
    state_colors: Dict[EffectiveState, StateLightConfig] = field(default_factory=dict)
    brightness: Optional[int] = None
    transition_time_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "device_id": self.device_id,
            "start_led": self.start_led,
            "end_led": self.end_led,
        }
        if self.state_colors:
            result["state_colors"] = _state_colors_to_dict(self.state_colors)
        if self.brightness is not None:
            result["brightness"] = self.brightness
        if self.transition_time_ms is not None:
            result["transition_time_ms"] = self.transition_time_ms
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Zone":
        try:
            return cls(
                id=str(data["id"]),
                name=str(data.get("name", data["id"])),
                device_id=str(data["device_id"]),
                start_led=_coerce("start_led", data["start_led"], int),
                end_led=_coerce("end_led", data["end_led"], int),
                state_colors=_state_colors_from_dict(data.get("state_colors")),
                brightness=_optional_int("brightness", data.get("brightness")),
                transition_time_ms=_optional_int("transition_time_ms", data.get("transition_time_ms")),
            )
        except KeyError as e:
            raise ConfigurationError(f"Zone entry is missing {e}: {data!r}") from None

    def validate(self) -> Tuple[bool, Optional[str]]:
        if self.start_led < 0:
            return False, f"Zone {self.id}: start_led must be >= 0"
        if self.start_led > self.end_led:
            return False, f"Zone {self.id}: start_led must be <= end_led"
        return True, None


@dataclass
class Settings:
    """Runtime settings for polling, reconnection and device delivery."""
    polling_interval_ms: int = 500
    reconnect_base_delay_s: float = 5.0
    max_reconnect_attempts: int = 10
    device_timeout_s: float = 5.0
    probe_timeout_s: float = 3.0
    device_retry_attempts: int = 3
    device_retry_delay_s: float = 1.0
    restore_on_exit: bool = True
    log_level: str = "INFO"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        values = {}
        for name, spec in cls.__dataclass_fields__.items():
            if name in data:
                values[name] = _coerce(name, data[name], type(spec.default))
        return cls(**values)

    def validate(self) -> Tuple[bool, Optional[str]]:
        if not 100 <= self.polling_interval_ms <= 5000:
            return False, f"polling_interval_ms ({self.polling_interval_ms}) must be in [100, 5000]"
        if self.reconnect_base_delay_s <= 0:
            return False, "reconnect_base_delay_s must be > 0"
        if self.max_reconnect_attempts < 0:
            return False, "max_reconnect_attempts must be >= 0"
        if self.device_timeout_s <= 0 or self.probe_timeout_s <= 0:
            return False, "device timeouts must be > 0"
        if self.device_retry_attempts < 1:
            return False, "device_retry_attempts must be >= 1"
        if self.device_retry_delay_s < 0:
            return False, "device_retry_delay_s must be >= 0"
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            return False, f"Unknown log_level: {self.log_level}"
        return True, None


@dataclass
class DiscordSettings:
    """Voice client RPC credentials. Secrets come from the environment."""
    client_id: str = ""
    client_secret: str = ""
    ipc_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        # Never write the secret back out
        return {"client_id": self.client_id, "ipc_path": self.ipc_path}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DiscordSettings":
        return cls(
            client_id=str(data.get("client_id", "")),
            client_secret=str(data.get("client_secret", "")),
            ipc_path=data.get("ipc_path"),
        )

    def apply_env(self, environ: Optional[Dict[str, str]] = None) -> None:
        environ = os.environ if environ is None else environ
        if environ.get(CLIENT_ID_ENV):
            self.client_id = environ[CLIENT_ID_ENV]
        if environ.get(CLIENT_SECRET_ENV):
            self.client_secret = environ[CLIENT_SECRET_ENV]


@dataclass
class AppConfig:
    """Complete MuteLight configuration."""
    settings: Settings = field(default_factory=Settings)
    discord: DiscordSettings = field(default_factory=DiscordSettings)
    devices: List[Device] = field(default_factory=list)
    zones: List[Zone] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "settings": self.settings.to_dict(),
            "discord": self.discord.to_dict(),
            "devices": [d.to_dict() for d in self.devices],
            "zones": [z.to_dict() for z in self.zones],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AppConfig":
        data = data or {}
        return cls(
            settings=Settings.from_dict(data.get("settings") or {}),
            discord=DiscordSettings.from_dict(data.get("discord") or {}),
            devices=[Device.from_dict(d) for d in data.get("devices") or []],
            zones=[Zone.from_dict(z) for z in data.get("zones") or []],
        )

    def validate(self) -> Tuple[bool, Optional[str]]:
        valid, error = self.settings.validate()
        if not valid:
            return False, f"Settings: {error}"

        device_ids = set()
        for device in self.devices:
            if device.id in device_ids:
                return False, f"Duplicate device id: {device.id}"
            device_ids.add(device.id)
            valid, error = device.validate()
            if not valid:
                return False, error

        zone_ids = set()
        for zone in self.zones:
            if zone.id in zone_ids:
                return False, f"Duplicate zone id: {zone.id}"
            zone_ids.add(zone.id)
            if zone.device_id not in device_ids:
                return False, f"Zone {zone.id} refers to unknown device {zone.device_id}"
            valid, error = zone.validate()
            if not valid:
                return False, error

        return True, None


class ConfigManager:
    """Loads configuration and serves it through get/set accessors.

    Changes made through the setters live in memory only.
    """

    def __init__(self, config_path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None):
        """
        Initialize config manager.

        Args:
            config_path: Path to config file (default: $MUTELIGHT_CONFIG or
                         mutelight.yaml in the current directory)
            environ: Environment mapping for overrides (default: os.environ)
        """
        self._environ = os.environ if environ is None else environ
        if config_path is None:
            config_path = Path(self._environ.get(CONFIG_ENV, "mutelight.yaml"))
        self.config_path = Path(config_path)
        self._config: Optional[AppConfig] = None

    def load(self, force_reload: bool = False) -> AppConfig:
        """Load configuration from file or return defaults."""
        if self._config is not None and not force_reload:
            return self._config

        if self.config_path.exists():
            try:
                with open(self.config_path, "r") as f:
                    if self.config_path.suffix in (".yaml", ".yml"):
                        data = yaml.safe_load(f)
                    else:
                        data = json.load(f)

                config = AppConfig.from_dict(data)
                valid, error = config.validate()
                if not valid:
                    logger.warning("Invalid config %s, using defaults: %s", self.config_path, error)
                    config = AppConfig()
            except (OSError, ValueError, yaml.YAMLError, ConfigurationError, TypeError) as e:
                logger.warning("Error loading config %s, using defaults: %s", self.config_path, e)
                config = AppConfig()
        else:
            logger.info("No config file at %s, using defaults", self.config_path)
            config = AppConfig()

        config.discord.apply_env(self._environ)
        self._config = config
        return self._config

    @property
    def config(self) -> AppConfig:
        return self.load()

    # Accessors

    def get_settings(self) -> Settings:
        return self.config.settings

    def get_discord(self) -> DiscordSettings:
        return self.config.discord

    def get_devices(self) -> List[Device]:
        return list(self.config.devices)

    def get_device(self, device_id: str) -> Optional[Device]:
        for device in self.config.devices:
            if device.id == device_id:
                return device
        return None

    def get_zones(self, device_id: Optional[str] = None) -> List[Zone]:
        if device_id is None:
            return list(self.config.zones)
        return [z for z in self.config.zones if z.device_id == device_id]

    def set_devices(self, devices: List[Device]) -> Outcome:
        candidate = AppConfig(
            settings=self.config.settings,
            discord=self.config.discord,
            devices=list(devices),
            zones=[z for z in self.config.zones if any(d.id == z.device_id for d in devices)],
        )
        return self._replace(candidate)

    def set_zones(self, zones: List[Zone]) -> Outcome:
        candidate = AppConfig(
            settings=self.config.settings,
            discord=self.config.discord,
            devices=self.config.devices,
            zones=list(zones),
        )
        return self._replace(candidate)

    def update_settings(self, **changes: Any) -> Outcome:
        """Apply setting changes after validating the result."""
        unknown = set(changes) - set(Settings.__dataclass_fields__)
        if unknown:
            return Outcome.failure(f"Unknown settings: {', '.join(sorted(unknown))}", ErrorType.CONFIG)
        merged = {**self.config.settings.to_dict(), **changes}
        try:
            settings = Settings.from_dict(merged)
        except ConfigurationError as e:
            return Outcome.failure(str(e), ErrorType.CONFIG)
        valid, error = settings.validate()
        if not valid:
            return Outcome.failure(error, ErrorType.CONFIG)
        self.config.settings = settings
        return Outcome.success(settings.to_dict())

    def _replace(self, candidate: AppConfig) -> Outcome:
        valid, error = candidate.validate()
        if not valid:
            return Outcome.failure(error, ErrorType.CONFIG)
        self._config = candidate
        return Outcome.success()
