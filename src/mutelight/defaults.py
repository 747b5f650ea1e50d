"""
Built-in light configs and the precedence rules for picking one.

Precedence for a target in a given state:
    zone override -> device config -> legacy muted/unmuted color -> built-in
"""

from typing import Dict, Optional

from .config import Device, EffectConfig, StateLightConfig, Zone
from .voice_state import EffectiveState

DEFAULT_BRIGHTNESS = 255
DEFAULT_TRANSITION_TIME_MS = 0
DEFAULT_EFFECT = EffectConfig(effect_id=0, speed=128, intensity=128)

DEFAULT_STATE_COLORS: Dict[EffectiveState, StateLightConfig] = {
    EffectiveState.IDLE: StateLightConfig(color=(0x33, 0x33, 0x33), brightness=50, enabled=False),
    EffectiveState.CONNECTED: StateLightConfig(color=(0x22, 0xc5, 0x5e), brightness=200),
    EffectiveState.SPEAKING: StateLightConfig(color=(0x06, 0xb6, 0xd4), brightness=255),
    EffectiveState.MUTED: StateLightConfig(color=(0xef, 0x44, 0x44), brightness=200),
    EffectiveState.DEAFENED: StateLightConfig(color=(0xf9, 0x73, 0x16), brightness=200),
    EffectiveState.STREAMING: StateLightConfig(color=(0xa8, 0x55, 0xf7), brightness=255),
}

_LEGACY_MUTED_STATES = (EffectiveState.MUTED, EffectiveState.DEAFENED)
_LEGACY_UNMUTED_STATES = (EffectiveState.CONNECTED, EffectiveState.SPEAKING)


def _fallback_brightness(device: Device, zone: Optional[Zone], builtin: int) -> int:
    if zone is not None and zone.brightness is not None:
        return zone.brightness
    if device.default_brightness is not None:
        return device.default_brightness
    return builtin


def resolve_light_config(
    state: EffectiveState,
    device: Device,
    zone: Optional[Zone] = None,
) -> StateLightConfig:
    """Pick the light config a target shows for ``state``."""
    if zone is not None and state in zone.state_colors:
        return zone.state_colors[state]
    if state in device.state_colors:
        return device.state_colors[state]

    builtin = DEFAULT_STATE_COLORS[state]
    brightness = _fallback_brightness(device, zone, builtin.brightness)

    legacy = None
    if state in _LEGACY_MUTED_STATES:
        legacy = device.muted_color
    elif state in _LEGACY_UNMUTED_STATES:
        legacy = device.unmuted_color
    if legacy is not None:
        return StateLightConfig(color=legacy, brightness=brightness, enabled=True)

    return StateLightConfig(
        color=builtin.color,
        brightness=brightness,
        enabled=builtin.enabled,
        effect=builtin.effect,
    )


def resolve_transition_ms(device: Device, zone: Optional[Zone] = None) -> int:
    if zone is not None and zone.transition_time_ms is not None:
        return zone.transition_time_ms
    if device.transition_time_ms is not None:
        return device.transition_time_ms
    return DEFAULT_TRANSITION_TIME_MS
