"""
MuteLight - voice chat state on your lights

Reads Discord voice state (idle, connected, speaking, muted, deafened,
streaming) over the local RPC and mirrors it onto WLED devices.
"""

__version__ = "0.1.0"

from .app import MuteLightApp
from .capture import CapturedDeviceState, StateCaptureStore
from .config import (
    AppConfig,
    ConfigManager,
    Device,
    EffectConfig,
    Settings,
    StateLightConfig,
    Zone,
)
from .errors import ErrorType, Outcome
from .events import EventChannel
from .lighting import FanoutReport, LightingController, LightTarget, targets_for
from .orchestrator import Orchestrator
from .supervisor import ConnectionSupervisor
from .voice_source import VoiceStateSource
from .voice_state import EffectiveState, StateResolver, VoiceAttributes, resolve

__all__ = [
    "MuteLightApp",
    "CapturedDeviceState",
    "StateCaptureStore",
    "AppConfig",
    "ConfigManager",
    "Device",
    "EffectConfig",
    "Settings",
    "StateLightConfig",
    "Zone",
    "ErrorType",
    "Outcome",
    "EventChannel",
    "FanoutReport",
    "LightingController",
    "LightTarget",
    "targets_for",
    "Orchestrator",
    "ConnectionSupervisor",
    "VoiceStateSource",
    "EffectiveState",
    "StateResolver",
    "VoiceAttributes",
    "resolve",
]
