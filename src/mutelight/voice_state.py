"""
Voice attributes and effective-state resolution.

The resolver is a pure priority function plus edge detection: only a change
of the resolved state is published, never a repeat.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .events import EventChannel, StateChanged

logger = logging.getLogger(__name__)


class EffectiveState(Enum):
    IDLE = "idle"
    CONNECTED = "connected"
    SPEAKING = "speaking"
    MUTED = "muted"
    DEAFENED = "deafened"
    STREAMING = "streaming"

    @classmethod
    def parse(cls, value: Any) -> "EffectiveState":
        if isinstance(value, cls):
            return value
        return cls(str(value).lower())


@dataclass(frozen=True)
class VoiceAttributes:
    """Raw voice status as last observed from the voice client."""
    in_voice_channel: bool = False
    self_mute: bool = False
    self_deaf: bool = False
    server_mute: bool = False
    server_deaf: bool = False
    speaking: bool = False
    streaming: bool = False
    observed_at: datetime = field(default_factory=datetime.now, compare=False)

    @classmethod
    def idle(cls) -> "VoiceAttributes":
        """The reset snapshot: not in a channel, everything false."""
        return cls()

    def evolve(self, **changes: Any) -> "VoiceAttributes":
        """Copy with changes applied and a fresh timestamp."""
        changes.setdefault("observed_at", datetime.now())
        return replace(self, **changes)

    @property
    def muted(self) -> bool:
        return self.self_mute or self.server_mute

    @property
    def deafened(self) -> bool:
        return self.self_deaf or self.server_deaf

    def to_dict(self) -> Dict[str, Any]:
        return {
            "in_voice_channel": self.in_voice_channel,
            "self_mute": self.self_mute,
            "self_deaf": self.self_deaf,
            "server_mute": self.server_mute,
            "server_deaf": self.server_deaf,
            "speaking": self.speaking,
            "streaming": self.streaming,
            "observed_at": self.observed_at.isoformat(),
        }


def resolve(attrs: VoiceAttributes) -> EffectiveState:
    """Map attributes to the single effective state. First match wins."""
    if not attrs.in_voice_channel:
        return EffectiveState.IDLE
    if attrs.streaming:
        return EffectiveState.STREAMING
    if attrs.deafened:
        return EffectiveState.DEAFENED
    if attrs.muted:
        return EffectiveState.MUTED
    if attrs.speaking:
        return EffectiveState.SPEAKING
    return EffectiveState.CONNECTED


class StateResolver:
    """Edge-triggered resolver. Publishes StateChanged only on a change."""

    def __init__(self, events: Optional[EventChannel] = None):
        self._events = events
        self._current = EffectiveState.IDLE
        self._attributes = VoiceAttributes.idle()

    @property
    def current(self) -> EffectiveState:
        return self._current

    @property
    def attributes(self) -> VoiceAttributes:
        return self._attributes

    def observe(self, attrs: VoiceAttributes) -> Optional[StateChanged]:
        """Record a snapshot. Returns the emitted event, or None if unchanged."""
        self._attributes = attrs
        state = resolve(attrs)
        if state == self._current:
            return None

        previous = self._current
        self._current = state
        logger.info("Voice state: %s -> %s", previous.value, state.value)
        event = StateChanged(state=state, attributes=attrs, previous=previous)
        if self._events is not None:
            self._events.publish(event)
        return event
