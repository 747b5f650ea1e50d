"""
Voice state acquisition from the voice client RPC.

Polling is the source of truth: it runs for as long as the source is
started. Event subscriptions are best effort and only shorten the time to
notice a change; a failed subscription is logged and otherwise ignored.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from .events import AttributesObserved, EventChannel
from .rpc.base import RpcClient, is_expected_absence
from .voice_state import StateResolver, VoiceAttributes

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.5  # seconds

SETTINGS_EVENTS = ("VOICE_SETTINGS_UPDATE", "VOICE_CHANNEL_SELECT")
SPEAKING_EVENTS = ("SPEAKING_START", "SPEAKING_STOP")


class VoiceStateSource:
    """Reads voice attributes by polling plus RPC events and feeds the resolver."""

    def __init__(
        self,
        client: RpcClient,
        resolver: StateResolver,
        events: Optional[EventChannel] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self._client = client
        self._resolver = resolver
        self._events = events
        self._poll_interval = poll_interval

        self._attributes = VoiceAttributes.idle()
        self._channel_id: Optional[str] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._last_error: Optional[str] = None

    @property
    def attributes(self) -> VoiceAttributes:
        return self._attributes

    @property
    def channel_id(self) -> Optional[str]:
        return self._channel_id

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    @property
    def running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start polling and subscribe to push events."""
        if self.running:
            return
        self._channel_id = None
        self._last_error = None
        self._client.set_event_handler(self._on_event)
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info("Polling voice state every %d ms", int(self._poll_interval * 1000))
        self._spawn(self._subscribe_settings_events())

    async def stop(self) -> None:
        """Stop polling and drop event handling. Attributes are left as they are."""
        self._client.set_event_handler(None)
        tasks = list(self._background)
        if self._poll_task is not None:
            tasks.append(self._poll_task)
        self._poll_task = None
        self._background.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._channel_id = None

    def set_poll_interval(self, seconds: float) -> None:
        """Change the poll interval; a running poll loop restarts with it."""
        self._poll_interval = seconds
        if self.running:
            self._poll_task.cancel()
            self._poll_task = asyncio.create_task(self._poll_loop())
            logger.info("Poll interval changed to %d ms", int(seconds * 1000))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def _observe(self, attrs: VoiceAttributes) -> None:
        """Apply a complete snapshot. Synchronous so writers never interleave."""
        self._attributes = attrs
        if self._events is not None:
            self._events.publish(AttributesObserved(attributes=attrs))
        self._resolver.observe(attrs)

    def _reset(self) -> None:
        self._observe(VoiceAttributes.idle())

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self._poll_interval)

    async def poll_once(self) -> None:
        """One poll tick. Never raises."""
        try:
            channel = await self._client.get_selected_voice_channel()
            if not channel or not channel.get("id"):
                self._leave_channel()
                self._clear_error()
                return

            self._track_channel(str(channel["id"]))
            voice_state = self._own_voice_state(channel)
            settings = await self._client.get_voice_settings()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._handle_poll_error(e)
            return

        self._clear_error()
        self._observe(self._attributes.evolve(
            in_voice_channel=True,
            self_mute=bool(settings.get("mute")),
            self_deaf=bool(settings.get("deaf")),
            server_mute=bool(voice_state.get("mute")),
            server_deaf=bool(voice_state.get("deaf")),
            streaming=bool(voice_state.get("self_stream")),
        ))

    def _own_voice_state(self, channel: Dict[str, Any]) -> Dict[str, Any]:
        user_id = self._client.user_id
        for entry in channel.get("voice_states") or []:
            if (entry.get("user") or {}).get("id") == user_id:
                return entry.get("voice_state") or {}
        return {}

    def _handle_poll_error(self, error: Exception) -> None:
        if is_expected_absence(error):
            logger.debug("Voice state unavailable: %s", error)
            self._leave_channel()
            return

        message = f"{type(error).__name__}: {error}"
        if message != self._last_error:
            logger.warning("Error polling voice state: %s", message)
            self._last_error = message
        self._leave_channel()

    def _clear_error(self) -> None:
        if self._last_error is not None:
            logger.info("Voice state polling recovered")
            self._last_error = None

    # ------------------------------------------------------------------
    # Channel tracking and events
    # ------------------------------------------------------------------

    def _leave_channel(self) -> None:
        self._track_channel(None)
        self._reset()

    def _track_channel(self, channel_id: Optional[str]) -> None:
        """Move speaking subscriptions to a new channel (None = no channel)."""
        if channel_id == self._channel_id:
            return
        old = self._channel_id
        self._channel_id = channel_id
        logger.info("Voice channel: %s", channel_id or "none")
        self._spawn(self._resubscribe_speaking(old, channel_id))

    async def _subscribe_settings_events(self) -> None:
        for evt in SETTINGS_EVENTS:
            try:
                await self._client.subscribe(evt)
                logger.info("Subscribed to %s events", evt)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("%s subscription failed: %s", evt, e)

    async def _resubscribe_speaking(self, old: Optional[str], new: Optional[str]) -> None:
        if old is not None:
            for evt in SPEAKING_EVENTS:
                try:
                    await self._client.unsubscribe(evt, {"channel_id": old})
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.debug("%s unsubscribe failed for channel %s: %s", evt, old, e)
        if new is not None:
            for evt in SPEAKING_EVENTS:
                try:
                    await self._client.subscribe(evt, {"channel_id": new})
                    logger.info("Subscribed to %s for channel %s", evt, new)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning("%s subscription failed: %s", evt, e)

    def _on_event(self, evt: str, data: Dict[str, Any]) -> None:
        if evt == "VOICE_SETTINGS_UPDATE":
            if not self._attributes.in_voice_channel:
                return
            self._observe(self._attributes.evolve(
                self_mute=bool(data.get("mute")),
                self_deaf=bool(data.get("deaf")),
            ))
        elif evt == "VOICE_CHANNEL_SELECT":
            channel_id = data.get("channel_id")
            if channel_id:
                self._track_channel(str(channel_id))
                if not self._attributes.in_voice_channel:
                    self._observe(self._attributes.evolve(in_voice_channel=True))
            else:
                self._leave_channel()
        elif evt in SPEAKING_EVENTS:
            if data.get("user_id") != self._client.user_id:
                return
            speaking = evt == "SPEAKING_START"
            if self._attributes.in_voice_channel and self._attributes.speaking != speaking:
                self._observe(self._attributes.evolve(speaking=speaking))
        else:
            logger.debug("Ignoring RPC event %s", evt)
