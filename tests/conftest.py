"""
Shared test fixtures for the mutelight test suite.

Provides a scriptable fake RPC client, a fake WLED device served by aiohttp's
TestServer, and small factories for attributes, devices and zones.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional, Union

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from mutelight.config import Device, StateLightConfig, Zone
from mutelight.events import EventChannel
from mutelight.rpc.base import RpcClient, RpcConnectionError
from mutelight.voice_state import VoiceAttributes


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def make_attrs(**kwargs) -> VoiceAttributes:
    """Attributes for a user in a voice channel unless overridden."""
    kwargs.setdefault("in_voice_channel", True)
    return VoiceAttributes(**kwargs)


def make_device(device_id="desk", address="127.0.0.1:1", **kwargs) -> Device:
    return Device(id=device_id, name=kwargs.pop("name", device_id.title()), address=address, **kwargs)


def make_zone(zone_id="left", device_id="desk", start_led=0, end_led=9, **kwargs) -> Zone:
    return Zone(id=zone_id, name=kwargs.pop("name", zone_id.title()), device_id=device_id,
                start_led=start_led, end_led=end_led, **kwargs)


def solid(color, brightness=200, enabled=True) -> StateLightConfig:
    return StateLightConfig(color=color, brightness=brightness, enabled=enabled)


class SleepRecorder:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def next_event(subscription, event_type, timeout=2.0):
    """Next event of a type from a subscription, skipping others."""
    async def _wait():
        while True:
            event = await subscription.get()
            if event is None:
                raise AssertionError(f"subscription closed before {event_type.__name__}")
            if isinstance(event, event_type):
                return event
    return await asyncio.wait_for(_wait(), timeout)


async def settle(rounds: int = 20) -> None:
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def events():
    return EventChannel("test")


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


# ---------------------------------------------------------------------------
# Fake RPC client
# ---------------------------------------------------------------------------

class FakeRpcClient(RpcClient):
    """Scriptable RpcClient.

    ``channel`` and ``settings`` are returned by the poll queries; set either
    to an exception instance to make that query raise it.
    """

    def __init__(self, user_id: str = "me"):
        super().__init__()
        self._user_id = user_id
        self._connected = False
        self.connect_errors: List[Exception] = []
        self.connect_calls = 0
        self.close_calls = 0
        self.channel: Any = None
        self.settings: Any = {"mute": False, "deaf": False}
        self.subscribe_errors: Dict[str, Exception] = {}
        self.subscriptions: List[tuple] = []
        self.unsubscriptions: List[tuple] = []
        self.requests: List[str] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        self._connected = True

    async def close(self) -> None:
        self.close_calls += 1
        self._connected = False

    async def request(self, cmd, args=None, evt=None):
        self.requests.append(cmd)
        if not self._connected:
            raise RpcConnectionError("not connected")
        if cmd == "GET_SELECTED_VOICE_CHANNEL":
            return self._answer(self.channel) or {}
        if cmd == "GET_VOICE_SETTINGS":
            return self._answer(self.settings)
        if cmd == "SUBSCRIBE":
            if evt in self.subscribe_errors:
                raise self.subscribe_errors[evt]
            self.subscriptions.append((evt, (args or {}).get("channel_id")))
            return {"evt": evt}
        if cmd == "UNSUBSCRIBE":
            self.unsubscriptions.append((evt, (args or {}).get("channel_id")))
            return {"evt": evt}
        raise AssertionError(f"unexpected command {cmd}")

    @staticmethod
    def _answer(value):
        if isinstance(value, Exception):
            raise value
        return value

    def emit(self, evt: str, data: Dict[str, Any]) -> None:
        self._dispatch_event(evt, data)

    def drop(self, reason: str = "socket closed") -> None:
        """Simulate the voice client going away."""
        self._connected = False
        self._notify_disconnect(reason)


def voice_channel(channel_id="chan-1", user_id="me", **voice_state) -> Dict[str, Any]:
    """GET_SELECTED_VOICE_CHANNEL reply with the given user's voice_state."""
    return {
        "id": channel_id,
        "name": "General",
        "voice_states": [
            {"user": {"id": "someone-else"}, "voice_state": {"self_stream": True, "mute": True}},
            {"user": {"id": user_id}, "voice_state": dict(voice_state)},
        ],
    }


@pytest.fixture
def fake_client():
    return FakeRpcClient()


# ---------------------------------------------------------------------------
# Fake WLED device
# ---------------------------------------------------------------------------

DEFAULT_WLED_STATE = (
    '{"on":true, "bri":128, "transition":7, "ps":-1,\n'
    ' "seg":[{"id":0,"start":0,"stop":30,"col":[[255,160,0],[0,0,0],[0,0,0]],"fx":9,"sx":120}]}'
)


class FakeWled:
    """In-process WLED JSON API. Counts POST attempts and keeps raw bodies."""

    def __init__(self, state_body: Union[str, bytes] = DEFAULT_WLED_STATE, effects: Optional[List[str]] = None):
        self.state_body = state_body
        self.effects = effects if effects is not None else ["Solid", "Blink", "RSVD", "Breathe", "-", "Wipe"]
        self.posts: List[bytes] = []
        self.attempts = 0
        self.fail_posts = 0
        self.always_fail = False
        self.server: Optional[TestServer] = None

        self.app = web.Application()
        self.app.router.add_get("/json/state", self._get_state)
        self.app.router.add_post("/json/state", self._post_state)
        self.app.router.add_get("/json/info", self._get_info)
        self.app.router.add_get("/json", self._get_all)

    @property
    def address(self) -> str:
        return f"127.0.0.1:{self.server.port}"

    @property
    def payloads(self) -> List[Dict[str, Any]]:
        return [json.loads(body) for body in self.posts]

    async def start(self) -> "FakeWled":
        self.server = TestServer(self.app, host="127.0.0.1")
        await self.server.start_server()
        return self

    async def close(self) -> None:
        if self.server is not None:
            await self.server.close()

    def _failing(self) -> bool:
        if self.always_fail:
            return True
        if self.fail_posts > 0:
            self.fail_posts -= 1
            return True
        return False

    async def _get_state(self, request):
        if self.always_fail:
            return web.Response(status=503)
        body = self.state_body if isinstance(self.state_body, bytes) else self.state_body.encode("utf-8")
        return web.Response(body=body, content_type="application/json")

    async def _post_state(self, request):
        self.attempts += 1
        body = await request.read()
        if self._failing():
            return web.Response(status=500, text="busy")
        self.posts.append(body)
        return web.json_response({"success": True})

    async def _get_info(self, request):
        if self.always_fail:
            return web.Response(status=503)
        return web.json_response({"ver": "0.14.0", "name": "WLED", "leds": {"count": 30}})

    async def _get_all(self, request):
        if self.always_fail:
            return web.Response(status=503)
        return web.json_response({"state": json.loads(self.state_body), "effects": self.effects})


@pytest_asyncio.fixture
async def wled_factory():
    """Start any number of fake WLED devices; all are closed at teardown."""
    started: List[FakeWled] = []

    async def _make(**kwargs) -> FakeWled:
        device = await FakeWled(**kwargs).start()
        started.append(device)
        return device

    yield _make
    for device in started:
        await device.close()


@pytest_asyncio.fixture
async def wled(wled_factory):
    return await wled_factory()

