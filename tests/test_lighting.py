"""
Tests for lighting module - payload encoding, retry, fan-out isolation, reads.

Device HTTP calls go to in-process fake WLED servers (see conftest.FakeWled).
"""

import pytest
import pytest_asyncio

from mutelight.config import EffectConfig, StateLightConfig
from mutelight.errors import ErrorType, RetryConfig
from mutelight.events import DeviceStatusChanged
from mutelight.lighting import (
    LightingController,
    LightTarget,
    build_device_payload,
    build_zone_payload,
    targets_for,
    transition_deciseconds,
)
from mutelight.status import DeviceStatusCache
from mutelight.voice_state import EffectiveState

from conftest import make_device, make_zone, solid


@pytest_asyncio.fixture
async def lighting(events, sleep_recorder):
    controller = LightingController(
        timeout=2.0,
        probe_timeout=1.0,
        retry=RetryConfig(max_attempts=3, initial_delay=1.0, linear=True),
        status=DeviceStatusCache(events),
        sleep=sleep_recorder,
    )
    yield controller
    await controller.close()


# ---------------------------------------------------------------------------
# Payload encoding
# ---------------------------------------------------------------------------

class TestPayloads:

    def test_device_payload_shape(self):
        payload = build_device_payload((1, 2, 3), 200)
        assert payload == {
            "on": True,
            "bri": 200,
            "seg": [{"col": [[1, 2, 3]], "fx": 0, "sx": 128, "ix": 128}],
        }

    def test_device_payload_with_effect_and_transition(self):
        payload = build_device_payload((1, 2, 3), 100, transition_ms=750,
                                       effect=EffectConfig(effect_id=9, speed=300, intensity=-4))
        assert payload["seg"][0]["fx"] == 9
        assert payload["seg"][0]["sx"] == 255
        assert payload["seg"][0]["ix"] == 0
        assert payload["transition"] == 8

    def test_zone_payload_shape(self):
        payload = build_zone_payload(10, 19, (9, 8, 7), 50, transition_ms=200)
        assert payload == {"on": True, "bri": 50, "seg": {"i": [10, [9, 8, 7], 19]}, "transition": 2}

    def test_zero_transition_omitted(self):
        assert "transition" not in build_zone_payload(0, 1, (0, 0, 0), 10, transition_ms=0)

    @pytest.mark.parametrize("ms, tenths", [(50, 1), (150, 2), (250, 3), (349, 3), (350, 4), (1000, 10)])
    def test_transition_rounds_half_up(self, ms, tenths):
        assert transition_deciseconds(ms) == tenths
        assert build_zone_payload(0, 1, (0, 0, 0), 10, transition_ms=ms)["transition"] == tenths

    @pytest.mark.parametrize("given, sent", [(300, 255), (-5, 0), (255, 255), (0, 0), (128, 128)])
    def test_brightness_clamped(self, given, sent):
        assert build_device_payload((0, 0, 0), given)["bri"] == sent
        assert build_zone_payload(0, 1, (0, 0, 0), given)["bri"] == sent

    def test_build_payload_is_deterministic(self):
        lighting = LightingController()
        device = make_device(transition_time_ms=300,
                             state_colors={EffectiveState.SPEAKING: solid((0, 200, 255), 240)})
        target = LightTarget(device)
        first = lighting.build_payload(target, EffectiveState.SPEAKING)
        second = lighting.build_payload(target, EffectiveState.SPEAKING)
        assert first == second
        assert first["bri"] == 240
        assert first["transition"] == 3

    def test_disabled_state_builds_nothing(self):
        lighting = LightingController()
        assert lighting.build_payload(LightTarget(make_device()), EffectiveState.IDLE) is None

    def test_zone_target_uses_segment_range(self):
        lighting = LightingController()
        target = LightTarget(make_device(), make_zone(start_led=5, end_led=14))
        payload = lighting.build_payload(target, EffectiveState.MUTED)
        assert payload["seg"] == {"i": [5, [0xef, 0x44, 0x44], 14]}


class TestTargets:

    def test_devices_without_zones_are_whole_targets(self):
        targets = targets_for([make_device("a"), make_device("b")], [])
        assert [t.key for t in targets] == ["a", "b"]

    def test_device_with_zones_expands_per_zone(self):
        zones = [make_zone("left", "a"), make_zone("right", "a", 10, 19)]
        targets = targets_for([make_device("a"), make_device("b")], zones)
        assert [t.key for t in targets] == ["a/left", "a/right", "b"]


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

class TestApply:

    @pytest.mark.asyncio
    async def test_apply_posts_payload(self, lighting, wled):
        target = LightTarget(make_device(address=wled.address))
        outcome = await lighting.apply(target, EffectiveState.MUTED)
        assert outcome.ok and not outcome.skipped
        assert wled.payloads == [lighting.build_payload(target, EffectiveState.MUTED)]

    @pytest.mark.asyncio
    async def test_same_state_twice_sends_identical_bytes(self, lighting, wled):
        target = LightTarget(make_device(address=wled.address))
        await lighting.apply(target, EffectiveState.CONNECTED)
        await lighting.apply(target, EffectiveState.CONNECTED)
        assert len(wled.posts) == 2
        assert wled.posts[0] == wled.posts[1]

    @pytest.mark.asyncio
    async def test_over_range_brightness_is_clamped_on_the_wire(self, lighting, wled):
        device = make_device(address=wled.address, state_colors={
            EffectiveState.MUTED: StateLightConfig(color=(255, 0, 0), brightness=300),
            EffectiveState.CONNECTED: StateLightConfig(color=(0, 255, 0), brightness=-5),
        })
        await lighting.apply(LightTarget(device), EffectiveState.MUTED)
        await lighting.apply(LightTarget(device), EffectiveState.CONNECTED)
        assert [p["bri"] for p in wled.payloads] == [255, 0]

    @pytest.mark.asyncio
    async def test_disabled_state_is_a_successful_no_op(self, lighting, wled):
        outcome = await lighting.apply(LightTarget(make_device(address=wled.address)), EffectiveState.IDLE)
        assert outcome.ok and outcome.skipped
        assert wled.attempts == 0

    @pytest.mark.asyncio
    async def test_fails_twice_then_succeeds(self, lighting, wled, sleep_recorder):
        wled.fail_posts = 2
        outcome = await lighting.apply(LightTarget(make_device(address=wled.address)), EffectiveState.MUTED)
        assert outcome.ok
        assert wled.attempts == 3
        assert sleep_recorder.delays == [1.0, 2.0]
        assert lighting.status.is_online(wled.address) is True

    @pytest.mark.asyncio
    async def test_exhausted_retries_mark_offline_then_success_marks_online(self, lighting, wled, events):
        sub = events.subscribe()
        wled.always_fail = True
        target = LightTarget(make_device(address=wled.address))

        outcome = await lighting.apply(target, EffectiveState.MUTED)
        assert not outcome.ok
        assert outcome.error_type == ErrorType.TRANSIENT
        assert wled.attempts == 3
        assert lighting.status.is_online(wled.address) is False

        wled.always_fail = False
        assert (await lighting.apply(target, EffectiveState.MUTED)).ok
        assert lighting.status.is_online(wled.address) is True

        flips = [e.status.online for e in sub.drain() if isinstance(e, DeviceStatusChanged)]
        assert flips == [False, True]

    @pytest.mark.asyncio
    async def test_malformed_address_fails_without_retry(self, lighting, sleep_recorder):
        outcome = await lighting.apply(LightTarget(make_device(address="bad address!")), EffectiveState.MUTED)
        assert not outcome.ok
        assert outcome.error_type == ErrorType.CONFIG
        assert sleep_recorder.delays == []

    @pytest.mark.asyncio
    async def test_unreachable_device_fails_after_retries(self, lighting, wled_factory, sleep_recorder):
        gone = await wled_factory()
        address = gone.address
        await gone.close()
        outcome = await lighting.apply(LightTarget(make_device(address=address)), EffectiveState.MUTED)
        assert not outcome.ok
        assert len(sleep_recorder.delays) == 2
        assert lighting.status.is_online(address) is False


class TestApplyAll:

    @pytest.mark.asyncio
    async def test_failing_device_does_not_block_siblings(self, lighting, wled_factory):
        a, b, c = await wled_factory(), await wled_factory(), await wled_factory()
        b.always_fail = True
        devices = [make_device("a", a.address), make_device("b", b.address), make_device("c", c.address)]

        report = await lighting.apply_all(devices, [], EffectiveState.SPEAKING)

        assert sorted(report.succeeded) == ["a", "c"]
        assert report.failed == ["b"]
        assert not report.ok
        assert len(a.posts) == 1 and len(c.posts) == 1
        assert b.attempts == 3

    @pytest.mark.asyncio
    async def test_zones_get_one_command_each(self, lighting, wled):
        device = make_device("a", wled.address)
        zones = [make_zone("left", "a", 0, 9), make_zone("right", "a", 10, 19)]
        report = await lighting.apply_all([device], zones, EffectiveState.MUTED)
        assert report.ok
        assert sorted(p["seg"]["i"][0] for p in wled.payloads) == [0, 10]

    @pytest.mark.asyncio
    async def test_disabled_targets_reported_as_skipped(self, lighting, wled):
        report = await lighting.apply_all([make_device("a", wled.address)], [], EffectiveState.IDLE)
        assert report.ok
        assert report.skipped == ["a"]
        assert report.to_dict()["skipped"] == ["a"]

    @pytest.mark.asyncio
    async def test_empty_target_set(self, lighting):
        report = await lighting.apply_all([], [], EffectiveState.MUTED)
        assert report.ok and report.results == {}


class TestPreview:

    @pytest.mark.asyncio
    async def test_set_device_color(self, lighting, wled):
        outcome = await lighting.set_device_color(wled.address, "#112233", 90,
                                                  effect=EffectConfig(effect_id=2))
        assert outcome.ok
        assert wled.payloads[0]["seg"][0]["col"] == [[0x11, 0x22, 0x33]]
        assert wled.payloads[0]["seg"][0]["fx"] == 2

    @pytest.mark.asyncio
    async def test_set_device_color_rejects_bad_color(self, lighting, wled):
        outcome = await lighting.set_device_color(wled.address, "teal")
        assert outcome.error_type == ErrorType.CONFIG
        assert wled.attempts == 0

    @pytest.mark.asyncio
    async def test_set_zone_color(self, lighting, wled):
        assert (await lighting.set_zone_color(wled.address, 3, 7, (1, 1, 1), 10)).ok
        assert wled.payloads[0]["seg"] == {"i": [3, [1, 1, 1], 7]}

    @pytest.mark.asyncio
    async def test_set_zone_color_rejects_bad_range(self, lighting, wled):
        outcome = await lighting.set_zone_color(wled.address, 7, 3, (1, 1, 1))
        assert outcome.error_type == ErrorType.CONFIG


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

class TestReads:

    @pytest.mark.asyncio
    async def test_is_online(self, lighting, wled):
        assert await lighting.is_online(wled.address) is True
        wled.always_fail = True
        assert await lighting.is_online(wled.address) is False
        assert lighting.status.is_online(wled.address) is False

    @pytest.mark.asyncio
    async def test_probe_does_not_retry(self, lighting, wled, sleep_recorder):
        wled.always_fail = True
        await lighting.is_online(wled.address)
        assert sleep_recorder.delays == []

    @pytest.mark.asyncio
    async def test_effects_skip_reserved_entries_and_keep_ids(self, lighting, wled):
        outcome = await lighting.get_effects(wled.address)
        assert outcome.ok
        assert outcome.data == [
            {"id": 0, "name": "Solid"},
            {"id": 1, "name": "Blink"},
            {"id": 3, "name": "Breathe"},
            {"id": 5, "name": "Wipe"},
        ]

    @pytest.mark.asyncio
    async def test_get_state(self, lighting, wled):
        outcome = await lighting.get_state(wled.address)
        assert outcome.ok
        assert outcome.data["bri"] == 128

    @pytest.mark.asyncio
    async def test_get_info(self, lighting, wled):
        outcome = await lighting.get_info(wled.address)
        assert outcome.data["name"] == "WLED"

    @pytest.mark.asyncio
    async def test_read_failure_is_an_outcome(self, lighting, wled):
        wled.always_fail = True
        outcome = await lighting.get_effects(wled.address)
        assert not outcome.ok
        assert "503" in outcome.message
