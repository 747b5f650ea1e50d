"""Tests for capture/restore of a device's own state."""

import pytest
import pytest_asyncio

from mutelight.capture import StateCaptureStore
from mutelight.errors import ErrorType, RetryConfig
from mutelight.lighting import LightingController


@pytest_asyncio.fixture
async def store(sleep_recorder):
    lighting = LightingController(timeout=2.0, retry=RetryConfig(max_attempts=3, initial_delay=1.0, linear=True),
                                  sleep=sleep_recorder)
    yield StateCaptureStore(lighting)
    await lighting.close()


class TestCaptureRestore:

    @pytest.mark.asyncio
    async def test_restore_writes_back_exact_bytes(self, store, wled):
        outcome = await store.capture("desk", wled.address)
        assert outcome.ok

        # Device changes in between
        wled.state_body = '{"on":false}'
        assert (await store.restore("desk")).ok

        assert wled.posts[-1] == outcome.data.raw_state
        assert wled.posts[-1].decode("utf-8") == (
            '{"on":true, "bri":128, "transition":7, "ps":-1,\n'
            ' "seg":[{"id":0,"start":0,"stop":30,"col":[[255,160,0],[0,0,0],[0,0,0]],"fx":9,"sx":120}]}'
        )

    @pytest.mark.asyncio
    async def test_restore_keeps_bytes_that_are_not_utf8(self, store, wled):
        body = b'{"on":true,"name":"Caf\xe9 lamp"}'
        wled.state_body = body
        assert (await store.capture("desk", wled.address)).ok

        wled.state_body = '{"on":false}'
        assert (await store.restore("desk")).ok
        assert wled.posts[-1] == body

    @pytest.mark.asyncio
    async def test_restore_without_capture_fails_without_side_effects(self, store, wled):
        outcome = await store.restore("desk")
        assert not outcome.ok
        assert outcome.error_type == ErrorType.CONFIG
        assert wled.attempts == 0

    @pytest.mark.asyncio
    async def test_new_capture_overwrites_old(self, store, wled):
        await store.capture("desk", wled.address)
        wled.state_body = '{"on":true,"bri":3}'
        await store.capture("desk", wled.address)
        assert store.get("desk").raw_state == b'{"on":true,"bri":3}'
        assert store.captured_device_ids() == ["desk"]

    @pytest.mark.asyncio
    async def test_failed_capture_keeps_nothing(self, store, wled):
        wled.always_fail = True
        outcome = await store.capture("desk", wled.address)
        assert not outcome.ok
        assert store.get("desk") is None

    @pytest.mark.asyncio
    async def test_parsed_view(self, store, wled):
        captured = (await store.capture("desk", wled.address)).data
        assert captured.state["bri"] == 128
        assert captured.to_dict()["device_id"] == "desk"

    @pytest.mark.asyncio
    async def test_restore_retries_like_other_writes(self, store, wled, sleep_recorder):
        await store.capture("desk", wled.address)
        wled.fail_posts = 1
        assert (await store.restore("desk")).ok
        assert wled.attempts == 2
        assert sleep_recorder.delays == [1.0]

    @pytest.mark.asyncio
    async def test_restore_all_and_discard(self, store, wled_factory):
        a, b = await wled_factory(), await wled_factory(state_body='{"on":false}')
        await store.capture_all([("a", a.address), ("b", b.address)])
        assert store.discard("a") is True
        assert store.discard("a") is False

        results = await store.restore_all()
        assert list(results) == ["b"]
        assert b.posts == [b'{"on":false}']
        assert a.posts == []
