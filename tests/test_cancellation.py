"""Tests for cooperative cancellation and its propagation into upstream calls."""

import asyncio

import pytest

from mentor.core.cancel import CancelToken
from mentor.core.errors import Cancelled
from tests.fakes import FakeStream


class TestCancelToken:
    def test_cancel_is_idempotent(self):
        token = CancelToken()
        assert token.cancel("first") is True
        assert token.cancel("second") is False
        assert token.cancelled
        assert token.reason == "first"

    @pytest.mark.asyncio
    async def test_run_returns_result(self):
        async def work():
            return 42

        assert await CancelToken().run(work()) == 42

    @pytest.mark.asyncio
    async def test_run_cancels_inner_task(self):
        token = CancelToken()
        started = asyncio.Event()
        torn_down = asyncio.Event()

        async def slow_request():
            started.set()
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                torn_down.set()
                raise

        runner = asyncio.create_task(token.run(slow_request()))
        await started.wait()
        token.cancel("client disconnected")

        with pytest.raises(Cancelled):
            await runner
        assert torn_down.is_set()

    @pytest.mark.asyncio
    async def test_sleep_interrupted(self):
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel, "stop")
        with pytest.raises(Cancelled):
            await token.sleep(30)

    @pytest.mark.asyncio
    async def test_stream_closes_source(self):
        token = CancelToken()
        source = FakeStream(["a", "b"], hang=True)
        seen = []

        with pytest.raises(Cancelled):
            async for item in token.stream(source):
                seen.append(item.choices[0].delta.content)
                if len(seen) == 2:
                    token.cancel("stop")

        assert seen == ["a", "b"]
        assert source.closed


class TestUpstreamCancellation:
    @pytest.mark.asyncio
    async def test_stream_chat_cancel_closes_http_stream(self, upstream, fake_openai):
        fake_openai.chat.completions.stream_script.append(FakeStream(["partial"], hang=True))
        token = CancelToken()
        received = []

        with pytest.raises(Cancelled):
            async for delta in upstream.stream_chat(model="gpt-4o", messages=[], cancel=token):
                received.append(delta)
                token.cancel("client disconnected")

        assert received == ["partial"]
        assert fake_openai.chat.completions.streams[0].closed

    @pytest.mark.asyncio
    async def test_stream_chat_consumer_stops_early(self, upstream, fake_openai):
        fake_openai.chat.completions.stream_script.append(FakeStream(["a", "b", "c"]))
        agen = upstream.stream_chat(model="gpt-4o", messages=[])

        assert await agen.__anext__() == "a"
        await agen.aclose()

        assert fake_openai.chat.completions.streams[0].closed
