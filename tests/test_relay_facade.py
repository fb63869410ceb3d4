"""
TTSRelay facade: provider registry, middleware chain, option handling.

A recording provider stands in for the vendors so the facade is tested
on its own.
"""
from __future__ import annotations

import asyncio
import logging

import pytest

from ttsrelay.errors import ParameterError, ProviderNotFoundError, VendorApplicationError
from ttsrelay.ids import IdGenerator
from ttsrelay.middleware import LoggingMiddleware
from ttsrelay.relay import TTSRelay
from ttsrelay.tts.base import AudioChunk, AudioResult, SynthesisOptions, SynthesisParams, TTSProvider


class RecordingProvider(TTSProvider):
    """Returns canned audio and records what it was called with."""

    def __init__(self, name: str = "fake", fail: Exception | None = None) -> None:
        self._name = name
        self._fail = fail
        self.calls: list[tuple] = []
        self.closed = False

    @property
    def name(self) -> str:
        return self._name

    def transform_params(self, params):
        return {"text": params.text}

    async def synthesize(self, params, options):
        self.calls.append(("synthesize", params, options))
        if self._fail:
            raise self._fail
        return AudioResult(id="r1", data="QUJD")

    async def synthesize_stream(self, params, options):
        self.calls.append(("synthesize_stream", params, options))
        for i in range(3):
            yield AudioChunk(id=f"s{i}", data="QQ==", final=i == 2)

    async def synthesize_incremental(self, text_stream, params, options):
        self.calls.append(("synthesize_incremental", params, options))
        async for fragment in text_stream:
            yield AudioChunk(id="i", data=fragment)
        if self._fail:
            raise self._fail
        yield AudioChunk(id="i", data="", final=True)

    async def close(self) -> None:
        self.closed = True


class OrderMiddleware:
    def __init__(self, tag: str, log: list[str]) -> None:
        self.tag = tag
        self.log = log

    async def process(self, context, call_next):
        self.log.append(f"{self.tag}-in")
        result = await call_next()
        self.log.append(f"{self.tag}-out")
        return result


class TwiceMiddleware:
    async def process(self, context, call_next):
        await call_next()
        return await call_next()


async def _words(*words):
    for w in words:
        await asyncio.sleep(0)
        yield w


def _relay(*providers) -> TTSRelay:
    relay = TTSRelay(ids=IdGenerator.counter("req-"))
    for p in providers or (RecordingProvider(),):
        relay.register_provider(p)
    return relay


class TestRegistry:

    def test_list_providers_in_registration_order(self) -> None:
        relay = _relay(RecordingProvider("minimax"), RecordingProvider("tencent"))
        relay.register_provider(RecordingProvider("other"), name="alias")
        assert relay.list_providers() == ["minimax", "tencent", "alias"]

    def test_unknown_provider(self) -> None:
        relay = _relay()
        with pytest.raises(ProviderNotFoundError, match="Provider 'nope' not found"):
            asyncio.run(relay.synthesize("nope", {"text": "hi"}))

    def test_close_closes_every_provider(self) -> None:
        a, b = RecordingProvider("a"), RecordingProvider("b")

        async def run() -> None:
            async with _relay(a, b):
                pass

        asyncio.run(run())
        assert a.closed and b.closed


class TestOperations:

    def test_synthesize_coerces_params(self) -> None:
        provider = RecordingProvider()
        result = asyncio.run(_relay(provider).synthesize("fake", {"text": "hi", "voice": 7}))
        assert result.data == "QUJD"
        assert result.final
        _, params, options = provider.calls[0]
        assert params.voice == "7"
        assert isinstance(options, SynthesisOptions)

    def test_empty_params_rejected(self) -> None:
        with pytest.raises(ParameterError):
            asyncio.run(_relay().synthesize("fake", {}))

    def test_unknown_option_rejected(self) -> None:
        with pytest.raises(ParameterError, match="retry"):
            asyncio.run(_relay().synthesize("fake", {"text": "x"}, {"retry": 3}))

    def test_options_mapping(self) -> None:
        provider = RecordingProvider()
        cancel = asyncio.Event()
        asyncio.run(_relay(provider).synthesize(
            "fake", {"text": "x"}, {"timeout": 2.5, "headers": {"X-A": "1"}, "cancel": cancel},
        ))
        options = provider.calls[0][2]
        assert options.timeout == 2.5
        assert options.headers == {"X-A": "1"}
        assert options.cancel is cancel

    def test_stream(self) -> None:
        async def run() -> list[AudioChunk]:
            return [c async for c in _relay().synthesize_stream("fake", {"text": "hi"})]

        chunks = asyncio.run(run())
        assert [c.id for c in chunks] == ["s0", "s1", "s2"]
        assert chunks[-1].final

    def test_incremental(self) -> None:
        async def run() -> list[AudioChunk]:
            relay = _relay()
            return [c async for c in relay.synthesize_incremental("fake", _words("a", "b"), {"voice": "v"})]

        chunks = asyncio.run(run())
        assert [c.data for c in chunks] == ["a", "b", ""]

    def test_incremental_rejects_text_param(self) -> None:
        async def run() -> None:
            async for _ in _relay().synthesize_incremental("fake", _words("a"), {"text": "nope"}):
                pass

        with pytest.raises(ParameterError, match="text"):
            asyncio.run(run())

    def test_incremental_rejects_text_on_params_instance(self) -> None:
        provider = RecordingProvider()

        async def run() -> None:
            relay = _relay(provider)
            async for _ in relay.synthesize_incremental("fake", _words("a"), SynthesisParams(text="nope")):
                pass

        with pytest.raises(ParameterError, match="must not include text"):
            asyncio.run(run())
        assert provider.calls == []

    def test_incremental_requires_text_stream(self) -> None:
        async def run() -> None:
            async for _ in _relay().synthesize_incremental("fake", None):
                pass

        with pytest.raises(ParameterError, match="text_stream"):
            asyncio.run(run())


class TestMiddleware:

    def test_onion_order(self) -> None:
        log: list[str] = []
        relay = _relay().use(OrderMiddleware("a", log)).use(OrderMiddleware("b", log))
        asyncio.run(relay.synthesize("fake", {"text": "x"}))
        assert log == ["a-in", "b-in", "b-out", "a-out"]

    def test_call_next_twice(self) -> None:
        relay = _relay().use(TwiceMiddleware())
        with pytest.raises(RuntimeError, match="multiple times"):
            asyncio.run(relay.synthesize("fake", {"text": "x"}))

    def test_request_ids_from_facade_generator(self) -> None:
        seen: list[str] = []

        class Capture:
            async def process(self, context, call_next):
                seen.append(context.request_id)
                return await call_next()

        relay = _relay().use(Capture())

        async def run() -> None:
            await relay.synthesize("fake", {"text": "x"})
            await relay.synthesize("fake", {"text": "y"})

        asyncio.run(run())
        assert seen == ["req-1", "req-2"]

    def test_logging_middleware_one_shot(self, caplog) -> None:
        relay = _relay().use(LoggingMiddleware())
        with caplog.at_level(logging.INFO, logger="ttsrelay.middleware"):
            asyncio.run(relay.synthesize("fake", {"text": "hello there", "voice": "v"}))
        messages = [r.getMessage() for r in caplog.records]
        assert any("TTS request started" in m and "text='hello there'" in m for m in messages)
        assert any("TTS request completed" in m and "response=AudioResult" in m for m in messages)

    def test_logging_middleware_stream(self, caplog) -> None:
        relay = _relay().use(LoggingMiddleware())

        async def run() -> None:
            async for _ in relay.synthesize_stream("fake", {"text": "x"}):
                pass

        with caplog.at_level(logging.INFO, logger="ttsrelay.middleware"):
            asyncio.run(run())
        assert any("AsyncIterator[3 chunks]" in r.getMessage() for r in caplog.records)

    def test_logging_middleware_failure(self, caplog) -> None:
        provider = RecordingProvider(fail=VendorApplicationError("fake", "bad voice", 400))
        relay = _relay(provider).use(LoggingMiddleware())
        with caplog.at_level(logging.INFO, logger="ttsrelay.middleware"):
            with pytest.raises(VendorApplicationError):
                asyncio.run(relay.synthesize("fake", {"text": "x"}))
        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert errors and "bad voice" in errors[0].getMessage()

    def test_logging_middleware_stream_failure(self, caplog) -> None:
        provider = RecordingProvider(fail=VendorApplicationError("fake", "mid-stream", 500))
        relay = _relay(provider).use(LoggingMiddleware())

        async def run() -> list:
            out = []
            async for c in relay.synthesize_incremental("fake", _words("a"), {"voice": "v"}):
                out.append(c)
            return out

        with caplog.at_level(logging.INFO, logger="ttsrelay.middleware"):
            with pytest.raises(VendorApplicationError):
                asyncio.run(run())
        errors = [r.getMessage() for r in caplog.records if r.levelno == logging.ERROR]
        assert errors and "chunks=1" in errors[0]


class TestIdGenerator:

    def test_counter(self) -> None:
        ids = IdGenerator.counter("req-", start=5)
        assert [ids.next_id() for _ in range(3)] == ["req-5", "req-6", "req-7"]

    def test_default_prefix_and_uniqueness(self) -> None:
        ids = IdGenerator()
        a, b = ids.next_id(), ids.next_id()
        assert a.startswith("id#") and len(a) == 3 + 32
        assert a != b

    def test_generators_are_independent(self) -> None:
        first, second = IdGenerator.counter(), IdGenerator.counter()
        first.next_id()
        assert second.next_id() == "1"
