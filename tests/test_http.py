"""
One-shot and HTTP-streaming vendor paths against a local aiohttp server.

§1  Minimax: JSON one-shot, base_resp errors, SSE streaming
§2  Tencent: signed batch request, JSON error replies, body probing
§3  ElevenLabs: raw and timestamped one-shot, chunked streaming
§4  HTTP errors and cancellation
"""
from __future__ import annotations

import asyncio
import base64
import json

import pytest
from aiohttp import test_utils, web

from ttsrelay.errors import CancellationError, VendorApplicationError
from ttsrelay.ids import IdGenerator
from ttsrelay.tts.base import SynthesisOptions, SynthesisParams
from ttsrelay.tts.elevenlabs import ElevenLabsProvider
from ttsrelay.tts.minimax import MinimaxProvider
from ttsrelay.tts.tencent import BATCH_PATH, TencentProvider, sign

_OPTS = SynthesisOptions(timeout=5.0)


async def _serve(routes: list[tuple[str, str, object]]) -> test_utils.TestServer:
    app = web.Application()
    for method, path, handler in routes:
        app.router.add_route(method, path, handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    return server


def _base(server: test_utils.TestServer) -> str:
    return str(server.make_url("")).rstrip("/")


async def _with_provider(make, routes, call):
    """Start a server, build the provider against it, run call(provider)."""
    server = await _serve(routes)
    provider = make(_base(server))
    try:
        return await call(provider)
    finally:
        await provider.close()
        await server.close()


def _minimax(base: str) -> MinimaxProvider:
    return MinimaxProvider(api_key="mm-key", group_id="g1", ids=IdGenerator.counter("c-"), api_base=base)


def _tencent(base: str) -> TencentProvider:
    return TencentProvider(app_id="1250000000", secret_id="AKID", secret_key="sk", api_base=base)


def _elevenlabs(base: str) -> ElevenLabsProvider:
    return ElevenLabsProvider(api_key="xi-key", ids=IdGenerator.counter("c-"), api_base=base)


async def _collect(stream) -> list:
    return [c async for c in stream]


# ──────────────────────────────────────────────
# §1 Minimax
# ──────────────────────────────────────────────

class TestMinimaxHttp:

    def test_one_shot(self) -> None:
        seen: dict = {}

        async def handler(request: web.Request) -> web.Response:
            seen["group"] = request.query.get("GroupId")
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = await request.json()
            return web.json_response({
                "trace_id": "t-1",
                "data": {"audio": "48656c6c6f", "status": 2},
                "extra_info": {"audio_length": 1200},
                "base_resp": {"status_code": 0, "status_msg": "success"},
            })

        result = asyncio.run(_with_provider(
            _minimax, [("POST", "/v1/t2a_v2", handler)],
            lambda p: p.synthesize(SynthesisParams(text="Hello", voice="v1"), _OPTS),
        ))
        assert result.id == "t-1"
        assert result.data == "48656c6c6f"
        assert result.final
        assert result.encoding == "hex"
        assert result.metadata["extra_info"] == {"audio_length": 1200}
        assert seen["group"] == "g1"
        assert seen["auth"] == "Bearer mm-key"
        assert seen["body"] == {"text": "Hello", "model": "speech-02-hd", "voice_setting": {"voice_id": "v1"}}

    def test_base_resp_error(self) -> None:
        async def handler(request: web.Request) -> web.Response:
            return web.json_response({"base_resp": {"status_code": 1004, "status_msg": "authentication failed"}})

        with pytest.raises(VendorApplicationError) as ei:
            asyncio.run(_with_provider(
                _minimax, [("POST", "/v1/t2a_v2", handler)],
                lambda p: p.synthesize(SynthesisParams(text="x"), _OPTS),
            ))
        assert ei.value.status_code == 1004
        assert ei.value.message == "authentication failed"

    def test_sse_stream(self) -> None:
        events = [
            {"trace_id": "t-2", "data": {"audio": "aa", "status": 1}, "base_resp": {"status_code": 0}},
            {"trace_id": "t-2", "data": {"audio": "bb", "status": 1}, "base_resp": {"status_code": 0}},
            {"trace_id": "t-2", "data": {"audio": "", "status": 2}, "base_resp": {"status_code": 0}},
        ]
        seen: dict = {}

        async def handler(request: web.Request) -> web.StreamResponse:
            seen["body"] = await request.json()
            resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
            await resp.prepare(request)
            for event in events:
                await resp.write(f"data: {json.dumps(event)}\n\n".encode())
            await resp.write_eof()
            return resp

        chunks = asyncio.run(_with_provider(
            _minimax, [("POST", "/v1/t2a_v2", handler)],
            lambda p: _collect(p.synthesize_stream(SynthesisParams(text="x"), _OPTS)),
        ))
        assert [c.data for c in chunks] == ["aa", "bb", ""]
        assert [c.final for c in chunks] == [False, False, True]
        assert {c.id for c in chunks} == {"t-2"}
        assert seen["body"]["stream"] is True
        assert seen["body"]["stream_options"] == {"exclude_aggregated_audio": True}

    def test_sse_error_event(self) -> None:
        async def handler(request: web.Request) -> web.StreamResponse:
            resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
            await resp.prepare(request)
            await resp.write(b'data: {"data": {"audio": "aa", "status": 1}, "base_resp": {"status_code": 0}}\n\n')
            await resp.write(b'data: {"base_resp": {"status_code": 1027, "status_msg": "content flagged"}}\n\n')
            await resp.write_eof()
            return resp

        async def call(provider):
            seen = []
            with pytest.raises(VendorApplicationError, match="content flagged"):
                async for chunk in provider.synthesize_stream(SynthesisParams(text="x"), _OPTS):
                    seen.append(chunk)
            return seen

        seen = asyncio.run(_with_provider(_minimax, [("POST", "/v1/t2a_v2", handler)], call))
        assert [c.data for c in seen] == ["aa"]

    def test_stream_answered_with_plain_json(self) -> None:
        async def handler(request: web.Request) -> web.Response:
            return web.json_response({"trace_id": "t-3", "data": {"audio": "cc", "status": 2}, "base_resp": {"status_code": 0}})

        chunks = asyncio.run(_with_provider(
            _minimax, [("POST", "/v1/t2a_v2", handler)],
            lambda p: _collect(p.synthesize_stream(SynthesisParams(text="x"), _OPTS)),
        ))
        assert len(chunks) == 1
        assert chunks[0].data == "cc"
        assert chunks[0].final


# ──────────────────────────────────────────────
# §2 Tencent
# ──────────────────────────────────────────────

class TestTencentHttp:

    def test_signed_audio_response(self) -> None:
        seen: dict = {}

        async def handler(request: web.Request) -> web.Response:
            body = await request.json()
            seen["body"] = body
            seen["valid"] = request.headers.get("Authorization") == sign("sk", "POST", BATCH_PATH, body)
            return web.Response(body=b"ID3\x00\x01", content_type="audio/mpeg")

        result = asyncio.run(_with_provider(
            _tencent, [("POST", BATCH_PATH, handler)],
            lambda p: p.synthesize(SynthesisParams(text="你好", voice="1050"), _OPTS),
        ))
        assert base64.b64decode(result.data) == b"ID3\x00\x01"
        assert result.final
        assert result.id == seen["body"]["SessionId"]
        assert seen["valid"]
        assert seen["body"]["Action"] == "TextToStreamAudio"
        assert seen["body"]["Text"] == "你好"
        assert seen["body"]["VoiceType"] == 1050
        assert seen["body"]["Codec"] == "mp3"

    def test_json_error_reply(self) -> None:
        async def handler(request: web.Request) -> web.Response:
            return web.json_response({"Response": {"Error": {"Code": "AuthFailure.SignatureFailure", "Message": "bad sig"}}})

        with pytest.raises(VendorApplicationError, match="AuthFailure.SignatureFailure - bad sig"):
            asyncio.run(_with_provider(
                _tencent, [("POST", BATCH_PATH, handler)],
                lambda p: p.synthesize(SynthesisParams(text="x"), _OPTS),
            ))

    def test_error_without_json_content_type_is_sniffed(self) -> None:
        async def handler(request: web.Request) -> web.Response:
            body = json.dumps({"Response": {"Error": {"Code": "InvalidParameter", "Message": "text empty"}}})
            return web.Response(body=body.encode(), content_type="text/plain")

        with pytest.raises(VendorApplicationError, match="InvalidParameter"):
            asyncio.run(_with_provider(
                _tencent, [("POST", BATCH_PATH, handler)],
                lambda p: p.synthesize(SynthesisParams(text="x"), _OPTS),
            ))

    def test_empty_audio(self) -> None:
        async def handler(request: web.Request) -> web.Response:
            return web.Response(body=b"", content_type="audio/mpeg")

        with pytest.raises(VendorApplicationError, match="no audio data"):
            asyncio.run(_with_provider(
                _tencent, [("POST", BATCH_PATH, handler)],
                lambda p: p.synthesize(SynthesisParams(text="x"), _OPTS),
            ))


# ──────────────────────────────────────────────
# §3 ElevenLabs
# ──────────────────────────────────────────────

class TestElevenLabsHttp:

    def test_one_shot_raw_audio(self) -> None:
        seen: dict = {}

        async def handler(request: web.Request) -> web.Response:
            seen["voice"] = request.match_info["voice"]
            seen["format"] = request.query.get("output_format")
            seen["key"] = request.headers.get("xi-api-key")
            seen["body"] = await request.json()
            return web.Response(body=b"\x01\x02\x03", content_type="audio/mpeg")

        result = asyncio.run(_with_provider(
            _elevenlabs, [("POST", "/v1/text-to-speech/{voice}", handler)],
            lambda p: p.synthesize(SynthesisParams(text="Hi", voice="rachel", format="mp3"), _OPTS),
        ))
        assert result.data == "AQID"
        assert result.id == "c-1"
        assert seen == {
            "voice": "rachel",
            "format": "mp3_44100_128",
            "key": "xi-key",
            "body": {"text": "Hi", "model_id": "eleven_turbo_v2_5"},
        }

    def test_one_shot_with_timestamps(self) -> None:
        async def handler(request: web.Request) -> web.Response:
            return web.json_response({"audio_base64": "QUJD", "alignment": {"characters": ["H", "i"]}})

        result = asyncio.run(_with_provider(
            _elevenlabs, [("POST", "/v1/text-to-speech/{voice}/with-timestamps", handler)],
            lambda p: p.synthesize(SynthesisParams(text="Hi", voice="rachel", with_timestamps=True), _OPTS),
        ))
        assert result.data == "QUJD"
        assert result.metadata["alignment"] == {"characters": ["H", "i"]}

    def test_stream_marks_last_chunk_final(self) -> None:
        async def handler(request: web.Request) -> web.StreamResponse:
            resp = web.StreamResponse(headers={"Content-Type": "audio/mpeg"})
            await resp.prepare(request)
            await resp.write(b"\x01\x02")
            await asyncio.sleep(0.01)
            await resp.write(b"\x03")
            await resp.write_eof()
            return resp

        chunks = asyncio.run(_with_provider(
            _elevenlabs, [("POST", "/v1/text-to-speech/{voice}/stream", handler)],
            lambda p: _collect(p.synthesize_stream(SynthesisParams(text="Hi", voice="rachel"), _OPTS)),
        ))
        assert b"".join(base64.b64decode(c.data) for c in chunks) == b"\x01\x02\x03"
        assert chunks[-1].final
        assert not any(c.final for c in chunks[:-1])

    def test_timestamped_stream(self) -> None:
        async def handler(request: web.Request) -> web.StreamResponse:
            resp = web.StreamResponse(headers={"Content-Type": "application/json"})
            await resp.prepare(request)
            await resp.write(b'{"audio_base64": "QQ==", "alignment": {"characters": ["a"]}}\n')
            await resp.write(b'{"audio_base64": "Qg=="}\n')
            await resp.write_eof()
            return resp

        chunks = asyncio.run(_with_provider(
            _elevenlabs, [("POST", "/v1/text-to-speech/{voice}/stream/with-timestamps", handler)],
            lambda p: _collect(p.synthesize_stream(
                SynthesisParams(text="ab", voice="rachel", with_timestamps=True), _OPTS,
            )),
        ))
        assert [c.data for c in chunks] == ["QQ==", "Qg=="]
        assert [c.final for c in chunks] == [False, True]
        assert chunks[0].metadata["alignment"] == {"characters": ["a"]}


# ──────────────────────────────────────────────
# §4 HTTP errors and cancellation
# ──────────────────────────────────────────────

class TestHttpFailures:

    def test_non_2xx_status(self) -> None:
        async def handler(request: web.Request) -> web.Response:
            return web.Response(status=401, text='{"detail": "invalid api key"}')

        with pytest.raises(VendorApplicationError) as ei:
            asyncio.run(_with_provider(
                _elevenlabs, [("POST", "/v1/text-to-speech/{voice}", handler)],
                lambda p: p.synthesize(SynthesisParams(text="x", voice="v"), _OPTS),
            ))
        assert ei.value.status_code == 401
        assert "invalid api key" in ei.value.message

    def test_cancel_in_flight_request(self) -> None:
        async def handler(request: web.Request) -> web.Response:
            await asyncio.sleep(0.5)
            return web.json_response({})

        async def call(provider):
            cancel = asyncio.Event()
            asyncio.get_running_loop().call_later(0.05, cancel.set)
            with pytest.raises(CancellationError):
                await asyncio.wait_for(
                    provider.synthesize(SynthesisParams(text="x"), SynthesisOptions(timeout=10, cancel=cancel)),
                    timeout=2.0,
                )

        asyncio.run(_with_provider(_minimax, [("POST", "/v1/t2a_v2", handler)], call))

    def test_cancel_stalled_stream(self) -> None:
        release = asyncio.Event()

        async def handler(request: web.Request) -> web.StreamResponse:
            resp = web.StreamResponse(headers={"Content-Type": "audio/mpeg"})
            await resp.prepare(request)
            await resp.write(b"AAAA")
            await release.wait()
            return resp

        async def call(provider):
            cancel = asyncio.Event()
            stream = provider.synthesize_stream(
                SynthesisParams(text="x", voice="v"), SynthesisOptions(timeout=None, cancel=cancel),
            )
            asyncio.get_running_loop().call_later(0.3, cancel.set)
            try:
                with pytest.raises(CancellationError):
                    await asyncio.wait_for(stream.__anext__(), timeout=2.0)
            finally:
                release.set()

        asyncio.run(_with_provider(_elevenlabs, [("POST", "/v1/text-to-speech/{voice}/stream", handler)], call))

    def test_cancel_stream_before_response_headers(self) -> None:
        release = asyncio.Event()

        async def handler(request: web.Request) -> web.Response:
            await release.wait()
            return web.json_response({})

        async def call(provider):
            cancel = asyncio.Event()
            stream = provider.synthesize_stream(SynthesisParams(text="x"), SynthesisOptions(cancel=cancel))
            asyncio.get_running_loop().call_later(0.1, cancel.set)
            try:
                with pytest.raises(CancellationError):
                    await asyncio.wait_for(stream.__anext__(), timeout=2.0)
            finally:
                release.set()

        asyncio.run(_with_provider(_minimax, [("POST", "/v1/t2a_v2", handler)], call))
