"""
ElevenLabs TTS provider.

One-shot:     POST /v1/text-to-speech/{voice_id}[/with-timestamps]
Server-push:  POST /v1/text-to-speech/{voice_id}/stream[/with-timestamps]
Incremental:  wss://api.elevenlabs.io/v1/text-to-speech/{voice_id}/stream-input

Incremental protocol:
  -> {"text": " ", "voice_settings": {...}, "xi_api_key": "..."}   init
  -> {"text": "<unit>", "try_trigger_generation": true|false}      per unit
  -> {"text": ""}                                                  finish
  <- {"audio": "<base64>", "isFinal": bool, "alignment": {...}, ...}

Credentials travel in the xi-api-key connect header. With inline_auth the
key goes in the init frame instead and the transport carries no headers
(custom per-call headers are rejected in that mode).

Environment:
  ELEVENLABS_API_KEY=your-key
  ELEVENLABS_MODEL=eleven_turbo_v2_5
  ELEVENLABS_INLINE_AUTH=0
"""
from __future__ import annotations

import base64
import dataclasses
import json
import logging
import ssl
from typing import Any, AsyncIterator, Optional
from urllib.parse import quote, urlencode

import aiohttp

from ..errors import MalformedFrameError, ParameterError, VendorApplicationError
from ..ids import IdGenerator, uuid_hex
from ..transport import Connector, build_ssl_context, http_timeout, make_http_session
from .base import (
    AudioChunk,
    AudioResult,
    Frame,
    FrameKind,
    SynthesisOptions,
    SynthesisParams,
    TextSource,
    TTSProvider,
)
from .bridge import StreamingBridge
from .http import cancellable, cancellable_stream, check_cancel, iter_lines, raise_for_status, vendor_request
from .params import clamp, drop_none, merge_extra
from .sentence_buffer import DEFAULT_MAX_CHARS
from .session import Inbound, ProtocolContext, ProtocolDescriptor, Signal

logger = logging.getLogger(__name__)

PROVIDER = "elevenlabs"
API_BASE = "https://api.elevenlabs.io"
WS_BASE = "wss://api.elevenlabs.io"

_FORMATS = {
    "mp3": "mp3_44100_128",
    "pcm": "pcm_16000",
    "opus": "opus_48000_32",
}

_SAMPLE_RATE_FORMATS = {
    "mp3": {22050: "mp3_22050_32", 44100: "mp3_44100_64"},
    "pcm": {16000: "pcm_16000", 22050: "pcm_22050", 24000: "pcm_24000", 44100: "pcm_44100"},
    "opus": {48000: "opus_48000_32"},
}

_MIN_SPEED = 0.25
_MAX_SPEED = 4.0


def transform_params(params: SynthesisParams, default_model: Optional[str] = None) -> dict[str, Any]:
    """Unified params -> ElevenLabs request fields.

    voice -> voice_id, model -> model_id, rate -> voice_settings.speed
    (clamped), format/sample_rate -> output_format. extra wins on conflicts;
    voice_settings (or voiceSettings) from extra is merged one level deep.
    """
    voice_settings: dict[str, Any] = {}
    if params.rate is not None:
        voice_settings["speed"] = clamp(float(params.rate), _MIN_SPEED, _MAX_SPEED)
    if params.emotion is not None:
        voice_settings["emotion"] = params.emotion

    output_format = _FORMATS.get(params.format or "")
    if params.format and params.sample_rate:
        output_format = _SAMPLE_RATE_FORMATS.get(params.format, {}).get(params.sample_rate, output_format)

    base = {
        "text": params.text,
        "voice_id": params.voice or "",
        "model_id": params.model or default_model,
        "voice_settings": voice_settings or None,
        "output_format": output_format,
        "with_timestamps": params.with_timestamps,
    }

    extra = dict(params.extra or {})
    if "voiceSettings" in extra:
        extra["voice_settings"] = extra.pop("voiceSettings")
    return drop_none(merge_extra(base, extra, deep_keys=("voice_settings",)))


# ──────────────────────────────────────────────
# Incremental websocket protocol
# ──────────────────────────────────────────────

def _handshake(ctx: ProtocolContext) -> list[str]:
    init: dict[str, Any] = {"text": " "}
    if ctx.params.get("voice_settings"):
        init["voice_settings"] = ctx.params["voice_settings"]
    if ctx.params.get("generation_config"):
        init["generation_config"] = ctx.params["generation_config"]
    if ctx.credentials.get("xi_api_key"):
        init["xi_api_key"] = ctx.credentials["xi_api_key"]
    return [json.dumps(init)]


def _encode_text(unit: str, ctx: ProtocolContext) -> str:
    return json.dumps({"text": unit, "try_trigger_generation": ctx.units_sent == 0})


def _encode_finish(ctx: ProtocolContext) -> str:
    return json.dumps({"text": ""})


def _decode(message: str | bytes, ctx: ProtocolContext) -> Inbound:
    if isinstance(message, bytes):
        message = message.decode("utf-8")
    data = json.loads(message)
    if not isinstance(data, dict):
        raise MalformedFrameError(f"{PROVIDER}: expected a JSON object, got {type(data).__name__}")

    if data.get("error"):
        raise VendorApplicationError(PROVIDER, str(data.get("message") or data["error"]), data.get("code"))

    is_final = bool(data.get("isFinal"))
    metadata = {
        k: data[k] for k in ("alignment", "normalizedAlignment") if data.get(k) is not None
    }

    frames: list[Frame] = []
    audio = data.get("audio")
    if audio:
        ctx.audio_frames += 1
        frames.append(Frame(FrameKind.AUDIO, audio, is_final, metadata))
    elif is_final:
        frames.append(Frame(FrameKind.CONTROL, "", True, metadata))

    return Inbound(frames, Signal.FINAL if is_final else None)


DESCRIPTOR = ProtocolDescriptor(
    name=PROVIDER,
    handshake=_handshake,
    encode_text=_encode_text,
    encode_finish=_encode_finish,
    decode=_decode,
)

# Browser-style auth: key in the init frame, no connect headers.
INLINE_AUTH_DESCRIPTOR = dataclasses.replace(DESCRIPTOR, accepts_headers=False)


def _frame_to_chunk(frame: Frame, ctx: ProtocolContext) -> AudioChunk:
    return AudioChunk(
        id=ctx.ids.next_id(),
        data=frame.payload if isinstance(frame.payload, str) else base64.b64encode(frame.payload).decode("ascii"),
        final=frame.is_final,
        metadata={**frame.metadata, "encoding": "base64", "session_id": ctx.session_id},
    )


class ElevenLabsProvider(TTSProvider):
    """ElevenLabs over HTTP (one-shot, server stream) and websocket (incremental).

    Args:
        api_key: ElevenLabs API key.
        model: Default model_id when the call does not name one.
        inline_auth: Send the key in the init frame instead of a header.
        ids: Chunk/session id source (the facade shares one across providers).
        connector: Websocket connector override.
        api_base / ws_base: Endpoint overrides (tests, proxies).
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "eleven_turbo_v2_5",
        inline_auth: bool = False,
        ids: Optional[IdGenerator] = None,
        connector: Optional[Connector] = None,
        ssl_ctx: Optional[ssl.SSLContext] = None,
        max_chars: int = DEFAULT_MAX_CHARS,
        api_base: str = API_BASE,
        ws_base: str = WS_BASE,
    ) -> None:
        if not api_key:
            raise ParameterError("ElevenLabs api_key is required")
        self._api_key = api_key
        self._model = model
        self._inline_auth = inline_auth
        self._ids = ids or IdGenerator()
        self._ssl_ctx = ssl_ctx
        self._api_base = api_base.rstrip("/")
        self._ws_base = ws_base.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None
        self._bridge = StreamingBridge(
            INLINE_AUTH_DESCRIPTOR if inline_auth else DESCRIPTOR,
            _frame_to_chunk,
            connector=connector,
            ssl_ctx=ssl_ctx,
            max_chars=max_chars,
        )

    @property
    def name(self) -> str:
        return PROVIDER

    def transform_params(self, params: SynthesisParams) -> dict[str, Any]:
        return transform_params(params, self._model)

    async def warm_up(self) -> None:
        """Create persistent HTTP session."""
        if self._session is None or self._session.closed:
            self._session = make_http_session(
                {"xi-api-key": self._api_key, "Content-Type": "application/json"},
                self._ssl_ctx if self._ssl_ctx is not None else build_ssl_context(),
            )
            logger.info("ElevenLabs provider warmed up: model=%s", self._model)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _request(self, params: SynthesisParams) -> tuple[str, dict[str, Any], dict[str, str]]:
        body = self.transform_params(params)
        voice_id = body.pop("voice_id", "")
        if not voice_id:
            raise ParameterError("ElevenLabs requires a voice")
        query: dict[str, str] = {}
        output_format = body.pop("output_format", None)
        if output_format:
            query["output_format"] = output_format
        return voice_id, body, query

    async def synthesize(self, params: SynthesisParams, options: SynthesisOptions) -> AudioResult:
        voice_id, body, query = self._request(params)
        with_ts = bool(body.pop("with_timestamps", False))
        path = f"/v1/text-to-speech/{quote(voice_id, safe='')}" + ("/with-timestamps" if with_ts else "")

        async def _post() -> AudioResult:
            await self.warm_up()
            async with vendor_request(PROVIDER):
                async with self._session.post(
                    self._api_base + path,
                    params=query,
                    json=body,
                    headers=options.headers or None,
                    timeout=http_timeout(options.timeout),
                ) as resp:
                    await raise_for_status(PROVIDER, resp)
                    if with_ts:
                        data = await resp.json(content_type=None)
                        return AudioResult(
                            id=self._ids.next_id(),
                            data=data.get("audio_base64") or "",
                            metadata=drop_none({
                                "encoding": "base64",
                                "alignment": data.get("alignment"),
                                "normalized_alignment": data.get("normalized_alignment"),
                            }),
                        )
                    raw = await resp.read()
                    return AudioResult(
                        id=self._ids.next_id(),
                        data=base64.b64encode(raw).decode("ascii"),
                        metadata={"encoding": "base64", "content_type": resp.content_type},
                    )

        return await cancellable(_post(), options, PROVIDER)

    async def synthesize_stream(
        self,
        params: SynthesisParams,
        options: SynthesisOptions,
    ) -> AsyncIterator[AudioChunk]:
        """Server-driven streaming over chunked HTTP.

        Raw audio bytes are re-emitted as base64 chunks as they arrive; the
        /with-timestamps variant is newline-delimited JSON. The last chunk
        carries final=True.
        """
        voice_id, body, query = self._request(params)
        with_ts = bool(body.pop("with_timestamps", False))
        path = f"/v1/text-to-speech/{quote(voice_id, safe='')}/stream" + ("/with-timestamps" if with_ts else "")
        request_id = self._ids.next_id()

        check_cancel(options, PROVIDER)
        pending: Optional[AudioChunk] = None
        chunks = self._stream_body(path, query, body, with_ts, request_id, options)
        async for chunk in cancellable_stream(chunks, options, PROVIDER):
            if pending is not None:
                yield pending
            pending = chunk

        if pending is None:
            pending = AudioChunk(id=request_id, data="", metadata={"encoding": "base64"})
        yield AudioChunk(pending.id, pending.data, True, pending.metadata)

    async def _stream_body(
        self,
        path: str,
        query: dict[str, Any],
        body: dict[str, Any],
        with_ts: bool,
        request_id: str,
        options: SynthesisOptions,
    ) -> AsyncIterator[AudioChunk]:
        await self.warm_up()
        async with vendor_request(PROVIDER):
            async with self._session.post(
                self._api_base + path,
                params=query,
                json=body,
                headers=options.headers or None,
                timeout=http_timeout(options.timeout),
            ) as resp:
                await raise_for_status(PROVIDER, resp)
                chunks = self._iter_json(resp, request_id) if with_ts else self._iter_raw(resp, request_id)
                async for chunk in chunks:
                    yield chunk

    async def _iter_raw(self, resp: aiohttp.ClientResponse, request_id: str) -> AsyncIterator[AudioChunk]:
        async for data in resp.content.iter_any():
            if data:
                yield AudioChunk(
                    id=request_id,
                    data=base64.b64encode(data).decode("ascii"),
                    metadata={"encoding": "base64"},
                )

    async def _iter_json(self, resp: aiohttp.ClientResponse, request_id: str) -> AsyncIterator[AudioChunk]:
        async for line in iter_lines(resp):
            if not line.strip():
                continue
            try:
                data = json.loads(line)
            except ValueError as e:
                raise MalformedFrameError(f"{PROVIDER}: bad stream line: {line[:80]!r}") from e
            yield AudioChunk(
                id=request_id,
                data=data.get("audio_base64") or "",
                metadata=drop_none({
                    "encoding": "base64",
                    "alignment": data.get("alignment"),
                    "normalized_alignment": data.get("normalized_alignment"),
                }),
            )

    def synthesize_incremental(
        self,
        text_stream: TextSource,
        params: SynthesisParams,
        options: SynthesisOptions,
    ) -> AsyncIterator[AudioChunk]:
        voice_id, body, query = self._request(params)
        body.pop("text", None)
        body.pop("with_timestamps", None)
        model_id = body.pop("model_id", None)
        if model_id:
            query["model_id"] = model_id

        url = f"{self._ws_base}/v1/text-to-speech/{quote(voice_id, safe='')}/stream-input"
        if query:
            url += "?" + urlencode(query)

        ctx = ProtocolContext(session_id=uuid_hex(), params=body, ids=self._ids)
        headers: dict[str, str] = {}
        if self._inline_auth:
            ctx.credentials["xi_api_key"] = self._api_key
        else:
            headers["xi-api-key"] = self._api_key

        return self._bridge.run(url, ctx, options, headers=headers, text_stream=text_stream)
