"""
Minimax TTS provider (t2a_v2).

One-shot:     POST https://api.minimax.chat/v1/t2a_v2?GroupId=...
Server-push:  same endpoint with stream=true, answered as SSE ("data: {...}")
Incremental:  wss://api.minimax.chat/ws/v1/t2a_v2

Every HTTP payload carries base_resp.status_code; anything but 0 is a
vendor failure. Audio comes back hex-encoded and is passed through as-is
(chunk metadata["encoding"] == "hex").

Incremental protocol (bearer token in the connect header):
  -> {"event": "task_start", "model": ..., "voice_setting": ..., ...}
  -> {"event": "task_continue", "text": "<unit>"}
  -> {"event": "task_finish"}
  <- connected_success / task_started        ignored
  <- task_continued {data: {audio}, is_final} audio
  <- task_finished                            done
  <- task_failed {base_resp: {status_msg}}    VendorApplicationError

Environment:
  MINIMAX_API_KEY=your-key
  MINIMAX_GROUP_ID=your-group
"""
from __future__ import annotations

import json
import logging
import ssl
from typing import Any, AsyncIterator, Mapping, Optional

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
from .http import cancellable, cancellable_stream, check_cancel, iter_sse_data, raise_for_status, vendor_request
from .params import drop_none, merge_extra, pick
from .sentence_buffer import DEFAULT_MAX_CHARS
from .session import Inbound, ProtocolContext, ProtocolDescriptor, Signal

logger = logging.getLogger(__name__)

PROVIDER = "minimax"
API_BASE = "https://api.minimax.chat"
WS_URL = "wss://api.minimax.chat/ws/v1/t2a_v2"

DEFAULT_MODEL = "speech-02-hd"
_FORMATS = ("mp3", "wav", "pcm", "flac")
_SAMPLE_RATES = (8000, 16000, 22050, 24000, 32000, 44100)

# data.status == 2 marks the vendor's last piece of audio
_STATUS_DONE = 2


def transform_params(params: SynthesisParams) -> dict[str, Any]:
    """Unified params -> t2a_v2 request body.

    Unsupported formats/sample rates are omitted (vendor default applies).
    voice_setting/audio_setting from extra are merged one level deep.
    """
    base = {
        "text": params.text,
        "model": params.model or DEFAULT_MODEL,
        "voice_setting": {
            "voice_id": params.voice,
            "speed": params.rate,
            "vol": params.volume,
            "pitch": params.pitch,
            "emotion": params.emotion,
        },
        "audio_setting": {
            "format": pick(params.format, _FORMATS),
            "sample_rate": pick(params.sample_rate, _SAMPLE_RATES),
        },
        "stream": params.stream,
    }
    merged = merge_extra(drop_none(base), params.extra, deep_keys=("voice_setting", "audio_setting"))
    return drop_none(merged)


def check_base_resp(payload: Mapping[str, Any]) -> None:
    base_resp = payload.get("base_resp") or {}
    code = base_resp.get("status_code", 0)
    if code not in (0, None):
        raise VendorApplicationError(PROVIDER, base_resp.get("status_msg") or "Unknown error", code)


def payload_to_chunk(payload: Mapping[str, Any], fallback_id: str, cls: type = AudioChunk) -> AudioChunk:
    data = payload.get("data") or {}
    metadata: dict[str, Any] = {"encoding": "hex"}
    if payload.get("extra_info"):
        metadata["extra_info"] = payload["extra_info"]
    if payload.get("subtitle_file"):
        metadata["subtitle_file"] = payload["subtitle_file"]
    kwargs: dict[str, Any] = {
        "id": payload.get("trace_id") or fallback_id,
        "data": data.get("audio") or "",
        "metadata": metadata,
    }
    if cls is AudioChunk:
        kwargs["final"] = data.get("status") == _STATUS_DONE
    return cls(**kwargs)


# ──────────────────────────────────────────────
# Incremental websocket protocol
# ──────────────────────────────────────────────

def _handshake(ctx: ProtocolContext) -> list[str]:
    start = {"event": "task_start", **ctx.params}
    return [json.dumps(start)]


def _encode_text(unit: str, ctx: ProtocolContext) -> str:
    return json.dumps({"event": "task_continue", "text": unit})


def _encode_finish(ctx: ProtocolContext) -> str:
    return json.dumps({"event": "task_finish"})


def _decode(message: str | bytes, ctx: ProtocolContext) -> Inbound:
    if isinstance(message, bytes):
        message = message.decode("utf-8")
    payload = json.loads(message)
    if not isinstance(payload, dict):
        raise MalformedFrameError(f"{PROVIDER}: expected a JSON object, got {type(payload).__name__}")

    event = payload.get("event")
    if event == "task_failed":
        base_resp = payload.get("base_resp") or {}
        raise VendorApplicationError(
            PROVIDER,
            base_resp.get("status_msg") or "Unknown error",
            base_resp.get("status_code"),
        )
    if event in ("connected_success", "task_started"):
        return Inbound.ignore()
    if event == "task_finished":
        return Inbound([Frame(FrameKind.CONTROL, "", True, _ids_of(payload))], Signal.FINAL)
    if event == "task_continued":
        check_base_resp(payload)
        data = payload.get("data") or {}
        metadata = _ids_of(payload)
        if payload.get("extra_info"):
            metadata["extra_info"] = payload["extra_info"]
        ctx.audio_frames += 1
        return Inbound([Frame(FrameKind.AUDIO, data.get("audio") or "", bool(payload.get("is_final")), metadata)])

    logger.debug("%s: ignoring event %r", PROVIDER, event)
    return Inbound.ignore()


def _ids_of(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {k: payload[k] for k in ("trace_id", "session_id") if payload.get(k)}


DESCRIPTOR = ProtocolDescriptor(
    name=PROVIDER,
    handshake=_handshake,
    encode_text=_encode_text,
    encode_finish=_encode_finish,
    decode=_decode,
)


def _frame_to_chunk(frame: Frame, ctx: ProtocolContext) -> AudioChunk:
    metadata = {k: v for k, v in frame.metadata.items() if k != "trace_id"}
    metadata["encoding"] = "hex"
    return AudioChunk(
        id=frame.metadata.get("trace_id") or ctx.ids.next_id(),
        data=frame.payload if isinstance(frame.payload, str) else frame.payload.hex(),
        final=frame.is_final,
        metadata=metadata,
    )


class MinimaxProvider(TTSProvider):
    """Minimax over HTTP/SSE and websocket.

    Args:
        api_key: Minimax API key (sent as a bearer token).
        group_id: Minimax GroupId query parameter.
        ids: Chunk id source, used when the vendor sends no trace_id.
        connector: Websocket connector override.
        api_base / ws_url: Endpoint overrides.
    """

    def __init__(
        self,
        *,
        api_key: str,
        group_id: str,
        ids: Optional[IdGenerator] = None,
        connector: Optional[Connector] = None,
        ssl_ctx: Optional[ssl.SSLContext] = None,
        max_chars: int = DEFAULT_MAX_CHARS,
        api_base: str = API_BASE,
        ws_url: str = WS_URL,
    ) -> None:
        if not api_key or not group_id:
            raise ParameterError("Minimax api_key and group_id are required")
        self._api_key = api_key
        self._group_id = group_id
        self._ids = ids or IdGenerator()
        self._ssl_ctx = ssl_ctx
        self._api_base = api_base.rstrip("/")
        self._ws_url = ws_url
        self._session: Optional[aiohttp.ClientSession] = None
        self._bridge = StreamingBridge(
            DESCRIPTOR,
            _frame_to_chunk,
            connector=connector,
            ssl_ctx=ssl_ctx,
            max_chars=max_chars,
        )

    @property
    def name(self) -> str:
        return PROVIDER

    def transform_params(self, params: SynthesisParams) -> dict[str, Any]:
        return transform_params(params)

    async def warm_up(self) -> None:
        if self._session is None or self._session.closed:
            self._session = make_http_session(
                {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"},
                self._ssl_ctx if self._ssl_ctx is not None else build_ssl_context(),
            )
            logger.info("Minimax provider warmed up: group=%s", self._group_id)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    @property
    def _endpoint(self) -> str:
        return f"{self._api_base}/v1/t2a_v2"

    async def synthesize(self, params: SynthesisParams, options: SynthesisOptions) -> AudioResult:
        body = self.transform_params(params)
        body.pop("stream", None)

        async def _post() -> AudioResult:
            await self.warm_up()
            async with vendor_request(PROVIDER):
                async with self._session.post(
                    self._endpoint,
                    params={"GroupId": self._group_id},
                    json=body,
                    headers=options.headers or None,
                    timeout=http_timeout(options.timeout),
                ) as resp:
                    await raise_for_status(PROVIDER, resp)
                    payload = await resp.json(content_type=None)
            if not isinstance(payload, dict):
                raise MalformedFrameError(f"{PROVIDER}: expected a JSON object")
            check_base_resp(payload)
            return payload_to_chunk(payload, self._ids.next_id(), AudioResult)

        return await cancellable(_post(), options, PROVIDER)

    async def synthesize_stream(
        self,
        params: SynthesisParams,
        options: SynthesisOptions,
    ) -> AsyncIterator[AudioChunk]:
        """stream=true over SSE; each event is validated before it is yielded.

        A response that is not text/event-stream is read to the end and
        parsed as a single JSON document (one chunk).
        """
        body = self.transform_params(params)
        body["stream"] = True
        body["stream_options"] = {"exclude_aggregated_audio": True}
        request_id = self._ids.next_id()

        check_cancel(options, PROVIDER)
        async for chunk in cancellable_stream(self._stream_body(body, request_id, options), options, PROVIDER):
            yield chunk

    async def _stream_body(
        self,
        body: dict[str, Any],
        request_id: str,
        options: SynthesisOptions,
    ) -> AsyncIterator[AudioChunk]:
        await self.warm_up()
        async with vendor_request(PROVIDER):
            async with self._session.post(
                self._endpoint,
                params={"GroupId": self._group_id},
                json=body,
                headers=options.headers or None,
                timeout=http_timeout(options.timeout),
            ) as resp:
                await raise_for_status(PROVIDER, resp)

                if "text/event-stream" not in (resp.headers.get("Content-Type") or ""):
                    text = await resp.text()
                    yield payload_to_chunk(_parse_event(text), request_id)
                    return

                async for event in iter_sse_data(resp):
                    yield payload_to_chunk(_parse_event(event), request_id)

    def synthesize_incremental(
        self,
        text_stream: TextSource,
        params: SynthesisParams,
        options: SynthesisOptions,
    ) -> AsyncIterator[AudioChunk]:
        body = self.transform_params(params)
        body.pop("text", None)
        body.pop("stream", None)
        ctx = ProtocolContext(session_id=uuid_hex(), params=body, ids=self._ids)
        return self._bridge.run(
            self._ws_url,
            ctx,
            options,
            headers={"Authorization": f"Bearer {self._api_key}"},
            text_stream=text_stream,
        )


def _parse_event(text: str) -> dict[str, Any]:
    try:
        payload = json.loads(text)
    except ValueError as e:
        raise MalformedFrameError(f"{PROVIDER}: bad JSON payload: {text[:80]!r}") from e
    if not isinstance(payload, dict):
        raise MalformedFrameError(f"{PROVIDER}: expected a JSON object")
    check_base_resp(payload)
    return payload
