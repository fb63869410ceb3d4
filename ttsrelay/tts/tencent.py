"""
Tencent Cloud TTS provider (tts.cloud.tencent.com).

One-shot:     POST /stream            Action=TextToStreamAudio
Server-push:  wss  /stream_ws         Action=TextToStreamAudioWS  (text in the URL)
Incremental:  wss  /stream_wsv2       Action=TextToStreamAudioWSv2

Authentication is a request signature, not a header token:

    sign_str  = METHOD + host + path + "?" + "&".join(f"{k}={v}" for sorted params)
    signature = base64(hmac_sha1(secret_key, sign_str))

HTTP sends the signature in the Authorization header; websockets carry it
(URL-encoded) as the last query parameter.

Websocket inbound messages:
  - binary frames are audio
  - JSON frames carry code/message/final and result.subtitles
  - v2 only: {"ready": 1} must arrive before any text is sent,
    {"heartbeat": 1} is dropped

Audio and subtitle frames carry no shared id; they are correlated by
receipt order. Audio chunks get metadata["sequence"] (1, 2, ...) and
subtitle chunks get metadata["audio_sequence"], the sequence of the last
audio frame received before them.

Environment:
  TENCENT_APP_ID=1250000000
  TENCENT_SECRET_ID=AKID...
  TENCENT_SECRET_KEY=...
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import ssl
import time
from typing import Any, AsyncIterator, Mapping, Optional
from urllib.parse import quote

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
from .http import cancellable, raise_for_status, vendor_request
from .params import clamp, drop_none, merge_extra, pick
from .sentence_buffer import DEFAULT_MAX_CHARS
from .session import Inbound, ProtocolContext, ProtocolDescriptor, Signal

logger = logging.getLogger(__name__)

PROVIDER = "tencent"
HOST = "tts.cloud.tencent.com"
API_BASE = f"https://{HOST}"
WS_BASE = f"wss://{HOST}"

BATCH_PATH = "/stream"
STREAM_PATH = "/stream_ws"
INCREMENTAL_PATH = "/stream_wsv2"

DEFAULT_VOICE_TYPE = 101001
SIGNATURE_TTL_S = 24 * 60 * 60

_CODECS = ("mp3", "pcm", "opus")
_SAMPLE_RATES = (8000, 16000, 24000)
_EMOTIONS = ("neutral", "sad", "happy", "angry", "fear", "news", "story", "radio", "poetry", "call")

# Optional vendor fields forwarded into signed request params when set.
_PASSTHROUGH = ("EmotionCategory", "EmotionIntensity", "FastVoiceType", "SegmentRate")

# Same unreserved set as JavaScript's encodeURIComponent.
_URI_SAFE = "-_.!~*'()"


def transform_params(params: SynthesisParams) -> dict[str, Any]:
    """Unified params -> Tencent request fields (PascalCase).

    Non-numeric voices fall back to the default VoiceType. Volume and
    Speed are clamped to [-10, 10]. extra overrides keys as-is (shallow).
    """
    voice = params.voice
    voice_type = int(voice) if voice is not None and str(voice).isdigit() else DEFAULT_VOICE_TYPE

    base = {
        "Action": "TextToVoice",
        "Version": "2019-08-23",
        "Text": params.text,
        "VoiceType": voice_type,
        "Volume": clamp(params.volume, -10, 10) if params.volume is not None else None,
        "Speed": clamp(params.rate, -10, 10) if params.rate is not None else None,
        "Codec": pick(params.format, _CODECS),
        "SampleRate": pick(params.sample_rate, _SAMPLE_RATES),
        "EmotionCategory": pick(params.emotion, _EMOTIONS),
    }
    return drop_none(merge_extra(base, params.extra))


# ──────────────────────────────────────────────
# Signing
# ──────────────────────────────────────────────

def _fmt(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def sign(secret_key: str, method: str, path: str, params: Mapping[str, Any], host: str = HOST) -> str:
    """HMAC-SHA1 over METHOD + host + path + '?' + sorted k=v pairs, base64."""
    query = "&".join(f"{k}={_fmt(params[k])}" for k in sorted(params))
    sign_str = f"{method.upper()}{host}{path}?{query}"
    digest = hmac.new(secret_key.encode("utf-8"), sign_str.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def signed_ws_url(base: str, path: str, params: Mapping[str, Any], signature: str) -> str:
    """Sorted query string; only Text and Signature are URL-encoded."""
    parts = []
    for key in sorted(params):
        value = _fmt(params[key])
        if key == "Text":
            value = quote(value, safe=_URI_SAFE)
        parts.append(f"{key}={value}")
    parts.append(f"Signature={quote(signature, safe=_URI_SAFE)}")
    return f"{base}{path}?{'&'.join(parts)}"


# ──────────────────────────────────────────────
# Websocket protocols (v1 server-push, v2 incremental)
# ──────────────────────────────────────────────

def _no_handshake(ctx: ProtocolContext) -> list[str]:
    return []


def _encode_text(unit: str, ctx: ProtocolContext) -> str:
    return json.dumps({
        "session_id": ctx.session_id,
        "message_id": uuid_hex(),
        "action": "ACTION_SYNTHESIS",
        "data": unit,
    }, ensure_ascii=False)


def _encode_finish(ctx: ProtocolContext) -> str:
    return json.dumps({
        "session_id": ctx.session_id,
        "message_id": uuid_hex(),
        "action": "ACTION_COMPLETE",
        "data": "",
    })


def _decode(message: str | bytes, ctx: ProtocolContext) -> Inbound:
    if isinstance(message, (bytes, bytearray)):
        ctx.audio_frames += 1
        return Inbound([Frame(FrameKind.AUDIO, bytes(message), False, {"sequence": ctx.audio_frames})])

    payload = json.loads(message)
    if not isinstance(payload, dict):
        raise MalformedFrameError(f"{PROVIDER}: expected a JSON object, got {type(payload).__name__}")

    code = payload.get("code", 0)
    if code != 0:
        raise VendorApplicationError(PROVIDER, payload.get("message") or "Unknown error", code)
    if payload.get("heartbeat") == 1:
        return Inbound.ignore()
    if payload.get("ready") == 1:
        return Inbound(signal=Signal.READY)

    is_final = payload.get("final") == 1
    metadata = {
        k: payload[k] for k in ("session_id", "request_id", "message_id") if payload.get(k)
    }
    subtitles = (payload.get("result") or {}).get("subtitles")

    frames: list[Frame] = []
    if subtitles:
        metadata["subtitles"] = subtitles
        metadata["audio_sequence"] = ctx.audio_frames
        frames.append(Frame(FrameKind.SUBTITLE, "", is_final, metadata))
    elif is_final:
        frames.append(Frame(FrameKind.CONTROL, "", True, metadata))

    return Inbound(frames, Signal.FINAL if is_final else None)


STREAM_DESCRIPTOR = ProtocolDescriptor(
    name=PROVIDER,
    handshake=_no_handshake,
    encode_text=None,
    encode_finish=None,
    decode=_decode,
)

INCREMENTAL_DESCRIPTOR = ProtocolDescriptor(
    name=PROVIDER,
    handshake=_no_handshake,
    encode_text=_encode_text,
    encode_finish=_encode_finish,
    decode=_decode,
    awaits_ready=True,
)


def _frame_to_chunk(frame: Frame, ctx: ProtocolContext) -> AudioChunk:
    payload = frame.payload
    data = base64.b64encode(payload).decode("ascii") if isinstance(payload, bytes) else payload
    return AudioChunk(
        id=ctx.session_id,
        data=data,
        final=frame.is_final,
        metadata={"session_id": ctx.session_id, **frame.metadata, "encoding": "base64"},
    )


class TencentProvider(TTSProvider):
    """Tencent Cloud TTS: signed HTTP batch, v1 server-push and v2 incremental websockets.

    Args:
        app_id: Numeric AppId.
        secret_id / secret_key: API credentials (secret_key signs requests).
        ids: Id source for chunks that carry no vendor id.
        connector: Websocket connector override.
        api_base / ws_base: Endpoint overrides. The signature always uses
                            the real vendor host.
    """

    def __init__(
        self,
        *,
        app_id: str,
        secret_id: str,
        secret_key: str,
        ids: Optional[IdGenerator] = None,
        connector: Optional[Connector] = None,
        ssl_ctx: Optional[ssl.SSLContext] = None,
        max_chars: int = DEFAULT_MAX_CHARS,
        api_base: str = API_BASE,
        ws_base: str = WS_BASE,
    ) -> None:
        if not (app_id and secret_id and secret_key):
            raise ParameterError("Tencent app_id, secret_id and secret_key are required")
        try:
            self._app_id = int(app_id)
        except ValueError as e:
            raise ParameterError(f"Tencent app_id must be numeric, got {app_id!r}") from e
        self._secret_id = secret_id
        self._secret_key = secret_key
        self._ids = ids or IdGenerator()
        self._ssl_ctx = ssl_ctx
        self._api_base = api_base.rstrip("/")
        self._ws_base = ws_base.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None
        self._stream_bridge = StreamingBridge(
            STREAM_DESCRIPTOR, _frame_to_chunk, connector=connector, ssl_ctx=ssl_ctx,
        )
        self._incremental_bridge = StreamingBridge(
            INCREMENTAL_DESCRIPTOR, _frame_to_chunk, connector=connector, ssl_ctx=ssl_ctx,
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
                {"Content-Type": "application/json"},
                self._ssl_ctx if self._ssl_ctx is not None else build_ssl_context(),
            )
            logger.info("Tencent provider warmed up: app_id=%s", self._app_id)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def request_params(
        self,
        action: str,
        vendor: Mapping[str, Any],
        *,
        codec: str,
        text: Optional[str] = None,
        enable_subtitle: Optional[bool] = None,
        now: Optional[int] = None,
    ) -> dict[str, Any]:
        """Signed-request parameter set for one call."""
        ts = int(time.time()) if now is None else now
        out: dict[str, Any] = {
            "Action": action,
            "AppId": self._app_id,
            "SecretId": self._secret_id,
            "ModelType": vendor.get("ModelType", 1),
            "VoiceType": vendor.get("VoiceType", 0),
            "Codec": vendor.get("Codec", codec),
            "SampleRate": vendor.get("SampleRate", 16000),
            "Speed": vendor.get("Speed", 0),
            "Volume": vendor.get("Volume", 0),
            "SessionId": uuid_hex(),
            "Timestamp": ts,
            "Expired": ts + SIGNATURE_TTL_S,
        }
        if text is not None:
            out["Text"] = text
        if enable_subtitle is not None:
            out["EnableSubtitle"] = vendor.get("EnableSubtitle", enable_subtitle)
        for key in _PASSTHROUGH:
            if vendor.get(key) is not None:
                out[key] = vendor[key]
        return out

    async def synthesize(self, params: SynthesisParams, options: SynthesisOptions) -> AudioResult:
        vendor = self.transform_params(params)
        req = self.request_params("TextToStreamAudio", vendor, codec="mp3", text=vendor.get("Text", ""))
        headers = {"Authorization": sign(self._secret_key, "POST", BATCH_PATH, req), **options.headers}

        async def _post() -> AudioResult:
            await self.warm_up()
            async with vendor_request(PROVIDER):
                async with self._session.post(
                    self._api_base + BATCH_PATH,
                    json=req,
                    headers=headers,
                    timeout=http_timeout(options.timeout),
                ) as resp:
                    await raise_for_status(PROVIDER, resp)
                    audio = await _read_batch_audio(resp)
            return AudioResult(
                id=req["SessionId"],
                data=base64.b64encode(audio).decode("ascii"),
                metadata={"encoding": "base64", "session_id": req["SessionId"], "codec": req["Codec"]},
            )

        return await cancellable(_post(), options, PROVIDER)

    def synthesize_stream(
        self,
        params: SynthesisParams,
        options: SynthesisOptions,
    ) -> AsyncIterator[AudioChunk]:
        vendor = self.transform_params(params)
        req = self.request_params(
            "TextToStreamAudioWS", vendor, codec="pcm", text=vendor.get("Text", ""), enable_subtitle=True,
        )
        url = signed_ws_url(self._ws_base, STREAM_PATH, req, sign(self._secret_key, "GET", STREAM_PATH, req))
        ctx = ProtocolContext(session_id=req["SessionId"], params=req, ids=self._ids)
        return self._stream_bridge.run(url, ctx, options)

    def synthesize_incremental(
        self,
        text_stream: TextSource,
        params: SynthesisParams,
        options: SynthesisOptions,
    ) -> AsyncIterator[AudioChunk]:
        vendor = self.transform_params(params)
        req = self.request_params("TextToStreamAudioWSv2", vendor, codec="pcm", enable_subtitle=False)
        url = signed_ws_url(
            self._ws_base, INCREMENTAL_PATH, req, sign(self._secret_key, "GET", INCREMENTAL_PATH, req),
        )
        ctx = ProtocolContext(session_id=req["SessionId"], params=req, ids=self._ids)
        return self._incremental_bridge.run(url, ctx, options, text_stream=text_stream)


async def _read_batch_audio(resp: aiohttp.ClientResponse) -> bytes:
    """Collect the batch body, telling audio from a JSON error reply.

    A JSON Content-Type is always an error/status document; audio/* and
    octet-stream are always audio. Without a usable Content-Type the
    first body chunk is sniffed as JSON.
    """
    content_type = (resp.headers.get("Content-Type") or "").split(";")[0].strip().lower()

    if "json" in content_type:
        _raise_json_error(await resp.read())
        raise VendorApplicationError(PROVIDER, "no audio data received")

    sniff = not (content_type.startswith("audio/") or content_type == "application/octet-stream")
    audio = bytearray()
    async for data in resp.content.iter_any():
        if not data:
            continue
        if sniff and not audio:
            if _looks_like_json(data):
                _raise_json_error(data)
                logger.debug("%s: skipping non-audio status chunk", PROVIDER)
                continue
        audio.extend(data)

    if not audio:
        raise VendorApplicationError(PROVIDER, "no audio data received")
    return bytes(audio)


def _looks_like_json(data: bytes) -> bool:
    try:
        json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return False
    return True


def _raise_json_error(data: bytes) -> None:
    try:
        payload = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedFrameError(f"{PROVIDER}: undecodable JSON response") from e
    error = ((payload.get("Response") or {}).get("Error") or {}) if isinstance(payload, dict) else {}
    if error:
        raise VendorApplicationError(
            PROVIDER,
            f"{error.get('Code', 'Unknown')} - {error.get('Message', '')}".strip(" -"),
        )
