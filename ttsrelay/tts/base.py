"""
Shared types and the abstract provider interface.

Every vendor (ElevenLabs, Minimax, Tencent) implements TTSProvider. The
TTSRelay facade is vendor-agnostic: it validates caller parameters, picks a
provider by name and hands back the same chunk shape for all three
operations.

Key design principles:
  1. Uniform output: one-shot, server-stream and incremental calls all
     produce {id, data, final, metadata}.
  2. Async: all I/O is non-blocking for asyncio compatibility.
  3. One session per call: no two calls share a vendor connection.
  4. No audio processing: payloads are passed through vendor-encoded
     (base64 or hex, named in metadata["encoding"]).
"""
from __future__ import annotations

import abc
import asyncio
import enum
from dataclasses import dataclass, field, fields
from typing import Any, AsyncIterable, AsyncIterator, Iterable, Mapping, Optional, Union

from ..errors import ParameterError

TextSource = Union[AsyncIterable[str], Iterable[str]]


@dataclass(frozen=True)
class AudioChunk:
    """One piece of synthesized audio.

    Attributes:
        id: Vendor trace/session id, or a generated one when the vendor has none.
        data: Audio payload as text (base64 or vendor hex, see metadata["encoding"]).
              Empty for metadata-only chunks (subtitles, final markers).
        final: True on the last chunk the vendor produces for the call.
        metadata: Vendor extras (alignment, subtitles, ids, encoding).
    """
    id: str
    data: str
    final: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def encoding(self) -> str:
        return self.metadata.get("encoding", "base64")


@dataclass(frozen=True)
class AudioResult(AudioChunk):
    """Result of a one-shot synthesis. Always final."""
    final: bool = True


class FrameKind(enum.Enum):
    INIT = "init"
    TEXT = "text"
    CONTROL = "control"
    AUDIO = "audio"
    SUBTITLE = "subtitle"
    ERROR = "error"


@dataclass(frozen=True)
class Frame:
    """An inbound frame normalized from the vendor's wire shape.

    payload is bytes for binary audio frames, str for text-encoded audio,
    and "" for metadata-only frames.
    """
    kind: FrameKind
    payload: Union[bytes, str] = ""
    is_final: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


_PARAM_ALIASES = {
    "sampleRate": "sample_rate",
    "withTimestamps": "with_timestamps",
}


@dataclass
class SynthesisParams:
    """Unified, vendor-neutral synthesis parameters."""
    text: str = ""
    voice: Optional[str] = None
    model: Optional[str] = None
    rate: Optional[float] = None
    volume: Optional[float] = None
    pitch: Optional[float] = None
    emotion: Optional[str] = None
    format: Optional[str] = None
    sample_rate: Optional[int] = None
    stream: Optional[bool] = None
    with_timestamps: Optional[bool] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, params: Union["SynthesisParams", Mapping[str, Any], None]) -> "SynthesisParams":
        """Accept a SynthesisParams or a plain mapping; reject empty input."""
        if isinstance(params, SynthesisParams):
            return params
        if not params:
            raise ParameterError("Parameters cannot be empty")
        if not isinstance(params, Mapping):
            raise ParameterError(f"Parameters must be a mapping, got {type(params).__name__}")

        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in params.items():
            name = _PARAM_ALIASES.get(key, key)
            if name not in known:
                raise ParameterError(f"Unknown parameter: {key!r}")
            kwargs[name] = value
        if kwargs.get("extra") is None:
            kwargs["extra"] = {}
        if kwargs.get("voice") is not None:
            kwargs["voice"] = str(kwargs["voice"])
        return cls(**kwargs)


@dataclass
class SynthesisOptions:
    """Per-call options.

    Attributes:
        timeout: Seconds for the connect/handshake (websocket) or the whole
                 request (HTTP). None = no limit.
        max_retries: Carried for callers; the core never retries.
        cancel: Cancellation token. Setting the event aborts the call.
        headers: Extra transport headers. Rejected when the transport
                 cannot carry headers.
    """
    timeout: Optional[float] = None
    max_retries: int = 0
    cancel: Optional[asyncio.Event] = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()


class TTSProvider(abc.ABC):
    """Abstract vendor provider.

    Subclasses must implement:
      - name
      - transform_params(): unified params -> vendor request dict
      - synthesize(): one-shot request, full result
      - synthesize_stream(): server decides chunk boundaries
      - synthesize_incremental(): caller streams text in

    Example:
        async for chunk in provider.synthesize_incremental(llm_tokens(), params, options):
            player.feed(chunk.data)
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider name used for registration and logging."""
        ...

    @abc.abstractmethod
    def transform_params(self, params: SynthesisParams) -> dict[str, Any]:
        """Map unified params to the vendor request shape."""
        ...

    @abc.abstractmethod
    async def synthesize(self, params: SynthesisParams, options: SynthesisOptions) -> AudioResult:
        ...

    @abc.abstractmethod
    def synthesize_stream(
        self,
        params: SynthesisParams,
        options: SynthesisOptions,
    ) -> AsyncIterator[AudioChunk]:
        ...

    @abc.abstractmethod
    def synthesize_incremental(
        self,
        text_stream: TextSource,
        params: SynthesisParams,
        options: SynthesisOptions,
    ) -> AsyncIterator[AudioChunk]:
        ...

    def validate(self, params: SynthesisParams) -> None:
        if params is None:
            raise ParameterError("Parameters cannot be null")

    async def warm_up(self) -> None:
        """Optional: open the HTTP connection pool ahead of the first call."""

    async def close(self) -> None:
        """Release resources (HTTP sessions)."""
