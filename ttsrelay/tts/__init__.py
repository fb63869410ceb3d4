"""
Streaming synthesis bridge.

Per-vendor providers share one Text Segmenter, one Chunk Relay and one
Duplex Session driver; only the ProtocolDescriptor differs.

Usage:
    from ttsrelay.tts import MinimaxProvider, SynthesisParams, SynthesisOptions
    provider = MinimaxProvider(api_key=..., group_id=...)

    async for chunk in provider.synthesize_incremental(tokens(), SynthesisParams(voice="..."), SynthesisOptions()):
        player.feed(chunk.data)
"""
from .base import AudioChunk, AudioResult, Frame, FrameKind, SynthesisOptions, SynthesisParams, TTSProvider
from .chunk_relay import ChunkRelay, RelayState
from .elevenlabs import ElevenLabsProvider
from .minimax import MinimaxProvider
from .sentence_buffer import SentenceBuffer
from .session import DuplexSession, ProtocolDescriptor, SessionState
from .tencent import TencentProvider

__all__ = [
    "AudioChunk",
    "AudioResult",
    "Frame",
    "FrameKind",
    "SynthesisOptions",
    "SynthesisParams",
    "TTSProvider",
    "ChunkRelay",
    "RelayState",
    "SentenceBuffer",
    "DuplexSession",
    "ProtocolDescriptor",
    "SessionState",
    "ElevenLabsProvider",
    "MinimaxProvider",
    "TencentProvider",
]
