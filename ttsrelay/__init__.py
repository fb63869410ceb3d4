"""
ttsrelay: one request/response shape over ElevenLabs, Minimax and Tencent TTS.

Usage:
    from ttsrelay import load_config, create_relay
    relay = create_relay(load_config())

    async with relay:
        async for chunk in relay.synthesize_incremental("minimax", llm_tokens(), {"voice": "..."}):
            ...
"""
from .config import RelayConfig, load_config
from .errors import (
    CancellationError,
    MalformedFrameError,
    ParameterError,
    ProtocolStateError,
    ProviderNotFoundError,
    RelayConnectionError,
    RelayMisuseError,
    TTSRelayError,
    VendorApplicationError,
)
from .ids import IdGenerator
from .middleware import CallContext, LoggingMiddleware
from .relay import TTSRelay
from .tts.base import AudioChunk, AudioResult, SynthesisOptions, SynthesisParams
from .tts.factory import create_relay

__all__ = [
    "RelayConfig",
    "load_config",
    "CancellationError",
    "MalformedFrameError",
    "ParameterError",
    "ProtocolStateError",
    "ProviderNotFoundError",
    "RelayConnectionError",
    "RelayMisuseError",
    "TTSRelayError",
    "VendorApplicationError",
    "IdGenerator",
    "CallContext",
    "LoggingMiddleware",
    "TTSRelay",
    "AudioChunk",
    "AudioResult",
    "SynthesisOptions",
    "SynthesisParams",
    "create_relay",
]
