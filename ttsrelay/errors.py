"""
Error taxonomy for the relay.

Transport and vendor errors seen by a session's receiver are stored in the
Chunk Relay and surface on the consumer's next pull. Nothing here is retried.
"""
from __future__ import annotations

from typing import Optional


class TTSRelayError(Exception):
    """Base class for every error raised by ttsrelay."""


class RelayConnectionError(TTSRelayError, ConnectionError):
    """Handshake or transport failure (connect, TLS, socket closed abnormally)."""


class ProtocolStateError(TTSRelayError):
    """Operation is not valid in the session's current state."""


class MalformedFrameError(TTSRelayError, ValueError):
    """An inbound frame could not be decoded."""


class VendorApplicationError(TTSRelayError):
    """The vendor reported an application-level failure.

    Attributes:
        provider: Provider name ("elevenlabs", "minimax", "tencent").
        message: Vendor status message (as sent by the vendor).
        status_code: Vendor or HTTP status code, when one was reported.
    """

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None) -> None:
        self.provider = provider
        self.message = message
        self.status_code = status_code
        code = f" (code={status_code})" if status_code is not None else ""
        super().__init__(f"{provider} TTS error{code}: {message}")


class CancellationError(TTSRelayError):
    """The caller aborted the call through its cancellation token."""


class RelayMisuseError(TTSRelayError):
    """A second next() was issued while one was still outstanding."""


class ParameterError(TTSRelayError, ValueError):
    """Caller parameters or options are invalid."""


class ProviderNotFoundError(TTSRelayError, LookupError):
    """No provider is registered under the requested name."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"Provider '{provider}' not found")
