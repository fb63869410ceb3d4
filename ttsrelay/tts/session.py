"""
Duplex Session: one vendor websocket and its lifecycle state machine.

    CONNECTING -> AUTHENTICATING -> READY -> STREAMING -> FINISHING -> CLOSED
                          any non-terminal state -> FAILED

Vendor differences live in a ProtocolDescriptor (a plain record of
functions). The session itself knows nothing about ElevenLabs, Minimax or
Tencent; it only runs the descriptor's handshake, encodes outbound units,
decodes inbound messages and enforces the state rules:

  - open() covers transport connect plus the vendor handshake (including
    waiting for an explicit ready signal when the descriptor requires one)
    and fails with RelayConnectionError when it does not finish in time.
  - send() is only valid in READY/STREAMING.
  - finish() sends the vendor finish frame at most once and never raises.
  - close() is idempotent and safe while a receive is in flight.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import ssl
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Mapping, Optional, Union

import websockets

from ..ids import IdGenerator
from ..errors import (
    MalformedFrameError,
    ProtocolStateError,
    RelayConnectionError,
    TTSRelayError,
)
from ..transport import Connector, WebSocketLike, connect_websocket
from .base import Frame

logger = logging.getLogger(__name__)

Message = Union[str, bytes]


class SessionState(enum.Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    STREAMING = "streaming"
    FINISHING = "finishing"
    CLOSED = "closed"
    FAILED = "failed"


_TERMINAL = frozenset({SessionState.CLOSED, SessionState.FAILED})


class Signal(enum.Enum):
    READY = "ready"
    FINAL = "final"


@dataclass
class Inbound:
    """What one inbound message means: frames to relay plus an optional signal."""
    frames: list[Frame] = field(default_factory=list)
    signal: Optional[Signal] = None

    @classmethod
    def ignore(cls) -> "Inbound":
        return cls()


@dataclass
class ProtocolContext:
    """Per-session mutable state shared with the descriptor functions."""
    session_id: str
    params: dict[str, Any]
    ids: IdGenerator
    credentials: dict[str, str] = field(default_factory=dict)
    units_sent: int = 0
    audio_frames: int = 0
    final_seen: bool = False


@dataclass(frozen=True)
class ProtocolDescriptor:
    """One vendor's incremental/streaming protocol.

    Attributes:
        name: Provider name.
        handshake: Frames to send right after the transport opens.
        encode_text: Synthesis unit -> outbound text frame.
        encode_finish: Outbound finish/close control frame (None: nothing to send).
        decode: Inbound message -> Inbound. Raises VendorApplicationError
                for vendor error frames, MalformedFrameError for garbage.
        awaits_ready: READY requires an explicit server signal.
        accepts_headers: Transport can carry custom headers.
    """
    name: str
    handshake: Callable[[ProtocolContext], list[str]]
    encode_text: Optional[Callable[[str, ProtocolContext], str]]
    encode_finish: Optional[Callable[[ProtocolContext], str]]
    decode: Callable[[Message, ProtocolContext], Inbound]
    awaits_ready: bool = False
    accepts_headers: bool = True


class DuplexSession:
    """Owns one vendor connection for exactly one synthesis call.

    Args:
        descriptor: Vendor protocol.
        url: Fully built (signed, if needed) websocket URL.
        context: Per-session protocol state.
        headers: Connect headers (auth + caller extras).
        connector: Coroutine opening the socket (default: websockets).
        ssl_ctx: TLS context for wss:// URLs.
    """

    def __init__(
        self,
        descriptor: ProtocolDescriptor,
        url: str,
        context: ProtocolContext,
        *,
        headers: Optional[Mapping[str, str]] = None,
        connector: Optional[Connector] = None,
        ssl_ctx: Optional[ssl.SSLContext] = None,
    ) -> None:
        self._descriptor = descriptor
        self._url = url
        self._ctx = context
        self._headers = dict(headers or {})
        self._connector = connector or connect_websocket
        self._ssl_ctx = ssl_ctx

        self._ws: Optional[WebSocketLike] = None
        self._state = SessionState.CONNECTING
        self._error: Optional[BaseException] = None
        self._backlog: list[Frame] = []
        self._finish_sent = False
        self._close_started = False
        self._opened_at = 0.0

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    async def open(self, timeout: Optional[float] = None) -> None:
        """Connect and complete the vendor handshake."""
        if self._state is not SessionState.CONNECTING:
            raise ProtocolStateError(f"open() in state {self._state.value}")

        self._opened_at = time.monotonic()
        try:
            if timeout is not None and timeout > 0:
                await asyncio.wait_for(self._handshake(timeout), timeout)
            else:
                await self._handshake(None)
        except asyncio.TimeoutError as e:
            limit = f"{timeout:.1f}s" if timeout else "the connect timeout"
            err = RelayConnectionError(f"{self.name}: handshake did not complete within {limit}")
            await self.abort(err)
            raise err from e
        except TTSRelayError as e:
            await self.abort(e)
            raise
        except (OSError, websockets.InvalidHandshake) as e:
            err = RelayConnectionError(f"{self.name}: connect failed: {e}")
            await self.abort(err)
            raise err from e

        logger.debug(
            "%s session %s ready in %.0fms",
            self.name, self._ctx.session_id, (time.monotonic() - self._opened_at) * 1000,
        )

    async def _handshake(self, timeout: Optional[float]) -> None:
        self._ws = await self._connector(
            self._url,
            headers=self._headers,
            ssl_ctx=self._ssl_ctx,
            open_timeout=timeout,
        )
        self._set_state(SessionState.AUTHENTICATING)

        for frame in self._descriptor.handshake(self._ctx):
            await self._ws.send(frame)

        if not self._descriptor.awaits_ready:
            self._set_state(SessionState.READY)
            return

        # Vendor must say "ready" before any text goes out. Frames that
        # arrive first are kept for events().
        while self._state is SessionState.AUTHENTICATING:
            try:
                message = await self._ws.recv()
            except websockets.ConnectionClosed as e:
                raise RelayConnectionError(
                    f"{self.name}: connection closed before ready signal"
                ) from e
            inbound = self._decode(message)
            self._backlog.extend(inbound.frames)
            if inbound.signal is Signal.READY:
                self._set_state(SessionState.READY)
            elif inbound.signal is Signal.FINAL:
                self._ctx.final_seen = True
                self._set_state(SessionState.READY)

    async def send(self, unit: str) -> None:
        """Send one synthesis unit."""
        if self._state not in (SessionState.READY, SessionState.STREAMING):
            raise ProtocolStateError(f"{self.name}: send() in state {self._state.value}")
        if self._descriptor.encode_text is None:
            raise ProtocolStateError(f"{self.name}: session does not accept text")

        frame = self._descriptor.encode_text(unit, self._ctx)
        try:
            await self._ws.send(frame)
        except websockets.ConnectionClosed as e:
            raise RelayConnectionError(f"{self.name}: connection closed while sending") from e
        self._ctx.units_sent += 1
        if self._state is SessionState.READY:
            self._set_state(SessionState.STREAMING)

    async def finish(self) -> bool:
        """Best-effort finish frame. Sent at most once; never raises.

        Returns True when the frame went out.
        """
        if self._finish_sent:
            return False
        self._finish_sent = True

        if self._descriptor.encode_finish is None:
            return False
        if self._ws is None or self._state in _TERMINAL or self._close_started:
            logger.debug("%s: finish skipped in state %s", self.name, self._state.value)
            return False

        try:
            await self._ws.send(self._descriptor.encode_finish(self._ctx))
        except Exception as e:
            logger.debug("%s: finish frame not sent: %s", self.name, e)
            return False

        if self._state in (SessionState.READY, SessionState.STREAMING):
            self._set_state(SessionState.FINISHING)
        return True

    async def events(self) -> AsyncIterator[Frame]:
        """Yield inbound frames until the vendor's final signal or transport close.

        Raises VendorApplicationError / MalformedFrameError /
        RelayConnectionError; the session is FAILED and closed by then.
        """
        if self._ws is None:
            raise ProtocolStateError(f"{self.name}: events() before open()")

        while self._backlog:
            yield self._backlog.pop(0)
        if self._ctx.final_seen:
            await self.close()
            return

        while self._state not in _TERMINAL:
            try:
                message = await self._ws.recv()
            except websockets.ConnectionClosedOK:
                if self._state is not SessionState.FAILED:
                    self._set_state(SessionState.CLOSED)
                return
            except websockets.ConnectionClosed as e:
                if self._close_started:
                    return
                err = RelayConnectionError(f"{self.name}: connection lost: {e}")
                await self.abort(err)
                raise err from e

            try:
                inbound = self._decode(message)
            except TTSRelayError as e:
                await self.abort(e)
                raise

            for frame in inbound.frames:
                yield frame

            if inbound.signal is Signal.FINAL:
                self._ctx.final_seen = True
                await self.close()
                return

    async def abort(self, error: BaseException) -> None:
        """Move to FAILED and close the transport."""
        if self._state not in _TERMINAL:
            self._error = error
            logger.warning("%s session %s failed: %s", self.name, self._ctx.session_id, error)
            self._set_state(SessionState.FAILED)
        await self._close_transport()

    async def close(self) -> None:
        """Close the transport. Idempotent, safe from any state."""
        if self._state is not SessionState.FAILED:
            self._set_state(SessionState.CLOSED)
        await self._close_transport()

    async def _close_transport(self) -> None:
        if self._close_started:
            return
        self._close_started = True
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            logger.debug("%s: close error ignored: %s", self.name, e)

    # ──────────────────────────────────────────────
    # Introspection
    # ──────────────────────────────────────────────

    @property
    def name(self) -> str:
        return self._descriptor.name

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session_id(self) -> str:
        return self._ctx.session_id

    @property
    def context(self) -> ProtocolContext:
        return self._ctx

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def finish_sent(self) -> bool:
        return self._finish_sent

    @property
    def transport_closed(self) -> bool:
        return self._close_started

    def _decode(self, message: Message) -> Inbound:
        try:
            return self._descriptor.decode(message, self._ctx)
        except TTSRelayError:
            raise
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            raise MalformedFrameError(f"{self.name}: undecodable frame: {e}") from e

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        logger.debug("%s session %s: %s -> %s", self.name, self._ctx.session_id, self._state.value, state.value)
        self._state = state
