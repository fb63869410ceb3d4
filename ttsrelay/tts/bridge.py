"""
Generic streaming driver shared by every vendor.

A vendor supplies a ProtocolDescriptor plus a frame -> AudioChunk mapper;
the driver does the rest:

    text_stream -> SentenceBuffer -> sender task -> DuplexSession.send()
    DuplexSession.events() -> receiver task -> ChunkRelay.publish()
    caller <- ChunkRelay.next() <- async generator below

Terminal state is carried through the relay:
  - Receiver sees a vendor/transport error -> relay.fail(), session closed.
  - Sender sees an error while draining text -> relay.fail(), finish
    attempted, session closed.
  - Caller cancels (options.cancel set) -> sender stopped, finish attempted,
    transport closed, pending/next pull raises CancellationError. A cancel
    during connect or the ready wait aborts the half-open session.

The finish frame goes out at most once (DuplexSession.finish()).
"""
from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Callable, Optional

from ..errors import CancellationError, ParameterError
from ..metrics import SessionMetrics
from ..transport import Connector
from .base import AudioChunk, Frame, FrameKind, SynthesisOptions, TextSource
from .chunk_relay import ChunkRelay
from .http import cancellable
from .sentence_buffer import DEFAULT_MAX_CHARS, SentenceBuffer
from .session import DuplexSession, ProtocolContext, ProtocolDescriptor, SessionState

logger = logging.getLogger(__name__)

ChunkMapper = Callable[[Frame, ProtocolContext], AudioChunk]


class StreamingBridge:
    """Runs one vendor protocol for server-stream and incremental calls.

    Args:
        descriptor: Vendor protocol.
        to_chunk: Maps a normalized inbound frame to the caller-visible chunk.
        connector: Websocket connector (tests inject an in-memory socket).
        ssl_ctx: TLS context for wss:// URLs.
        max_chars: Text Segmenter length threshold.
    """

    def __init__(
        self,
        descriptor: ProtocolDescriptor,
        to_chunk: ChunkMapper,
        *,
        connector: Optional[Connector] = None,
        ssl_ctx: Optional[ssl.SSLContext] = None,
        max_chars: int = DEFAULT_MAX_CHARS,
    ) -> None:
        self.descriptor = descriptor
        self._to_chunk = to_chunk
        self._connector = connector
        self._ssl_ctx = ssl_ctx
        self._max_chars = max_chars

    async def run(
        self,
        url: str,
        context: ProtocolContext,
        options: SynthesisOptions,
        *,
        headers: Optional[dict[str, str]] = None,
        text_stream: Optional[TextSource] = None,
    ):
        """Open a session and yield chunks until the vendor finishes.

        With text_stream the call is incremental (sender task runs);
        without it the session is server-push only.
        """
        merged_headers = dict(headers or {})
        if options.headers:
            if not self.descriptor.accepts_headers:
                raise ParameterError(
                    f"{self.descriptor.name}: custom headers are not supported on this transport"
                )
            merged_headers.update(options.headers)

        if options.cancelled:
            raise CancellationError(f"{self.descriptor.name}: cancelled before start")

        session = DuplexSession(
            self.descriptor,
            url,
            context,
            headers=merged_headers,
            connector=self._connector,
            ssl_ctx=self._ssl_ctx,
        )
        relay: ChunkRelay[Frame] = ChunkRelay(name=context.session_id)
        metrics = SessionMetrics(provider=self.descriptor.name, session_id=context.session_id)

        try:
            await self._open(session, options)
        except BaseException as e:
            metrics.finalize("cancelled" if isinstance(e, CancellationError) else "failed", e)
            metrics.log_summary()
            raise

        tasks: list[asyncio.Task] = [
            asyncio.create_task(self._receive(session, relay, metrics)),
        ]
        sender: Optional[asyncio.Task] = None
        if text_stream is not None:
            sender = asyncio.create_task(self._send(session, relay, text_stream, metrics))
            tasks.append(sender)
        if options.cancel is not None:
            tasks.append(asyncio.create_task(
                self._watch_cancel(options.cancel, session, relay, sender)
            ))

        try:
            while True:
                if options.cancelled:
                    relay.fail(_cancelled(self.descriptor.name), discard_pending=True)
                try:
                    frame = await relay.next()
                except StopAsyncIteration:
                    break
                yield self._to_chunk(frame, context)
            metrics.finalize("completed")
        except CancellationError as e:
            metrics.finalize("cancelled", e)
            raise
        except GeneratorExit:
            metrics.finalize("closed")
            raise
        except BaseException as e:
            metrics.finalize("failed", e)
            raise
        finally:
            await self._shutdown(session, tasks)
            metrics.log_summary()

    async def _open(self, session: DuplexSession, options: SynthesisOptions) -> None:
        """Open the session; a cancel during connect or the ready wait aborts it."""
        try:
            await cancellable(session.open(options.timeout), options, self.descriptor.name)
        except CancellationError as e:
            logger.info("%s session %s: cancelled while opening", session.name, session.session_id)
            await session.abort(e)
            raise

    async def _receive(
        self,
        session: DuplexSession,
        relay: ChunkRelay[Frame],
        metrics: SessionMetrics,
    ) -> None:
        try:
            async for frame in session.events():
                is_audio = frame.kind is FrameKind.AUDIO
                metrics.record_frame(
                    is_audio,
                    len(frame.payload) if is_audio else 0,
                    is_subtitle=frame.kind is FrameKind.SUBTITLE,
                )
                relay.publish(frame)
            relay.complete()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            relay.fail(e)
            await session.abort(e)

    async def _send(
        self,
        session: DuplexSession,
        relay: ChunkRelay[Frame],
        text_stream: TextSource,
        metrics: SessionMetrics,
    ) -> None:
        segmenter = SentenceBuffer(max_chars=self._max_chars)
        try:
            async for unit in segmenter.segment(text_stream):
                if not unit.strip():
                    continue
                await session.send(unit)
                metrics.record_unit(unit)
            logger.debug(
                "%s session %s: text exhausted after %d units",
                session.name, session.session_id, metrics.units_sent,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if session.state is SessionState.CLOSED and session.context.final_seen:
                logger.debug(
                    "%s session %s: vendor finished before text was exhausted",
                    session.name, session.session_id,
                )
                return
            if not relay.is_terminal:
                logger.warning("%s session %s: sender failed: %s", session.name, session.session_id, e)
            relay.fail(e)
            await session.finish()
            await session.abort(e)
        finally:
            await session.finish()

    async def _watch_cancel(
        self,
        cancel: asyncio.Event,
        session: DuplexSession,
        relay: ChunkRelay[Frame],
        sender: Optional[asyncio.Task],
    ) -> None:
        await cancel.wait()
        logger.info("%s session %s: cancelled by caller", session.name, session.session_id)
        relay.fail(_cancelled(session.name), discard_pending=True)
        if sender is not None and not sender.done():
            sender.cancel()
        await session.finish()
        await session.close()

    async def _shutdown(self, session: DuplexSession, tasks: list[asyncio.Task]) -> None:
        for t in tasks:
            if not t.done():
                t.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for r in results:
            if isinstance(r, Exception):
                logger.debug("%s session %s: task ended with %s", session.name, session.session_id, r)

        await session.finish()
        await session.close()


def _cancelled(provider: str) -> CancellationError:
    return CancellationError(f"{provider}: synthesis cancelled by caller")
