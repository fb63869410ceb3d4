"""
Onion-model middleware run by the TTSRelay facade around every call.

    relay.use(LoggingMiddleware())
    relay.use(MyMetricsMiddleware())

Each middleware gets the CallContext and a call_next() coroutine function.
Code before `await call_next()` runs on the way in, code after it on the
way out. For synthesize() the result is an AudioResult; for the stream and
incremental operations it is an async iterator of AudioChunk, so a
middleware that wants to see the end of a stream must wrap the iterator.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol, Sequence

from .tts.base import SynthesisOptions, SynthesisParams, TextSource

logger = logging.getLogger(__name__)

CallNext = Callable[[], Awaitable[Any]]


@dataclass
class CallContext:
    """Per-call state visible to middleware."""
    provider: str
    operation: str
    params: SynthesisParams
    options: SynthesisOptions
    request_id: str
    text_stream: Optional[TextSource] = None
    started_at: float = field(default_factory=time.monotonic)

    @property
    def text(self) -> str:
        return self.params.text


class Middleware(Protocol):
    async def process(self, context: CallContext, call_next: CallNext) -> Any: ...


async def run_chain(
    middleware: Sequence[Middleware],
    context: CallContext,
    handler: CallNext,
) -> Any:
    """Dispatch context through middleware[0] -> ... -> handler.

    A middleware calling call_next() twice raises RuntimeError.
    """
    index = -1

    async def dispatch(i: int) -> Any:
        nonlocal index
        if i <= index:
            raise RuntimeError("call_next() called multiple times")
        index = i
        if i == len(middleware):
            return await handler()
        return await middleware[i].process(context, lambda: dispatch(i + 1))

    return await dispatch(0)


def _truncate(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _response_type(result: Any) -> str:
    return "null" if result is None else type(result).__name__


class LoggingMiddleware:
    """Logs call start, completion (with duration) and failure.

    Args:
        log_params: Log provider/request id/text/model/voice/format on start.
        log_response: Log completion and the response type.
        log_timing: Extra DEBUG line with the duration.
        level: Level for start/completion lines.
        log: Logger to write to (default: this module's logger).
    """

    def __init__(
        self,
        *,
        log_params: bool = True,
        log_response: bool = True,
        log_timing: bool = True,
        level: int = logging.INFO,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._log_params = log_params
        self._log_response = log_response
        self._log_timing = log_timing
        self._level = level
        self._logger = log or logger

    async def process(self, context: CallContext, call_next: CallNext) -> Any:
        start = time.monotonic()
        if self._log_params:
            p = context.params
            self._logger.log(
                self._level,
                "TTS request started: provider=%s op=%s request=%s text=%r model=%s voice=%s format=%s",
                context.provider, context.operation, context.request_id,
                _truncate(p.text or ""), p.model, p.voice, p.format,
            )

        try:
            result = await call_next()
        except Exception as e:
            self._failed(context, start, e)
            raise

        if hasattr(result, "__aiter__"):
            return self._watch_stream(context, start, result)

        self._completed(context, start, _response_type(result))
        return result

    async def _watch_stream(
        self,
        context: CallContext,
        start: float,
        stream: AsyncIterator[Any],
    ) -> AsyncIterator[Any]:
        count = 0
        try:
            async for chunk in stream:
                count += 1
                yield chunk
        except Exception as e:
            self._failed(context, start, e, chunks=count)
            raise
        finally:
            await aclose_stream(stream)
        self._completed(context, start, f"AsyncIterator[{count} chunks]")

    def _completed(self, context: CallContext, start: float, response_type: str) -> None:
        ms = (time.monotonic() - start) * 1000
        if self._log_response:
            self._logger.log(
                self._level,
                "TTS request completed: request=%s duration=%.0fms response=%s",
                context.request_id, ms, response_type,
            )
        if self._log_timing:
            self._logger.debug(
                "TTS timing: request=%s provider=%s duration=%.0fms",
                context.request_id, context.provider, ms,
            )

    def _failed(self, context: CallContext, start: float, error: BaseException, chunks: int = 0) -> None:
        ms = (time.monotonic() - start) * 1000
        self._logger.error(
            "TTS request failed: request=%s provider=%s duration=%.0fms chunks=%d error=%s",
            context.request_id, context.provider, ms, chunks, error,
        )


async def aclose_stream(stream: Any) -> None:
    """Close an async generator that the consumer stopped early."""
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()
