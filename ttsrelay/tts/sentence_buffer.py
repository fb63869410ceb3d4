"""
Sentence-boundary text segmenter for incremental synthesis.

Text arrives from the caller one fragment at a time (typically LLM tokens).
Sending each fragment as its own frame would give the vendor no context
for prosody; waiting for the whole text would add seconds of latency.

The SentenceBuffer accumulates fragments and emits a synthesis unit when
the buffer ends in a sentence terminator (. ! ? and the full-width
。！？, optionally followed by whitespace) or grows past max_chars. At end
of input any non-empty remainder is emitted as the last unit.

Units are never trimmed or split: joining every emitted unit gives back
exactly the concatenated input.

Usage:
    sb = SentenceBuffer(max_chars=50)
    async for unit in sb.segment(text_stream):
        await session.send(unit)
"""
from __future__ import annotations

import re
from typing import AsyncIterable, AsyncIterator, Iterable, List, Union

DEFAULT_MAX_CHARS = 50

_SENTENCE_END_RE = re.compile(r"[.!?。！？]\s*$")


class SentenceBuffer:
    """Accumulates text fragments and emits synthesis units.

    Thread-safety: NOT thread-safe. Use from a single asyncio task.

    Args:
        max_chars: Emit once the buffer is longer than this, even without
                   a sentence terminator.
    """

    def __init__(self, max_chars: int = DEFAULT_MAX_CHARS) -> None:
        self._buffer: str = ""
        self._max_chars = max(max_chars, 1)
        self._total_pushed: int = 0
        self._total_flushed: int = 0
        self._units: int = 0

    def push(self, fragment: str) -> List[str]:
        """Add a fragment. Returns the units ready to send (0 or 1).

        A whitespace-only fragment is buffered but never triggers emission.
        """
        if not fragment:
            return []

        self._buffer += fragment
        self._total_pushed += len(fragment)

        if not fragment.strip():
            return []

        if _SENTENCE_END_RE.search(self._buffer) or len(self._buffer) > self._max_chars:
            return [self._take()]
        return []

    def flush(self) -> str | None:
        """Emit whatever is buffered. Call at end of input."""
        if not self._buffer:
            return None
        return self._take()

    async def segment(
        self,
        fragments: Union[AsyncIterable[str], Iterable[str]],
    ) -> AsyncIterator[str]:
        """Drive the buffer over a (possibly infinite) fragment source.

        The source is consumed once, in order. Suspends while the source
        awaits its next fragment.
        """
        if hasattr(fragments, "__aiter__"):
            async for fragment in fragments:
                for unit in self.push(fragment):
                    yield unit
        else:
            for fragment in fragments:
                for unit in self.push(fragment):
                    yield unit

        remainder = self.flush()
        if remainder is not None:
            yield remainder

    @property
    def pending(self) -> str:
        """Current buffered text (not yet emitted)."""
        return self._buffer

    @property
    def pending_chars(self) -> int:
        return len(self._buffer)

    @property
    def stats(self) -> dict:
        return {
            "total_pushed_chars": self._total_pushed,
            "total_flushed_chars": self._total_flushed,
            "pending_chars": len(self._buffer),
            "units": self._units,
        }

    def _take(self) -> str:
        unit = self._buffer
        self._buffer = ""
        self._total_flushed += len(unit)
        self._units += 1
        return unit
