"""
HTTP plumbing shared by the one-shot and HTTP-streaming vendor paths.

Providers keep one persistent aiohttp.ClientSession each; these helpers
map transport failures to RelayConnectionError, non-2xx responses to
VendorApplicationError, and honour the caller's cancellation token.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator, Awaitable, TypeVar

import aiohttp

from ..errors import CancellationError, RelayConnectionError, VendorApplicationError
from .base import SynthesisOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")


@contextlib.asynccontextmanager
async def vendor_request(provider: str) -> AsyncIterator[None]:
    """Wrap aiohttp/timeout failures of one request as RelayConnectionError."""
    try:
        yield
    except asyncio.TimeoutError as e:
        raise RelayConnectionError(f"{provider}: request timed out") from e
    except aiohttp.ClientError as e:
        raise RelayConnectionError(f"{provider}: request failed: {e}") from e


async def raise_for_status(provider: str, resp: aiohttp.ClientResponse) -> None:
    if 200 <= resp.status < 300:
        return
    body = await resp.text(errors="replace")
    logger.error("%s HTTP %d: %s", provider, resp.status, body[:200])
    raise VendorApplicationError(provider, body[:500] or (resp.reason or "HTTP error"), resp.status)


async def cancellable(aw: Awaitable[T], options: SynthesisOptions, provider: str) -> T:
    """Await aw, aborting with CancellationError once options.cancel is set."""
    if options.cancelled:
        if asyncio.iscoroutine(aw):
            aw.close()
        raise CancellationError(f"{provider}: cancelled before start")
    if options.cancel is None:
        return await aw

    work = asyncio.ensure_future(aw)
    stop = asyncio.create_task(options.cancel.wait())
    try:
        await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for t in (work, stop):
            if not t.done():
                t.cancel()

    if work.done() and not work.cancelled():
        return work.result()
    with contextlib.suppress(asyncio.CancelledError):
        await work
    raise CancellationError(f"{provider}: synthesis cancelled by caller")


def check_cancel(options: SynthesisOptions, provider: str) -> None:
    if options.cancelled:
        raise CancellationError(f"{provider}: synthesis cancelled by caller")


async def cancellable_stream(
    stream: AsyncIterator[T],
    options: SynthesisOptions,
    provider: str,
) -> AsyncIterator[T]:
    """Re-yield stream; a pull still waiting when options.cancel is set is
    abandoned (the response is released) and CancellationError raised."""
    try:
        while True:
            check_cancel(options, provider)
            try:
                item = await cancellable(stream.__anext__(), options, provider)
            except StopAsyncIteration:
                return
            yield item
    finally:
        await stream.aclose()


async def iter_lines(resp: aiohttp.ClientResponse) -> AsyncIterator[str]:
    """Decoded, newline-stripped lines of a streaming body."""
    async for raw in resp.content:
        yield raw.decode("utf-8", errors="replace").rstrip("\r\n")


async def iter_sse_data(resp: aiohttp.ClientResponse) -> AsyncIterator[str]:
    """Payloads of `data:` lines from a text/event-stream body."""
    async for line in iter_lines(resp):
        if not line.startswith("data:"):
            continue
        payload = line[5:].strip()
        if payload:
            yield payload
