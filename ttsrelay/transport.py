"""
Vendor transport helpers: TLS context and websocket connect.

connect_websocket() is the default connector used by every Duplex Session.
Sessions accept any coroutine with the same signature, which is how tests
substitute an in-memory socket.
"""
from __future__ import annotations

import logging
import ssl
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, Union

import aiohttp
import certifi
import websockets

from .errors import RelayConnectionError

logger = logging.getLogger(__name__)


class WebSocketLike(Protocol):
    """The subset of a websockets client connection a session uses."""

    async def send(self, message: Union[str, bytes]) -> None: ...

    async def recv(self) -> Union[str, bytes]: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


Connector = Callable[..., Awaitable[WebSocketLike]]


def build_ssl_context(wss_pem: str = "", insecure: bool = False) -> ssl.SSLContext:
    """TLS context shared by a provider's HTTP session and its websockets.

    Trust order: WSS_PEM bundle, then certifi, then the system store.
    """
    if insecure:
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        logger.warning("TLS verification DISABLED for vendor connections")
        return ctx

    ctx = ssl.create_default_context(purpose=ssl.Purpose.SERVER_AUTH)
    if wss_pem and _load_custom_ca(ctx, wss_pem):
        return ctx

    try:
        ctx.load_verify_locations(cafile=certifi.where())
    except (OSError, ssl.SSLError) as e:
        logger.warning("TLS: certifi bundle unusable (%s); using system CAs", e)
    return ctx


def _load_custom_ca(ctx: ssl.SSLContext, path: str) -> bool:
    try:
        with open(path, "rb") as f:
            head = f.read(4096)
        if b"PRIVATE KEY" in head:
            raise ValueError("WSS_PEM looks like a private key; provide a CA bundle")
        ctx.load_verify_locations(cafile=path)
    except (OSError, ValueError, ssl.SSLError) as e:
        logger.warning("TLS: failed to load %s: %s (trying certifi)", path, e)
        return False
    logger.info("TLS: custom CA from %s", path)
    return True


def make_http_session(
    headers: Optional[Mapping[str, str]] = None,
    ssl_ctx: Optional[ssl.SSLContext] = None,
) -> aiohttp.ClientSession:
    """Persistent HTTP session for one provider."""
    conn = aiohttp.TCPConnector(ssl=ssl_ctx or build_ssl_context())
    return aiohttp.ClientSession(
        connector=conn,
        headers=dict(headers or {}),
        timeout=aiohttp.ClientTimeout(total=60, connect=10, sock_read=30),
    )


def http_timeout(timeout: Optional[float]) -> Optional[aiohttp.ClientTimeout]:
    if timeout is None or timeout <= 0:
        return None
    return aiohttp.ClientTimeout(total=timeout)


async def connect_websocket(
    url: str,
    *,
    headers: Optional[Mapping[str, str]] = None,
    ssl_ctx: Optional[ssl.SSLContext] = None,
    open_timeout: Optional[float] = None,
) -> WebSocketLike:
    """Open a client websocket, passing headers whichever way the installed
    websockets release accepts them."""
    kwargs: dict[str, Any] = {"max_size": None, "open_timeout": open_timeout}
    if url.startswith("wss://"):
        kwargs["ssl"] = ssl_ctx or build_ssl_context()

    if not headers:
        return await _open(url, kwargs)

    for key in ("additional_headers", "extra_headers"):
        try:
            return await _open(url, {**kwargs, key: dict(headers)})
        except TypeError:
            pass

    raise RelayConnectionError("Cannot pass headers to websockets, upgrade: pip install 'websockets>=12'")


async def _open(url: str, kwargs: dict[str, Any]) -> WebSocketLike:
    try:
        return await websockets.connect(url, **kwargs)
    except TypeError:
        raise
    except (OSError, websockets.InvalidHandshake, websockets.InvalidURI) as e:
        raise RelayConnectionError(f"websocket connect failed: {e}") from e
