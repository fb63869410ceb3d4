"""
TTSRelay: one facade over every registered provider.

    relay = TTSRelay()
    relay.register_provider(MinimaxProvider(api_key=..., group_id=...))
    relay.use(LoggingMiddleware())

    result = await relay.synthesize("minimax", {"text": "Hello.", "voice": "male-qn-qingse"})

    async for chunk in relay.synthesize_stream("minimax", {"text": "Hello."}):
        ...

    async for chunk in relay.synthesize_incremental("tencent", llm_tokens(), {"voice": "101001"}):
        ...

Parameters may be a SynthesisParams or a plain mapping; options may be a
SynthesisOptions, a mapping, or None. All three operations produce
AudioChunk-shaped values {id, data, final, metadata}.
"""
from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Mapping, Optional, Union

from .errors import ParameterError, ProviderNotFoundError
from .ids import IdGenerator
from .middleware import CallContext, Middleware, aclose_stream, run_chain
from .tts.base import (
    AudioChunk,
    AudioResult,
    SynthesisOptions,
    SynthesisParams,
    TextSource,
    TTSProvider,
)

logger = logging.getLogger(__name__)

ParamsLike = Union[SynthesisParams, Mapping[str, Any]]
OptionsLike = Union[SynthesisOptions, Mapping[str, Any], None]


class TTSRelay:
    """Provider registry + middleware chain + the three synthesis operations.

    Args:
        ids: Request id source (one per facade, never process-global).
        default_options: Applied when a call passes no options.
    """

    def __init__(
        self,
        *,
        ids: Optional[IdGenerator] = None,
        default_options: Optional[SynthesisOptions] = None,
    ) -> None:
        self._ids = ids or IdGenerator()
        self._providers: dict[str, TTSProvider] = {}
        self._middleware: list[Middleware] = []
        self._default_options = default_options or SynthesisOptions()

    @property
    def ids(self) -> IdGenerator:
        return self._ids

    def register_provider(self, provider: TTSProvider, name: Optional[str] = None) -> None:
        key = name or provider.name
        if key in self._providers:
            logger.warning("Replacing provider %s", key)
        self._providers[key] = provider
        logger.debug("Registered provider %s", key)

    def use(self, middleware: Middleware) -> "TTSRelay":
        self._middleware.append(middleware)
        return self

    def list_providers(self) -> list[str]:
        return list(self._providers)

    def get_provider(self, name: str) -> TTSProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderNotFoundError(name)
        return provider

    # ──────────────────────────────────────────────
    # Operations
    # ──────────────────────────────────────────────

    async def synthesize(
        self,
        provider: str,
        params: ParamsLike,
        options: OptionsLike = None,
    ) -> AudioResult:
        """One-shot synthesis: await the full result."""
        adapter = self.get_provider(provider)
        context = self._context(adapter, "synthesize", params, options)
        adapter.validate(context.params)

        async def handler() -> AudioResult:
            return await adapter.synthesize(context.params, context.options)

        return await run_chain(self._middleware, context, handler)

    async def synthesize_stream(
        self,
        provider: str,
        params: ParamsLike,
        options: OptionsLike = None,
    ) -> AsyncIterator[AudioChunk]:
        """Server-driven streaming: the vendor decides chunk boundaries."""
        adapter = self.get_provider(provider)
        context = self._context(adapter, "synthesize_stream", params, options)
        adapter.validate(context.params)

        async def handler() -> AsyncIterator[AudioChunk]:
            return adapter.synthesize_stream(context.params, context.options)

        stream = await run_chain(self._middleware, context, handler)
        try:
            async for chunk in stream:
                yield chunk
        finally:
            await aclose_stream(stream)

    async def synthesize_incremental(
        self,
        provider: str,
        text_stream: TextSource,
        params: Optional[ParamsLike] = None,
        options: OptionsLike = None,
    ) -> AsyncIterator[AudioChunk]:
        """Caller-driven incremental synthesis: text streams in, audio streams out.

        params must not carry text; it comes from text_stream.
        """
        if text_stream is None:
            raise ParameterError("text_stream is required")
        raw = params if params is not None else {}
        if isinstance(raw, Mapping):
            raw = {"text": "", **raw}
        adapter = self.get_provider(provider)
        context = self._context(adapter, "synthesize_incremental", raw, options, text_stream)
        if context.params.text:
            raise ParameterError("Incremental params must not include text")
        adapter.validate(context.params)

        async def handler() -> AsyncIterator[AudioChunk]:
            return adapter.synthesize_incremental(text_stream, context.params, context.options)

        stream = await run_chain(self._middleware, context, handler)
        try:
            async for chunk in stream:
                yield chunk
        finally:
            await aclose_stream(stream)

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    async def warm_up(self) -> None:
        for name, provider in self._providers.items():
            try:
                await provider.warm_up()
            except Exception:
                logger.warning("Failed to warm up %s", name, exc_info=True)

    async def close(self) -> None:
        for name, provider in self._providers.items():
            try:
                await provider.close()
            except Exception:
                logger.warning("Failed to close %s", name, exc_info=True)

    async def __aenter__(self) -> "TTSRelay":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def _context(
        self,
        adapter: TTSProvider,
        operation: str,
        params: ParamsLike,
        options: OptionsLike,
        text_stream: Optional[TextSource] = None,
    ) -> CallContext:
        return CallContext(
            provider=adapter.name,
            operation=operation,
            params=SynthesisParams.coerce(params),
            options=self._coerce_options(options),
            request_id=self._ids.next_id(),
            text_stream=text_stream,
        )

    def _coerce_options(self, options: OptionsLike) -> SynthesisOptions:
        if options is None:
            d = self._default_options
            return SynthesisOptions(d.timeout, d.max_retries, d.cancel, dict(d.headers))
        if isinstance(options, SynthesisOptions):
            return options
        if not isinstance(options, Mapping):
            raise ParameterError(f"Options must be a mapping, got {type(options).__name__}")
        known = {"timeout", "max_retries", "cancel", "headers"}
        unknown = set(options) - known
        if unknown:
            raise ParameterError(f"Unknown option(s): {', '.join(sorted(unknown))}")
        headers = options.get("headers") or {}
        timeout = options.get("timeout", self._default_options.timeout)
        if timeout is not None and timeout < 0:
            raise ParameterError("timeout must be >= 0")
        return SynthesisOptions(
            timeout=timeout,
            max_retries=int(options.get("max_retries", self._default_options.max_retries)),
            cancel=options.get("cancel"),
            headers=dict(headers),
        )
