"""
Provider factory.

Builds a TTSRelay with every provider whose credentials are configured.
Providers without credentials are skipped with a warning so a partially
configured deployment still starts.

Usage:
    cfg = load_config()
    relay = create_relay(cfg)
    async with relay:
        result = await relay.synthesize("minimax", {"text": "Hello."})
"""
from __future__ import annotations

import logging
from typing import Optional

from ..config import RelayConfig
from ..ids import IdGenerator
from ..middleware import LoggingMiddleware
from ..relay import TTSRelay
from ..transport import Connector, build_ssl_context
from .base import SynthesisOptions, TTSProvider
from .elevenlabs import ElevenLabsProvider
from .minimax import MinimaxProvider
from .tencent import TencentProvider

logger = logging.getLogger(__name__)


def create_providers(
    cfg: RelayConfig,
    *,
    ids: Optional[IdGenerator] = None,
    connector: Optional[Connector] = None,
) -> list[TTSProvider]:
    """Instantiate every provider that has credentials in cfg."""
    ids = ids or IdGenerator()
    ssl_ctx = build_ssl_context(cfg.wss_pem, cfg.wss_insecure)
    common = dict(ids=ids, connector=connector, ssl_ctx=ssl_ctx, max_chars=cfg.segment_max_chars)
    providers: list[TTSProvider] = []

    if cfg.has_elevenlabs:
        providers.append(ElevenLabsProvider(
            api_key=cfg.elevenlabs_api_key,
            model=cfg.elevenlabs_model,
            inline_auth=cfg.elevenlabs_inline_auth,
            **common,
        ))
    else:
        logger.warning("ElevenLabs TTS requested but ELEVENLABS_API_KEY not set, skipping")

    if cfg.has_minimax:
        providers.append(MinimaxProvider(
            api_key=cfg.minimax_api_key,
            group_id=cfg.minimax_group_id,
            **common,
        ))
    else:
        logger.warning("Minimax TTS requested but MINIMAX_API_KEY/MINIMAX_GROUP_ID not set, skipping")

    if cfg.has_tencent:
        providers.append(TencentProvider(
            app_id=cfg.tencent_app_id,
            secret_id=cfg.tencent_secret_id,
            secret_key=cfg.tencent_secret_key,
            **common,
        ))
    else:
        logger.warning("Tencent TTS requested but TENCENT_APP_ID/SECRET_ID/SECRET_KEY not set, skipping")

    return providers


def create_relay(
    cfg: RelayConfig,
    *,
    ids: Optional[IdGenerator] = None,
    connector: Optional[Connector] = None,
    with_logging: bool = True,
) -> TTSRelay:
    """Build a TTSRelay from config.

    Raises ValueError when no provider has credentials.
    """
    ids = ids or IdGenerator()
    providers = create_providers(cfg, ids=ids, connector=connector)
    if not providers:
        raise ValueError(
            "No TTS provider configured: set ELEVENLABS_API_KEY, "
            "MINIMAX_API_KEY + MINIMAX_GROUP_ID, or TENCENT_APP_ID + TENCENT_SECRET_ID + TENCENT_SECRET_KEY"
        )

    defaults = SynthesisOptions(
        timeout=cfg.timeout_s or None,
        max_retries=cfg.max_retries,
    )
    relay = TTSRelay(ids=ids, default_options=defaults)
    for provider in providers:
        relay.register_provider(provider)
    if with_logging:
        relay.use(LoggingMiddleware())

    logger.info("TTS relay ready: providers=%s", ", ".join(relay.list_providers()))
    return relay
