from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _env_int(key: str, default: int) -> int:
    v = os.getenv(key)
    if v is None or str(v).strip() == "":
        return default
    try:
        return int(v)
    except Exception as e:
        raise ValueError(f"{key} must be an int, got {v!r}") from e


def _env_float(key: str, default: float) -> float:
    v = os.getenv(key)
    if v is None or str(v).strip() == "":
        return default
    try:
        return float(v)
    except Exception as e:
        raise ValueError(f"{key} must be a float, got {v!r}") from e


def _env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "y", "on")


def _env_str(key: str, default: str = "") -> str:
    return os.getenv(key, default).strip()


def mask_secret(s: str, prefix: int = 4, suffix: int = 4) -> str:
    s = (s or "").strip()
    if not s:
        return ""
    if len(s) <= prefix + suffix:
        return "*" * len(s)
    return f"{s[:prefix]}...{s[-suffix:]}"


# Masked in config dumps; _HIDDEN_FIELDS only report whether they are set.
_MASKED_FIELDS = ("elevenlabs_api_key", "minimax_api_key", "tencent_secret_id")
_HIDDEN_FIELDS = ("tencent_secret_key",)


@dataclass(frozen=True)
class RelayConfig:
    elevenlabs_api_key: str = ""
    elevenlabs_inline_auth: bool = False
    elevenlabs_model: str = "eleven_turbo_v2_5"

    minimax_api_key: str = ""
    minimax_group_id: str = ""

    tencent_app_id: str = ""
    tencent_secret_id: str = ""
    tencent_secret_key: str = ""

    timeout_s: float = 30.0
    max_retries: int = 0
    segment_max_chars: int = 50

    wss_pem: str = ""
    wss_insecure: bool = False

    @property
    def has_elevenlabs(self) -> bool:
        return bool(self.elevenlabs_api_key)

    @property
    def has_minimax(self) -> bool:
        return bool(self.minimax_api_key and self.minimax_group_id)

    @property
    def has_tencent(self) -> bool:
        return bool(self.tencent_app_id and self.tencent_secret_id and self.tencent_secret_key)

    def redacted(self) -> dict[str, object]:
        """Field values safe to log."""
        out: dict[str, object] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in _MASKED_FIELDS:
                value = mask_secret(value)
            elif f.name in _HIDDEN_FIELDS:
                value = "<set>" if value else ""
            out[f.name] = value
        return out


def load_config(env_file: str | None = None) -> RelayConfig:
    """Load config from .env + environment.

    Precedence: real environment wins over .env values.
    """
    if env_file:
        load_dotenv(env_file, override=False)
    else:
        load_dotenv(override=False)

    timeout_s = _env_float("TTS_TIMEOUT_S", 30.0)
    if timeout_s < 0:
        raise ValueError("TTS_TIMEOUT_S must be >= 0")

    max_retries = _env_int("TTS_MAX_RETRIES", 0)
    if max_retries > 0:
        logger.warning("TTS_MAX_RETRIES=%d is carried on each call but retries are not performed", max_retries)

    segment_max_chars = _env_int("TTS_SEGMENT_MAX_CHARS", 50)
    if segment_max_chars < 1:
        raise ValueError("TTS_SEGMENT_MAX_CHARS must be >= 1")

    wss_pem = _env_str("WSS_PEM").strip('"').strip("'")
    if wss_pem and not os.path.isabs(wss_pem):
        wss_pem = str(Path(wss_pem).expanduser().resolve())

    cfg = RelayConfig(
        elevenlabs_api_key=_env_str("ELEVENLABS_API_KEY"),
        elevenlabs_inline_auth=_env_bool("ELEVENLABS_INLINE_AUTH", False),
        elevenlabs_model=_env_str("ELEVENLABS_MODEL", "eleven_turbo_v2_5") or "eleven_turbo_v2_5",
        minimax_api_key=_env_str("MINIMAX_API_KEY"),
        minimax_group_id=_env_str("MINIMAX_GROUP_ID"),
        tencent_app_id=_env_str("TENCENT_APP_ID"),
        tencent_secret_id=_env_str("TENCENT_SECRET_ID"),
        tencent_secret_key=_env_str("TENCENT_SECRET_KEY"),
        timeout_s=timeout_s,
        max_retries=max_retries,
        segment_max_chars=segment_max_chars,
        wss_pem=wss_pem,
        wss_insecure=_env_bool("TTS_WSS_INSECURE", False),
    )

    if cfg.minimax_api_key and not cfg.minimax_group_id:
        logger.warning("MINIMAX_API_KEY is set but MINIMAX_GROUP_ID is not; minimax will be unavailable")
    if cfg.wss_insecure:
        logger.warning("TTS_WSS_INSECURE=1: TLS verification is disabled for vendor connections")

    return cfg
