from __future__ import annotations

import argparse
import asyncio
import base64
import binascii
import hashlib
import logging
import sys
from typing import AsyncIterator, Iterable

from ttsrelay.config import RelayConfig, load_config
from ttsrelay.logging_utils import setup_logging
from ttsrelay.tts.base import AudioChunk
from ttsrelay.tts.factory import create_relay


logger = logging.getLogger(__name__)


def _sha256_prefix(s: str, n: int = 12) -> str:
    if not s:
        return ""
    return hashlib.sha256(s.encode("utf-8")).hexdigest()[:n]


def _log_config(cfg: RelayConfig) -> None:
    values = cfg.redacted()
    values["minimax_api_key_sha256_12"] = _sha256_prefix(cfg.minimax_api_key)
    logging.getLogger("ttsrelay").info("Config: %s", " ".join(f"{k}={v}" for k, v in values.items()))


def decode_audio(chunk: AudioChunk) -> bytes:
    """Vendor-encoded payload -> raw audio bytes."""
    if not chunk.data:
        return b""
    try:
        if chunk.encoding == "hex":
            return bytes.fromhex(chunk.data)
        return base64.b64decode(chunk.data)
    except (ValueError, binascii.Error):
        logger.warning("Chunk %s: undecodable %s payload, skipped", chunk.id, chunk.encoding)
        return b""


async def _typed(words: Iterable[str], delay_s: float) -> AsyncIterator[str]:
    """Feed text word by word, the way an LLM streams tokens."""
    for word in words:
        if delay_s > 0:
            await asyncio.sleep(delay_s)
        yield word


def _split_words(text: str) -> list[str]:
    words = text.split(" ")
    return [w + " " for w in words[:-1]] + words[-1:]


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Synthesize text through one TTS vendor.")
    parser.add_argument("text", nargs="*", help="Text to speak (default: read stdin)")
    parser.add_argument("-p", "--provider", required=True, help="elevenlabs | minimax | tencent")
    parser.add_argument(
        "-m", "--mode", choices=("once", "stream", "incremental"), default="stream",
        help="one-shot, server-driven stream, or word-by-word incremental",
    )
    parser.add_argument("-o", "--output", default="out.audio", help="Where to write the decoded audio")
    parser.add_argument("--voice")
    parser.add_argument("--model")
    parser.add_argument("--format")
    parser.add_argument("--sample-rate", type=int)
    parser.add_argument("--rate", type=float)
    parser.add_argument("--word-delay", type=float, default=0.05, help="Seconds between words in incremental mode")
    parser.add_argument("--env-file", default=None)
    parser.add_argument("--log-level", default=None, help="Root log level (default: LOG_LEVEL or INFO)")
    parser.add_argument("-v", "--verbose", action="store_true", help="DEBUG logging for ttsrelay only")
    return parser.parse_args(argv)


async def _async_main(args: argparse.Namespace) -> int:
    """Async entry point: loads config, builds the relay, runs one call."""
    setup_logging(args.log_level, package_debug=True if args.verbose else None)
    cfg = load_config(args.env_file)
    logging.getLogger("ttsrelay").info("=== ttsrelay demo starting (config dump below, secrets masked) ===")
    _log_config(cfg)

    text = " ".join(args.text) if args.text else sys.stdin.read().strip()
    if not text:
        logger.error("No text given")
        return 2

    params = {
        "voice": args.voice,
        "model": args.model,
        "format": args.format,
        "sample_rate": args.sample_rate,
        "rate": args.rate,
    }
    params = {k: v for k, v in params.items() if v is not None}

    total = 0
    chunks = 0
    async with create_relay(cfg) as relay:
        with open(args.output, "wb") as out:
            if args.mode == "once":
                result = await relay.synthesize(args.provider, {**params, "text": text})
                audio = decode_audio(result)
                out.write(audio)
                total, chunks = len(audio), 1
            else:
                if args.mode == "stream":
                    stream = relay.synthesize_stream(args.provider, {**params, "text": text})
                else:
                    stream = relay.synthesize_incremental(
                        args.provider, _typed(_split_words(text), args.word_delay), params,
                    )
                async for chunk in stream:
                    audio = decode_audio(chunk)
                    out.write(audio)
                    total += len(audio)
                    chunks += 1
                    if chunk.metadata.get("subtitles"):
                        logger.info("Subtitles: %s", chunk.metadata["subtitles"])

    logger.info("Wrote %d bytes of audio from %d chunks to %s", total, chunks, args.output)
    return 0


def main() -> None:
    args = _parse_args()
    try:
        sys.exit(asyncio.run(_async_main(args)))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
