"""
Session-level metrics.

One SessionMetrics is filled in by the streaming driver for every
server-stream or incremental call and logged once when the session ends:
  - Units and characters sent
  - Frames and audio payload received
  - Time to first inbound frame
  - Outcome (completed / failed / cancelled)
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class SessionMetrics:
    """Per-session counters for a single vendor connection."""

    provider: str = ""
    session_id: str = ""
    start_time: float = field(default_factory=time.monotonic)
    end_time: float = 0.0
    first_frame_time: float = 0.0

    units_sent: int = 0
    chars_sent: int = 0
    frames_received: int = 0
    audio_frames: int = 0
    audio_payload_chars: int = 0
    subtitle_frames: int = 0

    outcome: str = "open"
    error: str = ""

    @property
    def duration_s(self) -> float:
        end = self.end_time or time.monotonic()
        return end - self.start_time

    @property
    def first_frame_ms(self) -> float:
        if self.first_frame_time <= 0:
            return 0.0
        return (self.first_frame_time - self.start_time) * 1000.0

    def record_unit(self, unit: str) -> None:
        self.units_sent += 1
        self.chars_sent += len(unit)

    def record_frame(self, is_audio: bool, payload_len: int = 0, is_subtitle: bool = False) -> None:
        if self.frames_received == 0:
            self.first_frame_time = time.monotonic()
        self.frames_received += 1
        if is_audio:
            self.audio_frames += 1
            self.audio_payload_chars += payload_len
        if is_subtitle:
            self.subtitle_frames += 1

    def finalize(self, outcome: str, error: BaseException | None = None) -> None:
        if self.end_time:
            return
        self.end_time = time.monotonic()
        self.outcome = outcome
        if error is not None:
            self.error = f"{type(error).__name__}: {error}"

    def summary(self) -> dict:
        return {
            "provider": self.provider,
            "session_id": self.session_id,
            "duration_s": round(self.duration_s, 2),
            "first_frame_ms": round(self.first_frame_ms, 1),
            "units_sent": self.units_sent,
            "chars_sent": self.chars_sent,
            "frames_received": self.frames_received,
            "audio_frames": self.audio_frames,
            "audio_payload_chars": self.audio_payload_chars,
            "subtitle_frames": self.subtitle_frames,
            "outcome": self.outcome,
            "error": self.error,
        }

    def log_summary(self) -> None:
        s = self.summary()
        log = logger.info if s["outcome"] == "completed" else logger.warning
        log(
            "SESSION_METRICS: provider=%s session=%s dur=%.2fs first_frame=%.0fms "
            "units=%d chars=%d frames=%d audio=%d subtitles=%d outcome=%s%s",
            s["provider"], s["session_id"], s["duration_s"], s["first_frame_ms"],
            s["units_sent"], s["chars_sent"], s["frames_received"],
            s["audio_frames"], s["subtitle_frames"], s["outcome"],
            f" error={s['error']}" if s["error"] else "",
        )
