"""
Session Settings
=================
Immutable inputs to a live interview session:
  - SessionConfig   (what the setup form produces: role, seniority, topics)
  - EngineSettings  (how the engine talks to hardware and the remote agent)

EngineSettings are read from the environment (.env is loaded by main.py).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

# ─── Audio / Video Constants ──────────────────────────────────────────────────

INPUT_SAMPLE_RATE = 16000    # Remote agent expects 16kHz mono PCM
OUTPUT_SAMPLE_RATE = 24000   # Remote agent speaks 24kHz mono PCM
MIC_BLOCK_SIZE = 4096        # samples per microphone block (~256ms)
VIDEO_FPS = 1.0
JPEG_QUALITY = 60
CAMERA_WIDTH = 1280
CAMERA_HEIGHT = 720
CUE_DURATION_SECONDS = 5.0

LIVE_MODEL = "gemini-2.5-flash-native-audio-preview-09-2025"
LIVE_VOICE = "Puck"
ANALYSIS_MODEL = "gemini-2.5-flash"


# ─── Interview Configuration ──────────────────────────────────────────────────

class Seniority(Enum):
    JUNIOR = "Junior"
    MID = "Mid-Level"
    SENIOR = "Senior"
    LEAD = "Lead"

    @classmethod
    def parse(cls, value: str) -> "Seniority":
        """Accept either the enum name or its display label, case-insensitively."""
        key = value.strip().lower()
        for member in cls:
            if key in (member.name.lower(), member.value.lower()):
                return member
        if key == "mid":
            return cls.MID
        raise ValueError(f"Unknown seniority: {value!r}")


@dataclass(frozen=True)
class SessionConfig:
    role: str
    seniority: Seniority
    focus_topics: frozenset[str] = field(default_factory=frozenset)
    company: Optional[str] = None

    @classmethod
    def create(
        cls,
        role: str,
        seniority: Seniority | str,
        focus_topics: Iterable[str] = (),
        company: Optional[str] = None,
    ) -> "SessionConfig":
        role = role.strip()
        if not role:
            raise ValueError("role must not be empty")
        if isinstance(seniority, str):
            seniority = Seniority.parse(seniority)
        topics = frozenset(t.strip() for t in focus_topics if t and t.strip())
        company = company.strip() if company and company.strip() else None
        return cls(role=role, seniority=seniority, focus_topics=topics, company=company)

    def sorted_topics(self) -> list[str]:
        return sorted(self.focus_topics, key=str.lower)


# ─── Engine Settings ──────────────────────────────────────────────────────────

class FramePolicy(Enum):
    SKIP = "skip"          # drop a tick while the previous frame is in flight
    DEGRADE = "degrade"    # drop, and stretch the capture period until encodes catch up


@dataclass(frozen=True)
class EngineSettings:
    api_key: str = ""
    live_model: str = LIVE_MODEL
    voice_name: str = LIVE_VOICE
    analysis_model: str = ANALYSIS_MODEL
    input_sample_rate: int = INPUT_SAMPLE_RATE
    output_sample_rate: int = OUTPUT_SAMPLE_RATE
    mic_block_size: int = MIC_BLOCK_SIZE
    video_fps: float = VIDEO_FPS
    jpeg_quality: int = JPEG_QUALITY
    camera_width: int = CAMERA_WIDTH
    camera_height: int = CAMERA_HEIGHT
    cue_duration: float = CUE_DURATION_SECONDS
    frame_policy: FramePolicy = FramePolicy.SKIP
    max_frame_interval: float = 8.0

    @property
    def frame_interval(self) -> float:
        return 1.0 / self.video_fps

    @classmethod
    def from_env(cls) -> "EngineSettings":
        env = os.environ
        return cls(
            api_key=env.get("GEMINI_API_KEY", ""),
            live_model=env.get("LIVE_MODEL", LIVE_MODEL),
            voice_name=env.get("LIVE_VOICE", LIVE_VOICE),
            analysis_model=env.get("ANALYSIS_MODEL", ANALYSIS_MODEL),
            video_fps=_positive_float(env.get("VIDEO_FPS"), VIDEO_FPS),
            jpeg_quality=min(100, max(1, int(env.get("JPEG_QUALITY", JPEG_QUALITY)))),
            cue_duration=_positive_float(env.get("CUE_DURATION_SECONDS"), CUE_DURATION_SECONDS),
            frame_policy=FramePolicy(env.get("FRAME_POLICY", FramePolicy.SKIP.value).lower()),
        )


def _positive_float(raw: Optional[str], default: float) -> float:
    if raw is None or not raw.strip():
        return default
    value = float(raw)
    if value <= 0:
        raise ValueError(f"Expected a positive number, got {raw!r}")
    return value
