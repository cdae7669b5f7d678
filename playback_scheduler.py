"""
Playback Scheduler
===================
Decodes the agent's synthesized speech (16-bit PCM, 24kHz mono) and lays
it out on a single gapless timeline against the output device clock.

Each chunk starts at max(next_time, now) and pushes the cursor forward by
its own duration, so back-to-back chunks never overlap and never leave a
gap even though they arrive at irregular intervals. An interruption
(barge-in) stops everything still scheduled and pulls the cursor back to
"now".
"""

from __future__ import annotations

import base64
import binascii
import itertools
import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol, Union

import numpy as np

from settings import OUTPUT_SAMPLE_RATE

logger = logging.getLogger(__name__)

_unit_ids = itertools.count(1)


class AudioSink(Protocol):
    """Output device as seen by the scheduler (see AudioManager)."""

    def current_time(self) -> float: ...

    def schedule(self, unit: "PlaybackUnit") -> None: ...

    def stop(self, unit: "PlaybackUnit") -> None: ...


@dataclass(eq=False)
class PlaybackUnit:
    samples: np.ndarray          # float32, mono, [-1, 1]
    sample_rate: int
    start_time: float
    unit_id: int = field(default_factory=lambda: next(_unit_ids))

    @property
    def duration(self) -> float:
        return len(self.samples) / float(self.sample_rate)

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


class DecodeError(ValueError):
    pass


def decode_pcm16(chunk: Union[bytes, str]) -> np.ndarray:
    """Raw or base64-encoded little-endian int16 PCM -> float32 samples."""
    if isinstance(chunk, str):
        try:
            chunk = base64.b64decode(chunk, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeError(f"invalid base64 audio: {e}") from e
    if len(chunk) % 2:
        raise DecodeError(f"odd PCM byte count ({len(chunk)})")
    pcm = np.frombuffer(chunk, dtype="<i2")
    return pcm.astype(np.float32) / 32768.0


class PlaybackScheduler:
    def __init__(self, sink: AudioSink, sample_rate: int = OUTPUT_SAMPLE_RATE):
        self.sink = sink
        self.sample_rate = sample_rate
        self._next_time = 0.0
        self._live: dict[int, PlaybackUnit] = {}

    # ── Public API ────────────────────────────────────────────────────────────

    @property
    def next_time(self) -> float:
        return self._next_time

    @property
    def live_units(self) -> list[PlaybackUnit]:
        return list(self._live.values())

    @property
    def is_playing(self) -> bool:
        return bool(self._live)

    def enqueue(self, chunk: Union[bytes, str]) -> Optional[PlaybackUnit]:
        """Decode and schedule one chunk. Undecodable chunks are dropped."""
        try:
            samples = decode_pcm16(chunk)
        except DecodeError as e:
            logger.warning(f"Dropping audio chunk: {e}")
            return None
        if samples.size == 0:
            return None

        start = max(self._next_time, self.sink.current_time())
        unit = PlaybackUnit(samples=samples, sample_rate=self.sample_rate, start_time=start)
        self._live[unit.unit_id] = unit
        self.sink.schedule(unit)
        self._next_time = start + unit.duration
        return unit

    def on_unit_ended(self, unit: PlaybackUnit):
        """Natural end of playback; the unit leaves the live set."""
        self._live.pop(unit.unit_id, None)

    def cancel_all(self):
        """Hard-stop everything still scheduled (barge-in or teardown)."""
        units = list(self._live.values())
        self._live.clear()
        for unit in units:
            try:
                self.sink.stop(unit)
            except Exception as e:
                logger.warning(f"Failed to stop playback unit {unit.unit_id}: {e}")
        self._next_time = self.sink.current_time()
        if units:
            logger.info(f"Playback cancelled ({len(units)} pending units)")
