"""
Audio Manager
==============
Handles PyAudio microphone capture and speaker playback.
  - Input: 16kHz 16-bit mono blocks, handed to the asyncio loop thread-safely
  - Output: 24kHz float32 stream rendering a timeline of scheduled units

The output stream is the session's clock: its time is the number of
frames rendered so far divided by the sample rate, and units start at
exact frames on that clock. This is what makes gapless scheduling work.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Optional

import numpy as np

from playback_scheduler import PlaybackUnit
from settings import INPUT_SAMPLE_RATE, MIC_BLOCK_SIZE, OUTPUT_SAMPLE_RATE

logger = logging.getLogger(__name__)

CHANNELS = 1
OUTPUT_BUFFER_FRAMES = 1024   # ~43ms at 24kHz


# ─── Timeline Mixer ───────────────────────────────────────────────────────────

class TimelineMixer:
    """
    Sums every scheduled unit into fixed-size output blocks.
    Thread-safe: render() runs on PyAudio's callback thread while
    schedule()/stop() are called from the event loop.
    """

    def __init__(self, sample_rate: int = OUTPUT_SAMPLE_RATE):
        self.sample_rate = sample_rate
        self._lock = threading.Lock()
        self._frames_rendered = 0
        self._units: dict[int, PlaybackUnit] = {}

    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / float(self.sample_rate)

    def schedule(self, unit: PlaybackUnit):
        with self._lock:
            self._units[unit.unit_id] = unit

    def stop(self, unit: PlaybackUnit):
        with self._lock:
            self._units.pop(unit.unit_id, None)

    def stop_all(self):
        with self._lock:
            self._units.clear()

    def render(self, frame_count: int) -> tuple[np.ndarray, list[PlaybackUnit]]:
        """Mix the next block. Returns (samples, units that finished in it)."""
        out = np.zeros(frame_count, dtype=np.float32)
        ended = []
        with self._lock:
            block_start = self._frames_rendered
            block_end = block_start + frame_count
            for unit in list(self._units.values()):
                unit_start = int(round(unit.start_time * self.sample_rate))
                unit_end = unit_start + len(unit.samples)
                lo = max(block_start, unit_start)
                hi = min(block_end, unit_end)
                if hi > lo:
                    out[lo - block_start:hi - block_start] += unit.samples[lo - unit_start:hi - unit_start]
                if unit_end <= block_end:
                    del self._units[unit.unit_id]
                    ended.append(unit)
            self._frames_rendered = block_end
        np.clip(out, -1.0, 1.0, out=out)
        return out, ended


# ─── Audio Manager ────────────────────────────────────────────────────────────

class AudioManager:
    """
    Owns the PyAudio instance and both streams for one session.
    Implements the scheduler's sink interface via its mixer.
    """

    def __init__(
        self,
        input_rate: int = INPUT_SAMPLE_RATE,
        output_rate: int = OUTPUT_SAMPLE_RATE,
        block_size: int = MIC_BLOCK_SIZE,
    ):
        self.input_rate = input_rate
        self.block_size = block_size
        self.mixer = TimelineMixer(output_rate)
        self._pa = None
        self._input_stream = None
        self._output_stream = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._on_block: Optional[Callable[[bytes], None]] = None
        self._on_unit_ended: Optional[Callable[[PlaybackUnit], None]] = None
        self._is_running = False

    # ── Initialization ────────────────────────────────────────────────────────

    def initialize(
        self,
        loop: asyncio.AbstractEventLoop,
        on_block: Callable[[bytes], None],
        on_unit_ended: Callable[[PlaybackUnit], None],
    ):
        """Open mic and speaker. Raises OSError if a device is unavailable."""
        import pyaudio
        self._loop = loop
        self._on_block = on_block
        self._on_unit_ended = on_unit_ended
        self._pa = pyaudio.PyAudio()
        try:
            self._open_input_stream()
            self._open_output_stream()
        except Exception:
            self.shutdown()
            raise
        self._is_running = True
        logger.info("AudioManager initialized")

    def _open_input_stream(self):
        import pyaudio
        self._input_stream = self._pa.open(
            format=pyaudio.paInt16,
            channels=CHANNELS,
            rate=self.input_rate,
            input=True,
            frames_per_buffer=self.block_size,
            stream_callback=self._input_callback,
            start=False,
        )

    def _open_output_stream(self):
        import pyaudio
        self._output_stream = self._pa.open(
            format=pyaudio.paFloat32,
            channels=CHANNELS,
            rate=self.mixer.sample_rate,
            output=True,
            frames_per_buffer=OUTPUT_BUFFER_FRAMES,
            stream_callback=self._output_callback,
            start=False,
        )

    def start(self):
        """Begin streaming; called when the live channel is ready."""
        for stream in (self._input_stream, self._output_stream):
            if stream is not None and not stream.is_active():
                stream.start_stream()

    # ── Callbacks (PyAudio thread) ────────────────────────────────────────────

    def _input_callback(self, in_data, frame_count, time_info, status):
        import pyaudio
        if self._is_running and in_data:
            self._post(self._on_block, in_data)
        return (None, pyaudio.paContinue)

    def _output_callback(self, in_data, frame_count, time_info, status):
        import pyaudio
        samples, ended = self.mixer.render(frame_count)
        for unit in ended:
            self._post(self._on_unit_ended, unit)
        return (samples.tobytes(), pyaudio.paContinue)

    def _post(self, callback, arg):
        if callback is None or self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(callback, arg)
        except RuntimeError:
            pass  # loop already closed during shutdown

    # ── Sink Interface ────────────────────────────────────────────────────────

    def current_time(self) -> float:
        return self.mixer.current_time()

    def schedule(self, unit: PlaybackUnit):
        self.mixer.schedule(unit)

    def stop(self, unit: PlaybackUnit):
        self.mixer.stop(unit)

    # ── Cleanup ───────────────────────────────────────────────────────────────

    def shutdown(self):
        """Release both streams and PyAudio. Safe to call repeatedly."""
        self._is_running = False
        self.mixer.stop_all()
        for name in ("_input_stream", "_output_stream"):
            stream = getattr(self, name)
            setattr(self, name, None)
            if stream is None:
                continue
            try:
                if stream.is_active():
                    stream.stop_stream()
                stream.close()
            except Exception as e:
                logger.warning(f"Error closing {name.strip('_')}: {e}")
        if self._pa is not None:
            pa, self._pa = self._pa, None
            pa.terminate()
            logger.info("AudioManager shut down")
