"""
Capture Encoder
================
Turns live microphone blocks and camera frames into outbound frames for
the live channel.

  - Audio: every mic block is encoded to 16-bit little-endian PCM and sent
    straight away. While muted, blocks are dropped before encoding; no
    silence is transmitted, so the agent's turn-taking is not disturbed.
  - Video: on each frame tick the latest camera frame is JPEG-compressed
    and sent. If the previous frame is still being encoded the tick is
    skipped; frames are never queued.

Neither path waits for the remote side. Frames are handed to `send`,
which only enqueues them for the session's single sender task.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Union

import numpy as np

from settings import EngineSettings, FramePolicy

logger = logging.getLogger(__name__)

AUDIO_MIME = "audio/pcm;rate=16000"
IMAGE_MIME = "image/jpeg"


@dataclass(frozen=True)
class OutboundFrame:
    kind: str          # "audio" | "image"
    data: bytes
    mime_type: str


# ─── Codecs ───────────────────────────────────────────────────────────────────

def encode_pcm16(block: Union[bytes, np.ndarray]) -> bytes:
    """Mic block -> little-endian int16 PCM bytes.

    Raw bytes from PyAudio are already int16 and pass through; float
    blocks in [-1, 1] are scaled and clipped.
    """
    if isinstance(block, (bytes, bytearray, memoryview)):
        data = bytes(block)
        if len(data) % 2:
            raise ValueError(f"odd PCM byte count ({len(data)})")
        return data
    samples = np.asarray(block)
    if samples.dtype.kind == "f":
        samples = np.clip(samples * 32768.0, -32768, 32767)
    return samples.astype("<i2").tobytes()


def encode_jpeg(frame: np.ndarray, quality: int) -> bytes:
    """BGR frame -> JPEG bytes at the given quality (1-100)."""
    import cv2
    ok, buf = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ValueError("JPEG encode failed")
    return buf.tobytes()


# ─── Encoder ──────────────────────────────────────────────────────────────────

class CaptureEncoder:
    def __init__(
        self,
        send: Callable[[OutboundFrame], None],
        settings: EngineSettings,
        grab_frame: Optional[Callable[[], Optional[np.ndarray]]] = None,
        image_encoder: Callable[[np.ndarray, int], bytes] = encode_jpeg,
    ):
        self._send = send
        self.settings = settings
        self._grab_frame = grab_frame
        self._encode_image = image_encoder

        self.muted = False
        self._frame_in_flight = False
        self._frame_task: Optional[asyncio.Task] = None
        self._frame_interval = settings.frame_interval

        self.audio_frames_sent = 0
        self.audio_blocks_dropped = 0
        self.video_frames_sent = 0
        self.video_frames_skipped = 0

    # ── Audio Path ────────────────────────────────────────────────────────────

    def on_audio_block(self, block: Union[bytes, np.ndarray], muted: Optional[bool] = None) -> bool:
        """Encode and send one mic block. Returns False if it was dropped.

        `muted` is the mute state when the block was captured; it defaults
        to the current state.
        """
        if self.muted if muted is None else muted:
            self.audio_blocks_dropped += 1
            return False
        try:
            pcm = encode_pcm16(block)
        except ValueError as e:
            logger.warning(f"Dropping mic block: {e}")
            self.audio_blocks_dropped += 1
            return False
        if not pcm:
            return False
        self._send(OutboundFrame("audio", pcm, AUDIO_MIME))
        self.audio_frames_sent += 1
        return True

    # ── Video Path ────────────────────────────────────────────────────────────

    @property
    def frame_interval(self) -> float:
        """Seconds until the next frame tick (stretched under DEGRADE)."""
        return self._frame_interval

    @property
    def frame_in_flight(self) -> bool:
        return self._frame_in_flight

    def on_frame_tick(self) -> Optional[asyncio.Task]:
        """Start capturing the latest frame unless one is still in flight."""
        if self._grab_frame is None:
            return None
        if self._frame_in_flight:
            self.video_frames_skipped += 1
            if self.settings.frame_policy is FramePolicy.DEGRADE:
                self._frame_interval = min(self._frame_interval * 2, self.settings.max_frame_interval)
                logger.debug(f"Frame skipped; capture period now {self._frame_interval:.1f}s")
            return None
        self._frame_in_flight = True
        self._frame_task = asyncio.get_running_loop().create_task(self._capture_frame())
        return self._frame_task

    async def _capture_frame(self):
        try:
            jpeg = await asyncio.to_thread(self._grab_and_encode)
            if jpeg:
                self._send(OutboundFrame("image", jpeg, IMAGE_MIME))
                self.video_frames_sent += 1
                if self._frame_interval > self.settings.frame_interval:
                    self._frame_interval = max(self.settings.frame_interval, self._frame_interval / 2)
        except Exception as e:
            logger.warning(f"Frame capture failed: {e}")
        finally:
            self._frame_in_flight = False

    def _grab_and_encode(self) -> Optional[bytes]:
        frame = self._grab_frame()
        if frame is None:
            return None
        return self._encode_image(frame, self.settings.jpeg_quality)

    def stop(self):
        """Cancel an in-flight frame capture (teardown)."""
        if self._frame_task is not None and not self._frame_task.done():
            self._frame_task.cancel()
        self._frame_task = None
        self._frame_in_flight = False
