"""
Camera Manager
===============
Thin wrapper around an OpenCV capture device. Only the most recent frame
matters, so read_frame() just grabs whatever the camera has right now.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

import numpy as np

from settings import CAMERA_HEIGHT, CAMERA_WIDTH

logger = logging.getLogger(__name__)


class CameraUnavailableError(OSError):
    pass


class CameraManager:
    def __init__(self, index: int = 0, width: int = CAMERA_WIDTH, height: int = CAMERA_HEIGHT):
        self.index = index
        self.width = width
        self.height = height
        self._cap = None
        self._lock = threading.Lock()   # read_frame runs in a worker thread

    def open(self):
        """Acquire the camera. Raises CameraUnavailableError on failure."""
        import cv2
        cap = cv2.VideoCapture(self.index)
        if not cap.isOpened():
            cap.release()
            raise CameraUnavailableError(f"camera {self.index} could not be opened")
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        with self._lock:
            self._cap = cap
        logger.info(f"Camera {self.index} opened")

    def read_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            if self._cap is None:
                return None
            ok, frame = self._cap.read()
        if not ok:
            logger.debug("Camera returned no frame")
            return None
        return frame

    def release(self):
        """Release the device. Safe to call repeatedly."""
        with self._lock:
            cap, self._cap = self._cap, None
        if cap is not None:
            cap.release()
            logger.info(f"Camera {self.index} released")
