from __future__ import annotations

"""USB thermal camera client built on OpenCV `VideoCapture`."""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import cv2
import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class CameraFrame:
    """Single decoded frame plus its capture timestamp."""

    frame: np.ndarray
    captured_at: float

    @property
    def width(self) -> int:
        return int(self.frame.shape[1])

    @property
    def height(self) -> int:
        return int(self.frame.shape[0])


class CaptureSource(Protocol):
    """Common interface used by the monitor regardless of backend."""

    def read(self) -> Optional[CameraFrame]:
        ...

    def release(self) -> None:
        ...


def find_usb_camera(
    max_index: int = 5,
    capture_factory: Callable[[int], cv2.VideoCapture] = cv2.VideoCapture,
) -> int:
    """Return the first device index that yields a frame, or 0 when none do."""
    for index in range(max_index):
        capture = None
        try:
            capture = capture_factory(index)
            ok, frame = capture.read()
            if ok and frame is not None and frame.size > 0:
                logger.info("Camera found at /dev/video%d", index)
                return index
        except cv2.error:
            continue
        finally:
            if capture is not None:
                capture.release()
    logger.warning("No camera detected, falling back to index 0")
    return 0


class ThermalCamera:
    """OpenCV reader for a low-resolution USB thermal sensor."""

    def __init__(
        self,
        index: int,
        width: int = 160,
        height: int = 120,
        fps: float = 10,
        capture_factory: Callable[[int], cv2.VideoCapture] = cv2.VideoCapture,
    ) -> None:
        self.index = index
        self.width = width
        self.height = height
        self.fps = fps
        self._capture_factory = capture_factory
        self._capture: Optional[cv2.VideoCapture] = None

    def _open(self) -> None:
        """Open the device and request the configured frame size and rate."""
        self.release()
        capture = self._capture_factory(self.index)
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        capture.set(cv2.CAP_PROP_FPS, self.fps)
        self._capture = capture

    def _ensure_open(self) -> None:
        """Lazily open the capture handle if it is not available."""
        if self._capture is not None and self._capture.isOpened():
            return
        self._open()

    def read(self) -> Optional[CameraFrame]:
        """Read one frame, returning None when the device yields nothing."""
        self._ensure_open()
        if self._capture is None:
            return None

        ok, frame = self._capture.read()
        if not ok or frame is None or frame.size == 0:
            return None
        return CameraFrame(frame=frame, captured_at=time.time())

    def release(self) -> None:
        """Release underlying OpenCV resources."""
        if self._capture is not None:
            self._capture.release()
            self._capture = None
