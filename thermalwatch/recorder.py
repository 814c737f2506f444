from __future__ import annotations

"""Video recording sink and retention sweep for recorded files."""

import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

import cv2
import numpy as np

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class RecordingSink(Protocol):
    """Destination for every captured frame, annotated or raw."""

    def write(self, frame: np.ndarray) -> None:
        ...

    def release(self) -> None:
        ...


def create_video_path(directory: Path, prefix: str = "thermal", now: Optional[datetime] = None) -> Path:
    """Build `<directory>/<prefix>_YYYYMMDD_HHMMSS.avi`."""
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return Path(directory) / f"{prefix}_{stamp}.avi"


def delete_old_files(folder: Path, retention_days: float, now: Optional[float] = None) -> int:
    """Delete regular files older than `retention_days`; return how many were removed.

    Best effort: per-file errors are logged and skipped.
    """
    folder = Path(folder)
    if not folder.is_dir():
        return 0

    now = time.time() if now is None else now
    removed = 0
    for path in folder.iterdir():
        try:
            if not path.is_file():
                continue
            age_days = (now - path.stat().st_mtime) / SECONDS_PER_DAY
            if age_days > retention_days:
                path.unlink()
                removed += 1
                logger.info("Deleted expired recording %s", path)
        except OSError as exc:
            logger.debug("Skipping %s during retention sweep: %s", path, exc)
    return removed


class VideoRecorder:
    """MJPG `.avi` writer that resizes frames to the configured size."""

    def __init__(self, path: Path, fps: float, width: int, height: int) -> None:
        self.path = Path(path)
        self.size = (int(width), int(height))
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fourcc = cv2.VideoWriter_fourcc(*"MJPG")
        self._writer: Optional[cv2.VideoWriter] = cv2.VideoWriter(str(self.path), fourcc, float(fps), self.size)
        if not self._writer.isOpened():
            self._writer = None
            raise OSError(f"Could not open video writer at {self.path}")
        self.frames_written = 0

    def write(self, frame: np.ndarray) -> None:
        if self._writer is None:
            return
        height, width = frame.shape[:2]
        if (width, height) != self.size:
            frame = cv2.resize(frame, self.size)
        self._writer.write(frame)
        self.frames_written += 1

    def release(self) -> None:
        if self._writer is not None:
            self._writer.release()
            self._writer = None
