"""
Pytest configuration and shared fixtures.
"""

from pathlib import Path

import cv2
import numpy as np
import pytest

from thermalwatch.config import HIGH, LOW, ChannelConfig, Settings


class FakeChannel:
    """In-memory messaging channel that records every send."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.images = []
        self.texts = []
        self.closed = False

    def send_image(self, destination, image_bytes, caption):
        self.images.append((destination, image_bytes, caption))
        return self.succeed

    def send_text(self, destination, message):
        self.texts.append((destination, message))
        return self.succeed

    def close(self):
        self.closed = True


def make_channels(cooldown_seconds: float = 30.0, enabled: bool = True):
    return {
        HIGH: ChannelConfig(HIGH, enabled, "hq-token", "hq-chat", cooldown_seconds),
        LOW: ChannelConfig(LOW, enabled, "lq-token", "lq-chat", cooldown_seconds),
    }


def make_settings(tmp_path: Path, **overrides) -> Settings:
    values = dict(
        camera_index=0,
        frame_width=160,
        frame_height=120,
        fps=10.0,
        min_area=50.0,
        max_area=30000.0,
        person_percentile=30.0,
        fire_threshold=255,
        person_aspect_min=0.7,
        process_every_n_frames=2,
        retention_days=3.0,
        video_dir=tmp_path / "videos",
        status_log_every_frames=100,
        max_empty_reads=3,
        empty_read_backoff_seconds=0.05,
        alert_queue_size=8,
        shutdown_timeout_seconds=5.0,
        channels=make_channels(),
    )
    values.update(overrides)
    return Settings(**values)


def jet_red_lut() -> np.ndarray:
    """Red plane of the JET colormap for every gray level."""
    ramp = np.arange(256, dtype=np.uint8).reshape(1, 256)
    return cv2.applyColorMap(ramp, cv2.COLORMAP_JET)[0, :, 2]


@pytest.fixture
def fire_level() -> int:
    """A gray level whose heat channel value is 255."""
    levels = np.flatnonzero(jet_red_lut() == 255)
    assert levels.size > 0
    return int(levels[0])


@pytest.fixture
def channels():
    return {HIGH: FakeChannel(), LOW: FakeChannel()}
