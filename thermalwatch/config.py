from __future__ import annotations

"""Configuration loading for the thermal monitor.

This module centralizes environment/.secrets parsing into one immutable
`Settings` object, including the two independently configured alert channels.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

HIGH = "high"
LOW = "low"
QUALITY_TIERS = (HIGH, LOW)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _parse_secrets_file(path: Path) -> Dict[str, str]:
    """Parse KEY=VALUE lines from the local secrets file.

    The parser is intentionally permissive:
    - ignores blank lines/comments
    - accepts surrounding whitespace around keys/values
    - strips both single and double wrapping quotes
    """
    values: Dict[str, str] = {}
    if not path.exists():
        return values

    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def _get_env(name: str, file_values: Dict[str, str], default: str = "") -> str:
    """Read a setting from env first, then file, then default."""
    return os.getenv(name, file_values.get(name, default)).strip()


def _get_bool(name: str, file_values: Dict[str, str], default: str = "false") -> bool:
    return _get_env(name, file_values, default).lower() in _TRUE_VALUES


@dataclass(frozen=True)
class ChannelConfig:
    """Credentials and cooldown for one alert quality tier."""

    quality: str
    enabled: bool
    bot_token: str
    chat_id: str
    cooldown_seconds: float = 30.0

    @property
    def is_usable(self) -> bool:
        return self.enabled and bool(self.bot_token) and bool(self.chat_id)


@dataclass(frozen=True)
class Settings:
    """Runtime settings loaded from environment and/or `.secrets`."""

    camera_index: int
    frame_width: int
    frame_height: int
    fps: float
    min_area: float
    max_area: float
    person_percentile: float
    fire_threshold: int
    person_aspect_min: float
    process_every_n_frames: int
    retention_days: float
    video_dir: Path
    status_log_every_frames: int
    max_empty_reads: int
    empty_read_backoff_seconds: float
    alert_queue_size: int
    shutdown_timeout_seconds: float
    channels: Dict[str, ChannelConfig]


def _load_channel(quality: str, prefix: str, file_values: Dict[str, str]) -> ChannelConfig:
    return ChannelConfig(
        quality=quality,
        enabled=_get_bool(f"{prefix}_ENABLED", file_values),
        bot_token=_get_env(f"{prefix}_BOT_TOKEN", file_values),
        chat_id=_get_env(f"{prefix}_CHAT_ID", file_values),
        cooldown_seconds=float(_get_env(f"{prefix}_COOLDOWN_SECONDS", file_values, "30")),
    )


def _validate(settings: Settings) -> None:
    if settings.frame_width <= 0 or settings.frame_height <= 0:
        raise ValueError("FRAME_WIDTH and FRAME_HEIGHT must be positive.")
    if settings.process_every_n_frames < 1:
        raise ValueError("PROCESS_EVERY_N_FRAMES must be >= 1.")
    if not 0 <= settings.person_percentile <= 100:
        raise ValueError("PERSON_PERCENTILE must be within [0, 100].")
    if not 0 <= settings.fire_threshold <= 255:
        raise ValueError("FIRE_THRESHOLD must be within [0, 255].")
    if settings.min_area > settings.max_area:
        raise ValueError("MIN_AREA must not exceed MAX_AREA.")
    if settings.max_empty_reads < 1:
        raise ValueError("MAX_EMPTY_READS must be >= 1.")
    if settings.alert_queue_size < 1:
        raise ValueError("ALERT_QUEUE_SIZE must be >= 1.")
    for channel in settings.channels.values():
        if channel.cooldown_seconds < 0:
            raise ValueError(f"Cooldown for {channel.quality} channel must be >= 0.")


def load_settings(secrets_path: str = ".secrets") -> Settings:
    """Load and validate app settings.

    Numeric values that fail to parse or fall outside their valid range raise
    `ValueError`; everything else falls back to defaults tuned for a 160x120
    thermal sensor on a small board.
    """
    file_values = _parse_secrets_file(Path(secrets_path))

    settings = Settings(
        camera_index=int(_get_env("CAMERA_INDEX", file_values, "-1")),
        frame_width=int(_get_env("FRAME_WIDTH", file_values, "160")),
        frame_height=int(_get_env("FRAME_HEIGHT", file_values, "120")),
        fps=float(_get_env("FPS", file_values, "10")),
        min_area=float(_get_env("MIN_AREA", file_values, "50")),
        max_area=float(_get_env("MAX_AREA", file_values, "30000")),
        person_percentile=float(_get_env("PERSON_PERCENTILE", file_values, "30")),
        fire_threshold=int(_get_env("FIRE_THRESHOLD", file_values, "255")),
        person_aspect_min=float(_get_env("PERSON_ASPECT_MIN", file_values, "0.7")),
        process_every_n_frames=int(_get_env("PROCESS_EVERY_N_FRAMES", file_values, "2")),
        retention_days=float(_get_env("RETENTION_DAYS", file_values, "3")),
        video_dir=Path(_get_env("VIDEO_DIR", file_values, "videos")),
        status_log_every_frames=int(_get_env("STATUS_LOG_EVERY_FRAMES", file_values, "100")),
        max_empty_reads=int(_get_env("MAX_EMPTY_READS", file_values, "50")),
        empty_read_backoff_seconds=float(_get_env("EMPTY_READ_BACKOFF_SECONDS", file_values, "0.05")),
        alert_queue_size=int(_get_env("ALERT_QUEUE_SIZE", file_values, "16")),
        shutdown_timeout_seconds=float(_get_env("SHUTDOWN_TIMEOUT_SECONDS", file_values, "5")),
        channels={
            HIGH: _load_channel(HIGH, "TELEGRAM_HQ", file_values),
            LOW: _load_channel(LOW, "TELEGRAM_LQ", file_values),
        },
    )
    _validate(settings)
    return settings
