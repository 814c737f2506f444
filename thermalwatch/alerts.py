from __future__ import annotations

"""Alert throttling and dual-channel snapshot dispatch.

This module coordinates:
- per (detection type, quality tier) cooldown bookkeeping
- quality-specific snapshot rendering and captions
- delivery through each configured messaging channel
- a bounded background queue so slow channels never stall capture
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Mapping, Optional, Set, Tuple

import cv2
import numpy as np

from thermalwatch.config import HIGH, LOW, QUALITY_TIERS, ChannelConfig, Settings
from thermalwatch.detector import FIRE, PERSON, Detection
from thermalwatch.notifier import MessagingChannel, TelegramNotifier

logger = logging.getLogger(__name__)

SENT = "sent"
COOLDOWN = "cooldown"
FAILED = "failed"
DISABLED = "disabled"

_HEADLINES = {
    FIRE: "FIRE DETECTED",
    PERSON: "PERSON DETECTED",
}


def now_millis() -> int:
    return int(time.time() * 1000)


class AlertThrottle:
    """Cooldown state per (detection type, quality) key.

    A key is `Ready` until a successful send is recorded, then `Cooling` for
    the channel's cooldown. Failed sends never touch the state, so the next
    eligible frame retries straight away.
    """

    def __init__(self, cooldown_seconds: Mapping[str, float]) -> None:
        self._cooldown_ms = {quality: float(seconds) * 1000.0 for quality, seconds in cooldown_seconds.items()}
        self._last_sent: Dict[Tuple[str, str], int] = {}
        self._in_flight: Set[Tuple[str, str]] = set()
        self._lock = threading.Lock()

    def _permit_locked(self, key: Tuple[str, str], now_ms: int) -> bool:
        last = self._last_sent.get(key)
        if last is None:
            return True
        return now_ms - last >= self._cooldown_ms.get(key[1], 0.0)

    def permit(self, detection_type: str, quality: str, now_ms: int) -> bool:
        """Return whether an alert may be sent; never changes state."""
        with self._lock:
            return self._permit_locked((detection_type, quality), now_ms)

    def record_sent(self, detection_type: str, quality: str, now_ms: int) -> None:
        with self._lock:
            self._last_sent[(detection_type, quality)] = now_ms

    def last_sent(self, detection_type: str, quality: str) -> Optional[int]:
        with self._lock:
            return self._last_sent.get((detection_type, quality))

    def claim(self, detection_type: str, quality: str, now_ms: int) -> bool:
        """Atomically check the cooldown and reserve the key for one send.

        Concurrent callers for the same key cannot both succeed until the
        holder calls `complete`.
        """
        key = (detection_type, quality)
        with self._lock:
            if key in self._in_flight or not self._permit_locked(key, now_ms):
                return False
            self._in_flight.add(key)
            return True

    def complete(self, detection_type: str, quality: str, now_ms: int, success: bool) -> None:
        """Release a claim, recording the send time only on success."""
        key = (detection_type, quality)
        with self._lock:
            self._in_flight.discard(key)
            if success:
                self._last_sent[key] = now_ms


def render_snapshot(frame: np.ndarray, quality: str) -> np.ndarray:
    """Return the still image sent on a channel of the given quality.

    Low quality halves both dimensions (floor), high quality keeps the frame.
    """
    if quality == HIGH:
        return frame
    if quality == LOW:
        height, width = frame.shape[:2]
        size = (max(1, width // 2), max(1, height // 2))
        return cv2.resize(frame, size, interpolation=cv2.INTER_AREA)
    raise ValueError(f"Unknown quality tier: {quality}")


def encode_jpeg(image: np.ndarray) -> bytes:
    ok, buffer = cv2.imencode(".jpg", image)
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buffer.tobytes()


def build_caption(detection: Detection, detected_at: float, quality: str) -> str:
    headline = _HEADLINES.get(detection.type, f"{detection.type.upper()} DETECTED")
    timestamp = datetime.fromtimestamp(detected_at).strftime("%Y-%m-%d %H:%M:%S")
    return (
        f"WARNING: {headline}\n"
        f"Time: {timestamp}\n"
        f"Area: {detection.area:.0f} px²\n"
        f"Quality: {quality}"
    )


class AlertDispatcher:
    """Deliver detection snapshots to every usable channel, honoring cooldowns."""

    def __init__(
        self,
        channels: Mapping[str, ChannelConfig],
        notifiers: Mapping[str, MessagingChannel],
        throttle: Optional[AlertThrottle] = None,
    ) -> None:
        self.channels = dict(channels)
        self.notifiers = dict(notifiers)
        self.throttle = throttle or AlertThrottle(
            {quality: config.cooldown_seconds for quality, config in self.channels.items()}
        )

    def _usable_channels(self):
        for quality in QUALITY_TIERS:
            config = self.channels.get(quality)
            notifier = self.notifiers.get(quality)
            if config is None or not config.is_usable or notifier is None:
                continue
            yield quality, config, notifier

    def dispatch(
        self,
        detection: Detection,
        frame: np.ndarray,
        detected_at: Optional[float] = None,
        now_ms: Optional[int] = None,
    ) -> Dict[str, str]:
        """Send one detection on each channel and return the outcome per quality."""
        detected_at = time.time() if detected_at is None else detected_at
        now_ms = now_millis() if now_ms is None else now_ms
        outcomes: Dict[str, str] = {quality: DISABLED for quality in QUALITY_TIERS}

        for quality, config, notifier in self._usable_channels():
            if not self.throttle.claim(detection.type, quality, now_ms):
                logger.info("%s alert on %s channel in cooldown", detection.type.capitalize(), quality)
                outcomes[quality] = COOLDOWN
                continue

            success = False
            try:
                image = encode_jpeg(render_snapshot(frame, quality))
                caption = build_caption(detection, detected_at, quality)
                success = bool(notifier.send_image(config.chat_id, image, caption))
            except Exception:
                logger.exception("Failed preparing %s alert for %s channel", detection.type, quality)
            finally:
                self.throttle.complete(detection.type, quality, now_ms, success)

            if success:
                logger.info("%s alert sent on %s channel", detection.type.capitalize(), quality)
                outcomes[quality] = SENT
            else:
                logger.error("%s alert failed on %s channel", detection.type.capitalize(), quality)
                outcomes[quality] = FAILED

        return outcomes

    def broadcast_text(self, message: str) -> Dict[str, bool]:
        """Send an unthrottled control message to every usable channel."""
        results: Dict[str, bool] = {}
        for quality, config, notifier in self._usable_channels():
            try:
                results[quality] = bool(notifier.send_text(config.chat_id, message))
            except Exception:
                logger.exception("Failed sending message on %s channel", quality)
                results[quality] = False
            if results[quality]:
                logger.info("Message sent on %s channel", quality)
        return results

    def send_startup(self) -> Dict[str, bool]:
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        return self.broadcast_text(f"Thermal detection system started\n{stamp}\nMonitoring is active")

    def send_shutdown(self) -> Dict[str, bool]:
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        return self.broadcast_text(f"Thermal detection system stopped\n{stamp}")

    def close(self) -> None:
        closed = set()
        for notifier in self.notifiers.values():
            if id(notifier) in closed:
                continue
            closed.add(id(notifier))
            notifier.close()


def build_dispatcher(settings: Settings) -> AlertDispatcher:
    """Create Telegram notifiers for every usable channel in `settings`."""
    notifiers: Dict[str, MessagingChannel] = {}
    for quality, config in settings.channels.items():
        if not config.enabled:
            logger.info("Telegram %s-quality channel disabled", quality)
            continue
        if not config.is_usable:
            logger.warning("Telegram %s-quality channel enabled but token or chat id missing", quality)
            continue
        notifiers[quality] = TelegramNotifier(bot_token=config.bot_token)
        logger.info("Telegram %s-quality channel initialized", quality)
    return AlertDispatcher(channels=settings.channels, notifiers=notifiers)


@dataclass
class AlertJob:
    """One detection waiting for delivery, with its own copy of the frame."""

    detection: Detection
    frame: np.ndarray
    detected_at: float


class AlertWorker:
    """Consume alert jobs on a background thread from a bounded queue.

    When the queue is full the oldest pending job is dropped so an unreachable
    channel bounds memory instead of stalling the capture loop.
    """

    def __init__(
        self,
        dispatcher: AlertDispatcher,
        maxsize: int = 16,
        on_result: Optional[Callable[[AlertJob, Dict[str, str]], None]] = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.on_result = on_result
        self.dropped = 0
        self._queue: queue.Queue[AlertJob] = queue.Queue(maxsize=maxsize)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="alert-dispatch", daemon=True)
        self._thread.start()

    def submit(self, job: AlertJob) -> None:
        try:
            self._queue.put_nowait(job)
            return
        except queue.Full:
            pass
        # Drop oldest to keep memory bounded under an alert storm.
        try:
            dropped = self._queue.get_nowait()
            self._queue.task_done()
            self.dropped += 1
            logger.warning("Alert queue full; dropped pending %s alert", dropped.detection.type)
        except queue.Empty:
            pass
        try:
            self._queue.put_nowait(job)
        except queue.Full:
            self.dropped += 1
            logger.warning("Alert queue full; dropped new %s alert", job.detection.type)

    def pending(self) -> int:
        return self._queue.qsize()

    def _run(self) -> None:
        while True:
            try:
                job = self._queue.get(timeout=0.25)
            except queue.Empty:
                if self._stop_event.is_set():
                    break
                continue
            try:
                outcomes = self.dispatcher.dispatch(job.detection, job.frame, detected_at=job.detected_at)
                if self.on_result is not None:
                    self.on_result(job, outcomes)
            except Exception:
                logger.exception("Alert dispatch crashed for %s detection", job.detection.type)
            finally:
                self._queue.task_done()

    def stop(self, timeout: float = 5.0) -> None:
        """Let queued jobs drain, waiting at most `timeout` seconds."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Alert worker still busy after %.1fs; %d alerts pending", timeout, self.pending())
            self._thread = None
