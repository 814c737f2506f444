from __future__ import annotations

"""Core capture loop for the thermal monitor.

This module coordinates:
- camera ingestion with bounded retry on empty reads
- frame decimation and per-frame classification
- alert hand-off to the background dispatch worker
- recording of every frame and ordered shutdown
"""

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Optional

from thermalwatch.alerts import COOLDOWN, FAILED, SENT, AlertDispatcher, AlertJob, AlertWorker, build_dispatcher
from thermalwatch.camera import CameraFrame, CaptureSource, ThermalCamera, find_usb_camera
from thermalwatch.config import Settings
from thermalwatch.detector import ThermalDetector
from thermalwatch.recorder import RecordingSink, VideoRecorder, create_video_path, delete_old_files
from thermalwatch.sampler import FrameSampler

logger = logging.getLogger(__name__)


class CameraError(RuntimeError):
    """Raised when the capture device cannot deliver frames."""


class RuntimeStats:
    """Thread-safe counters shared by the capture loop and the alert worker."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.started_at = time.time()
        self.frames_read = 0
        self.frames_processed = 0
        self.detections = 0
        self.alerts_sent = 0
        self.alerts_failed = 0
        self.alerts_throttled = 0
        self.errors = 0

    def inc_frames_read(self) -> None:
        with self._lock:
            self.frames_read += 1

    def inc_frames_processed(self, detections: int) -> None:
        with self._lock:
            self.frames_processed += 1
            self.detections += detections

    def inc_errors(self) -> None:
        with self._lock:
            self.errors += 1

    def record_alert_outcomes(self, outcomes: Dict[str, str]) -> None:
        with self._lock:
            for outcome in outcomes.values():
                if outcome == SENT:
                    self.alerts_sent += 1
                elif outcome == FAILED:
                    self.alerts_failed += 1
                elif outcome == COOLDOWN:
                    self.alerts_throttled += 1

    def summary(self) -> str:
        with self._lock:
            uptime = int(time.time() - self.started_at)
            return (
                f"uptime={uptime}s frames={self.frames_read} processed={self.frames_processed} "
                f"detections={self.detections} alerts_sent={self.alerts_sent} "
                f"alerts_failed={self.alerts_failed} throttled={self.alerts_throttled} errors={self.errors}"
            )


class ThermalMonitor:
    """Top-level service object owning the camera, recorder and alert worker."""

    def __init__(
        self,
        settings: Settings,
        camera: Optional[CaptureSource] = None,
        dispatcher: Optional[AlertDispatcher] = None,
        recorder_factory: Optional[Callable[[Path], RecordingSink]] = None,
        detector: Optional[ThermalDetector] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.camera = camera
        self.dispatcher = dispatcher if dispatcher is not None else build_dispatcher(settings)
        self.recorder_factory = recorder_factory or self._open_recorder
        self.detector = detector or ThermalDetector(
            person_percentile=settings.person_percentile,
            fire_threshold=settings.fire_threshold,
            min_area=settings.min_area,
            max_area=settings.max_area,
            person_aspect_min=settings.person_aspect_min,
        )
        self.sampler = FrameSampler(settings.process_every_n_frames)
        self.stats = RuntimeStats()
        self.worker = AlertWorker(
            self.dispatcher,
            maxsize=settings.alert_queue_size,
            on_result=lambda _job, outcomes: self.stats.record_alert_outcomes(outcomes),
        )
        self.stop_event = threading.Event()
        self.recorder: Optional[RecordingSink] = None
        self.recording_path: Optional[Path] = None
        self._sleep = sleep
        self._empty_reads = 0

    def _open_recorder(self, path: Path) -> RecordingSink:
        return VideoRecorder(
            path=path,
            fps=self.settings.fps,
            width=self.settings.frame_width,
            height=self.settings.frame_height,
        )

    def _open_camera(self) -> CaptureSource:
        index = self.settings.camera_index
        if index < 0:
            logger.info("Searching for cameras...")
            index = find_usb_camera()
        return ThermalCamera(
            index=index,
            width=self.settings.frame_width,
            height=self.settings.frame_height,
            fps=self.settings.fps,
        )

    def stop(self) -> None:
        """Ask the loop to stop after the current frame."""
        self.stop_event.set()

    def _read_frame(self) -> Optional[CameraFrame]:
        """Read one frame, backing off on empty reads up to `max_empty_reads`."""
        assert self.camera is not None
        while not self.stop_event.is_set():
            packet = self.camera.read()
            if packet is not None:
                self._empty_reads = 0
                return packet

            self._empty_reads += 1
            if self._empty_reads >= self.settings.max_empty_reads:
                raise CameraError(f"Camera returned {self._empty_reads} consecutive empty frames")
            if self._empty_reads == 1:
                logger.warning("Empty frame, retrying...")
            delay = min(1.0, self.settings.empty_read_backoff_seconds * self._empty_reads)
            self._sleep(delay)
        return None

    def process_frame(self, packet: CameraFrame, frame_number: int) -> None:
        """Classify (when sampled), queue alerts and record one frame."""
        assert self.recorder is not None
        if not self.sampler.should_process(frame_number):
            self.recorder.write(packet.frame)
            return

        try:
            result = self.detector.classify(packet.frame)
        except Exception:
            logger.exception("Failed classifying frame %d; recording it unannotated", frame_number)
            self.stats.inc_errors()
            self.recorder.write(packet.frame)
            return

        self.stats.inc_frames_processed(len(result.detections))
        for detection in result.detections:
            self.worker.submit(AlertJob(detection=detection, frame=result.annotated, detected_at=packet.captured_at))
        self.recorder.write(result.annotated)

    def run(self) -> None:
        """Run until `stop()` is called or the camera fails."""
        logger.info("Thermal detection system starting")
        self.settings.video_dir.mkdir(parents=True, exist_ok=True)
        delete_old_files(self.settings.video_dir, self.settings.retention_days)
        self.dispatcher.send_startup()
        self.worker.start()

        try:
            if self.camera is None:
                self.camera = self._open_camera()
            first = self.camera.read()
            if first is None:
                raise CameraError("Could not open the thermal camera")
            logger.info("Thermal camera OK")

            self.recording_path = create_video_path(self.settings.video_dir, "thermal")
            self.recorder = self.recorder_factory(self.recording_path)
            logger.info("Recording to %s", self.recording_path)

            frame_number = 0
            packet: Optional[CameraFrame] = first
            while packet is not None and not self.stop_event.is_set():
                frame_number += 1
                self.stats.inc_frames_read()
                self.process_frame(packet, frame_number)
                if frame_number % self.settings.status_log_every_frames == 0:
                    logger.info("Frames processed: %d | %s", frame_number, self.stats.summary())
                packet = self._read_frame()
        finally:
            self._shutdown()

    def _shutdown(self) -> None:
        """Release resources in order: recorder, alerts, shutdown notice, camera."""
        self.stop_event.set()
        timeout = self.settings.shutdown_timeout_seconds

        if self.recorder is not None:
            try:
                self.recorder.release()
                logger.info("Recording finished: %s", self.recording_path)
            except Exception:
                logger.exception("Failed releasing recorder")

        self.worker.stop(timeout=timeout)

        notice = threading.Thread(target=self._send_shutdown_notice, name="shutdown-notice", daemon=True)
        notice.start()
        notice.join(timeout=timeout)
        if notice.is_alive():
            logger.warning("Shutdown notice still pending after %.1fs; continuing", timeout)

        if self.camera is not None:
            try:
                self.camera.release()
            except Exception:
                logger.exception("Failed releasing camera")

        self.dispatcher.close()
        logger.info("Thermal monitor stopped | %s", self.stats.summary())

    def _send_shutdown_notice(self) -> None:
        try:
            self.dispatcher.send_shutdown()
        except Exception:
            logger.exception("Failed sending shutdown notice")
