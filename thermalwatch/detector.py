from __future__ import annotations

"""Person and fire detection on thermal frames via intensity thresholding."""

import logging
from dataclasses import dataclass, field
from typing import List, Tuple

import cv2
import numpy as np

from thermalwatch.percentile import percentile

logger = logging.getLogger(__name__)

PERSON = "person"
FIRE = "fire"

ASPECT_EPSILON = 1e-6

# BGR drawing colors per detection type.
_BOX_COLORS = {
    FIRE: (0, 0, 255),
    PERSON: (0, 255, 0),
}
_LABELS = {
    FIRE: "Fire",
    PERSON: "Person",
}


@dataclass(frozen=True)
class Detection:
    """One accepted contour from a single processed frame."""

    type: str
    x: int
    y: int
    width: int
    height: int
    area: float
    aspect_ratio: float

    @property
    def bbox(self) -> Tuple[int, int, int, int]:
        return self.x, self.y, self.width, self.height


@dataclass
class ClassificationResult:
    """Annotated heat visualization plus detections ordered fire-first."""

    annotated: np.ndarray
    person_threshold: int
    detections: List[Detection] = field(default_factory=list)


def build_kernel() -> np.ndarray:
    """Return the fixed 3x3 elliptical structuring element."""
    return cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (3, 3))


def _raster_key(contour: np.ndarray) -> Tuple[int, int]:
    """Sort key: the first boundary pixel met in a top-to-bottom, left-to-right scan."""
    points = contour.reshape(-1, 2)
    top = int(points[:, 1].min())
    left = int(points[points[:, 1] == top, 0].min())
    return top, left


def external_contours(mask: np.ndarray) -> List[np.ndarray]:
    """Return outer contours of `mask` in raster discovery order.

    OpenCV does not promise an order for `findContours`, so contours are
    sorted by their topmost-then-leftmost point to keep results reproducible.
    """
    contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    return sorted(contours, key=_raster_key)


class ThermalDetector:
    """Classify thermal frames into person and fire detections.

    Person pixels use an adaptive threshold (a percentile of the current heat
    channel) while fire pixels use an absolute one. Both masks are cleaned with
    one opening and one dilation before contours are gated by area and shape.
    """

    def __init__(
        self,
        person_percentile: float = 30,
        fire_threshold: int = 255,
        min_area: float = 50,
        max_area: float = 30000,
        person_aspect_min: float = 0.7,
        kernel: np.ndarray | None = None,
    ) -> None:
        self.person_percentile = person_percentile
        self.fire_threshold = fire_threshold
        self.min_area = min_area
        self.max_area = max_area
        self.person_aspect_min = person_aspect_min
        self.kernel = kernel if kernel is not None else build_kernel()

    @staticmethod
    def heat_visualization(frame: np.ndarray) -> np.ndarray:
        """Map frame intensity through the JET colormap."""
        if frame.ndim == 3:
            gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        else:
            gray = frame
        return cv2.applyColorMap(gray, cv2.COLORMAP_JET)

    @staticmethod
    def heat_channel(heatmap: np.ndarray) -> np.ndarray:
        """Return the red plane of a BGR heat visualization."""
        return np.ascontiguousarray(heatmap[:, :, 2])

    def refine(self, mask: np.ndarray) -> np.ndarray:
        """Open once to drop speckle, then dilate once to merge nearby blobs."""
        opened = cv2.morphologyEx(mask, cv2.MORPH_OPEN, self.kernel, iterations=1)
        return cv2.dilate(opened, self.kernel, iterations=1)

    def accepts(self, detection_type: str, area: float, width: int, height: int) -> bool:
        """Apply the per-type area and shape gates to one contour."""
        if detection_type == FIRE:
            return area >= self.min_area
        if detection_type == PERSON:
            if area < self.min_area or area > self.max_area:
                return False
            return height / (width + ASPECT_EPSILON) >= self.person_aspect_min
        raise ValueError(f"Unknown detection type: {detection_type}")

    def detect_in_mask(self, mask: np.ndarray, detection_type: str) -> List[Detection]:
        """Extract and gate detections of one type from a refined binary mask."""
        detections: List[Detection] = []
        for contour in external_contours(mask):
            area = float(cv2.contourArea(contour))
            x, y, w, h = cv2.boundingRect(contour)
            if not self.accepts(detection_type, area, w, h):
                continue
            detections.append(
                Detection(
                    type=detection_type,
                    x=int(x),
                    y=int(y),
                    width=int(w),
                    height=int(h),
                    area=area,
                    aspect_ratio=h / (w + ASPECT_EPSILON),
                )
            )
        return detections

    @staticmethod
    def annotate(canvas: np.ndarray, detection: Detection) -> None:
        """Draw a labelled bounding box for `detection` onto `canvas` in place."""
        color = _BOX_COLORS[detection.type]
        x, y, w, h = detection.bbox
        cv2.rectangle(canvas, (x, y), (x + w, y + h), color, 2)
        cv2.putText(
            canvas,
            _LABELS[detection.type],
            (x, max(8, y - 6)),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.4,
            color,
            1,
            cv2.LINE_AA,
        )

    def classify(self, frame: np.ndarray) -> ClassificationResult:
        """Run the full pipeline on one frame without modifying it."""
        heatmap = self.heat_visualization(frame)
        heat = self.heat_channel(heatmap)

        person_threshold = percentile(heat, self.person_percentile)
        mask_person = np.where(heat >= person_threshold, 255, 0).astype(np.uint8)
        mask_fire = np.where(heat >= self.fire_threshold, 255, 0).astype(np.uint8)

        fires = self.detect_in_mask(self.refine(mask_fire), FIRE)
        people = self.detect_in_mask(self.refine(mask_person), PERSON)

        annotated = heatmap.copy()
        detections = fires + people
        for detection in detections:
            self.annotate(annotated, detection)
            logger.info(
                "%s detected | area=%.0fpx bbox=%s",
                detection.type.capitalize(),
                detection.area,
                detection.bbox,
            )

        return ClassificationResult(
            annotated=annotated,
            person_threshold=person_threshold,
            detections=detections,
        )
