from __future__ import annotations

"""Replay a recorded video through the thermal classifier without sending alerts."""

import argparse
import sys
from collections import Counter
from pathlib import Path

import cv2

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from thermalwatch.detector import ThermalDetector
from thermalwatch.sampler import FrameSampler


def parse_args() -> argparse.Namespace:
    """Parse CLI options."""
    parser = argparse.ArgumentParser(description="Run person/fire detection over a recorded thermal video")
    parser.add_argument("input", help="Path to a recorded video file")
    parser.add_argument("--output", default="", help="Optional annotated output video (.avi)")
    parser.add_argument("--every-n", type=int, default=2, help="Classify every Nth frame")
    parser.add_argument("--person-percentile", type=float, default=30.0, help="Adaptive person percentile")
    parser.add_argument("--fire-threshold", type=int, default=255, help="Absolute fire threshold")
    parser.add_argument("--min-area", type=float, default=50.0, help="Minimum contour area in px^2")
    parser.add_argument("--max-area", type=float, default=30000.0, help="Maximum person contour area in px^2")
    parser.add_argument("--limit", type=int, default=-1, help="Read at most N frames (-1 = all)")
    parser.add_argument("--quiet", action="store_true", help="Only print the summary")
    return parser.parse_args()


def main() -> None:
    """Run replay job and print summary metrics."""
    args = parse_args()
    input_path = Path(args.input)
    if not input_path.exists():
        raise SystemExit(f"Input video not found: {input_path}")

    capture = cv2.VideoCapture(str(input_path))
    if not capture.isOpened():
        raise SystemExit(f"Could not open video: {input_path}")

    detector = ThermalDetector(
        person_percentile=args.person_percentile,
        fire_threshold=args.fire_threshold,
        min_area=args.min_area,
        max_area=args.max_area,
    )
    sampler = FrameSampler(args.every_n)
    writer = None
    counts: Counter[str] = Counter()
    frames = 0
    processed = 0

    try:
        while args.limit < 0 or frames < args.limit:
            ok, frame = capture.read()
            if not ok or frame is None:
                break
            frames += 1

            output = frame
            if sampler.should_process(frames):
                result = detector.classify(frame)
                processed += 1
                output = result.annotated
                for detection in result.detections:
                    counts[detection.type] += 1
                    if not args.quiet:
                        print(
                            f"frame={frames} type={detection.type} bbox={detection.bbox} "
                            f"area={detection.area:.0f} threshold={result.person_threshold}"
                        )

            if args.output:
                if writer is None:
                    height, width = output.shape[:2]
                    fps = capture.get(cv2.CAP_PROP_FPS) or 10.0
                    writer = cv2.VideoWriter(args.output, cv2.VideoWriter_fourcc(*"MJPG"), fps, (width, height))
                writer.write(output)
    finally:
        capture.release()
        if writer is not None:
            writer.release()

    print(f"Input: {input_path}")
    print(f"Frames read: {frames}")
    print(f"Frames classified: {processed}")
    print(f"Fire detections: {counts['fire']}")
    print(f"Person detections: {counts['person']}")


if __name__ == "__main__":
    main()
