"""
Tests for the process entry point exit codes.
"""

import pytest

import main
from thermalwatch.monitor import CameraError


class FakeMonitor:
    error = None

    def __init__(self, settings):
        self.settings = settings
        self.stopped = False

    def run(self):
        if self.error is not None:
            raise self.error

    def stop(self):
        self.stopped = True


@pytest.fixture
def entry_point(monkeypatch):
    monkeypatch.setattr(main, "setup_logging", lambda: None)
    monkeypatch.setattr(main, "load_settings", lambda path: object())
    monkeypatch.setattr(main.signal, "signal", lambda signum, handler: None)
    monkeypatch.setattr(main, "ThermalMonitor", FakeMonitor)
    monkeypatch.setattr(FakeMonitor, "error", None)
    return FakeMonitor


def test_clean_run_exits_zero(entry_point):
    assert main.main() == 0


def test_camera_failure_exits_one(entry_point):
    entry_point.error = CameraError("no frames")
    assert main.main() == 1


def test_recorder_open_failure_exits_one(entry_point):
    entry_point.error = OSError("cannot open video writer")
    assert main.main() == 1
