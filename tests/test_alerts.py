"""
Tests for alert throttling, rendering and dual-channel dispatch.
"""

import threading

import cv2
import numpy as np
import pytest

from thermalwatch.alerts import (
    COOLDOWN,
    DISABLED,
    FAILED,
    SENT,
    AlertDispatcher,
    AlertJob,
    AlertThrottle,
    AlertWorker,
    build_caption,
    render_snapshot,
)
from thermalwatch.config import HIGH, LOW, ChannelConfig
from thermalwatch.detector import FIRE, PERSON, Detection

from conftest import FakeChannel, make_channels


def _detection(kind=FIRE, area=1234.0):
    return Detection(type=kind, x=1, y=2, width=10, height=20, area=area, aspect_ratio=2.0)


def _frame(width=160, height=120):
    return np.zeros((height, width, 3), dtype=np.uint8)


class TestAlertThrottle:
    def test_ready_until_first_send(self):
        throttle = AlertThrottle({HIGH: 30})
        assert throttle.permit(FIRE, HIGH, 0)
        assert throttle.permit(FIRE, HIGH, 0)  # permit never changes state

    def test_cooldown_window(self):
        throttle = AlertThrottle({HIGH: 30})
        throttle.record_sent(FIRE, HIGH, 0)
        assert not throttle.permit(FIRE, HIGH, 10_000)
        assert not throttle.permit(FIRE, HIGH, 29_999)
        assert throttle.permit(FIRE, HIGH, 30_000)
        assert throttle.permit(FIRE, HIGH, 31_000)

    def test_keys_are_independent(self):
        throttle = AlertThrottle({HIGH: 30, LOW: 30})
        throttle.record_sent(FIRE, HIGH, 0)
        assert throttle.permit(PERSON, HIGH, 1000)
        assert throttle.permit(FIRE, LOW, 1000)

    def test_claim_blocks_second_caller_until_complete(self):
        throttle = AlertThrottle({HIGH: 30})
        assert throttle.claim(FIRE, HIGH, 0)
        assert not throttle.claim(FIRE, HIGH, 0)
        throttle.complete(FIRE, HIGH, 0, success=False)
        assert throttle.last_sent(FIRE, HIGH) is None
        assert throttle.claim(FIRE, HIGH, 500)
        throttle.complete(FIRE, HIGH, 500, success=True)
        assert throttle.last_sent(FIRE, HIGH) == 500
        assert not throttle.claim(FIRE, HIGH, 1000)

    def test_concurrent_claims_grant_one(self):
        throttle = AlertThrottle({HIGH: 30})
        barrier = threading.Barrier(8)
        granted = []

        def _claim():
            barrier.wait()
            if throttle.claim(PERSON, HIGH, 0):
                granted.append(1)

        threads = [threading.Thread(target=_claim) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert len(granted) == 1


class TestRendering:
    def test_low_quality_is_half_resolution(self):
        assert render_snapshot(_frame(160, 120), LOW).shape == (60, 80, 3)

    def test_low_quality_floors_odd_sizes(self):
        assert render_snapshot(_frame(161, 121), LOW).shape == (60, 80, 3)

    def test_high_quality_keeps_resolution(self):
        frame = _frame(160, 120)
        assert render_snapshot(frame, HIGH).shape == (120, 160, 3)

    def test_unknown_quality(self):
        with pytest.raises(ValueError):
            render_snapshot(_frame(), "medium")

    def test_caption_fields(self):
        caption = build_caption(_detection(FIRE, 1234.4), 0.0, LOW)
        assert "FIRE DETECTED" in caption
        assert "Area: 1234 px²" in caption
        assert "Quality: low" in caption
        assert "PERSON DETECTED" in build_caption(_detection(PERSON), 0.0, HIGH)


class TestAlertDispatcher:
    def test_sends_quality_specific_images(self, channels):
        dispatcher = AlertDispatcher(make_channels(), channels)
        outcomes = dispatcher.dispatch(_detection(), _frame(), detected_at=0.0, now_ms=0)

        assert outcomes == {HIGH: SENT, LOW: SENT}
        hq_dest, hq_bytes, hq_caption = channels[HIGH].images[0]
        lq_dest, lq_bytes, lq_caption = channels[LOW].images[0]
        assert (hq_dest, lq_dest) == ("hq-chat", "lq-chat")
        hq_image = cv2.imdecode(np.frombuffer(hq_bytes, dtype=np.uint8), cv2.IMREAD_COLOR)
        lq_image = cv2.imdecode(np.frombuffer(lq_bytes, dtype=np.uint8), cv2.IMREAD_COLOR)
        assert hq_image.shape == (120, 160, 3)
        assert lq_image.shape == (60, 80, 3)
        assert "Quality: high" in hq_caption
        assert "Quality: low" in lq_caption

    def test_cooldown_scenario(self, channels):
        dispatcher = AlertDispatcher(make_channels(cooldown_seconds=30), channels)
        det = _detection()

        assert dispatcher.dispatch(det, _frame(), now_ms=0)[HIGH] == SENT
        assert dispatcher.dispatch(det, _frame(), now_ms=10_000)[HIGH] == COOLDOWN
        assert dispatcher.dispatch(det, _frame(), now_ms=31_000)[HIGH] == SENT
        assert len(channels[HIGH].images) == 2
        assert len(channels[LOW].images) == 2

    def test_cooldown_is_per_type_and_quality(self, channels):
        config = make_channels(cooldown_seconds=30)
        config[LOW] = ChannelConfig(LOW, False, "", "", 30)
        dispatcher = AlertDispatcher(config, channels)

        assert dispatcher.dispatch(_detection(FIRE), _frame(), now_ms=0)[HIGH] == SENT
        assert dispatcher.dispatch(_detection(PERSON), _frame(), now_ms=1000)[HIGH] == SENT
        assert dispatcher.throttle.permit(FIRE, LOW, 1000)

    def test_failed_send_does_not_start_cooldown(self, channels):
        channels[HIGH].succeed = False
        dispatcher = AlertDispatcher(make_channels(cooldown_seconds=30), channels)

        assert dispatcher.dispatch(_detection(), _frame(), now_ms=0)[HIGH] == FAILED
        assert dispatcher.throttle.last_sent(FIRE, HIGH) is None

        channels[HIGH].succeed = True
        assert dispatcher.dispatch(_detection(), _frame(), now_ms=1000)[HIGH] == SENT
        # The low channel succeeded at t=0 and is still cooling.
        assert dispatcher.dispatch(_detection(), _frame(), now_ms=1000)[LOW] == COOLDOWN

    def test_exception_in_channel_is_contained(self, channels):
        def _boom(*_args):
            raise ConnectionError("unreachable")

        channels[HIGH].send_image = _boom
        dispatcher = AlertDispatcher(make_channels(), channels)
        outcomes = dispatcher.dispatch(_detection(), _frame(), now_ms=0)
        assert outcomes == {HIGH: FAILED, LOW: SENT}
        assert dispatcher.throttle.permit(FIRE, HIGH, 1)

    def test_disabled_or_incomplete_channels_skipped(self, channels):
        config = {
            HIGH: ChannelConfig(HIGH, False, "token", "chat", 30),
            LOW: ChannelConfig(LOW, True, "token", "", 30),
        }
        dispatcher = AlertDispatcher(config, channels)
        assert dispatcher.dispatch(_detection(), _frame(), now_ms=0) == {HIGH: DISABLED, LOW: DISABLED}
        assert dispatcher.broadcast_text("hello") == {}
        assert channels[HIGH].images == [] and channels[LOW].images == []

    def test_text_notices_are_unthrottled(self, channels):
        dispatcher = AlertDispatcher(make_channels(), channels)
        assert dispatcher.send_startup() == {HIGH: True, LOW: True}
        assert dispatcher.send_shutdown() == {HIGH: True, LOW: True}
        assert len(channels[HIGH].texts) == 2
        assert "started" in channels[HIGH].texts[0][1]
        assert "stopped" in channels[LOW].texts[1][1]

    def test_close_closes_each_notifier_once(self):
        shared = FakeChannel()
        dispatcher = AlertDispatcher(make_channels(), {HIGH: shared, LOW: shared})
        dispatcher.close()
        assert shared.closed


class TestAlertWorker:
    def test_drop_oldest_when_full(self, channels):
        dispatcher = AlertDispatcher(make_channels(cooldown_seconds=0), channels)
        worker = AlertWorker(dispatcher, maxsize=2)
        for area in (100.0, 200.0, 300.0):
            worker.submit(AlertJob(detection=_detection(area=area), frame=_frame(), detected_at=0.0))

        assert worker.dropped == 1
        assert worker.pending() == 2

        worker.start()
        worker.stop(timeout=5.0)
        captions = [caption for _dest, _img, caption in channels[HIGH].images]
        assert len(captions) == 2
        assert "Area: 200 px²" in captions[0]
        assert "Area: 300 px²" in captions[1]

    def test_results_reported(self, channels):
        dispatcher = AlertDispatcher(make_channels(), channels)
        results = []
        worker = AlertWorker(dispatcher, on_result=lambda job, outcomes: results.append(outcomes))
        worker.start()
        worker.submit(AlertJob(detection=_detection(), frame=_frame(), detected_at=0.0))
        worker.stop(timeout=5.0)
        assert results == [{HIGH: SENT, LOW: SENT}]
