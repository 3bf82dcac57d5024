# tests/test_readback.py
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from anchor.collision import LabelCandidate, PlacementMode
from anchor.config import AnchorConfig
from anchor.frame import LabelFrameLoop
from anchor.pipeline import AnchorPipeline
from anchor.raster import IdentityRaster
from anchor.readback import MarkerReadback
from anchor.synthetic import blank, paint_rectangle


class BrokenMarkers:
    def positions(self):
        raise RuntimeError("device lost")


def small_frame():
    ids = paint_rectangle(blank(32, 32), 1, 0, 0, 9, 9)
    paint_rectangle(ids, 2, 20, 20, 29, 29)
    return IdentityRaster(ids)


def test_snapshot_empty_before_first_readback():
    readback = MarkerReadback()
    try:
        assert readback.latest() == {}
        assert readback.latest_frame == -1
        assert not readback.in_flight()
    finally:
        readback.shutdown()


def test_second_request_dropped_while_in_flight():
    executor = ThreadPoolExecutor(max_workers=1)
    gate = threading.Event()
    executor.submit(gate.wait)  # keeps the single worker busy
    readback = MarkerReadback(executor)
    markers = AnchorPipeline(AnchorConfig(max_features=4)).run_frame(small_frame())

    assert readback.request(markers, frame_index=0) is True
    assert readback.in_flight()
    assert readback.request(markers, frame_index=1) is False
    assert readback.dropped_requests == 1

    gate.set()
    readback.wait(timeout=10)
    assert readback.latest_frame == 0
    assert sorted(readback.latest()) == [1, 2]
    # A new request is accepted once the copy has finished
    assert readback.request(markers, frame_index=2) is True
    readback.wait(timeout=10)
    assert readback.latest_frame == 2

    readback.shutdown()
    # Injected executors are left running
    assert executor.submit(lambda: 42).result(timeout=10) == 42
    executor.shutdown()


def test_failed_readback_keeps_previous_snapshot(caplog):
    readback = MarkerReadback()
    try:
        markers = AnchorPipeline(AnchorConfig(max_features=4)).run_frame(small_frame())
        readback.request(markers, frame_index=0)
        readback.wait(timeout=10)
        before = readback.latest()

        with caplog.at_level(logging.ERROR, logger="anchor.readback"):
            assert readback.request(BrokenMarkers(), frame_index=1)
            readback.wait(timeout=10)

        assert readback.latest() == before
        assert readback.latest_frame == 0
        assert "frame 1 failed" in caplog.text
    finally:
        readback.shutdown()


def test_frame_loop_labels_trail_markers_by_a_frame():
    candidates = [LabelCandidate(1, "One"), LabelCandidate(2, "Two")]
    with LabelFrameLoop(AnchorConfig(max_features=4)) as loop:
        first = loop.step(small_frame(), candidates)
        assert first.anchors_frame == -1
        assert all(d.mode == PlacementMode.DIRECT and d.anchor_pos is None for d in first.decisions)

        loop.settle(timeout=10)
        second = loop.step(small_frame(), candidates)
        assert second.frame_index == 1
        assert second.anchors_frame == 0
        assert sorted(second.anchors) == [1, 2]
        assert all(d.anchor_pos is not None for d in second.decisions)
