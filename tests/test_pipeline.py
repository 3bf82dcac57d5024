# tests/test_pipeline.py
import logging

import pytest

from anchor.config import AnchorConfig
from anchor.pipeline import DEFAULT_STAGES, AnchorPipeline, PipelineError, Stage, build_schedule
from anchor.raster import IdentityRaster
from anchor.synthetic import blank, paint_rectangle


def noop(buffers, stream):
    pass


def test_default_stages_run_in_pass_order():
    order = [s.name for s in build_schedule(DEFAULT_STAGES)]
    assert order == ["clear", "accumulate_pixels", "accumulate_quadrants", "resolve_anchors"]


def test_reading_unproduced_buffer_is_rejected():
    stages = [Stage("resolve", frozenset({"raster", "quadrants"}), frozenset({"markers"}), noop)]
    with pytest.raises(PipelineError, match="quadrants"):
        build_schedule(stages)


def test_reader_registered_before_writer_is_rejected():
    stages = [
        Stage("consume", frozenset({"features"}), frozenset({"markers"}), noop),
        Stage("produce", frozenset({"raster"}), frozenset({"features"}), noop),
    ]
    with pytest.raises(PipelineError):
        build_schedule(stages)


def test_duplicate_stage_names_are_rejected():
    stage = Stage("a", frozenset(), frozenset({"x"}), noop)
    with pytest.raises(PipelineError, match="Duplicate"):
        build_schedule([stage, stage])


def test_custom_stage_runs_after_its_inputs():
    seen = []

    def record(name):
        def run(buffers, stream):
            seen.append(name)
            buffers[name] = len(seen)
        return run

    stages = [
        Stage("first", frozenset({"raster"}), frozenset({"a"}), record("a")),
        Stage("second", frozenset({"a"}), frozenset({"b"}), record("b")),
        Stage("third", frozenset({"a", "b"}), frozenset({"c"}), record("c")),
    ]
    order = [s.name for s in build_schedule(stages)]
    assert order == ["first", "second", "third"]


def test_buffers_do_not_leak_between_frames():
    pipeline = AnchorPipeline(AnchorConfig(max_features=16))
    busy = paint_rectangle(blank(32, 32), 3, 2, 2, 12, 12)

    assert pipeline.run_frame(IdentityRaster(busy)).valid_ids() == [3]
    assert pipeline.run_frame(IdentityRaster(blank(32, 32))).valid_ids() == []
    # Same raster twice gives the same single feature, not doubled sums
    again = pipeline.run_frame(IdentityRaster(busy))
    assert again.valid_ids() == [3]
    assert again.pixel_of(3) == (7, 7)


def test_ids_above_ceiling_are_dropped_and_logged(caplog):
    ids = paint_rectangle(blank(32, 32), 3, 0, 0, 9, 9)
    paint_rectangle(ids, 12, 20, 20, 29, 29)
    pipeline = AnchorPipeline(AnchorConfig(max_features=8))

    with caplog.at_level(logging.WARNING, logger="anchor.raster"):
        result = pipeline.run_frame(IdentityRaster(ids))

    assert result.dropped == {12: 100}
    assert result.valid_ids() == [3]
    assert "exceed the 8-slot table" in caplog.text


def test_positions_and_status_counts():
    ids = paint_rectangle(blank(32, 32), 1, 0, 0, 9, 9)
    ids[30, 30] = 2
    result = AnchorPipeline(AnchorConfig(max_features=4)).run_frame(IdentityRaster(ids))

    positions = result.positions()
    assert list(positions) == [1]
    x, y, z = positions[1]
    assert z == 0.0
    assert -1.0 < x < 0.0 and -1.0 < y < 0.0
    assert result.status_counts() == {"empty": 1, "too_small": 1, "preferred": 1}
