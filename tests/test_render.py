# tests/test_render.py
from dataclasses import replace

from anchor.collision import LabelCandidate, PlacementMode, resolve_placements
from anchor.config import AnchorConfig, CollisionConfig
from anchor.pipeline import AnchorPipeline
from anchor.render import label_position, render_overlay, tint_table
from anchor.synthetic import blank, paint_rectangle
from anchor.raster import IdentityRaster


def frame():
    ids = paint_rectangle(blank(40, 30), 1, 2, 2, 15, 12)
    ids[25, 25] = 2  # too small for a marker
    raster = IdentityRaster(ids)
    markers = AnchorPipeline(AnchorConfig(max_features=4)).run_frame(raster)
    return raster, markers


def test_overlay_is_scaled_and_tinted():
    raster, markers = frame()
    image = render_overlay(raster, markers, scale=3)
    assert image.size == (120, 90)
    assert image.getpixel((0, 0)) == (255, 255, 255)
    # Unresolved features are grey
    assert image.getpixel((25 * 3 + 1, 25 * 3 + 1)) == (200, 200, 200)


def test_tint_table_washes_marker_color():
    _, markers = frame()
    lut = tint_table(markers.host_markers(), 3)
    assert tuple(lut[0]) == (255, 255, 255)
    assert tuple(lut[2]) == (200, 200, 200)
    assert tuple(lut[1]) == ((73 + 255 + 1) // 2, (151 + 255 + 1) // 2, (199 + 255 + 1) // 2)


def test_hidden_and_unanchored_labels_have_no_position():
    raster, markers = frame()
    config = CollisionConfig()
    decisions = resolve_placements([LabelCandidate(1, "One"), LabelCandidate(3, "Three")], markers.positions())
    assert label_position(decisions[1], config) is None
    x, y = label_position(decisions[0], config)
    assert y == decisions[0].anchor_pos[1] + config.label_offset

    hidden = replace(decisions[0], mode=PlacementMode.HIDDEN)
    assert label_position(hidden, config) is None
    render_overlay(raster, markers, decisions + [hidden])
