# tests/test_synthetic.py
from anchor.synthetic import archipelago, blank, crescent, donut, paint_polygon, random_blobs


def test_donut_has_empty_center():
    raster = donut()
    assert raster.sample(80, 80) == 0
    assert raster.sample(40, 40) == 7
    assert raster.sample(120, 120) == 7
    assert raster.feature_counts() == {7: 81 * 81 - 39 * 39}


def test_crescent_centroid_lies_in_its_bite():
    raster = crescent(fid=3)
    ys, xs = (raster.feature_ids == 3).nonzero()
    cx, cy = xs.mean(), ys.mean()
    assert raster.sample(int(round(cx)), int(round(cy))) == 0


def test_archipelago_midpoint_is_background():
    raster = archipelago(fid=5)
    assert raster.feature_counts() == {5: 2 * 41 * 41}
    assert raster.sample(120, 40) == 0


def test_paint_polygon_fills_triangle():
    ids = paint_polygon(blank(20, 20), 4, [(0, 0), (19, 0), (0, 19)])
    assert ids[1, 1] == 4
    assert ids[18, 18] == 0


def test_random_blobs_are_reproducible():
    a = random_blobs(64, 64, 10, seed=5)
    b = random_blobs(64, 64, 10, seed=5)
    assert (a.feature_ids == b.feature_ids).all()
    assert max(a.feature_counts()) <= 10
