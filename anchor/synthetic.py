"""Hand-built identity rasters for demos, benchmarks and tests.

Shapes are painted with scikit-image's drawing primitives into a 2-D int32
id array; coordinates follow the raster convention of ``(x, y)`` = (column, row).
"""
from typing import Iterable, Optional, Tuple

import numpy as np
from skimage.draw import disk, polygon, rectangle

from anchor.raster import IdentityRaster


def blank(width: int, height: int) -> np.ndarray:
    return np.zeros((height, width), dtype=np.int32)


def paint_rectangle(ids: np.ndarray, fid: int, x0: int, y0: int, x1: int, y1: int) -> np.ndarray:
    """Fill the inclusive pixel box [x0, x1] x [y0, y1]."""
    rr, cc = rectangle(start=(y0, x0), end=(y1, x1), shape=ids.shape)
    ids[rr, cc] = fid
    return ids


def paint_ring(ids: np.ndarray, fid: int, outer: Tuple[int, int, int, int], hole: Tuple[int, int, int, int]) -> np.ndarray:
    """Square donut: ``outer`` box filled, then ``hole`` box cleared (both inclusive)."""
    paint_rectangle(ids, fid, *outer)
    hx0, hy0, hx1, hy1 = hole
    region = ids[hy0:hy1 + 1, hx0:hx1 + 1]
    region[region == fid] = 0
    return ids


def paint_disk(ids: np.ndarray, fid: int, cx: float, cy: float, radius: float) -> np.ndarray:
    rr, cc = disk((cy, cx), radius, shape=ids.shape)
    ids[rr, cc] = fid
    return ids


def paint_crescent(ids: np.ndarray, fid: int, cx: float, cy: float, radius: float,
                   bite_dx: float, bite_radius: float) -> np.ndarray:
    """A disk with a second, horizontally shifted disk bitten out of it."""
    paint_disk(ids, fid, cx, cy, radius)
    rr, cc = disk((cy, cx + bite_dx), bite_radius, shape=ids.shape)
    bitten = ids[rr, cc] == fid
    ids[rr[bitten], cc[bitten]] = 0
    return ids


def paint_polygon(ids: np.ndarray, fid: int, vertices: Iterable[Tuple[float, float]]) -> np.ndarray:
    xs, ys = zip(*vertices)
    rr, cc = polygon(np.array(ys), np.array(xs), shape=ids.shape)
    ids[rr, cc] = fid
    return ids


def donut(width: int = 256, height: int = 256, fid: int = 7) -> IdentityRaster:
    ids = blank(width, height)
    paint_ring(ids, fid, (40, 40, 120, 120), (61, 61, 99, 99))
    return IdentityRaster(ids)


def crescent(width: int = 256, height: int = 256, fid: int = 3) -> IdentityRaster:
    ids = blank(width, height)
    paint_crescent(ids, fid, 128, 128, 60, 8, 50)
    return IdentityRaster(ids)


def archipelago(width: int = 256, height: int = 256, fid: int = 5) -> IdentityRaster:
    ids = blank(width, height)
    paint_rectangle(ids, fid, 20, 20, 60, 60)
    paint_rectangle(ids, fid, 180, 20, 220, 60)
    return IdentityRaster(ids)


def random_blobs(width: int, height: int, count: int, seed: Optional[int] = 0,
                 min_radius: int = 4, max_radius: int = 24) -> IdentityRaster:
    """``count`` overlapping disks with ids 1..count; later ids paint over earlier ones."""
    rng = np.random.default_rng(seed)
    ids = blank(width, height)
    layers = np.zeros_like(ids)
    for fid in range(1, count + 1):
        r = int(rng.integers(min_radius, max_radius + 1))
        cx = int(rng.integers(0, width))
        cy = int(rng.integers(0, height))
        rr, cc = disk((cy, cx), r, shape=ids.shape)
        ids[rr, cc] = fid
        layers[rr, cc] = fid % 5
    return IdentityRaster(ids, layers)
