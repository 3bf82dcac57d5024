import math
from typing import Dict, Optional, Tuple

import numpy as np
from numba import cuda, jit

from anchor.config import (
    COUNT, FEATURE_FIELDS, GPU_ENABLED, INT64_MAX, MAX_X, MAX_Y, MIN_X, MIN_Y,
    NUM_QUADRANTS, PIXEL_BLOCK, QUADRANT_FIELDS, Q_COUNT, Q_SUM_X, Q_SUM_Y,
    SUM_X, SUM_Y, Quadrant, xp,
)

# Bucket indices, as plain ints so the kernels can fold them as constants
_CENTER = int(Quadrant.CENTER)
_TOP_LEFT = int(Quadrant.TOP_LEFT)
_TOP = int(Quadrant.TOP)
_TOP_RIGHT = int(Quadrant.TOP_RIGHT)
_LEFT = int(Quadrant.LEFT)
_RIGHT = int(Quadrant.RIGHT)
_BOTTOM_LEFT = int(Quadrant.BOTTOM_LEFT)
_BOTTOM = int(Quadrant.BOTTOM)
_BOTTOM_RIGHT = int(Quadrant.BOTTOM_RIGHT)


def allocate_accumulators(max_features: int):
    """Fresh, cleared per-frame tables on the active backend.

    Everything starts at zero except the bounding-box minimums, which start at
    the int64 maximum so the first atomic-min always wins.
    """
    features = xp.zeros((max_features, FEATURE_FIELDS), dtype=xp.int64)
    features[:, MIN_X] = INT64_MAX
    features[:, MIN_Y] = INT64_MAX
    quadrants = xp.zeros((max_features, NUM_QUADRANTS, QUADRANT_FIELDS), dtype=xp.int64)
    return features, quadrants


def _classify(x, y, cx, cy):
    # Pixels exactly on the centroid row/column fall into the right/bottom half
    left = x < cx
    top = y < cy
    if top:
        diagonal = _TOP_LEFT if left else _TOP_RIGHT
        row_edge = _TOP
    else:
        diagonal = _BOTTOM_LEFT if left else _BOTTOM_RIGHT
        row_edge = _BOTTOM
    col_edge = _LEFT if left else _RIGHT
    return diagonal, col_edge, row_edge


_classify_cpu = jit(nopython=True)(_classify)
_classify_gpu = cuda.jit(device=True)(_classify)


# --- Pass 1: pixel accumulator ---

@cuda.jit(cache=True)
def accumulate_pixels_kernel(feature_ids, features):
    x, y = cuda.grid(2)
    if x >= feature_ids.shape[1] or y >= feature_ids.shape[0]:
        return
    fid = feature_ids[y, x]
    if fid == 0 or fid >= features.shape[0]:
        return
    cuda.atomic.add(features, (fid, SUM_X), x)
    cuda.atomic.add(features, (fid, SUM_Y), y)
    cuda.atomic.add(features, (fid, COUNT), 1)
    cuda.atomic.min(features, (fid, MIN_X), x)
    cuda.atomic.min(features, (fid, MIN_Y), y)
    cuda.atomic.max(features, (fid, MAX_X), x)
    cuda.atomic.max(features, (fid, MAX_Y), y)


@jit(nopython=True, cache=True)
def accumulate_pixels_cpu(feature_ids, features):
    height, width = feature_ids.shape
    for y in range(height):
        for x in range(width):
            fid = feature_ids[y, x]
            if fid == 0 or fid >= features.shape[0]:
                continue
            features[fid, SUM_X] += x
            features[fid, SUM_Y] += y
            features[fid, COUNT] += 1
            if x < features[fid, MIN_X]:
                features[fid, MIN_X] = x
            if y < features[fid, MIN_Y]:
                features[fid, MIN_Y] = y
            if x > features[fid, MAX_X]:
                features[fid, MAX_X] = x
            if y > features[fid, MAX_Y]:
                features[fid, MAX_Y] = y


# --- Pass 2: quadrant accumulator ---

@cuda.jit(device=True)
def _atomic_bucket_add(quadrants, fid, bucket, x, y):
    cuda.atomic.add(quadrants, (fid, bucket, Q_SUM_X), x)
    cuda.atomic.add(quadrants, (fid, bucket, Q_SUM_Y), y)
    cuda.atomic.add(quadrants, (fid, bucket, Q_COUNT), 1)


@jit(nopython=True, cache=True)
def _bucket_add(quadrants, fid, bucket, x, y):
    quadrants[fid, bucket, Q_SUM_X] += x
    quadrants[fid, bucket, Q_SUM_Y] += y
    quadrants[fid, bucket, Q_COUNT] += 1


@cuda.jit
def accumulate_quadrants_kernel(feature_ids, features, quadrants):
    x, y = cuda.grid(2)
    if x >= feature_ids.shape[1] or y >= feature_ids.shape[0]:
        return
    fid = feature_ids[y, x]
    if fid == 0 or fid >= features.shape[0]:
        return
    count = features[fid, COUNT]
    if count == 0:
        return
    cx = features[fid, SUM_X] / count
    cy = features[fid, SUM_Y] / count
    diagonal, col_edge, row_edge = _classify_gpu(x, y, cx, cy)
    _atomic_bucket_add(quadrants, fid, _CENTER, x, y)
    _atomic_bucket_add(quadrants, fid, diagonal, x, y)
    _atomic_bucket_add(quadrants, fid, col_edge, x, y)
    _atomic_bucket_add(quadrants, fid, row_edge, x, y)


@jit(nopython=True, cache=True)
def accumulate_quadrants_cpu(feature_ids, features, quadrants):
    height, width = feature_ids.shape
    for y in range(height):
        for x in range(width):
            fid = feature_ids[y, x]
            if fid == 0 or fid >= features.shape[0]:
                continue
            count = features[fid, COUNT]
            if count == 0:
                continue
            cx = features[fid, SUM_X] / count
            cy = features[fid, SUM_Y] / count
            diagonal, col_edge, row_edge = _classify_cpu(x, y, cx, cy)
            _bucket_add(quadrants, fid, _CENTER, x, y)
            _bucket_add(quadrants, fid, diagonal, x, y)
            _bucket_add(quadrants, fid, col_edge, x, y)
            _bucket_add(quadrants, fid, row_edge, x, y)


def _pixel_grid(feature_ids) -> Tuple[Tuple[int, int], Tuple[int, int]]:
    height, width = feature_ids.shape
    threads = PIXEL_BLOCK
    blocks = ((width + threads[0] - 1) // threads[0], (height + threads[1] - 1) // threads[1])
    return blocks, threads


def run_pixel_pass(feature_ids, features, stream=None):
    if GPU_ENABLED:
        blocks, threads = _pixel_grid(feature_ids)
        if stream is None:
            accumulate_pixels_kernel[blocks, threads](feature_ids, features)
        else:
            accumulate_pixels_kernel[blocks, threads, stream](feature_ids, features)
    else:
        accumulate_pixels_cpu(feature_ids, features)


def run_quadrant_pass(feature_ids, features, quadrants, stream=None):
    if GPU_ENABLED:
        blocks, threads = _pixel_grid(feature_ids)
        if stream is None:
            accumulate_quadrants_kernel[blocks, threads](feature_ids, features, quadrants)
        else:
            accumulate_quadrants_kernel[blocks, threads, stream](feature_ids, features, quadrants)
    else:
        accumulate_quadrants_cpu(feature_ids, features, quadrants)


def bucket_centroid(quadrants: np.ndarray, fid: int, bucket: Quadrant) -> Optional[Tuple[float, float]]:
    count = int(quadrants[fid, bucket, Q_COUNT])
    if count == 0:
        return None
    return (quadrants[fid, bucket, Q_SUM_X] / count, quadrants[fid, bucket, Q_SUM_Y] / count)


def feature_summary(features: np.ndarray, quadrants: np.ndarray, fid: int) -> Optional[Dict]:
    """Host-side view of one slot's accumulators (numpy arrays expected)."""
    count = int(features[fid, COUNT])
    if count == 0:
        return None
    centroid = (features[fid, SUM_X] / count, features[fid, SUM_Y] / count)
    buckets = {}
    for q in Quadrant:
        c = bucket_centroid(quadrants, fid, q)
        if c is not None:
            buckets[q.name.lower()] = [round(float(c[0]), 3), round(float(c[1]), 3)]
    return {
        "count": count,
        "centroid": [round(float(centroid[0]), 3), round(float(centroid[1]), 3)],
        "bbox": [int(features[fid, MIN_X]), int(features[fid, MIN_Y]),
                 int(features[fid, MAX_X]), int(features[fid, MAX_Y])],
        "quadrants": buckets,
        "centroid_pixel": [int(math.floor(centroid[0] + 0.5)), int(math.floor(centroid[1] + 0.5))],
    }
