"""Pass 3: turn per-feature accumulators into one on-feature anchor per slot.

Each slot is handled independently (one GPU thread per feature id). The
preferred bucket centroid is tried first; when it lands on another feature or
on background the search falls back through partition sampling, the center of
the best partition, an expanding spiral, an exhaustive grid scan of the feature's
bounding box and finally a walk along the box's top row.
"""
import math
from typing import Tuple

import numpy as np
from numba import cuda, jit

from anchor.config import (
    COUNT, GPU_ENABLED, INVALID_CENTER, M_A, M_B, M_G, M_R, M_X, M_Y, MARKER_FIELDS,
    MAX_X, MAX_Y, MIN_X, MIN_Y, Q_COUNT, Q_SUM_X, Q_SUM_Y, SLOT_BLOCK, AnchorConfig,
    AnchorStatus, Quadrant, xp,
)

_CENTER = int(Quadrant.CENTER)
_EMPTY = int(AnchorStatus.EMPTY)
_TOO_SMALL = int(AnchorStatus.TOO_SMALL)
_PREFERRED = int(AnchorStatus.PREFERRED)
_PARTITION_CENTER = int(AnchorStatus.PARTITION_CENTER)
_SPIRAL = int(AnchorStatus.SPIRAL)
_GRID_SCAN = int(AnchorStatus.GRID_SCAN)
_EDGE_WALK = int(AnchorStatus.EDGE_WALK)
_ABANDONED = int(AnchorStatus.ABANDONED)


def allocate_markers(max_features: int):
    markers = xp.zeros((max_features, MARKER_FIELDS), dtype=xp.float32)
    markers[:, M_X] = INVALID_CENTER
    markers[:, M_Y] = INVALID_CENTER
    status = xp.zeros(max_features, dtype=xp.int8)
    return markers, status


def feature_color(fid: int) -> Tuple[float, float, float, float]:
    """Deterministic debug color for a feature id (matches what the kernel writes)."""
    return ((fid * 73) % 256 / 255.0, (fid * 151) % 256 / 255.0, (fid * 199) % 256 / 255.0, 1.0)


def to_normalized(px: float, py: float, width: int, height: int) -> Tuple[float, float]:
    """Pixel center -> normalized device coordinates in [-1, 1]."""
    return (px + 0.5) / width * 2.0 - 1.0, (py + 0.5) / height * 2.0 - 1.0


def to_pixel(nx: float, ny: float, width: int, height: int) -> Tuple[int, int]:
    return int(math.floor((nx + 1.0) * 0.5 * width)), int(math.floor((ny + 1.0) * 0.5 * height))


# Shared slot logic, compiled once per target below.

def _on_feature(feature_ids, x, y, fid):
    if x < 0 or y < 0 or y >= feature_ids.shape[0] or x >= feature_ids.shape[1]:
        return False
    return feature_ids[y, x] == fid


def _compass(d):
    # E, SE, S, SW, W, NW, N, NE
    if d == 0:
        return 1, 0
    if d == 1:
        return 1, 1
    if d == 2:
        return 0, 1
    if d == 3:
        return -1, 1
    if d == 4:
        return -1, 0
    if d == 5:
        return -1, -1
    if d == 6:
        return 0, -1
    return 1, -1


def _build_slot_resolver(compile_fn):
    on_feature = compile_fn(_on_feature)
    compass = compile_fn(_compass)

    def resolve_slot(fid, feature_ids, features, quadrants, markers, status,
                     min_pixels, preferred, partition_grid, partition_samples,
                     spiral_steps, grid_scan_steps):
        markers[fid, M_X] = INVALID_CENTER
        markers[fid, M_Y] = INVALID_CENTER
        markers[fid, M_R] = 0.0
        markers[fid, M_G] = 0.0
        markers[fid, M_B] = 0.0
        markers[fid, M_A] = 0.0
        status[fid] = _EMPTY
        if fid == 0:
            return
        count = features[fid, COUNT]
        if count == 0:
            return
        if count < min_pixels:
            status[fid] = _TOO_SMALL
            return

        bucket = preferred
        if quadrants[fid, bucket, Q_COUNT] == 0:
            bucket = _CENTER
        bucket_count = quadrants[fid, bucket, Q_COUNT]
        px = int(math.floor(quadrants[fid, bucket, Q_SUM_X] / bucket_count + 0.5))
        py = int(math.floor(quadrants[fid, bucket, Q_SUM_Y] / bucket_count + 0.5))
        stage = _PREFERRED
        found = on_feature(feature_ids, px, py, fid)

        if not found:
            x0 = features[fid, MIN_X]
            y0 = features[fid, MIN_Y]
            win_w = features[fid, MAX_X] + 1 - x0
            win_h = features[fid, MAX_Y] + 1 - y0

            # Sample each partition of the window and keep the densest one
            best = -1
            bx0 = x0
            by0 = y0
            bx1 = x0 + win_w
            by1 = y0 + win_h
            for gy in range(partition_grid):
                cy0 = y0 + (gy * win_h) // partition_grid
                cy1 = y0 + ((gy + 1) * win_h) // partition_grid
                for gx in range(partition_grid):
                    cx0 = x0 + (gx * win_w) // partition_grid
                    cx1 = x0 + ((gx + 1) * win_w) // partition_grid
                    if cx1 <= cx0 or cy1 <= cy0:
                        continue
                    hits = 0
                    for sy in range(partition_samples):
                        yy = cy0 + ((2 * sy + 1) * (cy1 - cy0)) // (2 * partition_samples)
                        for sx in range(partition_samples):
                            xx = cx0 + ((2 * sx + 1) * (cx1 - cx0)) // (2 * partition_samples)
                            if on_feature(feature_ids, xx, yy, fid):
                                hits += 1
                    if hits > best:
                        best = hits
                        bx0 = cx0
                        by0 = cy0
                        bx1 = cx1
                        by1 = cy1

            px = (bx0 + bx1 - 1) // 2
            py = (by0 + by1 - 1) // 2
            if on_feature(feature_ids, px, py, fid):
                found = True
                stage = _PARTITION_CENTER

            if not found:
                origin_x = px
                origin_y = py
                radius = 1
                limit = win_w if win_w > win_h else win_h
                for _ in range(spiral_steps):
                    if radius > limit or found:
                        break
                    for d in range(8):
                        dx, dy = compass(d)
                        sx = origin_x + dx * radius
                        sy = origin_y + dy * radius
                        if on_feature(feature_ids, sx, sy, fid):
                            px = sx
                            py = sy
                            found = True
                            stage = _SPIRAL
                            break
                    radius *= 2

            if not found:
                for gy in range(grid_scan_steps):
                    if found:
                        break
                    yy = y0 + ((2 * gy + 1) * win_h) // (2 * grid_scan_steps)
                    for gx in range(grid_scan_steps):
                        xx = x0 + ((2 * gx + 1) * win_w) // (2 * grid_scan_steps)
                        if on_feature(feature_ids, xx, yy, fid):
                            px = xx
                            py = yy
                            found = True
                            stage = _GRID_SCAN
                            break

            if not found:
                # Row MIN_Y of the bounding box always holds a pixel of the feature
                for xx in range(x0, x0 + win_w):
                    if on_feature(feature_ids, xx, y0, fid):
                        px = xx
                        py = y0
                        found = True
                        stage = _EDGE_WALK
                        break

        if not found:
            status[fid] = _ABANDONED
            return

        height = feature_ids.shape[0]
        width = feature_ids.shape[1]
        markers[fid, M_X] = (px + 0.5) / width * 2.0 - 1.0
        markers[fid, M_Y] = (py + 0.5) / height * 2.0 - 1.0
        markers[fid, M_R] = ((fid * 73) % 256) / 255.0
        markers[fid, M_G] = ((fid * 151) % 256) / 255.0
        markers[fid, M_B] = ((fid * 199) % 256) / 255.0
        markers[fid, M_A] = 1.0
        status[fid] = stage

    return compile_fn(resolve_slot)


_resolve_slot_cpu = _build_slot_resolver(jit(nopython=True))
_resolve_slot_gpu = _build_slot_resolver(cuda.jit(device=True))


@cuda.jit
def resolve_anchors_kernel(feature_ids, features, quadrants, markers, status,
                           min_pixels, preferred, partition_grid, partition_samples,
                           spiral_steps, grid_scan_steps):
    fid = cuda.grid(1)
    if fid >= features.shape[0]:
        return
    _resolve_slot_gpu(fid, feature_ids, features, quadrants, markers, status,
                      min_pixels, preferred, partition_grid, partition_samples,
                      spiral_steps, grid_scan_steps)


@jit(nopython=True)
def resolve_anchors_cpu(feature_ids, features, quadrants, markers, status,
                        min_pixels, preferred, partition_grid, partition_samples,
                        spiral_steps, grid_scan_steps):
    for fid in range(features.shape[0]):
        _resolve_slot_cpu(fid, feature_ids, features, quadrants, markers, status,
                          min_pixels, preferred, partition_grid, partition_samples,
                          spiral_steps, grid_scan_steps)


def run_resolve_pass(feature_ids, features, quadrants, markers, status, config: AnchorConfig, stream=None):
    args = (
        feature_ids, features, quadrants, markers, status,
        config.min_pixels, int(config.preferred_quadrant), config.partition_grid,
        config.partition_samples, config.spiral_steps, config.grid_scan_steps,
    )
    if GPU_ENABLED:
        blocks = (features.shape[0] + SLOT_BLOCK - 1) // SLOT_BLOCK
        if stream is None:
            resolve_anchors_kernel[blocks, SLOT_BLOCK](*args)
        else:
            resolve_anchors_kernel[blocks, SLOT_BLOCK, stream](*args)
    else:
        resolve_anchors_cpu(*args)


def marker_is_valid(marker: np.ndarray) -> bool:
    return bool(marker[M_A] > 0.0 and marker[M_X] > INVALID_CENTER)
