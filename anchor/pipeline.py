import logging
import time
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

import numpy as np
from numba import cuda

from anchor.accumulate import allocate_accumulators, run_pixel_pass, run_quadrant_pass
from anchor.config import (
    GPU_ENABLED, INVALID_CENTER, M_A, M_X, M_Y, AnchorConfig, AnchorStatus, xp,
)
from anchor.raster import IdentityRaster
from anchor.resolve import allocate_markers, run_resolve_pass, to_pixel

LOGGER = logging.getLogger(__name__)

FRAME_INPUTS = frozenset({"raster"})


class PipelineError(Exception):
    """Raised when the stage graph is malformed."""


@dataclass(frozen=True)
class Stage:
    """One compute pass and the named frame buffers it reads and writes."""
    name: str
    reads: FrozenSet[str]
    writes: FrozenSet[str]
    run: Callable[["FrameBuffers", object], None]


class FrameBuffers:
    """Per-frame buffer set. Created fresh for every frame, so nothing leaks between frames."""

    def __init__(self, raster: IdentityRaster, config: AnchorConfig):
        self.raster = raster
        self.config = config
        self._buffers = {"raster": raster.device_feature_ids()}

    def __getitem__(self, name):
        return self._buffers[name]

    def __setitem__(self, name, value):
        self._buffers[name] = value

    def __contains__(self, name):
        return name in self._buffers


@dataclass
class MarkerBuffer:
    """Output of one frame: one marker row and one status per feature slot."""
    markers: object
    status: object
    width: int
    height: int
    features: object = None
    quadrants: object = None
    dropped: Dict[int, int] = field(default_factory=dict)

    def host_markers(self) -> np.ndarray:
        return xp.asnumpy(self.markers) if GPU_ENABLED else np.asarray(self.markers)

    def host_status(self) -> np.ndarray:
        return xp.asnumpy(self.status) if GPU_ENABLED else np.asarray(self.status)

    def valid_ids(self) -> List[int]:
        markers = self.host_markers()
        mask = (markers[:, M_A] > 0.0) & (markers[:, M_X] > INVALID_CENTER)
        return [int(i) for i in np.nonzero(mask)[0]]

    def positions(self) -> Dict[int, Tuple[float, float, float]]:
        """Anchor positions of every valid marker, keyed by feature id (z is always 0)."""
        markers = self.host_markers()
        return {fid: (float(markers[fid, M_X]), float(markers[fid, M_Y]), 0.0) for fid in self.valid_ids()}

    def pixel_of(self, fid: int) -> Optional[Tuple[int, int]]:
        markers = self.host_markers()
        if fid <= 0 or fid >= len(markers) or markers[fid, M_A] <= 0.0:
            return None
        return to_pixel(float(markers[fid, M_X]), float(markers[fid, M_Y]), self.width, self.height)

    def status_counts(self) -> Dict[str, int]:
        status = self.host_status()
        counts = {}
        for s in AnchorStatus:
            n = int((status[1:] == int(s)).sum())
            if n:
                counts[s.name.lower()] = n
        return counts


def _pixel_stage(buffers: FrameBuffers, stream):
    run_pixel_pass(buffers["raster"], buffers["features"], stream)


def _quadrant_stage(buffers: FrameBuffers, stream):
    run_quadrant_pass(buffers["raster"], buffers["features"], buffers["quadrants"], stream)


def _resolve_stage(buffers: FrameBuffers, stream):
    run_resolve_pass(
        buffers["raster"], buffers["features"], buffers["quadrants"],
        buffers["markers"], buffers["status"], buffers.config, stream,
    )


def _clear_stage(buffers: FrameBuffers, stream):
    features, quadrants = allocate_accumulators(buffers.config.max_features)
    markers, status = allocate_markers(buffers.config.max_features)
    buffers["features"] = features
    buffers["quadrants"] = quadrants
    buffers["markers"] = markers
    buffers["status"] = status


DEFAULT_STAGES = (
    Stage("clear", frozenset(), frozenset({"features", "quadrants", "markers", "status"}), _clear_stage),
    Stage("accumulate_pixels", frozenset({"raster"}), frozenset({"features"}), _pixel_stage),
    Stage("accumulate_quadrants", frozenset({"raster", "features"}), frozenset({"quadrants"}), _quadrant_stage),
    Stage("resolve_anchors", frozenset({"raster", "features", "quadrants"}),
          frozenset({"markers", "status"}), _resolve_stage),
)


def build_schedule(stages: Iterable[Stage], inputs: FrozenSet[str] = FRAME_INPUTS) -> List[Stage]:
    """Order stages by their buffer dependencies.

    A stage runs after every earlier-registered stage that writes a buffer it
    reads or writes, and after every earlier stage that reads a buffer it writes.
    Reading a buffer that nothing before the stage produces is an error.
    """
    stages = list(stages)
    names = [s.name for s in stages]
    if len(set(names)) != len(names):
        raise PipelineError(f"Duplicate stage names in {names}")
    written = set()
    for s in stages:
        missing = s.reads - written - inputs
        if missing:
            raise PipelineError(
                f"Stage '{s.name}' reads {sorted(missing)}, which no earlier stage writes "
                "and the frame does not provide"
            )
        written |= s.writes

    sorter = TopologicalSorter()
    for i, later in enumerate(stages):
        deps = []
        for earlier in stages[:i]:
            if (earlier.writes & (later.reads | later.writes)) or (earlier.reads & later.writes):
                deps.append(earlier.name)
        sorter.add(later.name, *deps)
    try:
        order = list(sorter.static_order())
    except CycleError as e:
        raise PipelineError(f"Stage graph has a cycle: {e.args[1]}") from e
    by_name = {s.name: s for s in stages}
    return [by_name[n] for n in order]


class AnchorPipeline:
    """Runs the accumulate -> quadrant -> resolve passes for one frame at a time."""

    def __init__(self, config: Optional[AnchorConfig] = None, stages: Optional[Iterable[Stage]] = None):
        self.config = config or AnchorConfig()
        self.stages = build_schedule(stages if stages is not None else DEFAULT_STAGES)
        LOGGER.debug("Stage order: %s", " -> ".join(s.name for s in self.stages))

    def run_frame(self, raster: IdentityRaster) -> MarkerBuffer:
        start = time.perf_counter()
        raster, dropped = raster.clamp_to_ceiling(self.config.max_features)
        buffers = FrameBuffers(raster, self.config)

        stream = cuda.stream() if GPU_ENABLED else None
        for stage in self.stages:
            stage.run(buffers, stream)
        if stream is not None:
            stream.synchronize()

        result = MarkerBuffer(
            markers=buffers["markers"], status=buffers["status"],
            width=raster.width, height=raster.height,
            features=buffers["features"], quadrants=buffers["quadrants"],
            dropped=dropped,
        )
        if LOGGER.isEnabledFor(logging.DEBUG):
            status = result.host_status()
            abandoned = [int(i) for i in np.nonzero(status == int(AnchorStatus.ABANDONED))[0]]
            LOGGER.debug(
                "Frame %dx%d resolved in %.2f ms: %s", raster.width, raster.height,
                (time.perf_counter() - start) * 1000, result.status_counts(),
            )
            if abandoned:
                LOGGER.debug("No on-feature anchor found for ids %s", abandoned)
        return result
