import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from anchor.collision import LabelCandidate, PlacementDecision, resolve_placements
from anchor.config import AnchorConfig, CollisionConfig
from anchor.pipeline import AnchorPipeline, MarkerBuffer
from anchor.raster import IdentityRaster
from anchor.readback import MarkerReadback, Position

LOGGER = logging.getLogger(__name__)


@dataclass
class FrameResult:
    frame_index: int
    markers: MarkerBuffer
    decisions: List[PlacementDecision]
    anchors: Dict[int, Position]
    anchors_frame: int  # frame the anchor snapshot came from, -1 if none yet


class LabelFrameLoop:
    """Per-map frame driver: GPU passes, async readback, then host declutter.

    Labels are resolved against the last *completed* readback, so they trail
    the marker buffer by at least one frame.
    """

    def __init__(
        self,
        anchor_config: Optional[AnchorConfig] = None,
        collision_config: Optional[CollisionConfig] = None,
        readback: Optional[MarkerReadback] = None,
    ):
        self.pipeline = AnchorPipeline(anchor_config)
        self.collision_config = collision_config or CollisionConfig()
        self._owns_readback = readback is None
        self.readback = readback or MarkerReadback()
        self.frame_index = 0

    def step(self, raster: IdentityRaster, candidates: Iterable[LabelCandidate]) -> FrameResult:
        markers = self.pipeline.run_frame(raster)
        anchors_frame, anchors = self.readback.snapshot()
        self.readback.request(markers, self.frame_index)
        decisions = resolve_placements(candidates, anchors, self.collision_config)
        result = FrameResult(self.frame_index, markers, decisions, anchors, anchors_frame)
        LOGGER.debug(
            "Frame %d: labels resolved against %d anchor(s) from frame %d",
            self.frame_index, len(anchors), anchors_frame,
        )
        self.frame_index += 1
        return result

    def settle(self, timeout: Optional[float] = None) -> None:
        """Wait for the outstanding readback so the next step sees this frame's anchors."""
        self.readback.wait(timeout)

    def close(self) -> None:
        if self._owns_readback:
            self.readback.shutdown()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False
