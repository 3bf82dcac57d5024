"""Host-side label declutter.

Given last completed frame's anchor positions, assign every label candidate
a placement mode: drawn directly at its anchor, stacked in 3D above a
higher-priority neighbour, or hidden because its neighbourhood is too crowded.
"""
import logging
import math
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from anchor.config import CollisionConfig

LOGGER = logging.getLogger(__name__)

Vec3 = Tuple[float, float, float]
ZERO_OFFSET: Vec3 = (0.0, 0.0, 0.0)


class PlacementMode(IntEnum):
    DIRECT = 0
    OFFSET_3D = 1
    HIDDEN = 2


@dataclass(frozen=True)
class LabelCandidate:
    feature_id: int
    text: str
    source_layer: str = "default"


@dataclass(frozen=True)
class BoundingBox:
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    def overlaps(self, other: "BoundingBox") -> bool:
        # Touching edges count as overlapping
        return not (
            self.max_x < other.min_x or self.min_x > other.max_x
            or self.max_y < other.min_y or self.min_y > other.max_y
        )


@dataclass(frozen=True)
class PlacementDecision:
    feature_id: int
    text: str
    source_layer: str
    mode: PlacementMode
    anchor_pos: Optional[Vec3]
    offset_vector: Vec3 = ZERO_OFFSET
    collision_group: Tuple[int, ...] = ()
    depth: int = 0


class SpatialGrid:
    """Uniform hash grid over normalized screen space."""

    def __init__(self, cell_size: float = 0.1):
        if cell_size <= 0:
            raise ValueError(f"cell_size must be positive, got {cell_size}")
        self.cell_size = cell_size
        self._cells: Dict[Tuple[int, int], List[int]] = {}

    def _cell_range(self, bbox: BoundingBox):
        x0 = math.floor(bbox.min_x / self.cell_size)
        x1 = math.floor(bbox.max_x / self.cell_size)
        y0 = math.floor(bbox.min_y / self.cell_size)
        y1 = math.floor(bbox.max_y / self.cell_size)
        for cx in range(x0, x1 + 1):
            for cy in range(y0, y1 + 1):
                yield cx, cy

    def insert(self, bbox: BoundingBox, index: int) -> None:
        for key in self._cell_range(bbox):
            self._cells.setdefault(key, []).append(index)

    def query(self, bbox: BoundingBox) -> List[int]:
        found: Set[int] = set()
        for key in self._cell_range(bbox):
            found.update(self._cells.get(key, ()))
        return sorted(found)

    def clear(self) -> None:
        self._cells.clear()

    def __len__(self):
        return len(self._cells)


def label_bbox(anchor: Sequence[float], text: str, config: Optional[CollisionConfig] = None) -> BoundingBox:
    """Approximate screen-space box of a label drawn just below its anchor."""
    config = config or CollisionConfig()
    half_w = len(text) * config.char_width
    half_h = config.char_height
    x, y = anchor[0], anchor[1]
    return BoundingBox(
        x - half_w, y + config.label_offset - half_h,
        x + half_w, y + config.label_offset + half_h,
    )


def stack_offset(depth: int, config: CollisionConfig) -> Vec3:
    return (config.stack_step_xy * depth, config.stack_step_xy * depth, config.stack_step_z * (depth + 1))


def _as_vec3(position: Sequence[float]) -> Vec3:
    if len(position) == 2:
        return (float(position[0]), float(position[1]), 0.0)
    return (float(position[0]), float(position[1]), float(position[2]))


def find_collision_groups(bboxes: Mapping[int, BoundingBox], cell_size: float) -> Dict[int, List[int]]:
    """Symmetric overlap lists for every index in ``bboxes``."""
    grid = SpatialGrid(cell_size)
    for idx, box in bboxes.items():
        grid.insert(box, idx)
    groups: Dict[int, Set[int]] = {idx: set() for idx in bboxes}
    for i, box in bboxes.items():
        for j in grid.query(box):
            if j <= i:
                continue
            if box.overlaps(bboxes[j]):
                groups[i].add(j)
                groups[j].add(i)
    return {idx: sorted(members) for idx, members in groups.items()}


def resolve_placements(
    candidates: Iterable[LabelCandidate],
    previous_anchors: Mapping[int, Sequence[float]],
    config: Optional[CollisionConfig] = None,
) -> List[PlacementDecision]:
    """Assign Direct / Offset3D / Hidden to every candidate, in input order.

    Pure and deterministic: the same candidates and anchor snapshot always
    give the same decisions.
    """
    config = config or CollisionConfig()
    candidates = list(candidates)

    anchors: Dict[int, Vec3] = {}
    bboxes: Dict[int, BoundingBox] = {}
    for idx, cand in enumerate(candidates):
        position = previous_anchors.get(cand.feature_id)
        if position is None:
            continue
        anchors[idx] = _as_vec3(position)
        bboxes[idx] = label_bbox(anchors[idx], cand.text, config)

    groups = find_collision_groups(bboxes, config.cell_size)

    order = sorted(bboxes, key=lambda i: config.priority_of(candidates[i].source_layer))
    modes: Dict[int, PlacementMode] = {}
    depths: Dict[int, int] = {}
    placed: Set[int] = set()
    for idx in order:
        group = groups[idx]
        placed_in_group = [j for j in group if j in placed]
        if placed_in_group:
            modes[idx] = PlacementMode.OFFSET_3D
            depths[idx] = len(placed_in_group)
        else:
            modes[idx] = PlacementMode.DIRECT
            depths[idx] = 0
        placed.add(idx)

    hidden_crowded = 0
    hidden_slots = 0
    for idx in order:
        if len(groups[idx]) > config.crowding_threshold:
            modes[idx] = PlacementMode.HIDDEN
            hidden_crowded += 1
        elif depths[idx] > config.max_offset_slots:
            modes[idx] = PlacementMode.HIDDEN
            hidden_slots += 1

    decisions = []
    for idx, cand in enumerate(candidates):
        if idx not in anchors:
            decisions.append(PlacementDecision(cand.feature_id, cand.text, cand.source_layer, PlacementMode.DIRECT, None))
            continue
        mode = modes[idx]
        offset = stack_offset(depths[idx], config) if mode == PlacementMode.OFFSET_3D else ZERO_OFFSET
        decisions.append(PlacementDecision(
            cand.feature_id, cand.text, cand.source_layer, mode, anchors[idx], offset,
            tuple(candidates[j].feature_id for j in groups[idx]), depths[idx],
        ))

    if hidden_crowded or hidden_slots:
        LOGGER.debug(
            "Declutter hid %d crowded label(s) and %d with no offset slot left (of %d)",
            hidden_crowded, hidden_slots, len(candidates),
        )
    return decisions


def summarize(decisions: Iterable[PlacementDecision]) -> Dict[str, int]:
    counts = {m.name.lower(): 0 for m in PlacementMode}
    for d in decisions:
        counts[d.mode.name.lower()] += 1
    return counts
