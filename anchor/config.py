import os
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict

_ANCHORGEN_FORCE_NUMPY_ENV = os.environ.get("ANCHORGEN_FORCE_NUMPY", "0").lower()
FORCE_NUMPY_BACKEND = _ANCHORGEN_FORCE_NUMPY_ENV in ["1", "true", "yes"]

if FORCE_NUMPY_BACKEND:
    import numpy as xp
    import scipy.ndimage as ndi_xp
    GPU_ENABLED = False
else:
    try:
        import cupy as xp
        import cupyx.scipy.ndimage as ndi_xp
        if xp.cuda.is_available():
            GPU_ENABLED = True
        else:
            import numpy as xp_fallback
            import scipy.ndimage as ndi_xp_fallback
            xp = xp_fallback
            ndi_xp = ndi_xp_fallback
            GPU_ENABLED = False
    except ImportError:
        import numpy as xp_fallback
        import scipy.ndimage as ndi_xp_fallback
        xp = xp_fallback
        ndi_xp = ndi_xp_fallback
        GPU_ENABLED = False

# The reference rasterizer stores the feature id in one 8-bit channel, so a tile
# can carry ids 1..255. Ids at or above max_features are dropped and reported.
DEFAULT_MAX_FEATURES = 256
MIN_FEATURE_PIXELS = 5

PIXEL_BLOCK = (16, 16)
SLOT_BLOCK = 64

# FeatureAccumulator columns
SUM_X, SUM_Y, COUNT, MIN_X, MIN_Y, MAX_X, MAX_Y = range(7)
FEATURE_FIELDS = 7

# QuadrantAccumulator columns (per bucket)
Q_SUM_X, Q_SUM_Y, Q_COUNT = range(3)
QUADRANT_FIELDS = 3

# Marker buffer columns
M_X, M_Y, M_R, M_G, M_B, M_A = range(6)
MARKER_FIELDS = 6

INVALID_CENTER = -2.0
INT64_MAX = 9223372036854775807


class Quadrant(IntEnum):
    CENTER = 0
    TOP_LEFT = 1
    TOP = 2
    TOP_RIGHT = 3
    LEFT = 4
    RIGHT = 5
    BOTTOM_LEFT = 6
    BOTTOM = 7
    BOTTOM_RIGHT = 8


NUM_QUADRANTS = len(Quadrant)


class AnchorStatus(IntEnum):
    """How a feature slot's marker was produced (or why it was not)."""
    EMPTY = 0
    TOO_SMALL = 1
    PREFERRED = 2
    PARTITION_CENTER = 3
    SPIRAL = 4
    GRID_SCAN = 5
    EDGE_WALK = 6
    ABANDONED = 7


DEFAULT_PRIORITIES: Dict[str, int] = {
    "place": 0,
    "building": 1,
    "landuse": 2,
    "water": 3,
    "default": 4,
}


@dataclass(frozen=True)
class AnchorConfig:
    """Tunables for the accumulation and anchor-resolution passes."""
    max_features: int = DEFAULT_MAX_FEATURES
    min_pixels: int = MIN_FEATURE_PIXELS
    preferred_quadrant: Quadrant = Quadrant.CENTER
    partition_grid: int = 2
    partition_samples: int = 8
    spiral_steps: int = 8
    grid_scan_steps: int = 8

    def __post_init__(self):
        if self.max_features < 2:
            raise ValueError(f"max_features must be at least 2, got {self.max_features}")
        if self.min_pixels < 1:
            raise ValueError(f"min_pixels must be positive, got {self.min_pixels}")
        for name in ("partition_grid", "partition_samples", "spiral_steps", "grid_scan_steps"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        # Accept plain ints/names coming from the CLI
        if not isinstance(self.preferred_quadrant, Quadrant):
            object.__setattr__(self, "preferred_quadrant", parse_quadrant(self.preferred_quadrant))


@dataclass(frozen=True)
class CollisionConfig:
    """Label box sizing and declutter rules, all in normalized screen units."""
    char_width: float = 0.024
    char_height: float = 0.04
    label_offset: float = 0.035
    cell_size: float = 0.1
    crowding_threshold: int = 5
    max_offset_slots: int = 4
    stack_step_xy: float = 0.02
    stack_step_z: float = 0.05
    priorities: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_PRIORITIES))

    def __post_init__(self):
        if self.cell_size <= 0:
            raise ValueError(f"cell_size must be positive, got {self.cell_size}")
        if self.char_width <= 0 or self.char_height <= 0:
            raise ValueError("char_width and char_height must be positive")
        if self.crowding_threshold < 0 or self.max_offset_slots < 0:
            raise ValueError("crowding_threshold and max_offset_slots must not be negative")
        if "default" not in self.priorities:
            raise ValueError("priorities must define a 'default' entry")

    def priority_of(self, source_layer: str) -> int:
        return self.priorities.get(source_layer, self.priorities["default"])


def parse_quadrant(value) -> Quadrant:
    if isinstance(value, Quadrant):
        return value
    if isinstance(value, int):
        return Quadrant(value)
    key = str(value).strip().upper().replace("-", "_")
    try:
        return Quadrant[key]
    except KeyError:
        names = ", ".join(q.name.lower().replace("_", "-") for q in Quadrant)
        raise ValueError(f"Unknown quadrant '{value}'. Expected one of: {names}") from None
