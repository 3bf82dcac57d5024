import logging
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from anchor.config import GPU_ENABLED, ndi_xp, xp

LOGGER = logging.getLogger(__name__)

_STRUCTURE_4CONN = np.array([[0, 1, 0], [1, 1, 1], [0, 1, 0]], dtype=bool)


class IdentityRaster:
    """Per-pixel feature/layer ownership produced by the rasterization stage.

    ``feature_ids[y, x]`` is the id of the feature covering pixel ``(x, y)``
    (0 = background) and ``layer_ids[y, x]`` the id of its source layer.
    The raster is consumed read-only by the anchor passes.
    """

    def __init__(self, feature_ids: np.ndarray, layer_ids: Optional[np.ndarray] = None):
        feature_ids = np.asarray(feature_ids)
        if feature_ids.ndim != 2:
            raise ValueError(f"Identity raster must be 2-D, got shape {feature_ids.shape}")
        if feature_ids.size and feature_ids.min() < 0:
            raise ValueError("Feature ids must not be negative")
        if layer_ids is None:
            layer_ids = np.zeros_like(feature_ids, dtype=np.int32)
        layer_ids = np.asarray(layer_ids)
        if layer_ids.shape != feature_ids.shape:
            raise ValueError(
                f"Layer id shape {layer_ids.shape} does not match feature id shape {feature_ids.shape}"
            )
        self.feature_ids = np.ascontiguousarray(feature_ids, dtype=np.int32)
        self.layer_ids = np.ascontiguousarray(layer_ids, dtype=np.int32)

    @property
    def height(self) -> int:
        return self.feature_ids.shape[0]

    @property
    def width(self) -> int:
        return self.feature_ids.shape[1]

    @property
    def shape(self) -> Tuple[int, int]:
        return self.feature_ids.shape

    def __repr__(self):
        return f"IdentityRaster({self.width}x{self.height}, features={len(self.feature_counts())})"

    @classmethod
    def from_rgba(cls, rgba: np.ndarray) -> "IdentityRaster":
        """Decode an 8-bit RGB(A) identity texture: red = feature id, green = layer id."""
        rgba = np.asarray(rgba)
        if rgba.ndim != 3 or rgba.shape[2] < 2:
            raise ValueError(f"Expected an HxWxC array with at least 2 channels, got {rgba.shape}")
        return cls(rgba[:, :, 0].astype(np.int32), rgba[:, :, 1].astype(np.int32))

    @classmethod
    def from_image(cls, path: Union[str, Path]) -> "IdentityRaster":
        try:
            with Image.open(path) as img:
                rgba = np.array(img.convert("RGBA"))
        except FileNotFoundError:
            raise ValueError(f"Identity raster not found at {path}") from None
        except UnidentifiedImageError as e:
            raise ValueError(f"Could not decode identity raster {path}: {e}") from e
        return cls.from_rgba(rgba)

    def to_image(self) -> Image.Image:
        if self.feature_ids.size and (self.feature_ids.max() > 255 or self.layer_ids.max() > 255):
            raise ValueError("Only ids below 256 fit the 8-bit identity encoding")
        rgba = np.zeros((self.height, self.width, 4), dtype=np.uint8)
        rgba[:, :, 0] = self.feature_ids
        rgba[:, :, 1] = self.layer_ids
        rgba[:, :, 3] = 255
        return Image.fromarray(rgba)

    def sample(self, x: int, y: int) -> int:
        if 0 <= x < self.width and 0 <= y < self.height:
            return int(self.feature_ids[y, x])
        return 0

    def feature_counts(self) -> Dict[int, int]:
        ids, counts = np.unique(self.feature_ids, return_counts=True)
        return {int(i): int(c) for i, c in zip(ids, counts) if i != 0}

    def clamp_to_ceiling(self, max_features: int) -> Tuple["IdentityRaster", Dict[int, int]]:
        """Drop ids that do not fit a ``max_features``-slot accumulator table.

        Returns the (possibly unchanged) raster and a map of dropped id -> pixel count.
        """
        overflow = self.feature_ids >= max_features
        if not overflow.any():
            return self, {}
        ids, counts = np.unique(self.feature_ids[overflow], return_counts=True)
        dropped = {int(i): int(c) for i, c in zip(ids, counts)}
        LOGGER.warning(
            "%d feature id(s) exceed the %d-slot table (max id %d); %d pixel(s) treated as background",
            len(dropped), max_features, max_features - 1, int(overflow.sum()),
        )
        clamped = np.where(overflow, 0, self.feature_ids)
        return IdentityRaster(clamped, self.layer_ids), dropped

    def feature_parts(self, feature_id: int) -> int:
        """Number of 4-connected pieces the feature is rasterized into."""
        mask = xp.asarray(self.feature_ids == feature_id)
        if not xp.any(mask):
            return 0
        structure = xp.asarray(_STRUCTURE_4CONN)
        _, num_parts = ndi_xp.label(mask, structure=structure)
        return int(num_parts)

    def device_feature_ids(self):
        """Feature ids on the active array backend (a CuPy array when GPU_ENABLED)."""
        if GPU_ENABLED:
            return xp.asarray(self.feature_ids)
        return self.feature_ids
