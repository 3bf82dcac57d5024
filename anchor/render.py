import os
from typing import Iterable, Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from anchor.collision import PlacementDecision, PlacementMode
from anchor.config import M_A, M_B, M_G, M_R, M_X, M_Y, CollisionConfig
from anchor.pipeline import MarkerBuffer
from anchor.raster import IdentityRaster

UNRESOLVED_TINT = (200, 200, 200)
BACKGROUND = (255, 255, 255)


def get_font(font_path: Optional[str], font_size: int) -> ImageFont.ImageFont:
    if font_path and os.path.isfile(font_path):
        try:
            return ImageFont.truetype(font_path, font_size)
        except IOError:
            pass
    try:
        return ImageFont.load_default(size=font_size)
    except TypeError:  # Pillow < 10.1 has no sized default font
        return ImageFont.load_default()


def to_canvas(nx: float, ny: float, width: int, height: int, scale: float = 1.0) -> Tuple[float, float]:
    """Normalized coordinates -> continuous canvas coordinates (pixel centers at +0.5)."""
    return (nx + 1.0) * 0.5 * width * scale, (ny + 1.0) * 0.5 * height * scale


def label_position(decision: PlacementDecision, config: CollisionConfig) -> Optional[Tuple[float, float]]:
    """Normalized center of the label text, or None if it has nowhere to go."""
    if decision.anchor_pos is None or decision.mode == PlacementMode.HIDDEN:
        return None
    ax, ay, _ = decision.anchor_pos
    dx, dy, _ = decision.offset_vector
    return ax + dx, ay + dy + config.label_offset


def tint_table(markers: np.ndarray, num_ids: int) -> np.ndarray:
    """RGB per feature id: the marker color washed halfway to white, grey if unresolved."""
    lut = np.empty((num_ids, 3), dtype=np.uint8)
    lut[:] = UNRESOLVED_TINT
    lut[0] = BACKGROUND
    usable = min(num_ids, len(markers))
    rgb = markers[:usable, [M_R, M_G, M_B]]
    valid = markers[:usable, M_A] > 0
    washed = np.round((rgb * 255.0 + 255.0) / 2.0).astype(np.uint8)
    lut[:usable][valid] = washed[valid]
    return lut


def render_overlay(
    raster: IdentityRaster,
    markers: MarkerBuffer,
    decisions: Iterable[PlacementDecision] = (),
    collision_config: Optional[CollisionConfig] = None,
    scale: int = 2,
    font_path: Optional[str] = None,
    font_size: int = 10,
    dot_radius: int = 3,
) -> Image.Image:
    """Debug view: tinted features, a dot per marker, and labels where the declutter put them."""
    collision_config = collision_config or CollisionConfig()
    host = markers.host_markers()
    ids = raster.feature_ids
    lut = tint_table(host, int(ids.max()) + 1 if ids.size else 1)
    image = Image.fromarray(lut[ids])
    if scale != 1:
        image = image.resize((raster.width * scale, raster.height * scale), Image.Resampling.NEAREST)
    draw = ImageDraw.Draw(image)
    font = get_font(font_path, font_size)

    for fid in markers.valid_ids():
        x, y = to_canvas(float(host[fid, M_X]), float(host[fid, M_Y]), raster.width, raster.height, scale)
        color = tuple(int(round(c * 255)) for c in host[fid, [M_R, M_G, M_B]])
        draw.ellipse([x - dot_radius, y - dot_radius, x + dot_radius, y + dot_radius], fill=color, outline=(0, 0, 0))

    for decision in decisions:
        pos = label_position(decision, collision_config)
        if pos is None:
            continue
        lx, ly = to_canvas(pos[0], pos[1], raster.width, raster.height, scale)
        if decision.mode == PlacementMode.OFFSET_3D:
            ax, ay = to_canvas(decision.anchor_pos[0], decision.anchor_pos[1], raster.width, raster.height, scale)
            draw.line([(ax, ay), (lx, ly)], fill=(90, 90, 90), width=1)
        left, top, right, bottom = draw.textbbox((0, 0), decision.text, font=font)
        draw.text((lx - (right - left) / 2, ly - (bottom - top) / 2), decision.text, fill=(0, 0, 0), font=font)
    return image
