import json
import logging
import re
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from xml.etree.ElementTree import Element, SubElement

import svgwrite
from PIL import Image, PngImagePlugin
from svgwrite.base import BaseElement

from anchor.accumulate import feature_summary
from anchor.collision import PlacementDecision, PlacementMode
from anchor.config import GPU_ENABLED, M_A, M_B, M_G, M_R, M_X, M_Y, AnchorStatus, CollisionConfig, xp
from anchor.pipeline import MarkerBuffer
from anchor.raster import IdentityRaster
from anchor.render import label_position, to_canvas

LOGGER = logging.getLogger(__name__)

SOFTWARE = "anchorgen label anchor generator"
ANCHORGEN_NS = "urn:anchorgen:metadata"


class Verbatim(BaseElement):
    """Pre-serialized XML dropped into an svgwrite drawing as-is."""

    def __init__(self, xml_string="", elementname="metadata", **kwargs_for_base_element):
        self.elementname = elementname
        super(Verbatim, self).__init__(**kwargs_for_base_element)
        self.xml_string = xml_string

    def write(self, fileobj, indent=0, newline='\n', options=None):
        validator = getattr(self, 'validator', None)
        if self.elementname and self.debug and validator is not None:
            # Raises KeyError when the element is not valid for the drawing's profile
            validator._get_element(self.elementname)
        fileobj.write(self.xml_string)

    def get_xml(self):
        # dwg.tostring() appends the returned element to its ElementTree
        return ET.fromstring(self.xml_string)


def _clean_key(key: str) -> str:
    key_clean = re.sub(r'\s+', '_', key)
    key_clean = re.sub(r'[^a-zA-Z0-9_.-]', '', key_clean)
    if not re.match(r'^[a-zA-Z_]', key_clean):
        key_clean = "anchorgen_" + key_clean
    return key_clean[:70]


def save_overlay_png(
    image_to_save: Image.Image,
    output_path: Path,
    command_line_invocation: Optional[str] = None,
    additional_metadata: Optional[Dict[str, str]] = None,
):
    """Save the overlay as PNG with anchorgen tEXt metadata."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    png_info = PngImagePlugin.PngInfo()
    if command_line_invocation:
        png_info.add_text("anchorgen:command_line", command_line_invocation)
    png_info.add_text("Software", SOFTWARE)
    if additional_metadata:
        for key, value in additional_metadata.items():
            png_info.add_text(f"anchorgen:{_clean_key(key)}", str(value))

    try:
        image_to_save.save(output_path, "PNG", pnginfo=png_info)
    except OSError:
        LOGGER.error("Error saving PNG to %s", output_path.resolve())
        raise


def _metadata_block(command_line_invocation: Optional[str], additional_metadata: Optional[Dict[str, Any]]) -> str:
    ET.register_namespace('anchorgen', ANCHORGEN_NS)
    root = Element('metadata')
    root.set('id', 'anchorgenMetadataContainer')
    custom = SubElement(root, f'{{{ANCHORGEN_NS}}}anchorgenMetadata')
    software = SubElement(custom, f'{{{ANCHORGEN_NS}}}Software')
    software.text = SOFTWARE
    if command_line_invocation:
        cli = SubElement(custom, f'{{{ANCHORGEN_NS}}}CommandLineInvocation')
        cli.text = command_line_invocation
    for key, value in (additional_metadata or {}).items():
        item = SubElement(custom, f'{{{ANCHORGEN_NS}}}{_clean_key(key)}')
        item.text = str(value)
    return ET.tostring(root, encoding='unicode', method='xml')


def save_overlay_svg(
    output_path: Path,
    raster: IdentityRaster,
    markers: MarkerBuffer,
    decisions: Iterable[PlacementDecision] = (),
    collision_config: Optional[CollisionConfig] = None,
    scale: int = 2,
    default_font_size: int = 10,
    marker_radius: float = 3.0,
    command_line_invocation: Optional[str] = None,
    additional_metadata: Optional[Dict[str, Any]] = None,
):
    """Vector version of the overlay: marker dots, leader lines and label text."""
    output_path = Path(output_path)
    collision_config = collision_config or CollisionConfig()
    width, height = raster.width * scale, raster.height * scale
    dwg = svgwrite.Drawing(filename=str(output_path), size=(f"{width}px", f"{height}px"), profile='full')

    dwg.add(Verbatim(
        xml_string=_metadata_block(command_line_invocation, additional_metadata),
        elementname='metadata',
        profile=dwg.profile,
        debug=dwg.debug,
    ))

    host = markers.host_markers()
    marker_group = dwg.g(id="anchor-markers", style="stroke:#000000; stroke-width:0.5px;")
    for fid in markers.valid_ids():
        x, y = to_canvas(float(host[fid, M_X]), float(host[fid, M_Y]), raster.width, raster.height, scale)
        r, g, b = (int(round(c * 255)) for c in host[fid, [M_R, M_G, M_B]])
        marker_group.add(dwg.circle(center=(round(x, 2), round(y, 2)), r=marker_radius,
                                    fill=svgwrite.rgb(r, g, b), id=f"marker-{fid}"))
    dwg.add(marker_group)

    leader_group = dwg.g(id="anchor-leaders", style="stroke:#5a5a5a; stroke-width:1px;")
    label_group = dwg.g(id="anchor-labels",
                        style="fill:#000000; text-anchor:middle; dominant-baseline:middle; font-family:sans-serif;")
    decisions = list(decisions)
    for decision in decisions:
        pos = label_position(decision, collision_config)
        if pos is None:
            continue
        lx, ly = to_canvas(pos[0], pos[1], raster.width, raster.height, scale)
        if decision.mode == PlacementMode.OFFSET_3D:
            ax, ay = to_canvas(decision.anchor_pos[0], decision.anchor_pos[1], raster.width, raster.height, scale)
            leader_group.add(dwg.line(start=(round(ax, 2), round(ay, 2)), end=(round(lx, 2), round(ly, 2))))
        label_group.add(dwg.text(decision.text, insert=(round(lx, 2), round(ly, 2)),
                                 font_size=f"{default_font_size}px"))
    dwg.add(leader_group)
    dwg.add(label_group)

    try:
        dwg.save(pretty=True)
    except OSError:
        LOGGER.error("Error saving SVG to %s", output_path.resolve())
        raise


def marker_records(markers: MarkerBuffer, raster: IdentityRaster) -> List[Dict[str, Any]]:
    """One JSON-ready record per feature present in the raster."""
    host = markers.host_markers()
    status = markers.host_status()
    features = xp.asnumpy(markers.features) if GPU_ENABLED else markers.features
    quadrants = xp.asnumpy(markers.quadrants) if GPU_ENABLED else markers.quadrants
    records = []
    for fid in sorted(raster.feature_counts()):
        if fid >= len(host):
            continue
        record: Dict[str, Any] = {"id": fid, "status": AnchorStatus(int(status[fid])).name.lower()}
        # 4-connected pieces
        record["parts"] = raster.feature_parts(fid)
        if host[fid, M_A] > 0:
            record["center"] = [round(float(host[fid, M_X]), 6), round(float(host[fid, M_Y]), 6)]
            record["pixel"] = list(markers.pixel_of(fid))
            record["color"] = [round(float(c), 4) for c in host[fid, [M_R, M_G, M_B, M_A]]]
        if features is not None and quadrants is not None:
            summary = feature_summary(features, quadrants, fid)
            if summary:
                record.update(summary)
        records.append(record)
    for fid, pixels in sorted(markers.dropped.items()):
        records.append({"id": fid, "status": "over_ceiling", "count": pixels})
    return records


def decision_records(decisions: Iterable[PlacementDecision]) -> List[Dict[str, Any]]:
    return [
        {
            "id": d.feature_id,
            "text": d.text,
            "source_layer": d.source_layer,
            "mode": d.mode.name.lower(),
            "anchor": None if d.anchor_pos is None else [round(v, 6) for v in d.anchor_pos],
            "offset": [round(v, 6) for v in d.offset_vector],
            "depth": d.depth,
            "collision_group": list(d.collision_group),
        }
        for d in decisions
    ]


def save_json(records: Any, output_path: Path) -> None:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(records, f, indent=2)
