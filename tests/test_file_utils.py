# tests/test_file_utils.py
import json
import xml.etree.ElementTree as ET

import pytest
from PIL import Image

from anchor import file_utils
from anchor.collision import LabelCandidate, resolve_placements
from anchor.config import AnchorConfig
from anchor.pipeline import AnchorPipeline
from anchor.synthetic import archipelago, donut

SVG_NS = "{http://www.w3.org/2000/svg}"


def donut_frame():
    raster = donut()
    markers = AnchorPipeline(AnchorConfig(max_features=16)).run_frame(raster)
    decisions = resolve_placements([LabelCandidate(7, "Ring", "place")], markers.positions())
    return raster, markers, decisions


def test_save_overlay_png_creates_file_with_metadata(tmp_path):
    img = Image.new("RGB", (10, 10), color=(100, 150, 200))
    output_file = tmp_path / "nested" / "overlay.png"
    cmd_line = "anchorgen ids.png out"
    metadata = {"User Note": "Test run", "9lives": "cat"}

    file_utils.save_overlay_png(img, output_file, command_line_invocation=cmd_line, additional_metadata=metadata)

    assert output_file.exists()
    with Image.open(output_file) as im:
        pnginfo = im.info
        assert pnginfo["anchorgen:command_line"] == cmd_line
        assert pnginfo["anchorgen:User_Note"] == "Test run"
        assert pnginfo["anchorgen:anchorgen_9lives"] == "cat"


def test_save_overlay_svg_has_markers_and_labels(tmp_path):
    raster, markers, decisions = donut_frame()
    output_file = tmp_path / "overlay.svg"

    file_utils.save_overlay_svg(output_file, raster, markers, decisions,
                                command_line_invocation="anchorgen", additional_metadata={"Author": "Tester"})

    root = ET.parse(output_file).getroot()
    assert root.tag.endswith("svg")
    groups = {g.get("id"): g for g in root.iter(f"{SVG_NS}g")}
    circles = groups["anchor-markers"].findall(f"{SVG_NS}circle")
    assert [c.get("id") for c in circles] == ["marker-7"]
    texts = groups["anchor-labels"].findall(f"{SVG_NS}text")
    assert [t.text for t in texts] == ["Ring"]
    assert "Tester" in output_file.read_text()


def test_verbatim_write_and_get_xml(tmp_path):
    xml_content = "<metadata><info>Test</info></metadata>"
    verbatim = file_utils.Verbatim(xml_string=xml_content, elementname="metadata")

    output_file = tmp_path / "verbatim_output.xml"
    with open(output_file, "w") as f:
        verbatim.write(f, indent=2)
    assert xml_content in output_file.read_text()

    element = verbatim.get_xml()
    assert isinstance(element, ET.Element)
    assert element.find("info").text == "Test"


def test_marker_and_decision_records_are_json_ready(tmp_path):
    raster, markers, decisions = donut_frame()

    records = file_utils.marker_records(markers, raster)
    assert len(records) == 1
    record = records[0]
    assert record["id"] == 7
    assert record["status"] == "partition_center"
    assert record["pixel"] == [59, 59]
    assert record["centroid_pixel"] == [80, 80]
    assert record["parts"] == 1
    assert record["color"][3] == 1.0

    placements = file_utils.decision_records(decisions)
    assert placements[0]["mode"] == "direct"
    assert placements[0]["offset"] == [0.0, 0.0, 0.0]

    path = tmp_path / "out" / "markers.json"
    file_utils.save_json(records, path)
    assert json.loads(path.read_text())[0]["id"] == 7


def test_verbatim_write_checks_element_against_profile(tmp_path):
    verbatim = file_utils.Verbatim(xml_string="<bogus/>", elementname="bogus")
    with open(tmp_path / "bad.xml", "w") as f:
        with pytest.raises(KeyError):
            verbatim.write(f)

    quiet = file_utils.Verbatim(xml_string="<bogus/>", elementname="bogus", debug=False)
    with open(tmp_path / "quiet.xml", "w") as f:
        quiet.write(f)
    assert (tmp_path / "quiet.xml").read_text() == "<bogus/>"


def test_marker_records_report_multi_part_features():
    raster = archipelago(fid=5)
    markers = AnchorPipeline(AnchorConfig(max_features=16)).run_frame(raster)

    records = file_utils.marker_records(markers, raster)
    assert [r["id"] for r in records] == [5]
    assert records[0]["parts"] == 2
    assert records[0]["status"] == "spiral"
