# tests/test_candidates.py
import json
import logging

import pytest

from anchor.candidates import build_candidates, default_candidates, label_text, load_candidates
from anchor.collision import LabelCandidate


def test_explicit_text_wins():
    assert label_text({"text": "Harbour", "properties": {"NAME": "Other"}}) == "Harbour"


def test_name_property_fallbacks_in_order():
    assert label_text({"properties": {"name": "lower", "ADM0_A3": "FRA"}}) == "lower"
    assert label_text({"properties": {"ADM0_A3": "FRA", "ISO_A3": "FRX"}}) == "FRA"
    assert label_text({"properties": {"ISO_A3": "DEU"}}) == "DEU"
    assert label_text({"properties": {}}) is None


def test_unnamed_building_gets_height_label():
    assert label_text({"source_layer": "building", "height": 41.6}) == "42m"
    assert label_text({"source_layer": "building", "properties": {"height": 12}}) == "12m"
    assert label_text({"source_layer": "building", "height": 0}) is None
    assert label_text({"source_layer": "landuse", "height": 30}) is None


def test_build_candidates_skips_and_truncates():
    features = [
        {"id": 0, "text": "background"},
        {"id": 3, "text": "A" * 40, "source_layer": "place"},
        {"id": 4},
        {"id": 3, "text": "duplicate"},
        {"id": 9, "properties": {"NAME": "Lake"}, "source_layer": "water"},
    ]
    candidates = build_candidates(features)
    assert candidates == [
        LabelCandidate(3, "A" * 32, "place"),
        LabelCandidate(9, "Lake", "water"),
    ]


def test_build_candidates_respects_label_limit():
    features = [{"id": i, "text": str(i)} for i in range(1, 20)]
    assert len(build_candidates(features, max_labels=5)) == 5


def test_load_candidates_from_file(tmp_path):
    path = tmp_path / "labels.json"
    path.write_text(json.dumps({"features": [{"id": 2, "text": "Two", "source_layer": "building"}]}))
    assert load_candidates(path) == [LabelCandidate(2, "Two", "building")]


def test_load_candidates_rejects_bad_files(tmp_path):
    with pytest.raises(ValueError, match="not found"):
        load_candidates(tmp_path / "missing.json")
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(ValueError, match="not valid JSON"):
        load_candidates(bad)
    scalar = tmp_path / "scalar.json"
    scalar.write_text("42")
    with pytest.raises(ValueError):
        load_candidates(scalar)


def test_default_candidates_label_every_feature():
    assert default_candidates({5: 10, 2: 30, 0: 100}, {5: "water"}) == [
        LabelCandidate(2, "#2", "default"),
        LabelCandidate(5, "#5", "water"),
    ]


def test_non_numeric_height_gets_no_label():
    assert label_text({"source_layer": "building", "height": "tall"}) is None
    assert label_text({"source_layer": "building", "height": "inf"}) is None
    assert label_text({"source_layer": "building", "properties": "oops", "height": "7"}) == "7m"


def test_malformed_records_are_skipped(caplog):
    features = [
        {"id": 1, "text": "Good"},
        {"id": 2, "source_layer": "building", "height": "tall"},
        "junk",
        {"id": "seven", "text": "Bad id"},
        {"id": 2.5, "text": "Fractional"},
        {"id": "4", "text": "Numeric string"},
    ]
    with caplog.at_level(logging.DEBUG, logger="anchor.candidates"):
        candidates = build_candidates(features)

    assert candidates == [LabelCandidate(1, "Good", "default"), LabelCandidate(4, "Numeric string", "default")]
    assert "Skipped 4 feature record(s)" in caplog.text


def test_load_candidates_keeps_good_records(tmp_path):
    path = tmp_path / "labels.json"
    path.write_text(json.dumps([{"id": 1, "text": "Good"}, {"id": 2, "source_layer": "building", "height": "tall"}]))
    assert load_candidates(path) == [LabelCandidate(1, "Good", "default")]
