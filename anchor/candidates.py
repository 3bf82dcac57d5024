import json
import logging
import math
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from anchor.collision import LabelCandidate

LOGGER = logging.getLogger(__name__)

MAX_LABELS = 10000
MAX_CHARS_PER_LABEL = 32

# Property keys tried, in order, when a feature has no explicit label text
NAME_KEYS = ("NAME", "name", "ADM0_A3", "ISO_A3")


def _number(value) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def label_text(feature: Mapping[str, Any]) -> Optional[str]:
    text = feature.get("text")
    if text:
        return str(text)
    properties = feature.get("properties")
    if not isinstance(properties, Mapping):
        properties = {}
    for key in NAME_KEYS:
        if properties.get(key):
            return str(properties[key])
    # Unnamed buildings get a synthetic height label
    if feature.get("source_layer") == "building":
        height = _number(feature.get("height", properties.get("height")))
        if height is not None and height > 0:
            return f"{round(height)}m"
    return None


def build_candidates(
    features: Iterable[Mapping[str, Any]],
    max_labels: int = MAX_LABELS,
    max_chars: int = MAX_CHARS_PER_LABEL,
) -> List[LabelCandidate]:
    """Turn feature records into label candidates.

    Each record needs an ``id`` and either ``text`` or name-like
    ``properties``. Malformed records (not an object, or an id that is not a
    positive integer), records without usable text and repeated ids are
    skipped. Text is truncated to ``max_chars`` and at most
    ``max_labels`` candidates are returned.
    """
    candidates = []
    seen = set()
    skipped = 0
    for feature in features:
        if not isinstance(feature, Mapping):
            skipped += 1
            continue
        fid = _number(feature.get("id"))
        text = label_text(feature)
        if fid is None or fid != int(fid) or fid <= 0 or not text or fid in seen:
            skipped += 1
            continue
        fid = int(fid)
        seen.add(fid)
        candidates.append(LabelCandidate(fid, text[:max_chars], str(feature.get("source_layer") or "default")))
        if len(candidates) >= max_labels:
            LOGGER.warning("Label limit of %d reached; remaining features are not labeled", max_labels)
            break
    if skipped:
        LOGGER.debug("Skipped %d feature record(s) without a usable id or label", skipped)
    return candidates


def load_candidates(path: Union[str, Path], **kwargs) -> List[LabelCandidate]:
    """Read feature records from a JSON list (or ``{"features": [...]}``)."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ValueError(f"Label file not found: {path}") from None
    except json.JSONDecodeError as e:
        raise ValueError(f"Label file {path} is not valid JSON: {e}") from e
    if isinstance(data, dict):
        data = data.get("features", [])
    if not isinstance(data, list):
        raise ValueError(f"Label file {path} must contain a list of feature records")
    return build_candidates(data, **kwargs)


def default_candidates(feature_ids: Iterable[int], layers: Optional[Dict[int, str]] = None) -> List[LabelCandidate]:
    """One '#id' label per feature, used when no label file is given."""
    layers = layers or {}
    return [LabelCandidate(int(fid), f"#{fid}", layers.get(int(fid), "default")) for fid in sorted(feature_ids) if fid > 0]
