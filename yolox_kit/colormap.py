from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Union

from .errors import ConfigurationInvalid
from .types import ColorMapEntry

LOGGER = logging.getLogger(__name__)


def _parse_color(value: Any, index: int) -> tuple[float, float, float]:
    if not isinstance(value, (list, tuple)) or len(value) < 3:
        raise ConfigurationInvalid(f"items[{index}].color must be a list of 3 numbers")
    rgb = []
    for c in value[:3]:
        if isinstance(c, bool) or not isinstance(c, (int, float)):
            raise ConfigurationInvalid(f"items[{index}].color must contain only numbers")
        if not 0.0 <= float(c) <= 1.0:
            raise ConfigurationInvalid(f"items[{index}].color values must be in [0, 1], got {value}")
        rgb.append(float(c))
    return rgb[0], rgb[1], rgb[2]


def parse_colormap(payload: Union[Dict[str, Any], List[Any]]) -> List[ColorMapEntry]:
    """
    Build the class table from a decoded colormap document.

    The usual shape is

        {"items": [{"label": "person", "color": [0.0, 0.5, 1.0]}, ...]}

    A bare list of items is accepted too. The list index is the class index.
    """

    items = payload.get("items") if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise ConfigurationInvalid("Colormap must be a list of items or an object with an 'items' list")
    if not items:
        raise ConfigurationInvalid("Colormap contains no classes")

    entries: List[ColorMapEntry] = []
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise ConfigurationInvalid(f"items[{i}] must be an object")
        label = item.get("label")
        if not isinstance(label, str) or not label.strip():
            raise ConfigurationInvalid(f"items[{i}].label must be a non-empty string")
        entries.append(ColorMapEntry(label=label, color=_parse_color(item.get("color"), i)))
    return entries


def load_colormap(path: Union[str, Path]) -> List[ColorMapEntry]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Colormap not found: {path}")
    raw = path.read_text(encoding="utf-8")
    if not raw.strip():
        raise ConfigurationInvalid(f"Colormap file is empty: {path}")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationInvalid(f"Invalid colormap JSON: {path}") from exc

    entries = parse_colormap(payload)
    LOGGER.info("Loaded %d classes from %s", len(entries), path)
    return entries
