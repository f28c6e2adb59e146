"""Named colours and the custom pattern catalogue.

The catalogue is plain data. Applications ship it as JSON and load it with
load_pattern_catalog_file(); the SDK only parses and validates it.

Catalogue format:
    {
        "Police": [
            {"color": "FF0000", "duration_ms": 100},
            {"color": "0000FF", "duration_ms": 100, "transition": true, "led_bits": 127}
        ]
    }
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .models import ALL_LEDS, Color, PatternStep

logger = logging.getLogger(__name__)

NAMED_COLORS: Dict[str, Color] = {
    "red": Color(255, 0, 0),
    "green": Color(0, 255, 0),
    "blue": Color(0, 0, 255),
    "yellow": Color(255, 255, 0),
    "cyan": Color(0, 255, 255),
    "magenta": Color(255, 0, 255),
    "white": Color(255, 255, 255),
    "off": Color(0, 0, 0),
}


@dataclass(frozen=True)
class PatternPreset:
    """A named custom pattern.

    Attributes:
        name: Display name
        steps: Pattern lines in playback order
    """
    name: str
    steps: Tuple[PatternStep, ...]


def named_color(name: str) -> Color:
    """Look up a named colour (case-insensitive)."""
    try:
        return NAMED_COLORS[name.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown colour {name!r}, expected one of: {', '.join(NAMED_COLORS)}"
        ) from None


def parse_color(text: str) -> Color:
    """Parse a colour given as a name, 'RRGGBB'/'#RRGGBB' or 'r,g,b'.

    Examples:
        >>> parse_color("red")
        Color(red=255, green=0, blue=0)
        >>> parse_color("0,128,255").hex
        '0080FF'
    """
    value = text.strip()
    if value.lower() in NAMED_COLORS:
        return NAMED_COLORS[value.lower()]
    if "," in value:
        parts = value.split(",")
        if len(parts) != 3:
            raise ValueError(f"Expected 'r,g,b', got {text!r}")
        try:
            red, green, blue = (int(p) for p in parts)
        except ValueError:
            raise ValueError(f"Expected integer channels in {text!r}") from None
        return Color(red, green, blue)
    return Color.from_hex(value)


def _parse_step(raw: Mapping[str, Any]) -> PatternStep:
    if "color" not in raw or "duration_ms" not in raw:
        raise ValueError(f"Pattern step needs 'color' and 'duration_ms': {raw!r}")
    return PatternStep(
        color=parse_color(str(raw["color"])),
        duration_ms=int(raw["duration_ms"]),
        transition=bool(raw.get("transition", False)),
        led_bits=int(raw.get("led_bits", ALL_LEDS)),
    )


def load_pattern_catalog(data: Mapping[str, Any]) -> Dict[str, PatternPreset]:
    """Build presets from a mapping of pattern name to step list.

    Raises:
        ValueError: A pattern is empty or a step is malformed
    """
    catalog: Dict[str, PatternPreset] = {}
    for name, raw_steps in data.items():
        if not isinstance(raw_steps, list) or not raw_steps:
            raise ValueError(f"Pattern {name!r} must be a non-empty list of steps")
        steps = tuple(_parse_step(step) for step in raw_steps)
        catalog[name] = PatternPreset(name=name, steps=steps)
    logger.debug(f"Loaded {len(catalog)} patterns")
    return catalog


def load_pattern_catalog_file(path: Union[str, Path]) -> Dict[str, PatternPreset]:
    """Read a JSON pattern catalogue from disk."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be an object")
    return load_pattern_catalog(data)


def find_pattern(catalog: Mapping[str, PatternPreset], name: str) -> Optional[PatternPreset]:
    """Case-insensitive lookup by pattern name."""
    wanted = name.strip().lower()
    for preset in catalog.values():
        if preset.name.lower() == wanted:
            return preset
    return None
