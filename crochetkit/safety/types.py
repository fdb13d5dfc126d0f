"""
Safe value types: the only vector and color representations engine data may hold.

Renderer-native vectors and colors are converted one way into these types at
the engine boundary.  A SafeVector is an immutable ``(x, y, z)`` triple that
serializes as a plain ``{"x", "y", "z"}`` mapping; a safe color is an
upper-case ``#RRGGBB`` string.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

DEFAULT_COLOR = "#FBBF24"

_HEX6 = re.compile(r"^#[0-9a-fA-F]{6}$")
_HEX3 = re.compile(r"^#[0-9a-fA-F]{3}$")


@dataclass(frozen=True)
class SafeVector:
    """Plain 3D vector in piece-local or assembly coordinates."""

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def __post_init__(self) -> None:
        for axis in ("x", "y", "z"):
            value = getattr(self, axis)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"SafeVector.{axis} must be a number, got {value!r}")
            if not math.isfinite(value):
                raise ValueError(f"SafeVector.{axis} must be finite, got {value!r}")

    def __add__(self, other: SafeVector) -> SafeVector:
        return SafeVector(self.x + other.x, self.y + other.y, self.z + other.z)

    def distance_to(self, other: SafeVector) -> float:
        return math.dist((self.x, self.y, self.z), (other.x, other.y, other.z))

    def snapped(self, grid: float) -> SafeVector:
        """Return this vector rounded to the nearest multiple of *grid* on each axis."""
        if grid <= 0:
            return self
        return SafeVector(
            round(self.x / grid) * grid,
            round(self.y / grid) * grid,
            round(self.z / grid) * grid,
        )

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "z": self.z}


def to_safe_vector(value: Any) -> SafeVector:
    """
    Convert *value* into a SafeVector.

    Accepts an existing SafeVector, a mapping with ``x``/``y``/``z`` keys
    (missing axes default to 0), a 3-item sequence, or any object exposing
    numeric ``x``/``y``/``z`` attributes (renderer vectors).  ``None`` maps to
    the origin.

    Raises
    ------
    ValueError
        If *value* cannot be read as a vector.
    """
    if value is None:
        return SafeVector()
    if isinstance(value, SafeVector):
        return value
    if isinstance(value, Mapping):
        return SafeVector(
            _number(value.get("x", 0)), _number(value.get("y", 0)), _number(value.get("z", 0))
        )
    if isinstance(value, Sequence) and not isinstance(value, str):
        if len(value) != 3:
            raise ValueError(f"vector sequence must have 3 items, got {len(value)}")
        return SafeVector(*(_number(v) for v in value))
    if all(hasattr(value, axis) for axis in ("x", "y", "z")):
        return SafeVector(_number(value.x), _number(value.y), _number(value.z))
    raise ValueError(f"cannot convert {type(value).__name__} to SafeVector")


def _number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"vector component must be a number, got {value!r}")
    return float(value)


def is_safe_color(value: Any) -> bool:
    return isinstance(value, str) and bool(_HEX6.match(value))


def to_safe_color(value: Any) -> str:
    """
    Convert *value* into an upper-case ``#RRGGBB`` string.

    ``#RGB`` shorthand is expanded.  Renderer colors exposing
    ``get_hex_string()`` or ``getHexString()`` are read through that method.
    Anything else falls back to :data:`DEFAULT_COLOR`.
    """
    if isinstance(value, str):
        if _HEX6.match(value):
            return value.upper()
        if _HEX3.match(value):
            return "#" + "".join(c * 2 for c in value[1:]).upper()
        return DEFAULT_COLOR
    for method in ("get_hex_string", "getHexString"):
        getter = getattr(value, method, None)
        if callable(getter):
            return to_safe_color("#" + str(getter()))
    return DEFAULT_COLOR
