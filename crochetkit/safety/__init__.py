"""safety — safe value types and the renderer-object guard."""

from crochetkit.safety.guard import find_unsafe, is_safe_object, safe_clone, strip_unsafe
from crochetkit.safety.types import (
    DEFAULT_COLOR,
    SafeVector,
    is_safe_color,
    to_safe_color,
    to_safe_vector,
)

__all__ = [
    "DEFAULT_COLOR",
    "SafeVector",
    "find_unsafe",
    "is_safe_color",
    "is_safe_object",
    "safe_clone",
    "strip_unsafe",
    "to_safe_color",
    "to_safe_vector",
]
