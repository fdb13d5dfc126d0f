"""
Renderer-object guard.

Engine data must be plain: mappings, lists, tuples, strings, numbers, booleans,
None and the safe value types.  ``find_unsafe`` reports the first path where
something else appears (a renderer object recognized by its marker keys or
methods, a callable, or a circular reference); persistence refuses to
serialize anything it flags.  ``strip_unsafe`` is the lenient counterpart used
when importing foreign data, and ``safe_clone`` is the strict deep copy used
for command payloads.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping
from typing import Any

from crochetkit.errors import UnsafeObjectError
from crochetkit.safety.types import SafeVector

logger = logging.getLogger(__name__)

UNSAFE_MARKERS: frozenset[str] = frozenset(
    {
        "isObject3D",
        "isGeometry",
        "isMaterial",
        "isBufferGeometry",
        "isScene",
        "isCamera",
        "isLight",
        "isMesh",
        "isGroup",
        "isRenderer",
    }
)

RENDERER_METHODS: frozenset[str] = frozenset(
    {"updateMatrix", "updateMatrixWorld", "raycast", "dispose", "render"}
)

_PRIMITIVES = (str, int, float, bool, type(None))


def _carries_marker(obj: Any) -> str | None:
    if isinstance(obj, Mapping):
        for key in UNSAFE_MARKERS:
            if key in obj:
                return key
        return None
    for key in UNSAFE_MARKERS:
        if getattr(obj, key, False) is True:
            return key
    for method in RENDERER_METHODS:
        if callable(getattr(obj, method, None)):
            return method
    return None


def find_unsafe(obj: Any, path: str = "root") -> str | None:
    """Return the path of the first unsafe value inside *obj*, or None if it is plain."""
    return _find(obj, path, set())


def _find(obj: Any, path: str, active: set[int]) -> str | None:
    if isinstance(obj, _PRIMITIVES) or isinstance(obj, SafeVector):
        return None
    if id(obj) in active:
        return f"{path} (circular reference)"
    marker = _carries_marker(obj)
    if marker is not None:
        return f"{path}.{marker}"
    active.add(id(obj))
    try:
        if isinstance(obj, Mapping):
            for key, value in obj.items():
                if not isinstance(key, str):
                    return f"{path}[{key!r}]"
                found = _find(value, f"{path}.{key}", active)
                if found:
                    return found
            return None
        if isinstance(obj, (list, tuple)):
            for i, item in enumerate(obj):
                found = _find(item, f"{path}[{i}]", active)
                if found:
                    return found
            return None
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            for f in dataclasses.fields(obj):
                found = _find(getattr(obj, f.name), f"{path}.{f.name}", active)
                if found:
                    return found
            return None
        return path
    finally:
        active.discard(id(obj))


def is_safe_object(obj: Any) -> bool:
    return find_unsafe(obj) is None


def strip_unsafe(obj: Any, path: str = "root") -> Any:
    """
    Return a plain copy of *obj* with unsafe values removed.

    Renderer objects, callables and circular references are dropped (from
    lists) or omitted (from mappings); unknown objects become None.
    """
    return _strip(obj, path, set())


def _strip(obj: Any, path: str, active: set[int]) -> Any:
    if isinstance(obj, _PRIMITIVES):
        return obj
    if isinstance(obj, SafeVector):
        return obj.to_dict()
    if id(obj) in active or _carries_marker(obj) is not None or callable(obj):
        logger.debug("stripping unsafe value at %s", path)
        return None
    active.add(id(obj))
    try:
        if isinstance(obj, Mapping):
            cleaned: dict[str, Any] = {}
            for key, value in obj.items():
                if not isinstance(key, str):
                    continue
                stripped = _strip(value, f"{path}.{key}", active)
                if stripped is not None or value is None:
                    cleaned[key] = stripped
            return cleaned
        if isinstance(obj, (list, tuple)):
            items = (_strip(item, f"{path}[{i}]", active) for i, item in enumerate(obj))
            return [item for item in items if item is not None]
        logger.debug("stripping non-plain %s at %s", type(obj).__name__, path)
        return None
    finally:
        active.discard(id(obj))


def safe_clone(obj: Any, path: str = "root") -> Any:
    """
    Deep-but-safe copy for command payloads.

    Primitives and safe vectors are returned as is (both are immutable),
    frozen dataclasses are kept by reference, sequences are mapped into lists
    and mappings into dicts.

    Raises
    ------
    UnsafeObjectError
        If any value is a renderer object, a callable or a circular reference.
    """
    found = find_unsafe(obj, path)
    if found is not None:
        raise UnsafeObjectError(found)
    return _clone(obj)


def _clone(obj: Any) -> Any:
    if isinstance(obj, Mapping):
        return {key: _clone(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_clone(item) for item in obj]
    return obj
