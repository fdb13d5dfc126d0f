from .registry import CrochetRegistry, get_registry
from .types import (
    ConnectionTypeEntry,
    PieceTemplateEntry,
    PointTemplate,
    StitchEntry,
    Tier,
    TierEntry,
    YarnEntry,
    YarnWeightEntry,
)

__all__ = [
    # Enums
    "Tier",
    # Registry entry types (frozen, loaded from YAML)
    "StitchEntry",
    "TierEntry",
    "YarnWeightEntry",
    "YarnEntry",
    "ConnectionTypeEntry",
    "PointTemplate",
    "PieceTemplateEntry",
    # Registry
    "CrochetRegistry",
    "get_registry",
]
