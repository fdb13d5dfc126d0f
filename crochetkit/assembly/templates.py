"""
Piece factory: build Piece instances from registry templates.

Template availability follows tier rank: a tier may use its own templates
and those of every lower tier.  Custom pieces are user-defined shapes with a
single universal connection point.
"""

from __future__ import annotations

from collections.abc import Sequence

from crochetkit.errors import ErrorKind, Result
from crochetkit.registry import CrochetRegistry, PieceTemplateEntry, Tier, get_registry
from crochetkit.safety.types import SafeVector, to_safe_color
from crochetkit.schemas.piece import (
    UNIVERSAL,
    ConnectionPoint,
    Piece,
    PieceMetadata,
    RoundSpec,
    Side,
)


def available_templates(
    tier: Tier | str, registry: CrochetRegistry | None = None
) -> list[PieceTemplateEntry]:
    """Templates usable at *tier*, in table order."""
    return (registry or get_registry()).templates_for_tier(tier)


def _side_name(template: PieceTemplateEntry, side: Side) -> str:
    if side is Side.NONE:
        return template.name
    return f"{side.value.capitalize()} {template.name}"


def create_piece_from_template(
    template_id: str,
    tier: Tier | str,
    *,
    piece_id: str,
    created_at: int,
    side: Side = Side.NONE,
    color: str | None = None,
    position: SafeVector | None = None,
    registry: CrochetRegistry | None = None,
) -> Result:
    """
    Instantiate the template *template_id* for an assembly at *tier*.

    Parameters
    ----------
    template_id:
        Registry template id (``head``, ``body``, ``arm``…).
    tier:
        Tier of the requesting assembly.
    piece_id, created_at:
        Identity and creation time of the new piece.
    side:
        Side tag for mirrored pieces.  A left/right piece mirrors point x
        coordinates for ``right`` and prefixes its display name.
    color:
        Override of the template's default color.
    position:
        Initial assembly position.

    Returns
    -------
    Result
        ``value`` is the new Piece; ``not_found`` for an unknown template and
        ``tier_limit_exceeded`` when the template belongs to a higher tier.
    """
    registry = registry or get_registry()
    try:
        template = registry.get_template(template_id)
    except KeyError as exc:
        return Result.failure(ErrorKind.NOT_FOUND, str(exc.args[0]))
    tier = Tier(tier)
    if template.tier.rank > tier.rank:
        return Result.failure(
            ErrorKind.TIER_LIMIT_EXCEEDED,
            f"template {template_id!r} requires the {template.tier.value} tier",
        )

    mirror = -1.0 if side is Side.RIGHT else 1.0
    points = tuple(
        ConnectionPoint(
            id=f"{piece_id}_{pt.name}",
            name=pt.name,
            position=SafeVector(pt.position.x * mirror, pt.position.y, pt.position.z),
            compatible=pt.compatible,
            type=pt.type,
            size=template.size,
        )
        for pt in template.connection_points
    )
    piece = Piece(
        id=piece_id,
        type=template.type,
        name=_side_name(template, side),
        color=to_safe_color(color) if color else template.default_color,
        connection_points=points,
        metadata=PieceMetadata(
            stitch_count=sum(r.stitches for r in template.rounds),
            round_count=len(template.rounds),
            created_at=created_at,
            side=side,
        ),
        position=position or SafeVector(),
        rounds=template.rounds,
        custom=template.custom,
        extras={"template": template.id},
    )
    return Result.success(piece)


def create_custom_piece(
    name: str,
    *,
    piece_id: str,
    created_at: int,
    piece_type: str = "custom",
    color: str | None = None,
    pattern: Sequence[str] = (),
    rounds: Sequence[RoundSpec] = (),
    size: int | None = None,
) -> Piece:
    """
    Build a user-defined piece.

    The piece carries one point named ``universal`` that accepts, and is
    accepted by, any other point.  Raises ValueError for an empty name.
    """
    if not name:
        raise ValueError("custom piece name must not be empty")
    point = ConnectionPoint(
        id=f"{piece_id}_{UNIVERSAL}",
        name=UNIVERSAL,
        compatible=(UNIVERSAL,),
        type=UNIVERSAL,
        size=size,
    )
    return Piece(
        id=piece_id,
        type=piece_type,
        name=name,
        color=to_safe_color(color),
        connection_points=(point,),
        metadata=PieceMetadata(
            stitch_count=sum(r.stitches for r in rounds),
            round_count=len(rounds),
            created_at=created_at,
        ),
        pattern=tuple(pattern),
        rounds=tuple(rounds),
        custom=True,
    )
