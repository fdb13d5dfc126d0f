"""
Tier gate: decide whether an operation fits the account's tier.

The gate is stateless.  Callers pass current usage; the same check serves the
real operation and the read-only UI pre-check (``check_operation_limit``).

  ADD_PIECE   freemium refuses past max_pieces; pro and studio accept and
              flag the piece as overage
  ADD_CUSTOM  refused on freemium; pro counts against custom_pieces;
              studio is unlimited
  SAVE        refused once max_saves is reached
  CONNECT     refused on freemium when either piece is custom
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from crochetkit.errors import ErrorKind
from crochetkit.registry import Tier, TierEntry


class Operation(str, Enum):
    ADD_PIECE = "ADD_PIECE"
    ADD_CUSTOM = "ADD_CUSTOM"
    SAVE = "SAVE"
    CONNECT = "CONNECT"


@dataclass(frozen=True)
class GateDecision:
    """
    allowed:     the operation may proceed.
    overage:     the operation proceeds past the tier quota and is billable.
    remaining:   quota left before this operation; None means unlimited.
    """

    allowed: bool
    kind: ErrorKind | None = None
    detail: str = ""
    overage: bool = False
    remaining: int | None = None
    cost: float = 0.0

    def to_dict(self) -> dict[str, object]:
        return {
            "allowed": self.allowed,
            "kind": self.kind.value if self.kind else None,
            "detail": self.detail,
            "will_charge": self.overage,
            "remaining": "Unlimited" if self.remaining is None else self.remaining,
            "cost": self.cost,
        }


@dataclass(frozen=True)
class UsageCounts:
    pieces: int = 0
    saves: int = 0
    custom_pieces: int = 0


class TierGate:
    """Evaluate operations against a tier table (see ``tiers.yaml``)."""

    def __init__(self, tiers: Mapping[Tier, TierEntry]) -> None:
        missing = [t.value for t in Tier if t not in tiers]
        if missing:
            raise ValueError(f"tier table is missing: {', '.join(missing)}")
        self._tiers = tiers

    def limits(self, tier: Tier | str) -> TierEntry:
        return self._tiers[Tier(tier)]

    def check(
        self,
        operation: Operation | str,
        tier: Tier | str,
        usage: UsageCounts,
        *,
        involves_custom: bool = False,
    ) -> GateDecision:
        """
        Decide *operation* for *tier* given current *usage*.

        Parameters
        ----------
        operation:
            One of :class:`Operation`.  Unknown operations are always allowed.
        tier:
            Tier to evaluate against.
        usage:
            Counts before the operation.
        involves_custom:
            For CONNECT: whether either endpoint's piece is custom.
        """
        limits = self.limits(tier)
        try:
            operation = Operation(operation)
        except ValueError:
            return GateDecision(allowed=True)

        match operation:
            case Operation.ADD_PIECE:
                remaining = max(0, limits.max_pieces - usage.pieces)
                if usage.pieces < limits.max_pieces:
                    return GateDecision(allowed=True, remaining=remaining)
                if not limits.allows_overage:
                    return GateDecision(
                        allowed=False,
                        kind=ErrorKind.TIER_LIMIT_EXCEEDED,
                        detail=f"{limits.name} tier limit reached ({limits.max_pieces} pieces)",
                        remaining=0,
                    )
                return GateDecision(
                    allowed=True, overage=True, remaining=0, cost=float(limits.overage_rate or 0.0)
                )

            case Operation.ADD_CUSTOM:
                if limits.custom_pieces is None:
                    return GateDecision(allowed=True, remaining=None)
                remaining = max(0, limits.custom_pieces - usage.custom_pieces)
                if limits.custom_pieces == 0:
                    return GateDecision(
                        allowed=False,
                        kind=ErrorKind.TIER_RESTRICTED_CUSTOM_PIECE,
                        detail=f"custom pieces are not available on the {limits.name} tier",
                        remaining=0,
                    )
                if usage.custom_pieces >= limits.custom_pieces:
                    return GateDecision(
                        allowed=False,
                        kind=ErrorKind.TIER_LIMIT_EXCEEDED,
                        detail=f"{limits.name} tier allows {limits.custom_pieces} custom pieces",
                        remaining=0,
                    )
                return GateDecision(allowed=True, remaining=remaining)

            case Operation.SAVE:
                remaining = max(0, limits.max_saves - usage.saves)
                if usage.saves >= limits.max_saves:
                    return GateDecision(
                        allowed=False,
                        kind=ErrorKind.SAVE_LIMIT_EXCEEDED,
                        detail=f"save limit reached ({limits.max_saves} saves on {limits.name})",
                        remaining=0,
                    )
                return GateDecision(allowed=True, remaining=remaining)

            case Operation.CONNECT:
                if involves_custom and limits.custom_pieces == 0:
                    return GateDecision(
                        allowed=False,
                        kind=ErrorKind.TIER_RESTRICTED_CUSTOM_PIECE,
                        detail="custom pieces require the pro tier or higher",
                    )
                return GateDecision(allowed=True)

        return GateDecision(allowed=True)

    def upgrade_prompt(self, tier: Tier | str, overage_cost: float = 0.0) -> dict[str, object] | None:
        """
        Recommend the next tier when staying costs at least as much.

        Freemium always gets the pro recommendation.  For paid tiers the
        prompt appears once monthly price plus this period's overage reaches
        the next tier's monthly price.  None at the top tier or when staying
        is cheaper.
        """
        current = Tier(tier)
        higher = [t for t in Tier if t.rank == current.rank + 1]
        if not higher:
            return None
        nxt = self.limits(higher[0])
        limits = self.limits(current)
        spend = limits.monthly_price + overage_cost
        if current is not Tier.FREEMIUM and spend < nxt.monthly_price:
            return None
        return {
            "current": current.value,
            "recommended": nxt.id.value,
            "current_spend": round(spend, 2),
            "recommended_price": nxt.monthly_price,
            "benefits": [
                f"{nxt.max_pieces} pieces per project",
                f"{nxt.max_saves} project saves",
                "unlimited custom pieces" if nxt.custom_pieces is None else f"{nxt.custom_pieces} custom pieces",
            ],
        }
