"""tiers — tier gating and pay-per-use overage billing."""

from crochetkit.tiers.billing import PaymentRequest, PayPerUse, billing_period
from crochetkit.tiers.gate import GateDecision, Operation, TierGate, UsageCounts

__all__ = [
    "GateDecision",
    "Operation",
    "PayPerUse",
    "PaymentRequest",
    "TierGate",
    "UsageCounts",
    "billing_period",
]
