"""
Usage ledger schema for pay-per-use billing.

Transactions are append-only; only their ``status`` moves, from ``pending``
to ``paid`` or ``failed``.  ``history`` maps a ``YYYY-MM`` period to its
summary; the current period's summary shares Transaction objects with
``transactions``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from crochetkit.schemas.convert import require_mapping


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


@dataclass
class Transaction:
    id: str
    type: str
    piece_id: str
    cost: float
    timestamp: int
    period: str
    status: TransactionStatus = TransactionStatus.PENDING
    piece_name: str = ""
    payment_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "pieceId": self.piece_id,
            "pieceName": self.piece_name,
            "cost": self.cost,
            "timestamp": self.timestamp,
            "period": self.period,
            "status": self.status.value,
        }
        if self.payment_id is not None:
            data["paymentId"] = self.payment_id
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Transaction:
        data = require_mapping(data, "transaction")
        return cls(
            id=str(data["id"]),
            type=str(data.get("type", "extra_piece")),
            piece_id=str(data.get("pieceId", "")),
            cost=float(data.get("cost", 0.0)),
            timestamp=int(data.get("timestamp", 0)),
            period=str(data.get("period", "")),
            status=TransactionStatus(data.get("status", "pending")),
            piece_name=str(data.get("pieceName", "")),
            payment_id=data.get("paymentId"),
        )


@dataclass
class PeriodSummary:
    pieces: int = 0
    cost: float = 0.0
    transactions: list[Transaction] = field(default_factory=list)


@dataclass
class UsageLedger:
    extra_pieces: int = 0
    total_cost: float = 0.0
    pending_charges: float = 0.0
    transactions: list[Transaction] = field(default_factory=list)
    current_billing_period: str = ""
    last_billing_date: int | None = None
    history: dict[str, PeriodSummary] = field(default_factory=dict)
    saves_used: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "extraPieces": self.extra_pieces,
            "totalCost": self.total_cost,
            "pendingCharges": self.pending_charges,
            "transactions": [t.to_dict() for t in self.transactions],
            "currentBillingPeriod": self.current_billing_period,
            "lastBillingDate": self.last_billing_date,
            "history": {
                period: {
                    "pieces": summary.pieces,
                    "cost": summary.cost,
                    "transactions": [t.to_dict() for t in summary.transactions],
                }
                for period, summary in sorted(self.history.items())
            },
            "savesUsed": self.saves_used,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> UsageLedger:
        """
        Rebuild a ledger.  Period summaries re-link to the live transaction
        objects by id so status changes stay visible in both places.

        Raises KeyError, TypeError or ValueError on malformed data.
        """
        data = require_mapping(data, "usage ledger")
        transactions = [Transaction.from_dict(t) for t in data.get("transactions", ())]
        by_id = {t.id: t for t in transactions}
        history = {
            str(period): PeriodSummary(
                pieces=int(require_mapping(summary, f"period {period}").get("pieces", 0)),
                cost=float(summary.get("cost", 0.0)),
                transactions=[
                    by_id.get(str(t["id"])) or Transaction.from_dict(t)
                    for t in summary.get("transactions", ())
                ],
            )
            for period, summary in require_mapping(data.get("history") or {}, "usage history").items()
        }
        last = data.get("lastBillingDate")
        return cls(
            extra_pieces=int(data.get("extraPieces", 0)),
            total_cost=float(data.get("totalCost", 0.0)),
            pending_charges=float(data.get("pendingCharges", 0.0)),
            transactions=transactions,
            current_billing_period=str(data.get("currentBillingPeriod", "")),
            last_billing_date=None if last is None else int(last),
            history=history,
            saves_used=int(data.get("savesUsed", 0)),
        )
