"""
Pay-per-use billing for pieces beyond a paid tier's quota.

Each overage piece appends a pending Transaction to the UsageLedger and adds
its cost to ``pending_charges``.  After every charge the pending total is
checked against three thresholds:

  payment minimum   smallest accepted manual payment (default $1.00)
  warning           logged once the pending total reaches it ($5.00)
  auto-bill         with auto-pay on and a payment method on file, a
                    PaymentRequest is opened ($10.00)

Real payment processing is external.  The manager only models the state
transitions: ``complete_payment`` settles an open request, moving its pending
transactions to ``paid`` or ``failed``.

Billing periods are ``YYYY-MM`` keys in local time (or the injected zone).
"""

from __future__ import annotations

import calendar
import logging
import random
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any

from crochetkit.errors import ErrorKind, Result
from crochetkit.events import EventBus, EventType, wall_clock
from crochetkit.schemas.usage import PeriodSummary, Transaction, TransactionStatus, UsageLedger
from crochetkit.utilities.ids import make_id

logger = logging.getLogger(__name__)


def _money(value: float) -> float:
    return round(value + 0.0, 2)


def billing_period(timestamp: int, tz: tzinfo | None = None) -> str:
    """``YYYY-MM`` key of an epoch-ms timestamp."""
    moment = datetime.fromtimestamp(timestamp / 1000, tz)
    return f"{moment.year:04d}-{moment.month:02d}"


@dataclass
class PaymentRequest:
    id: str
    amount: float
    transaction_ids: list[str]
    timestamp: int
    method: str = "auto"
    status: str = "processing"


@dataclass
class PaymentState:
    has_payment_method: bool = False
    auto_pay_enabled: bool = False
    last_payment_status: str | None = None
    open_requests: dict[str, PaymentRequest] = field(default_factory=dict)

    @property
    def payment_pending(self) -> bool:
        return bool(self.open_requests)


class PayPerUse:
    """
    Parameters
    ----------
    ledger:
        Ledger to operate on; a fresh one is created when omitted.
    bus:
        Receives ``overage_charged``, ``payment_requested``,
        ``payment_completed`` and ``period_reset``.
    clock, rng, tz:
        Time source, id randomness and the zone for period keys.
    payment_minimum, warning_threshold, auto_bill_threshold:
        Billing thresholds in USD.
    """

    def __init__(
        self,
        ledger: UsageLedger | None = None,
        *,
        bus: EventBus | None = None,
        clock: Callable[[], int] = wall_clock,
        rng: random.Random | None = None,
        tz: tzinfo | None = None,
        payment_minimum: float = 1.00,
        warning_threshold: float = 5.00,
        auto_bill_threshold: float = 10.00,
    ) -> None:
        self._bus = bus if bus is not None else EventBus(clock)
        self._clock = clock
        self._rng = rng if rng is not None else random.Random()
        self.tz = tz
        self.payment_minimum = payment_minimum
        self.warning_threshold = warning_threshold
        self.auto_bill_threshold = auto_bill_threshold
        self.ledger = ledger if ledger is not None else UsageLedger()
        if not self.ledger.current_billing_period:
            self.ledger.current_billing_period = self.current_period()
        self.payment = PaymentState()

    def current_period(self) -> str:
        return billing_period(self._clock(), self.tz)

    def _summary(self, period: str) -> PeriodSummary:
        return self.ledger.history.setdefault(period, PeriodSummary())

    # ── Charges ───────────────────────────────────────────────────────────────

    def track_extra_piece(self, piece_id: str, cost: float, piece_name: str = "") -> Transaction:
        """Append a pending overage transaction and re-check thresholds."""
        self.reset_period()
        period = self.ledger.current_billing_period
        now = self._clock()
        txn = Transaction(
            id=make_id("txn", now, self._rng),
            type="extra_piece",
            piece_id=piece_id,
            piece_name=piece_name,
            cost=cost,
            timestamp=now,
            period=period,
        )
        ledger = self.ledger
        ledger.extra_pieces += 1
        ledger.total_cost = _money(ledger.total_cost + cost)
        ledger.pending_charges = _money(ledger.pending_charges + cost)
        ledger.transactions.append(txn)
        summary = self._summary(period)
        summary.pieces += 1
        summary.cost = _money(summary.cost + cost)
        summary.transactions.append(txn)

        logger.debug("overage piece %s charged $%.2f (pending $%.2f)", piece_id, cost, ledger.pending_charges)
        self._bus.emit(
            EventType.OVERAGE_CHARGED,
            transaction_id=txn.id,
            piece_id=piece_id,
            cost=cost,
            pending_charges=ledger.pending_charges,
        )
        self.check_thresholds()
        return txn

    def check_thresholds(self) -> str | None:
        """
        Return the highest threshold the pending total has reached:
        ``"auto_bill"``, ``"warning"``, ``"payment_required"`` or None.
        """
        pending = self.ledger.pending_charges
        if pending >= self.auto_bill_threshold:
            if self.payment.auto_pay_enabled:
                self.initiate_auto_billing()
            return "auto_bill"
        if pending >= self.warning_threshold:
            logger.warning("pending charges reached $%.2f", pending)
            return "warning"
        if pending >= self.payment_minimum:
            return "payment_required"
        return None

    # ── Payments ──────────────────────────────────────────────────────────────

    def _pending_transactions(self) -> list[Transaction]:
        return [t for t in self.ledger.transactions if t.status is not TransactionStatus.PAID]

    def initiate_auto_billing(self) -> Result:
        """Open a payment request for everything pending.  Needs a payment method."""
        if not self.payment.has_payment_method:
            logger.warning("auto-billing skipped: no payment method on file")
            return Result.failure(ErrorKind.PAYMENT_FAILED, "no payment method on file")
        if self.payment.payment_pending:
            return Result.success(next(iter(self.payment.open_requests.values())))
        now = self._clock()
        request = PaymentRequest(
            id=f"bill_{now}",
            amount=self.ledger.pending_charges,
            transaction_ids=[t.id for t in self._pending_transactions()],
            timestamp=now,
        )
        self.payment.open_requests[request.id] = request
        logger.info("auto-billing $%.2f (%s)", request.amount, request.id)
        self._bus.emit(EventType.PAYMENT_REQUESTED, request_id=request.id, amount=request.amount)
        return Result.success(request)

    def complete_payment(self, request_id: str, success: bool) -> Result:
        """
        Settle an open payment request.

        On success its transactions become ``paid`` and their cost leaves
        ``pending_charges``.  On failure they become ``failed`` and stay owed.
        """
        request = self.payment.open_requests.pop(request_id, None)
        if request is None:
            return Result.failure(ErrorKind.NOT_FOUND, f"no open payment request {request_id!r}")
        covered = [t for t in self.ledger.transactions if t.id in set(request.transaction_ids)]
        self.payment.last_payment_status = "success" if success else "failed"
        if success:
            paid = self._mark_paid(covered, request.id)
            request.status = "paid"
        else:
            for txn in covered:
                if txn.status is TransactionStatus.PENDING:
                    txn.status = TransactionStatus.FAILED
            paid = 0.0
            request.status = "failed"
        self._bus.emit(EventType.PAYMENT_COMPLETED, request_id=request.id, success=success, amount=paid)
        if not success:
            logger.warning("payment %s failed", request.id)
            return Result.failure(ErrorKind.PAYMENT_FAILED, f"payment {request.id} failed")
        return Result.success({"payment_id": request.id, "amount_paid": paid})

    def _mark_paid(self, transactions: list[Transaction], payment_id: str) -> float:
        paid = 0.0
        for txn in transactions:
            if txn.status is TransactionStatus.PAID:
                continue
            txn.status = TransactionStatus.PAID
            txn.payment_id = payment_id
            paid = _money(paid + txn.cost)
        self.ledger.pending_charges = _money(max(0.0, self.ledger.pending_charges - paid))
        self.ledger.last_billing_date = self._clock()
        return paid

    def process_manual_payment(self, amount: float | None = None) -> Result:
        """
        Pay *amount* (default: everything pending) now.

        Unpaid transactions are settled oldest first while the amount covers
        them.  Amounts under the payment minimum are refused with
        ``payment_below_minimum``.
        """
        pay = self.ledger.pending_charges if amount is None else amount
        if pay < self.payment_minimum:
            return Result.failure(
                ErrorKind.PAYMENT_BELOW_MINIMUM, f"minimum payment is ${self.payment_minimum:.2f}"
            )
        payment_id = f"pay_{self._clock()}"
        budget = pay
        covered: list[Transaction] = []
        for txn in sorted(self._pending_transactions(), key=lambda t: t.timestamp):
            if txn.cost > budget + 1e-9:
                break
            covered.append(txn)
            budget = _money(budget - txn.cost)
        paid = self._mark_paid(covered, payment_id)
        self.payment.last_payment_status = "success"
        logger.info("manual payment %s settled %d transaction(s), $%.2f", payment_id, len(covered), paid)
        self._bus.emit(EventType.PAYMENT_COMPLETED, request_id=payment_id, success=True, amount=paid)
        return Result.success(
            {
                "payment_id": payment_id,
                "amount": pay,
                "amount_applied": paid,
                "transactions": [t.id for t in covered],
                "pending_charges": self.ledger.pending_charges,
            }
        )

    def set_payment_method(self, has_method: bool) -> None:
        self.payment.has_payment_method = has_method
        if not has_method:
            self.payment.auto_pay_enabled = False

    def toggle_auto_pay(self) -> Result:
        if not self.payment.has_payment_method:
            return Result.failure(ErrorKind.PAYMENT_FAILED, "payment method required for auto-pay")
        self.payment.auto_pay_enabled = not self.payment.auto_pay_enabled
        return Result.success(self.payment.auto_pay_enabled)

    # ── Periods ───────────────────────────────────────────────────────────────

    def reset_period(self) -> bool:
        """
        Archive the ledger when the calendar month has changed.

        Per-period counters and the transaction list restart; pending
        charges remain owed.  Returns True when a reset happened.
        """
        period = self.current_period()
        ledger = self.ledger
        if ledger.current_billing_period == period:
            return False
        previous = ledger.current_billing_period
        if previous:
            # Summaries are kept current by track_extra_piece; make sure the
            # closed period is listed even when nothing was charged in it.
            self._summary(previous)
        ledger.extra_pieces = 0
        ledger.total_cost = 0.0
        ledger.transactions = [t for t in ledger.transactions if t.status is not TransactionStatus.PAID]
        ledger.current_billing_period = period
        logger.info("billing period reset: %s -> %s", previous, period)
        self._bus.emit(EventType.PERIOD_RESET, previous=previous, current=period)
        return True

    # ── Queries ───────────────────────────────────────────────────────────────

    def get_usage_stats(self) -> dict[str, Any]:
        period = self.ledger.current_billing_period
        summary = self.ledger.history.get(period, PeriodSummary())
        return {
            "current_period": period,
            "extra_pieces": self.ledger.extra_pieces,
            "total_cost": self.ledger.total_cost,
            "pending_charges": self.ledger.pending_charges,
            "period_pieces": summary.pieces,
            "period_cost": summary.cost,
            "transaction_count": len(self.ledger.transactions),
            "last_billing_date": self.ledger.last_billing_date,
            "payment_pending": self.payment.payment_pending,
            "auto_pay_enabled": self.payment.auto_pay_enabled,
            "has_payment_method": self.payment.has_payment_method,
        }

    def get_transactions(
        self, *, period: str | None = None, status: TransactionStatus | str | None = None, limit: int | None = None
    ) -> list[Transaction]:
        """Matching transactions, most recent first.  *limit* keeps the newest ones."""
        wanted = TransactionStatus(status) if status is not None else None
        result = [
            t
            for t in self.ledger.transactions
            if (period is None or t.period == period) and (wanted is None or t.status is wanted)
        ]
        if limit:
            result = result[-limit:]
        return list(reversed(result))

    def get_billing_history(self, limit: int = 6) -> list[dict[str, Any]]:
        periods = sorted(self.ledger.history, reverse=True)[:limit]
        return [
            {
                "period": p,
                "pieces": self.ledger.history[p].pieces,
                "cost": self.ledger.history[p].cost,
                "transactions": [t.id for t in self.ledger.history[p].transactions],
            }
            for p in periods
        ]

    def get_projected_monthly_cost(self) -> dict[str, float]:
        """Extrapolate this period's cost linearly to the end of the month."""
        moment = datetime.fromtimestamp(self._clock() / 1000, self.tz)
        days_in_month = calendar.monthrange(moment.year, moment.month)[1]
        current = self.ledger.history.get(self.ledger.current_billing_period, PeriodSummary()).cost
        daily = current / moment.day
        return {
            "current_cost": current,
            "projected_cost": _money(daily * days_in_month),
            "daily_rate": round(daily, 4),
            "days_remaining": days_in_month - moment.day,
        }

    def export_usage(self) -> dict[str, Any]:
        return {
            "usage": self.ledger.to_dict(),
            "paymentState": {
                "hasPaymentMethod": self.payment.has_payment_method,
                "autoPayEnabled": self.payment.auto_pay_enabled,
                "lastPaymentStatus": self.payment.last_payment_status,
            },
            "config": {
                "paymentThreshold": self.payment_minimum,
                "warningThreshold": self.warning_threshold,
                "autoBillThreshold": self.auto_bill_threshold,
            },
        }

    def import_usage(self, data: Mapping[str, Any]) -> Result:
        try:
            ledger = UsageLedger.from_dict(data.get("usage") or {})
        except (KeyError, TypeError, ValueError) as exc:
            return Result.failure(ErrorKind.VALIDATION_FAILED, f"invalid usage data: {exc}")
        self.ledger = ledger
        state = data.get("paymentState") or {}
        self.payment = PaymentState(
            has_payment_method=bool(state.get("hasPaymentMethod", False)),
            auto_pay_enabled=bool(state.get("autoPayEnabled", False)),
            last_payment_status=state.get("lastPaymentStatus"),
        )
        return Result.success(ledger)

    def clear(self) -> None:
        self.ledger = UsageLedger(current_billing_period=self.current_period())
        self.payment.open_requests.clear()
