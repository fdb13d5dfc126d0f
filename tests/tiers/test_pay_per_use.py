"""Tests for tiers.billing — overage transactions, thresholds, payments and periods."""

from __future__ import annotations

import random
from datetime import timezone

import pytest

from crochetkit.errors import ErrorKind
from crochetkit.events import EventBus, EventType
from crochetkit.schemas.usage import TransactionStatus
from crochetkit.tiers import PayPerUse, billing_period

_NOV_14 = 1_700_000_000_000  # 2023-11-14 UTC
_DEC_02 = 1_701_500_000_000  # 2023-12-02 UTC


class _Clock:
    def __init__(self, now: int = _NOV_14) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


def _make_billing(clock: _Clock | None = None) -> tuple[PayPerUse, EventBus, _Clock]:
    clock = clock or _Clock()
    bus = EventBus(clock)
    billing = PayPerUse(bus=bus, clock=clock, rng=random.Random(1), tz=timezone.utc)
    return billing, bus, clock


class TestPeriods:
    def test_billing_period_key(self):
        assert billing_period(_NOV_14, timezone.utc) == "2023-11"
        assert billing_period(_DEC_02, timezone.utc) == "2023-12"

    def test_new_ledger_gets_current_period(self):
        billing, _, _ = _make_billing()
        assert billing.ledger.current_billing_period == "2023-11"

    def test_reset_on_month_change_keeps_pending(self):
        billing, bus, clock = _make_billing()
        resets = []
        bus.subscribe(EventType.PERIOD_RESET, resets.append)
        billing.track_extra_piece("p1", 0.02)
        assert billing.reset_period() is False
        clock.now = _DEC_02
        assert billing.reset_period() is True
        assert billing.ledger.extra_pieces == 0
        assert billing.ledger.total_cost == 0.0
        assert billing.ledger.pending_charges == pytest.approx(0.02)
        assert resets[0].payload["previous"] == "2023-11"
        assert [h["period"] for h in billing.get_billing_history()] == ["2023-11"]


class TestCharges:
    def test_track_extra_piece(self):
        billing, bus, _ = _make_billing()
        charged = []
        bus.subscribe(EventType.OVERAGE_CHARGED, charged.append)
        txn = billing.track_extra_piece("p26", 0.02, "Extra Arm")
        assert txn.status is TransactionStatus.PENDING
        assert txn.period == "2023-11"
        assert txn.piece_name == "Extra Arm"
        assert billing.ledger.extra_pieces == 1
        assert billing.ledger.pending_charges == pytest.approx(0.02)
        assert charged[0].payload["piece_id"] == "p26"

    def test_money_stays_rounded(self):
        billing, _, _ = _make_billing()
        for n in range(100):
            billing.track_extra_piece(f"p{n}", 0.02)
        assert billing.ledger.pending_charges == 2.0
        assert billing.ledger.total_cost == 2.0

    @pytest.mark.parametrize(
        ("pending", "level"),
        [(0.5, None), (1.0, "payment_required"), (5.0, "warning"), (10.0, "auto_bill")],
    )
    def test_thresholds(self, pending, level):
        billing, _, _ = _make_billing()
        billing.ledger.pending_charges = pending
        assert billing.check_thresholds() == level

    def test_auto_bill_opens_request(self):
        billing, bus, _ = _make_billing()
        requested = []
        bus.subscribe(EventType.PAYMENT_REQUESTED, requested.append)
        billing.set_payment_method(True)
        assert billing.toggle_auto_pay().value is True
        billing.track_extra_piece("p1", 10.0)
        assert billing.payment.payment_pending
        assert requested[0].payload["amount"] == 10.0

    def test_auto_bill_without_method_is_skipped(self):
        billing, _, _ = _make_billing()
        billing.track_extra_piece("p1", 10.0)
        assert not billing.payment.payment_pending
        assert billing.initiate_auto_billing().kind is ErrorKind.PAYMENT_FAILED


class TestPayments:
    def test_manual_payment_below_minimum(self):
        billing, _, _ = _make_billing()
        billing.track_extra_piece("p1", 0.5)
        assert billing.process_manual_payment().kind is ErrorKind.PAYMENT_BELOW_MINIMUM

    def test_manual_payment_settles_oldest_first(self):
        billing, _, clock = _make_billing()
        for n in range(3):
            clock.now += 1
            billing.track_extra_piece(f"p{n}", 1.0)
        result = billing.process_manual_payment(2.5)
        assert result.ok
        assert result.value["amount_applied"] == 2.0
        assert result.value["pending_charges"] == 1.0
        statuses = [t.status for t in billing.ledger.transactions]
        assert statuses == [TransactionStatus.PAID, TransactionStatus.PAID, TransactionStatus.PENDING]

    def test_complete_payment_success(self):
        billing, _, _ = _make_billing()
        billing.set_payment_method(True)
        billing.toggle_auto_pay()
        billing.track_extra_piece("p1", 12.0)
        request_id = next(iter(billing.payment.open_requests))
        result = billing.complete_payment(request_id, success=True)
        assert result.value["amount_paid"] == 12.0
        assert billing.ledger.pending_charges == 0.0
        assert billing.ledger.last_billing_date == _NOV_14

    def test_complete_payment_failure(self):
        billing, _, _ = _make_billing()
        billing.set_payment_method(True)
        billing.toggle_auto_pay()
        billing.track_extra_piece("p1", 12.0)
        request_id = next(iter(billing.payment.open_requests))
        assert billing.complete_payment(request_id, success=False).kind is ErrorKind.PAYMENT_FAILED
        assert billing.ledger.transactions[0].status is TransactionStatus.FAILED
        assert billing.ledger.pending_charges == 12.0

    def test_complete_unknown_request(self):
        billing, _, _ = _make_billing()
        assert billing.complete_payment("bill_0", success=True).kind is ErrorKind.NOT_FOUND

    def test_auto_pay_needs_method(self):
        billing, _, _ = _make_billing()
        assert billing.toggle_auto_pay().kind is ErrorKind.PAYMENT_FAILED
        billing.set_payment_method(True)
        billing.toggle_auto_pay()
        billing.set_payment_method(False)
        assert billing.payment.auto_pay_enabled is False


class TestQueries:
    def test_usage_export_round_trip(self):
        billing, _, _ = _make_billing()
        billing.track_extra_piece("p1", 0.02)
        exported = billing.export_usage()
        other, _, _ = _make_billing()
        assert other.import_usage(exported).ok
        assert other.ledger.extra_pieces == 1
        assert other.ledger.transactions[0].piece_id == "p1"

    def test_projected_monthly_cost(self):
        billing, _, _ = _make_billing()
        billing.track_extra_piece("p1", 1.4)
        projection = billing.get_projected_monthly_cost()
        assert projection["current_cost"] == 1.4
        assert projection["projected_cost"] == 3.0  # 1.4 / 14 days * 30
        assert projection["days_remaining"] == 16

    def test_get_transactions_newest_first(self):
        billing, _, clock = _make_billing()
        for n in range(3):
            clock.now += 1
            billing.track_extra_piece(f"p{n}", 0.02)
        assert [t.piece_id for t in billing.get_transactions(limit=2)] == ["p2", "p1"]
