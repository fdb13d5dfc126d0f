"""Tests for utilities — id generation and cancellation tokens."""

from __future__ import annotations

import random

from crochetkit.utilities.cancel import CancellationToken
from crochetkit.utilities.ids import make_id, random_token


class TestIds:
    def test_format(self):
        prefix, timestamp, token = make_id("piece", 1_700_000_000_000, random.Random(1)).split("_")
        assert (prefix, timestamp) == ("piece", "1700000000000")
        assert len(token) == 9

    def test_token_is_base36(self):
        token = random_token(random.Random(3), 40)
        assert len(token) == 40
        assert set(token) <= set("0123456789abcdefghijklmnopqrstuvwxyz")

    def test_seeded_rng_repeats(self):
        assert make_id("txn", 5, random.Random(9)) == make_id("txn", 5, random.Random(9))


class TestCancellationToken:
    def test_starts_clear(self):
        token = CancellationToken()
        assert not token.cancelled
        assert token.reason == ""

    def test_cancel_records_reason(self):
        token = CancellationToken()
        token.cancel("user abort")
        assert token.cancelled
        assert token.reason == "user abort"
