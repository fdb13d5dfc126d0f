"""Cooperative cancellation for long operations (batches, bulk import)."""

from __future__ import annotations


class CancellationToken:
    """Set once by the caller, polled by the operation between steps."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        self._cancelled = True
        self.reason = reason
