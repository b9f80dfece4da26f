from __future__ import annotations

"""
Ledger error taxonomy.

Every rejection the ledger itself raises derives from LedgerError. Failures
reported by the transfer authority or the asset are wrapped in
DelegationFailed and chained (`raise ... from`) so the original code survives.
"""

from typing import Optional


class LedgerError(RuntimeError):
    """Base class for ledger rejections."""


class InvalidSpender(LedgerError):
    """An allowance authorization names a spender other than this ledger."""

    def __init__(self, spender: str, expected: str) -> None:
        self.spender = spender
        self.expected = expected
        super().__init__(f"spender {spender} is not the ledger {expected}")


class InsufficientBalance(LedgerError):
    def __init__(self, balance: int, requested: int, *, user: str = "", asset: str = "") -> None:
        self.balance = balance
        self.requested = requested
        self.user = user
        self.asset = asset
        super().__init__(f"insufficient balance: {balance} < {requested}")


class DelegationFailed(LedgerError):
    """The authority (or the asset) refused the operation; nothing was applied."""

    def __init__(self, operation: str, reason: str, code: Optional[str] = None) -> None:
        self.operation = operation
        self.reason = reason
        self.code = code
        super().__init__(f"{operation} failed: {reason}")


class BatchLengthMismatch(LedgerError):
    def __init__(self, expected: int, got: int) -> None:
        self.expected = expected
        self.got = got
        super().__init__(f"batch length mismatch: expected {expected}, got {got}")
