# FILE: permit_vault/ledger.py
from __future__ import annotations

"""
Permit Vault Ledger: custodial balances credited through signed permits.

Goals:
  - A holder deposits without first approving the vault: authorization is an
    off-chain signed permit that the transfer authority verifies and executes.
  - Credit exactly what the authority is asked to move (allowance path: the
    caller-supplied amount; one-shot path: the full signed amount).
  - Per-user, per-asset solvency on withdrawal.
  - All-or-nothing calls: the balance mutation and the delegated move share one
    transaction scope; any failure leaves balances, authority state and custody
    exactly as they were, and emits nothing.

Notes:
  - The ledger never verifies signatures and never tracks nonces; both belong
    to the authority. Signatures are passed through unmodified.
  - Call lifecycle: Validate -> Credit/Debit -> Delegate -> (commit) -> Emit.
  - Authority and asset failures surface as DelegationFailed, chained to the
    original error.
"""

import logging
import threading
import time
from contextlib import ExitStack
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from prometheus_client import Counter, Histogram

from .assets import AssetBank, AssetTransferError
from .authority import AuthorityError, SignatureLike, TransferAuthority
from .balances import BalanceStore, BalanceTxn, InMemoryBalanceStore
from .digest import DigestBuilder
from .errors import BatchLengthMismatch, DelegationFailed, InvalidSpender, LedgerError
from .events import EventLog, EventRecord
from .logging import log_ledger_op
from .permits import (
    AllowanceTransferDetails,
    PermitBatch,
    PermitBatchTransferFrom,
    PermitSingle,
    PermitTransferFrom,
    SignatureTransferDetails,
    check_uint,
    normalize_address,
)
from .witness import BeneficiaryWitness, Witness

logger = logging.getLogger(__name__)

# ---------- Metrics ----------

_CALL_APPLIED = Counter(
    "pv_ledger_calls_applied_total", "Committed ledger calls", ["op", "route"]
)
_CALL_REJECTED = Counter(
    "pv_ledger_calls_rejected_total", "Rejected ledger calls", ["op", "reason"]
)
_CALL_LAT = Histogram(
    "pv_ledger_call_latency_seconds",
    "Ledger call latency including delegation (seconds)",
    ["op"],
    buckets=(0.0005, 0.001, 0.002, 0.005, 0.010, 0.020, 0.050, 0.1, 0.25, 0.5),
)

Item = Tuple[str, int]
WitnessLike = Union[str, Witness]


def _as_witness(beneficiary: WitnessLike) -> Witness:
    if isinstance(beneficiary, Witness):
        return beneficiary
    return BeneficiaryWitness(beneficiary)


class Ledger:
    """
    The vault. `address` is the ledger's own identity: the spender every
    permit must name and the holder of custody at the asset bank.
    """

    def __init__(
        self,
        *,
        address: str,
        authority: TransferAuthority,
        assets: AssetBank,
        store: Optional[BalanceStore] = None,
        events: Optional[EventLog] = None,
    ) -> None:
        self._address = normalize_address(address, name="ledger address")
        self._authority = authority
        self._assets = assets
        self._store = store or InMemoryBalanceStore()
        self._events = events or EventLog()
        self._digests = DigestBuilder(authority.domain_separator())
        self._lock = threading.RLock()

    # ----- accessors -----

    @property
    def address(self) -> str:
        return self._address

    @property
    def authority(self) -> TransferAuthority:
        return self._authority

    @property
    def assets(self) -> AssetBank:
        return self._assets

    @property
    def store(self) -> BalanceStore:
        return self._store

    @property
    def events(self) -> EventLog:
        return self._events

    # ----- call machinery -----

    def _execute(
        self,
        op: str,
        kind: str,
        route: str,
        user: str,
        items: Sequence[Item],
        body: Callable[[BalanceTxn], None],
    ) -> EventRecord:
        t0 = time.perf_counter()
        # Held through the append so event seq follows commit order.
        with self._lock:
            try:
                with ExitStack() as stack:
                    txn = stack.enter_context(self._store.transaction())
                    stack.enter_context(self._authority.transaction())
                    stack.enter_context(self._assets.transaction())
                    body(txn)
            except (LedgerError, ValueError) as e:
                self._record_rejection(op, route, user, items, e, time.perf_counter() - t0)
                raise
            rec = self._events.append(kind, user, items, route)

        dt = time.perf_counter() - t0
        _CALL_APPLIED.labels(op=op, route=route).inc()
        _CALL_LAT.labels(op=op).observe(dt)
        log_ledger_op(
            logger, op=op, route=route, user=user, items=items, latency_ms=dt * 1000.0
        )
        return rec

    def _record_rejection(
        self, op: str, route: str, user: str, items: Sequence[Item], e: Exception, dt: float
    ) -> None:
        reason = type(e).__name__
        _CALL_REJECTED.labels(op=op, reason=reason).inc()
        _CALL_LAT.labels(op=op).observe(dt)
        log_ledger_op(
            logger, op=op, route=route, user=user, items=items,
            ok=False, reason=f"{reason}: {e}", latency_ms=dt * 1000.0,
        )

    @staticmethod
    def _delegate(operation: str, fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except AuthorityError as e:
            raise DelegationFailed(operation, str(e), code=e.code) from e
        except AssetTransferError as e:
            raise DelegationFailed(operation, str(e), code="AssetTransferFailed") from e

    def _refuse(self, op: str, user: str, err: LedgerError) -> None:
        reason = type(err).__name__
        _CALL_REJECTED.labels(op=op, reason=reason).inc()
        log_ledger_op(logger, op=op, route=None, user=user, items=[], ok=False, reason=f"{reason}: {err}")
        raise err

    def _check_spender(self, op: str, user: str, spender: str) -> None:
        if spender != self._address:
            self._refuse(op, user, InvalidSpender(spender, self._address))

    def _check_lengths(self, op: str, user: str, expected: int, got: int) -> None:
        if expected != got:
            self._refuse(op, user, BatchLengthMismatch(expected, got))

    # ----- allowance deposits -----

    def deposit_with_permit(
        self,
        caller: str,
        amount: int,
        permit: PermitSingle,
        signature: SignatureLike,
    ) -> EventRecord:
        """
        Register `permit` with the authority, then pull `amount` (<= the signed
        ceiling, enforced by the authority) into custody and credit the caller.
        """
        c = normalize_address(caller, name="caller")
        check_uint(amount, bits=160, name="amount")
        if not isinstance(permit, PermitSingle):
            raise ValueError("permit must be PermitSingle")
        self._check_spender("deposit_with_permit", c, permit.spender)
        token = permit.details.token

        def body(txn: BalanceTxn) -> None:
            txn.credit(c, token, amount)
            self._delegate("register_allowance", self._authority.register_allowance, c, permit, signature)
            self._delegate(
                "move_via_allowance",
                self._authority.move_via_allowance,
                self._address, c, self._address, amount, token,
            )

        return self._execute("deposit_with_permit", "deposit", "permit", c, [(token, amount)], body)

    def deposit(self, caller: str, asset: str, amount: int) -> EventRecord:
        """Draw on an allowance the caller registered earlier."""
        c = normalize_address(caller, name="caller")
        a = normalize_address(asset, name="asset")
        check_uint(amount, bits=160, name="amount")

        def body(txn: BalanceTxn) -> None:
            txn.credit(c, a, amount)
            self._delegate(
                "move_via_allowance",
                self._authority.move_via_allowance,
                self._address, c, self._address, amount, a,
            )

        return self._execute("deposit", "deposit", "allowance", c, [(a, amount)], body)

    def _allowance_batch(
        self, c: str, items: List[Item], permit: Optional[PermitBatch], signature: Optional[SignatureLike]
    ) -> Callable[[BalanceTxn], None]:
        legs = [
            AllowanceTransferDetails(from_=c, to=self._address, amount=n, token=a)
            for a, n in items
        ]

        def body(txn: BalanceTxn) -> None:
            for a, n in items:
                txn.credit(c, a, n)
            if permit is not None:
                self._delegate("register_allowance", self._authority.register_allowance, c, permit, signature)
            self._delegate(
                "move_via_allowance_batch",
                self._authority.move_via_allowance_batch,
                self._address, legs,
            )

        return body

    def deposit_batch_with_permit(
        self,
        caller: str,
        amounts: Sequence[int],
        permit: PermitBatch,
        signature: SignatureLike,
    ) -> EventRecord:
        c = normalize_address(caller, name="caller")
        if not isinstance(permit, PermitBatch):
            raise ValueError("permit must be PermitBatch")
        amounts = list(amounts)
        self._check_lengths("deposit_batch_with_permit", c, len(permit.details), len(amounts))
        self._check_spender("deposit_batch_with_permit", c, permit.spender)
        for n in amounts:
            check_uint(n, bits=160, name="amount")
        items = [(d.token, n) for d, n in zip(permit.details, amounts)]
        body = self._allowance_batch(c, items, permit, signature)
        return self._execute("deposit_batch_with_permit", "deposit_batch", "permit", c, items, body)

    def deposit_batch(
        self, caller: str, assets: Sequence[str], amounts: Sequence[int]
    ) -> EventRecord:
        c = normalize_address(caller, name="caller")
        assets, amounts = list(assets), list(amounts)
        self._check_lengths("deposit_batch", c, len(assets), len(amounts))
        items = [
            (normalize_address(a, name="asset"), check_uint(n, bits=160, name="amount"))
            for a, n in zip(assets, amounts)
        ]
        body = self._allowance_batch(c, items, None, None)
        return self._execute("deposit_batch", "deposit_batch", "allowance", c, items, body)

    # ----- one-shot deposits -----

    def _one_shot_single(
        self,
        op: str,
        route: str,
        owner: str,
        permit: PermitTransferFrom,
        move: Callable[[SignatureTransferDetails], None],
    ) -> EventRecord:
        if not isinstance(permit, PermitTransferFrom):
            raise ValueError("permit must be PermitTransferFrom")
        token, amount = permit.permitted.token, permit.permitted.amount
        transfer = SignatureTransferDetails(to=self._address, requested_amount=amount)

        def body(txn: BalanceTxn) -> None:
            txn.credit(owner, token, amount)
            move(transfer)

        return self._execute(op, "deposit", route, owner, [(token, amount)], body)

    def _one_shot_batch(
        self,
        op: str,
        route: str,
        owner: str,
        permit: PermitBatchTransferFrom,
        move: Callable[[List[SignatureTransferDetails]], None],
    ) -> EventRecord:
        if not isinstance(permit, PermitBatchTransferFrom):
            raise ValueError("permit must be PermitBatchTransferFrom")
        items = [(p.token, p.amount) for p in permit.permitted]
        transfers = [
            SignatureTransferDetails(to=self._address, requested_amount=n) for _, n in items
        ]

        def body(txn: BalanceTxn) -> None:
            for a, n in items:
                txn.credit(owner, a, n)
            move(transfers)

        return self._execute(op, "deposit_batch", route, owner, items, body)

    def deposit_with_transfer(
        self, caller: str, permit: PermitTransferFrom, signature: SignatureLike
    ) -> EventRecord:
        """Consume a one-shot permit signed by the caller; credits the full signed amount."""
        c = normalize_address(caller, name="caller")
        return self._one_shot_single(
            "deposit_with_transfer", "transfer", c, permit,
            lambda t: self._delegate(
                "verify_and_move", self._authority.verify_and_move,
                self._address, permit, t, c, signature,
            ),
        )

    def deposit_batch_with_transfer(
        self, caller: str, permit: PermitBatchTransferFrom, signature: SignatureLike
    ) -> EventRecord:
        c = normalize_address(caller, name="caller")
        return self._one_shot_batch(
            "deposit_batch_with_transfer", "transfer", c, permit,
            lambda ts: self._delegate(
                "verify_and_move_batch", self._authority.verify_and_move_batch,
                self._address, permit, ts, c, signature,
            ),
        )

    def deposit_with_witness(
        self,
        caller: str,
        owner: str,
        permit: PermitTransferFrom,
        beneficiary: WitnessLike,
        signature: SignatureLike,
    ) -> EventRecord:
        """
        Relayed one-shot deposit. `caller` submits; `owner` signed a digest
        binding `beneficiary` as witness. The balance is credited to `owner`.
        """
        normalize_address(caller, name="caller")
        o = normalize_address(owner, name="owner")
        w = _as_witness(beneficiary)
        return self._one_shot_single(
            "deposit_with_witness", "witness", o, permit,
            lambda t: self._delegate(
                "verify_and_move_with_witness", self._authority.verify_and_move_with_witness,
                self._address, permit, t, o, w.struct_hash(), w.type_string, signature,
            ),
        )

    def deposit_batch_with_witness(
        self,
        caller: str,
        owner: str,
        permit: PermitBatchTransferFrom,
        beneficiary: WitnessLike,
        signature: SignatureLike,
    ) -> EventRecord:
        normalize_address(caller, name="caller")
        o = normalize_address(owner, name="owner")
        w = _as_witness(beneficiary)
        return self._one_shot_batch(
            "deposit_batch_with_witness", "witness", o, permit,
            lambda ts: self._delegate(
                "verify_and_move_batch_with_witness",
                self._authority.verify_and_move_batch_with_witness,
                self._address, permit, ts, o, w.struct_hash(), w.type_string, signature,
            ),
        )

    # ----- withdrawals -----

    def withdraw(self, caller: str, asset: str, amount: int, recipient: str) -> EventRecord:
        c = normalize_address(caller, name="caller")
        a = normalize_address(asset, name="asset")
        r = normalize_address(recipient, name="recipient")
        check_uint(amount, name="amount")

        def body(txn: BalanceTxn) -> None:
            txn.debit(c, a, amount)
            self._delegate("transfer", self._assets.transfer, a, self._address, r, amount)

        return self._execute("withdraw", "withdraw", "withdraw", c, [(a, amount)], body)

    def withdraw_batch(
        self,
        caller: str,
        assets: Sequence[str],
        amounts: Sequence[int],
        recipient: str,
    ) -> EventRecord:
        c = normalize_address(caller, name="caller")
        r = normalize_address(recipient, name="recipient")
        assets, amounts = list(assets), list(amounts)
        self._check_lengths("withdraw_batch", c, len(assets), len(amounts))
        items = [
            (normalize_address(a, name="asset"), check_uint(n, name="amount"))
            for a, n in zip(assets, amounts)
        ]

        def body(txn: BalanceTxn) -> None:
            for a, n in items:
                txn.debit(c, a, n)
                self._delegate("transfer", self._assets.transfer, a, self._address, r, n)

        return self._execute("withdraw_batch", "withdraw_batch", "withdraw", c, items, body)

    # ----- read-only -----

    def balance_of(self, user: str, asset: str) -> int:
        return self._store.get(user, asset)

    def domain_separator(self) -> bytes:
        return self._authority.domain_separator()

    def permit_single_digest(self, permit: PermitSingle) -> bytes:
        return self._digests.allowance_single(permit)

    def permit_batch_digest(self, permit: PermitBatch) -> bytes:
        return self._digests.allowance_batch(permit)

    def transfer_digest(self, permit: PermitTransferFrom) -> bytes:
        return self._digests.one_shot_single(permit, self._address)

    def transfer_batch_digest(self, permit: PermitBatchTransferFrom) -> bytes:
        return self._digests.one_shot_batch(permit, self._address)

    def transfer_witness_digest(self, permit: PermitTransferFrom, beneficiary: WitnessLike) -> bytes:
        return self._digests.one_shot_witness(permit, self._address, _as_witness(beneficiary))

    def transfer_batch_witness_digest(
        self, permit: PermitBatchTransferFrom, beneficiary: WitnessLike
    ) -> bytes:
        return self._digests.one_shot_batch_witness(permit, self._address, _as_witness(beneficiary))

    def reconcile(self, asset: str) -> Dict[str, int]:
        """
        Compare custody held at the asset bank with the sum of credited
        balances. A non-zero delta means assets arrived outside the ledger
        (positive) or the table over-credits (negative).
        """
        a = normalize_address(asset, name="asset")
        expected = self._assets.balance_of(a, self._address)
        recorded = self._store.total(a)
        return {"expected": expected, "recorded": recorded, "delta": expected - recorded}

