from __future__ import annotations

"""
Fungible asset primitives.

The ledger only ever needs standard ERC-20 semantics: balance queries, a
direct transfer out of its own custody, and (through the transfer authority)
transferFrom against a prior approval. `AssetBank` is that interface;
`InMemoryAssetBank` is a multi-token implementation for tests and the dev
sidecar.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Tuple

from .permits import UINT256_MAX, check_uint, normalize_address


class AssetTransferError(RuntimeError):
    """A transfer the asset would revert (balance or approval too low)."""


class AssetBank:
    """
    Abstract asset API. Every method takes the asset (token address) first.
    """

    def balance_of(self, asset: str, holder: str) -> int:
        raise NotImplementedError

    def allowance(self, asset: str, owner: str, spender: str) -> int:
        raise NotImplementedError

    def approve(self, asset: str, owner: str, spender: str, amount: int) -> None:
        raise NotImplementedError

    def transfer(self, asset: str, sender: str, to: str, amount: int) -> None:
        raise NotImplementedError

    def transfer_from(
        self, asset: str, spender: str, owner: str, to: str, amount: int
    ) -> None:
        raise NotImplementedError

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """All-or-nothing scope; backends on an atomic substrate need nothing."""
        yield


class InMemoryAssetBank(AssetBank):
    def __init__(self) -> None:
        self._balances: Dict[Tuple[str, str], int] = {}
        self._allowances: Dict[Tuple[str, str, str], int] = {}
        self._lock = threading.RLock()

    # ----- queries -----

    def balance_of(self, asset: str, holder: str) -> int:
        key = (normalize_address(asset, name="asset"), normalize_address(holder, name="holder"))
        with self._lock:
            return self._balances.get(key, 0)

    def allowance(self, asset: str, owner: str, spender: str) -> int:
        key = (
            normalize_address(asset, name="asset"),
            normalize_address(owner, name="owner"),
            normalize_address(spender, name="spender"),
        )
        with self._lock:
            return self._allowances.get(key, 0)

    def total_supply(self, asset: str) -> int:
        a = normalize_address(asset, name="asset")
        with self._lock:
            return sum(v for (k_asset, _), v in self._balances.items() if k_asset == a)

    # ----- mutations -----

    def mint(self, asset: str, to: str, amount: int) -> None:
        a = normalize_address(asset, name="asset")
        t = normalize_address(to, name="to")
        check_uint(amount, name="amount")
        with self._lock:
            new = self._balances.get((a, t), 0) + amount
            if new > UINT256_MAX:
                raise AssetTransferError("balance overflow")
            self._balances[(a, t)] = new

    def approve(self, asset: str, owner: str, spender: str, amount: int) -> None:
        check_uint(amount, name="amount")
        key = (
            normalize_address(asset, name="asset"),
            normalize_address(owner, name="owner"),
            normalize_address(spender, name="spender"),
        )
        with self._lock:
            self._allowances[key] = amount

    def transfer(self, asset: str, sender: str, to: str, amount: int) -> None:
        a = normalize_address(asset, name="asset")
        s = normalize_address(sender, name="sender")
        t = normalize_address(to, name="to")
        check_uint(amount, name="amount")
        with self._lock:
            self._move(a, s, t, amount)

    def transfer_from(
        self, asset: str, spender: str, owner: str, to: str, amount: int
    ) -> None:
        a = normalize_address(asset, name="asset")
        sp = normalize_address(spender, name="spender")
        o = normalize_address(owner, name="owner")
        t = normalize_address(to, name="to")
        check_uint(amount, name="amount")
        with self._lock:
            allowed = self._allowances.get((a, o, sp), 0)
            if allowed < amount:
                raise AssetTransferError(
                    f"insufficient approval: {allowed} < {amount}"
                )
            self._move(a, o, t, amount)
            if allowed != UINT256_MAX:
                self._allowances[(a, o, sp)] = allowed - amount

    def _move(self, asset: str, sender: str, to: str, amount: int) -> None:
        bal = self._balances.get((asset, sender), 0)
        if bal < amount:
            raise AssetTransferError(f"insufficient balance: {bal} < {amount}")
        self._balances[(asset, sender)] = bal - amount
        self._balances[(asset, to)] = self._balances.get((asset, to), 0) + amount

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            balances = dict(self._balances)
            allowances = dict(self._allowances)
            try:
                yield
            except BaseException:
                self._balances = balances
                self._allowances = allowances
                raise
