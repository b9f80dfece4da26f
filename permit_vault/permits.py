# FILE: permit_vault/permits.py
from __future__ import annotations

"""
Authorization data model for the vault ledger.

Two families of signed authorization are supported, mirroring the transfer
authority's own structs:

  - Allowance ("standing approval") permits: PermitDetails / PermitSingle /
    PermitBatch. They grant a ceiling that later transfers may draw down.
  - One-shot signature transfers: TokenPermissions / PermitTransferFrom /
    PermitBatchTransferFrom. They authorise exactly one transfer per nonce.

All structs are frozen dataclasses. Fields are validated at construction:
addresses are normalised to EIP-55 checksum form and integers are checked
against the Solidity width they are encoded with, so a struct that exists is
always encodable.
"""

from dataclasses import dataclass
from typing import Any, Iterable, Tuple

from eth_utils import is_address, to_checksum_address

UINT48_MAX = (1 << 48) - 1
UINT160_MAX = (1 << 160) - 1
UINT256_MAX = (1 << 256) - 1


# ---------- Field guards ----------


def normalize_address(value: Any, *, name: str = "address") -> str:
    """
    Return the checksum form of `value`, raising ValueError if it is not a
    20-byte hex address (bytes of length 20 are accepted too).
    """
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 20:
            raise ValueError(f"{name} must be 20 bytes, got {len(value)}")
        return to_checksum_address(bytes(value))
    if not isinstance(value, str) or not is_address(value):
        raise ValueError(f"{name} is not a valid address: {value!r}")
    return to_checksum_address(value)


def check_uint(value: Any, *, bits: int = 256, name: str = "value") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an int, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"{name} must be non-negative: {value}")
    if value > (1 << bits) - 1:
        raise ValueError(f"{name} does not fit in uint{bits}: {value}")
    return value


def _tuple_of(items: Iterable[Any], cls: type, name: str) -> Tuple[Any, ...]:
    out = tuple(items)
    for i, item in enumerate(out):
        if not isinstance(item, cls):
            raise ValueError(f"{name}[{i}] must be {cls.__name__}")
    return out


# ---------- Allowance permits ----------


@dataclass(frozen=True)
class PermitDetails:
    token: str
    amount: int
    expiration: int
    nonce: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "token", normalize_address(self.token, name="token"))
        check_uint(self.amount, bits=160, name="amount")
        check_uint(self.expiration, bits=48, name="expiration")
        check_uint(self.nonce, bits=48, name="nonce")


@dataclass(frozen=True)
class PermitSingle:
    details: PermitDetails
    spender: str
    sig_deadline: int

    def __post_init__(self) -> None:
        if not isinstance(self.details, PermitDetails):
            raise ValueError("details must be PermitDetails")
        object.__setattr__(self, "spender", normalize_address(self.spender, name="spender"))
        check_uint(self.sig_deadline, name="sig_deadline")


@dataclass(frozen=True)
class PermitBatch:
    details: Tuple[PermitDetails, ...]
    spender: str
    sig_deadline: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "details", _tuple_of(self.details, PermitDetails, "details"))
        object.__setattr__(self, "spender", normalize_address(self.spender, name="spender"))
        check_uint(self.sig_deadline, name="sig_deadline")


@dataclass(frozen=True)
class AllowanceTransferDetails:
    """One leg of a batched allowance transfer: move `amount` of `token` from `from_` to `to`."""

    from_: str
    to: str
    amount: int
    token: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "from_", normalize_address(self.from_, name="from"))
        object.__setattr__(self, "to", normalize_address(self.to, name="to"))
        check_uint(self.amount, bits=160, name="amount")
        object.__setattr__(self, "token", normalize_address(self.token, name="token"))


# ---------- One-shot signature transfers ----------


@dataclass(frozen=True)
class TokenPermissions:
    token: str
    amount: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "token", normalize_address(self.token, name="token"))
        check_uint(self.amount, name="amount")


@dataclass(frozen=True)
class PermitTransferFrom:
    permitted: TokenPermissions
    nonce: int
    deadline: int

    def __post_init__(self) -> None:
        if not isinstance(self.permitted, TokenPermissions):
            raise ValueError("permitted must be TokenPermissions")
        check_uint(self.nonce, name="nonce")
        check_uint(self.deadline, name="deadline")


@dataclass(frozen=True)
class PermitBatchTransferFrom:
    permitted: Tuple[TokenPermissions, ...]
    nonce: int
    deadline: int

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "permitted", _tuple_of(self.permitted, TokenPermissions, "permitted")
        )
        check_uint(self.nonce, name="nonce")
        check_uint(self.deadline, name="deadline")


@dataclass(frozen=True)
class SignatureTransferDetails:
    """Where a one-shot transfer goes and how much of the signed amount it takes."""

    to: str
    requested_amount: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "to", normalize_address(self.to, name="to"))
        check_uint(self.requested_amount, name="requested_amount")
