# FILE: permit_vault/schemas.py
from __future__ import annotations

from typing import Annotated, Any, List, Optional

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field

from .permits import (
    PermitBatch,
    PermitBatchTransferFrom,
    PermitDetails,
    PermitSingle,
    PermitTransferFrom,
    TokenPermissions,
    normalize_address,
)

# =============================================================================
# Field types
# =============================================================================


def _parse_uint(v: Any) -> Any:
    """
    Accept ints, decimal strings and 0x-hex strings. uint256 values routinely
    exceed what JSON clients can represent as numbers, so strings are the
    recommended wire form.
    """
    if isinstance(v, bool):
        raise ValueError("booleans are not amounts")
    if isinstance(v, str):
        s = v.strip()
        try:
            return int(s, 16) if s.lower().startswith("0x") else int(s, 10)
        except ValueError as e:
            raise ValueError(f"not an integer: {v!r}") from e
    return v


def _check_hex(v: str) -> str:
    s = v[2:] if v.lower().startswith("0x") else v
    if not s or len(s) % 2:
        raise ValueError("expected an even-length hex string")
    try:
        bytes.fromhex(s)
    except ValueError as e:
        raise ValueError("expected a hex string") from e
    return "0x" + s.lower()


Uint = Annotated[int, BeforeValidator(_parse_uint), Field(ge=0)]
Address = Annotated[str, AfterValidator(lambda v: normalize_address(v))]
HexSignature = Annotated[str, AfterValidator(_check_hex)]

_MAX_ITEMS = 1024


class _In(BaseModel):
    model_config = ConfigDict(extra="forbid")


# =============================================================================
# Authorization payloads
# =============================================================================


class TokenAmountIn(_In):
    token: Address
    amount: Uint

    def to_model(self) -> TokenPermissions:
        return TokenPermissions(token=self.token, amount=self.amount)


class PermitDetailsIn(_In):
    token: Address
    amount: Uint
    expiration: Uint = Field(0, description="0 means 'expires at the block it is used in'")
    nonce: Uint

    def to_model(self) -> PermitDetails:
        return PermitDetails(
            token=self.token, amount=self.amount, expiration=self.expiration, nonce=self.nonce
        )


class PermitSingleIn(_In):
    details: PermitDetailsIn
    spender: Address
    sig_deadline: Uint

    def to_model(self) -> PermitSingle:
        return PermitSingle(
            details=self.details.to_model(), spender=self.spender, sig_deadline=self.sig_deadline
        )


class PermitBatchIn(_In):
    details: List[PermitDetailsIn] = Field(..., max_length=_MAX_ITEMS)
    spender: Address
    sig_deadline: Uint

    def to_model(self) -> PermitBatch:
        return PermitBatch(
            details=tuple(d.to_model() for d in self.details),
            spender=self.spender,
            sig_deadline=self.sig_deadline,
        )


class PermitTransferFromIn(_In):
    permitted: TokenAmountIn
    nonce: Uint
    deadline: Uint

    def to_model(self) -> PermitTransferFrom:
        return PermitTransferFrom(
            permitted=self.permitted.to_model(), nonce=self.nonce, deadline=self.deadline
        )


class PermitBatchTransferFromIn(_In):
    permitted: List[TokenAmountIn] = Field(..., max_length=_MAX_ITEMS)
    nonce: Uint
    deadline: Uint

    def to_model(self) -> PermitBatchTransferFrom:
        return PermitBatchTransferFrom(
            permitted=tuple(p.to_model() for p in self.permitted),
            nonce=self.nonce,
            deadline=self.deadline,
        )


# =============================================================================
# Request bodies
# =============================================================================


class TransferWitnessDigestIn(_In):
    permit: PermitTransferFromIn
    beneficiary: Address


class TransferBatchWitnessDigestIn(_In):
    permit: PermitBatchTransferFromIn
    beneficiary: Address


class DepositPermitIn(_In):
    amount: Uint
    permit: PermitSingleIn
    signature: HexSignature


class DepositAllowanceIn(_In):
    asset: Address
    amount: Uint


class DepositBatchPermitIn(_In):
    amounts: List[Uint] = Field(..., max_length=_MAX_ITEMS)
    permit: PermitBatchIn
    signature: HexSignature


class DepositBatchAllowanceIn(_In):
    assets: List[Address] = Field(..., max_length=_MAX_ITEMS)
    amounts: List[Uint] = Field(..., max_length=_MAX_ITEMS)


class DepositTransferIn(_In):
    permit: PermitTransferFromIn
    signature: HexSignature


class DepositBatchTransferIn(_In):
    permit: PermitBatchTransferFromIn
    signature: HexSignature


class DepositWitnessIn(_In):
    owner: Address
    permit: PermitTransferFromIn
    beneficiary: Address
    signature: HexSignature


class DepositBatchWitnessIn(_In):
    owner: Address
    permit: PermitBatchTransferFromIn
    beneficiary: Address
    signature: HexSignature


class WithdrawIn(_In):
    asset: Address
    amount: Uint
    recipient: Address


class WithdrawBatchIn(_In):
    assets: List[Address] = Field(..., max_length=_MAX_ITEMS)
    amounts: List[Uint] = Field(..., max_length=_MAX_ITEMS)
    recipient: Address


# =============================================================================
# Responses
# =============================================================================


class BalanceOut(BaseModel):
    user: str
    asset: str
    balance: str = Field(..., description="Decimal uint256")


class DomainOut(BaseModel):
    name: str
    chain_id: int
    verifying_contract: str
    domain_separator: str
    ledger: str


class DigestOut(BaseModel):
    kind: str
    digest: str = Field(..., description="0x-prefixed 32-byte EIP-712 digest to sign")


class EventItemOut(BaseModel):
    asset: str
    amount: str


class EventOut(BaseModel):
    seq: int
    kind: str
    user: str
    items: List[EventItemOut]
    route: str
    prev: Optional[str] = None
    head: str
    ts: float


class EventsOut(BaseModel):
    events: List[EventOut]
    head: Optional[str] = None
    next_seq: int


class ErrorOut(BaseModel):
    error: str
    detail: str
    code: Optional[str] = None
    balance: Optional[str] = None
    requested: Optional[str] = None
