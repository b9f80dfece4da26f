from __future__ import annotations

"""
Witness extension for one-shot signature transfers.

A witness is auxiliary typed data folded into a PermitWitnessTransferFrom
digest without altering the permit's own fields. The authority learns the
witness only as (struct hash, type string), so each witness shape owns both.

The type string is the tail appended to the authority's witness stub. It must
name the witness field, close the outer struct, and list every referenced
struct type in alphabetical order, e.g.

    "Witness witness)TokenPermissions(address token,uint256 amount)Witness(address user)"

It is a structural constant: any byte difference yields a digest no existing
signature satisfies.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Tuple

from eth_abi import encode
from eth_utils import keccak

from .permits import normalize_address

TOKEN_PERMISSIONS_TYPE = "TokenPermissions(address token,uint256 amount)"

WITNESS_TYPE = "Witness(address user)"
WITNESS_TYPEHASH = keccak(text=WITNESS_TYPE)
WITNESS_TYPE_STRING = (
    "Witness witness)TokenPermissions(address token,uint256 amount)Witness(address user)"
)


class Witness(ABC):
    """Base class for witness payloads bound into one-shot transfer digests."""

    #: struct name as it appears in the type string
    type_name: str = ""
    #: field name used for the witness inside the outer permit struct
    field_name: str = "witness"

    @property
    @abstractmethod
    def type_definition(self) -> str:
        """EIP-712 encodeType of the witness struct itself, e.g. "Witness(address user)"."""

    @abstractmethod
    def struct_hash(self) -> bytes:
        """hashStruct of this witness value (32 bytes)."""

    @property
    def referenced_types(self) -> Tuple[str, ...]:
        """Definitions of every struct the witness needs, its own included."""
        return (self.type_definition,)

    @property
    def type_string(self) -> str:
        # EIP-712 encodeType: referenced structs sorted by name.
        defs = set(self.referenced_types) | {TOKEN_PERMISSIONS_TYPE}
        tail = "".join(sorted(defs, key=lambda d: d.split("(", 1)[0]))
        return f"{self.type_name} {self.field_name}){tail}"


@dataclass(frozen=True)
class BeneficiaryWitness(Witness):
    """
    Binds the intended beneficiary into a relayed deposit, so a relayer
    cannot substitute itself.
    """

    user: str

    type_name = "Witness"
    field_name = "witness"

    def __post_init__(self) -> None:
        object.__setattr__(self, "user", normalize_address(self.user, name="user"))

    @property
    def type_definition(self) -> str:
        return WITNESS_TYPE

    @property
    def type_string(self) -> str:
        return WITNESS_TYPE_STRING

    def struct_hash(self) -> bytes:
        return keccak(encode(["bytes32", "address"], [WITNESS_TYPEHASH, self.user]))
