# FILE: permit_vault/digest.py
from __future__ import annotations

"""
EIP-712 digest construction for the transfer authority's permit structs.

Goals:
  - Reproduce the authority's typed-data hashing bit for bit, for every
    authorization shape the ledger accepts (allowance single/batch, one-shot
    single/batch, one-shot with witness single/batch).
  - Keep struct hashing pure and shared: the ledger's read-only helpers and the
    in-memory authority both call the functions below, so "what a signature
    covers" is defined in exactly one place.

Notes:
  - Type strings are constants copied verbatim from the authority. Field order
    inside each string is significant; reordering produces well-formed data
    that no real signer will ever have signed.
  - Array members are hashed as keccak(concat(hashStruct(item_i))) in list
    order. Order is part of the signed message.
  - The one-shot forms bind the spender implicitly: it is whoever submits the
    permit to the authority. Callers pass it explicitly here.
"""

from typing import Iterable

from eth_abi import encode
from eth_account.messages import SignableMessage
from eth_utils import keccak

from .permits import (
    PermitBatch,
    PermitBatchTransferFrom,
    PermitDetails,
    PermitSingle,
    PermitTransferFrom,
    TokenPermissions,
    check_uint,
    normalize_address,
)
from .witness import TOKEN_PERMISSIONS_TYPE, Witness

# ---------- Type strings and hashes ----------

AUTHORITY_NAME = "Permit2"

DOMAIN_TYPE = "EIP712Domain(string name,uint256 chainId,address verifyingContract)"

PERMIT_DETAILS_TYPE = "PermitDetails(address token,uint160 amount,uint48 expiration,uint48 nonce)"
PERMIT_SINGLE_TYPE = (
    "PermitSingle(PermitDetails details,address spender,uint256 sigDeadline)"
    + PERMIT_DETAILS_TYPE
)
PERMIT_BATCH_TYPE = (
    "PermitBatch(PermitDetails[] details,address spender,uint256 sigDeadline)"
    + PERMIT_DETAILS_TYPE
)

PERMIT_TRANSFER_FROM_TYPE = (
    "PermitTransferFrom(TokenPermissions permitted,address spender,uint256 nonce,uint256 deadline)"
    + TOKEN_PERMISSIONS_TYPE
)
PERMIT_BATCH_TRANSFER_FROM_TYPE = (
    "PermitBatchTransferFrom(TokenPermissions[] permitted,address spender,uint256 nonce,uint256 deadline)"
    + TOKEN_PERMISSIONS_TYPE
)

# Completed by a witness type string (see permit_vault.witness).
PERMIT_WITNESS_TRANSFER_FROM_STUB = (
    "PermitWitnessTransferFrom(TokenPermissions permitted,address spender,uint256 nonce,uint256 deadline,"
)
PERMIT_BATCH_WITNESS_TRANSFER_FROM_STUB = (
    "PermitBatchWitnessTransferFrom(TokenPermissions[] permitted,address spender,uint256 nonce,uint256 deadline,"
)

DOMAIN_TYPEHASH = keccak(text=DOMAIN_TYPE)
PERMIT_DETAILS_TYPEHASH = keccak(text=PERMIT_DETAILS_TYPE)
PERMIT_SINGLE_TYPEHASH = keccak(text=PERMIT_SINGLE_TYPE)
PERMIT_BATCH_TYPEHASH = keccak(text=PERMIT_BATCH_TYPE)
TOKEN_PERMISSIONS_TYPEHASH = keccak(text=TOKEN_PERMISSIONS_TYPE)
PERMIT_TRANSFER_FROM_TYPEHASH = keccak(text=PERMIT_TRANSFER_FROM_TYPE)
PERMIT_BATCH_TRANSFER_FROM_TYPEHASH = keccak(text=PERMIT_BATCH_TRANSFER_FROM_TYPE)

_EIP191_PREFIX = b"\x19\x01"


# ---------- Domain ----------


def domain_separator(
    chain_id: int, verifying_contract: str, name: str = AUTHORITY_NAME
) -> bytes:
    check_uint(chain_id, name="chain_id")
    return keccak(
        encode(
            ["bytes32", "bytes32", "uint256", "address"],
            [
                DOMAIN_TYPEHASH,
                keccak(text=name),
                chain_id,
                normalize_address(verifying_contract, name="verifying_contract"),
            ],
        )
    )


def typed_data_digest(domain_sep: bytes, struct_hash: bytes) -> bytes:
    """keccak256("\\x19\\x01" || domainSeparator || structHash)."""
    _check_word(domain_sep, "domain separator")
    _check_word(struct_hash, "struct hash")
    return keccak(_EIP191_PREFIX + domain_sep + struct_hash)


def _check_word(value: bytes, name: str) -> None:
    if not isinstance(value, (bytes, bytearray)) or len(value) != 32:
        raise ValueError(f"{name} must be 32 bytes")


def _hash_array(hashes: Iterable[bytes]) -> bytes:
    return keccak(b"".join(hashes))


# ---------- Allowance permits ----------


def hash_permit_details(details: PermitDetails) -> bytes:
    return keccak(
        encode(
            ["bytes32", "address", "uint160", "uint48", "uint48"],
            [
                PERMIT_DETAILS_TYPEHASH,
                details.token,
                details.amount,
                details.expiration,
                details.nonce,
            ],
        )
    )


def hash_permit_single(permit: PermitSingle) -> bytes:
    return keccak(
        encode(
            ["bytes32", "bytes32", "address", "uint256"],
            [
                PERMIT_SINGLE_TYPEHASH,
                hash_permit_details(permit.details),
                permit.spender,
                permit.sig_deadline,
            ],
        )
    )


def hash_permit_batch(permit: PermitBatch) -> bytes:
    return keccak(
        encode(
            ["bytes32", "bytes32", "address", "uint256"],
            [
                PERMIT_BATCH_TYPEHASH,
                _hash_array(hash_permit_details(d) for d in permit.details),
                permit.spender,
                permit.sig_deadline,
            ],
        )
    )


# ---------- One-shot signature transfers ----------


def hash_token_permissions(permitted: TokenPermissions) -> bytes:
    return keccak(
        encode(
            ["bytes32", "address", "uint256"],
            [TOKEN_PERMISSIONS_TYPEHASH, permitted.token, permitted.amount],
        )
    )


def hash_permit_transfer_from(permit: PermitTransferFrom, spender: str) -> bytes:
    return keccak(
        encode(
            ["bytes32", "bytes32", "address", "uint256", "uint256"],
            [
                PERMIT_TRANSFER_FROM_TYPEHASH,
                hash_token_permissions(permit.permitted),
                normalize_address(spender, name="spender"),
                permit.nonce,
                permit.deadline,
            ],
        )
    )


def hash_permit_batch_transfer_from(
    permit: PermitBatchTransferFrom, spender: str
) -> bytes:
    return keccak(
        encode(
            ["bytes32", "bytes32", "address", "uint256", "uint256"],
            [
                PERMIT_BATCH_TRANSFER_FROM_TYPEHASH,
                _hash_array(hash_token_permissions(p) for p in permit.permitted),
                normalize_address(spender, name="spender"),
                permit.nonce,
                permit.deadline,
            ],
        )
    )


def hash_permit_witness_transfer_from(
    permit: PermitTransferFrom,
    spender: str,
    witness: bytes,
    witness_type_string: str,
) -> bytes:
    """
    Struct hash of PermitWitnessTransferFrom, given the witness as the
    authority sees it: its struct hash plus the type-string tail.
    """
    _check_word(witness, "witness")
    type_hash = keccak(text=PERMIT_WITNESS_TRANSFER_FROM_STUB + witness_type_string)
    return keccak(
        encode(
            ["bytes32", "bytes32", "address", "uint256", "uint256", "bytes32"],
            [
                type_hash,
                hash_token_permissions(permit.permitted),
                normalize_address(spender, name="spender"),
                permit.nonce,
                permit.deadline,
                witness,
            ],
        )
    )


def hash_permit_batch_witness_transfer_from(
    permit: PermitBatchTransferFrom,
    spender: str,
    witness: bytes,
    witness_type_string: str,
) -> bytes:
    _check_word(witness, "witness")
    type_hash = keccak(text=PERMIT_BATCH_WITNESS_TRANSFER_FROM_STUB + witness_type_string)
    return keccak(
        encode(
            ["bytes32", "bytes32", "address", "uint256", "uint256", "bytes32"],
            [
                type_hash,
                _hash_array(hash_token_permissions(p) for p in permit.permitted),
                normalize_address(spender, name="spender"),
                permit.nonce,
                permit.deadline,
                witness,
            ],
        )
    )


# ---------- Builder bound to one domain ----------


class DigestBuilder:
    """
    Final (signable) digests for one authority domain.

    Every method returns the 32-byte value a signer signs; `signable()` wraps a
    struct hash into an eth_account SignableMessage for `Account.sign_message`
    and `Account.recover_message`.
    """

    def __init__(self, domain_sep: bytes) -> None:
        _check_word(domain_sep, "domain separator")
        self._domain_separator = bytes(domain_sep)

    @classmethod
    def for_authority(
        cls, chain_id: int, verifying_contract: str, name: str = AUTHORITY_NAME
    ) -> "DigestBuilder":
        return cls(domain_separator(chain_id, verifying_contract, name))

    @property
    def domain_separator(self) -> bytes:
        return self._domain_separator

    def digest(self, struct_hash: bytes) -> bytes:
        return typed_data_digest(self._domain_separator, struct_hash)

    def signable(self, struct_hash: bytes) -> SignableMessage:
        _check_word(struct_hash, "struct hash")
        return SignableMessage(
            version=b"\x01", header=self._domain_separator, body=bytes(struct_hash)
        )

    def allowance_single(self, permit: PermitSingle) -> bytes:
        return self.digest(hash_permit_single(permit))

    def allowance_batch(self, permit: PermitBatch) -> bytes:
        return self.digest(hash_permit_batch(permit))

    def one_shot_single(self, permit: PermitTransferFrom, spender: str) -> bytes:
        return self.digest(hash_permit_transfer_from(permit, spender))

    def one_shot_batch(self, permit: PermitBatchTransferFrom, spender: str) -> bytes:
        return self.digest(hash_permit_batch_transfer_from(permit, spender))

    def one_shot_witness(
        self, permit: PermitTransferFrom, spender: str, witness: Witness
    ) -> bytes:
        return self.digest(
            hash_permit_witness_transfer_from(
                permit, spender, witness.struct_hash(), witness.type_string
            )
        )

    def one_shot_batch_witness(
        self, permit: PermitBatchTransferFrom, spender: str, witness: Witness
    ) -> bytes:
        return self.digest(
            hash_permit_batch_witness_transfer_from(
                permit, spender, witness.struct_hash(), witness.type_string
            )
        )

