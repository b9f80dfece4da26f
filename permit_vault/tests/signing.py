# permit_vault/tests/signing.py
from __future__ import annotations

from typing import Dict

from eth_account import Account

from permit_vault.assets import InMemoryAssetBank
from permit_vault.authority import InMemoryTransferAuthority
from permit_vault.digest import (
    hash_permit_batch,
    hash_permit_batch_transfer_from,
    hash_permit_batch_witness_transfer_from,
    hash_permit_single,
    hash_permit_transfer_from,
    hash_permit_witness_transfer_from,
)
from permit_vault.witness import BeneficiaryWitness

ALICE = Account.from_key("0x" + "11" * 32)
BOB = Account.from_key("0x" + "22" * 32)
RELAYER = "0x" + "77" * 20

LEDGER_ADDR = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
TOKEN_A = "0x" + "aa" * 20
TOKEN_B = "0x" + "bb" * 20

NOW = 1_700_000_000
FAR = NOW + 3600


class Clock:
    def __init__(self, t: int = NOW) -> None:
        self.t = t

    def __call__(self) -> int:
        return self.t


def fund(bank: InMemoryAssetBank, authority: InMemoryTransferAuthority, owner: str, amounts: Dict[str, int]) -> None:
    """Mint to `owner` and give the authority an unlimited approval at the bank."""
    for asset, amount in amounts.items():
        bank.mint(asset, owner, amount)
        bank.approve(asset, owner, authority.address, (1 << 256) - 1)


def _sign(authority: InMemoryTransferAuthority, struct_hash: bytes, account) -> bytes:
    signed = Account.sign_message(authority.digests.signable(struct_hash), private_key=account.key)
    return bytes(signed.signature)


def sign_permit_single(authority, permit, account=ALICE) -> bytes:
    return _sign(authority, hash_permit_single(permit), account)


def sign_permit_batch(authority, permit, account=ALICE) -> bytes:
    return _sign(authority, hash_permit_batch(permit), account)


def sign_transfer(authority, permit, spender, account=ALICE) -> bytes:
    return _sign(authority, hash_permit_transfer_from(permit, spender), account)


def sign_transfer_batch(authority, permit, spender, account=ALICE) -> bytes:
    return _sign(authority, hash_permit_batch_transfer_from(permit, spender), account)


def sign_transfer_witness(authority, permit, spender, beneficiary, account=ALICE) -> bytes:
    w = BeneficiaryWitness(beneficiary)
    return _sign(
        authority,
        hash_permit_witness_transfer_from(permit, spender, w.struct_hash(), w.type_string),
        account,
    )


def sign_transfer_batch_witness(authority, permit, spender, beneficiary, account=ALICE) -> bytes:
    w = BeneficiaryWitness(beneficiary)
    return _sign(
        authority,
        hash_permit_batch_witness_transfer_from(permit, spender, w.struct_hash(), w.type_string),
        account,
    )


def to_compact(sig: bytes) -> bytes:
    """65-byte r||s||v -> 64-byte EIP-2098 r||vs."""
    r, s, v = sig[:32], int.from_bytes(sig[32:64], "big"), sig[64]
    vs = s | ((v - 27) << 255)
    return r + vs.to_bytes(32, "big")
