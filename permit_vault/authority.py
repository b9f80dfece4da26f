# FILE: permit_vault/authority.py
from __future__ import annotations

"""
Transfer authority: the external service that verifies permits and moves
assets on the ledger's behalf.

`TransferAuthority` is the interface the ledger consumes. It is one capability
with variant methods (allowance vs. one-shot, single vs. batch, with or without
witness) rather than one client per shape.

`InMemoryTransferAuthority` is a Permit2-compatible simulation used by tests
and the dev sidecar:
  - allowance permits: ordered per (owner, token, spender) nonce, expiry,
    signature deadline; transfers draw the allowance down unless it is the
    uint160 max;
  - one-shot transfers: unordered nonces in a 256-bit-word bitmap, deadline,
    requested <= signed amount;
  - signatures: EOA recovery over the shared EIP-712 digests (65-byte r,s,v or
    64-byte EIP-2098 compact).

Every public mutation is all-or-nothing: checks run first and any failure
restores the authority and asset state as they were.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional, Sequence, Tuple, Union

from eth_account import Account
from hexbytes import HexBytes

from .assets import AssetBank, AssetTransferError
from .digest import (
    AUTHORITY_NAME,
    DigestBuilder,
    hash_permit_batch,
    hash_permit_batch_transfer_from,
    hash_permit_batch_witness_transfer_from,
    hash_permit_single,
    hash_permit_transfer_from,
    hash_permit_witness_transfer_from,
)
from .permits import (
    UINT48_MAX,
    UINT160_MAX,
    AllowanceTransferDetails,
    PermitBatch,
    PermitBatchTransferFrom,
    PermitDetails,
    PermitSingle,
    PermitTransferFrom,
    SignatureTransferDetails,
    check_uint,
    normalize_address,
)

logger = logging.getLogger(__name__)

# Canonical Permit2 deployment address (same on every EVM chain).
PERMIT2_ADDRESS = "0x000000000022D473030F116dDEE9F6B43aC78BA3"

SignatureLike = Union[bytes, bytearray, str]

_S_MASK = (1 << 255) - 1


class AuthorityError(RuntimeError):
    """
    Rejection by the transfer authority. `code` mirrors the authority's revert
    name (SignatureExpired, InvalidSigner, InvalidNonce, AllowanceExpired, ...).
    """

    def __init__(self, code: str, message: str = "") -> None:
        self.code = code
        super().__init__(f"{code}: {message}" if message else code)


@dataclass(frozen=True)
class AllowanceState:
    amount: int = 0
    expiration: int = 0
    nonce: int = 0


# ---------- Interface ----------


class TransferAuthority:
    """
    Operations the ledger consumes. `spender` is always the identity making the
    call (msg.sender at the authority), i.e. the ledger itself.
    """

    @property
    def address(self) -> str:
        raise NotImplementedError

    def domain_separator(self) -> bytes:
        raise NotImplementedError

    # allowance path

    def register_allowance(
        self,
        owner: str,
        permit: Union[PermitSingle, PermitBatch],
        signature: SignatureLike,
    ) -> None:
        raise NotImplementedError

    def move_via_allowance(
        self, spender: str, owner: str, recipient: str, amount: int, asset: str
    ) -> None:
        raise NotImplementedError

    def move_via_allowance_batch(
        self, spender: str, details: Sequence[AllowanceTransferDetails]
    ) -> None:
        raise NotImplementedError

    # one-shot path

    def verify_and_move(
        self,
        spender: str,
        permit: PermitTransferFrom,
        transfer: SignatureTransferDetails,
        owner: str,
        signature: SignatureLike,
    ) -> None:
        raise NotImplementedError

    def verify_and_move_batch(
        self,
        spender: str,
        permit: PermitBatchTransferFrom,
        transfers: Sequence[SignatureTransferDetails],
        owner: str,
        signature: SignatureLike,
    ) -> None:
        raise NotImplementedError

    def verify_and_move_with_witness(
        self,
        spender: str,
        permit: PermitTransferFrom,
        transfer: SignatureTransferDetails,
        owner: str,
        witness: bytes,
        witness_type_string: str,
        signature: SignatureLike,
    ) -> None:
        raise NotImplementedError

    def verify_and_move_batch_with_witness(
        self,
        spender: str,
        permit: PermitBatchTransferFrom,
        transfers: Sequence[SignatureTransferDetails],
        owner: str,
        witness: bytes,
        witness_type_string: str,
        signature: SignatureLike,
    ) -> None:
        raise NotImplementedError

    # read-only state

    def allowance(self, owner: str, token: str, spender: str) -> AllowanceState:
        raise NotImplementedError

    def nonce_bitmap(self, owner: str, word_pos: int) -> int:
        raise NotImplementedError

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Scope within which a failure undoes every authority-side effect.
        No-op for an authority running on an all-or-nothing substrate.
        """
        yield


# ---------- Signature helpers ----------


def normalize_signature(signature: SignatureLike) -> bytes:
    """
    Return a 65-byte r || s || v signature. Accepts hex strings, 65-byte
    signatures and 64-byte EIP-2098 compact (r || vs) signatures.
    """
    if isinstance(signature, str):
        try:
            raw = bytes(HexBytes(signature))
        except ValueError as e:
            raise AuthorityError("InvalidSignature", "signature is not hex") from e
    elif isinstance(signature, (bytes, bytearray)):
        raw = bytes(signature)
    else:
        raise AuthorityError("InvalidSignature", "unsupported signature type")

    if len(raw) == 65:
        return raw
    if len(raw) == 64:
        r = raw[:32]
        vs = int.from_bytes(raw[32:], "big")
        s = (vs & _S_MASK).to_bytes(32, "big")
        v = (vs >> 255) + 27
        return r + s + bytes([v])
    raise AuthorityError("InvalidSignatureLength", f"{len(raw)} bytes")


# ---------- In-memory simulation ----------


class InMemoryTransferAuthority(TransferAuthority):
    def __init__(
        self,
        bank: AssetBank,
        *,
        address: str = PERMIT2_ADDRESS,
        chain_id: int = 1,
        name: str = AUTHORITY_NAME,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._bank = bank
        self._address = normalize_address(address, name="authority address")
        self._chain_id = check_uint(chain_id, name="chain_id")
        self._clock = clock or (lambda: int(time.time()))
        self._digests = DigestBuilder.for_authority(self._chain_id, self._address, name)
        # (owner, token, spender) -> AllowanceState
        self._allowances: Dict[Tuple[str, str, str], AllowanceState] = {}
        # (owner, word_pos) -> 256-bit word
        self._bitmaps: Dict[Tuple[str, int], int] = {}
        self._lock = threading.RLock()

    @property
    def address(self) -> str:
        return self._address

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def digests(self) -> DigestBuilder:
        return self._digests

    def domain_separator(self) -> bytes:
        return self._digests.domain_separator

    # ----- state helpers -----

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            allowances = dict(self._allowances)
            bitmaps = dict(self._bitmaps)
            try:
                with self._bank.transaction():
                    yield
            except BaseException:
                self._allowances = allowances
                self._bitmaps = bitmaps
                raise

    def allowance(self, owner: str, token: str, spender: str) -> AllowanceState:
        key = (
            normalize_address(owner, name="owner"),
            normalize_address(token, name="token"),
            normalize_address(spender, name="spender"),
        )
        with self._lock:
            return self._allowances.get(key, AllowanceState())

    def nonce_bitmap(self, owner: str, word_pos: int) -> int:
        o = normalize_address(owner, name="owner")
        check_uint(word_pos, bits=248, name="word_pos")
        with self._lock:
            return self._bitmaps.get((o, word_pos), 0)

    def _verify_signature(
        self, struct_hash: bytes, owner: str, signature: SignatureLike
    ) -> None:
        sig = normalize_signature(signature)
        if sig[64] not in (27, 28):
            raise AuthorityError("InvalidSignature", "v must be 27 or 28")
        try:
            signer = Account.recover_message(
                self._digests.signable(struct_hash), signature=sig
            )
        except Exception as e:
            raise AuthorityError("InvalidSignature", str(e)) from e
        if normalize_address(signer) != owner:
            raise AuthorityError("InvalidSigner", f"recovered {signer}")

    def _check_deadline(self, deadline: int) -> None:
        if self._clock() > deadline:
            raise AuthorityError("SignatureExpired", f"deadline {deadline}")

    def _use_unordered_nonce(self, owner: str, nonce: int) -> None:
        word_pos, bit_pos = nonce >> 8, nonce & 0xFF
        bit = 1 << bit_pos
        current = self._bitmaps.get((owner, word_pos), 0)
        if current & bit:
            raise AuthorityError("InvalidNonce", f"nonce {nonce} already used")
        self._bitmaps[(owner, word_pos)] = current | bit

    def _transfer_from(self, owner: str, to: str, amount: int, token: str) -> None:
        try:
            self._bank.transfer_from(token, self._address, owner, to, amount)
        except AssetTransferError as e:
            raise AuthorityError("TransferFromFailed", str(e)) from e

    # ----- allowance path -----

    def _update_approval(
        self, details: PermitDetails, owner: str, spender: str
    ) -> None:
        key = (owner, details.token, spender)
        current = self._allowances.get(key, AllowanceState())
        if current.nonce != details.nonce:
            raise AuthorityError(
                "InvalidNonce", f"expected {current.nonce}, got {details.nonce}"
            )
        expiration = details.expiration or self._clock()
        self._allowances[key] = AllowanceState(
            amount=details.amount,
            expiration=expiration,
            nonce=(details.nonce + 1) & UINT48_MAX,
        )

    def register_allowance(
        self,
        owner: str,
        permit: Union[PermitSingle, PermitBatch],
        signature: SignatureLike,
    ) -> None:
        o = normalize_address(owner, name="owner")
        with self.transaction():
            self._check_deadline(permit.sig_deadline)
            if isinstance(permit, PermitSingle):
                self._verify_signature(hash_permit_single(permit), o, signature)
                self._update_approval(permit.details, o, permit.spender)
            elif isinstance(permit, PermitBatch):
                self._verify_signature(hash_permit_batch(permit), o, signature)
                for details in permit.details:
                    self._update_approval(details, o, permit.spender)
            else:
                raise AuthorityError("InvalidPermit", type(permit).__name__)
        logger.debug("allowance registered", extra={"owner": o})

    def _spend_allowance(
        self, spender: str, owner: str, recipient: str, amount: int, token: str
    ) -> None:
        key = (owner, token, spender)
        allowed = self._allowances.get(key, AllowanceState())
        if self._clock() > allowed.expiration:
            raise AuthorityError("AllowanceExpired", f"expired at {allowed.expiration}")
        if allowed.amount != UINT160_MAX:
            if amount > allowed.amount:
                raise AuthorityError(
                    "InsufficientAllowance", f"max {allowed.amount}, asked {amount}"
                )
            self._allowances[key] = AllowanceState(
                amount=allowed.amount - amount,
                expiration=allowed.expiration,
                nonce=allowed.nonce,
            )
        self._transfer_from(owner, recipient, amount, token)

    def move_via_allowance(
        self, spender: str, owner: str, recipient: str, amount: int, asset: str
    ) -> None:
        leg = AllowanceTransferDetails(
            from_=owner, to=recipient, amount=amount, token=asset
        )
        self.move_via_allowance_batch(spender, [leg])

    def move_via_allowance_batch(
        self, spender: str, details: Sequence[AllowanceTransferDetails]
    ) -> None:
        sp = normalize_address(spender, name="spender")
        with self.transaction():
            for leg in details:
                self._spend_allowance(sp, leg.from_, leg.to, leg.amount, leg.token)

    # ----- one-shot path -----

    def _single_transfer(
        self,
        struct_hash: bytes,
        permit: PermitTransferFrom,
        transfer: SignatureTransferDetails,
        owner: str,
        signature: SignatureLike,
    ) -> None:
        o = normalize_address(owner, name="owner")
        with self.transaction():
            self._check_deadline(permit.deadline)
            if transfer.requested_amount > permit.permitted.amount:
                raise AuthorityError(
                    "InvalidAmount", f"max {permit.permitted.amount}"
                )
            self._use_unordered_nonce(o, permit.nonce)
            self._verify_signature(struct_hash, o, signature)
            self._transfer_from(
                o, transfer.to, transfer.requested_amount, permit.permitted.token
            )

    def _batch_transfer(
        self,
        struct_hash: bytes,
        permit: PermitBatchTransferFrom,
        transfers: Sequence[SignatureTransferDetails],
        owner: str,
        signature: SignatureLike,
    ) -> None:
        o = normalize_address(owner, name="owner")
        with self.transaction():
            self._check_deadline(permit.deadline)
            if len(permit.permitted) != len(transfers):
                raise AuthorityError(
                    "LengthMismatch", f"{len(permit.permitted)} != {len(transfers)}"
                )
            self._use_unordered_nonce(o, permit.nonce)
            self._verify_signature(struct_hash, o, signature)
            for permitted, transfer in zip(permit.permitted, transfers):
                if transfer.requested_amount > permitted.amount:
                    raise AuthorityError("InvalidAmount", f"max {permitted.amount}")
                if transfer.requested_amount != 0:
                    self._transfer_from(
                        o, transfer.to, transfer.requested_amount, permitted.token
                    )

    def verify_and_move(
        self,
        spender: str,
        permit: PermitTransferFrom,
        transfer: SignatureTransferDetails,
        owner: str,
        signature: SignatureLike,
    ) -> None:
        self._single_transfer(
            hash_permit_transfer_from(permit, spender), permit, transfer, owner, signature
        )

    def verify_and_move_batch(
        self,
        spender: str,
        permit: PermitBatchTransferFrom,
        transfers: Sequence[SignatureTransferDetails],
        owner: str,
        signature: SignatureLike,
    ) -> None:
        self._batch_transfer(
            hash_permit_batch_transfer_from(permit, spender),
            permit,
            transfers,
            owner,
            signature,
        )

    def verify_and_move_with_witness(
        self,
        spender: str,
        permit: PermitTransferFrom,
        transfer: SignatureTransferDetails,
        owner: str,
        witness: bytes,
        witness_type_string: str,
        signature: SignatureLike,
    ) -> None:
        self._single_transfer(
            hash_permit_witness_transfer_from(
                permit, spender, witness, witness_type_string
            ),
            permit,
            transfer,
            owner,
            signature,
        )

    def verify_and_move_batch_with_witness(
        self,
        spender: str,
        permit: PermitBatchTransferFrom,
        transfers: Sequence[SignatureTransferDetails],
        owner: str,
        witness: bytes,
        witness_type_string: str,
        signature: SignatureLike,
    ) -> None:
        self._batch_transfer(
            hash_permit_batch_witness_transfer_from(
                permit, spender, witness, witness_type_string
            ),
            permit,
            transfers,
            owner,
            signature,
        )

    # ----- owner-side cancellation -----

    def invalidate_unordered_nonces(self, owner: str, word_pos: int, mask: int) -> None:
        """Mark every nonce whose bit is set in `mask` as used (signer-side cancel)."""
        o = normalize_address(owner, name="owner")
        check_uint(word_pos, bits=248, name="word_pos")
        check_uint(mask, name="mask")
        with self._lock:
            self._bitmaps[(o, word_pos)] = self._bitmaps.get((o, word_pos), 0) | mask
