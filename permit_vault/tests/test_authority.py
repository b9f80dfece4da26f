# permit_vault/tests/test_authority.py
import pytest

from permit_vault.authority import (
    AuthorityError,
    AllowanceState,
    normalize_signature,
)
from permit_vault.permits import (
    UINT48_MAX,
    UINT160_MAX,
    AllowanceTransferDetails,
    PermitBatch,
    PermitBatchTransferFrom,
    PermitDetails,
    PermitSingle,
    PermitTransferFrom,
    SignatureTransferDetails,
    TokenPermissions,
    normalize_address,
)
from permit_vault.tests.signing import (
    ALICE,
    BOB,
    FAR,
    NOW,
    TOKEN_A,
    TOKEN_B,
    fund,
    sign_permit_batch,
    sign_permit_single,
    sign_transfer,
    sign_transfer_batch,
    to_compact,
)

SPENDER = "0x" + "5e" * 20
DEST = "0x" + "de" * 20


def _single(amount=100, expiration=FAR, nonce=0, token=TOKEN_A, deadline=FAR):
    return PermitSingle(
        details=PermitDetails(token=token, amount=amount, expiration=expiration, nonce=nonce),
        spender=SPENDER,
        sig_deadline=deadline,
    )


def _code(excinfo) -> str:
    return excinfo.value.code


# ---------- allowance path ----------


def test_register_allowance_sets_state_and_bumps_nonce(authority):
    permit = _single(amount=100)
    authority.register_allowance(ALICE.address, permit, sign_permit_single(authority, permit))
    st = authority.allowance(ALICE.address, TOKEN_A, SPENDER)
    assert st == AllowanceState(amount=100, expiration=FAR, nonce=1)


def test_register_allowance_rejects_replay(authority):
    permit = _single()
    sig = sign_permit_single(authority, permit)
    authority.register_allowance(ALICE.address, permit, sig)
    with pytest.raises(AuthorityError) as e:
        authority.register_allowance(ALICE.address, permit, sig)
    assert _code(e) == "InvalidNonce"


def test_register_allowance_deadline_passed(authority, clock):
    permit = _single(deadline=NOW)
    sig = sign_permit_single(authority, permit)
    clock.t = NOW + 1
    with pytest.raises(AuthorityError) as e:
        authority.register_allowance(ALICE.address, permit, sig)
    assert _code(e) == "SignatureExpired"


def test_register_allowance_wrong_signer(authority):
    permit = _single()
    sig = sign_permit_single(authority, permit, account=BOB)
    with pytest.raises(AuthorityError) as e:
        authority.register_allowance(ALICE.address, permit, sig)
    assert _code(e) == "InvalidSigner"
    assert authority.allowance(ALICE.address, TOKEN_A, SPENDER) == AllowanceState()


def test_zero_expiration_means_now(authority, clock):
    permit = _single(expiration=0)
    authority.register_allowance(ALICE.address, permit, sign_permit_single(authority, permit))
    assert authority.allowance(ALICE.address, TOKEN_A, SPENDER).expiration == NOW


def test_nonce_wraps_at_uint48(authority):
    key = (ALICE.address, normalize_address(TOKEN_A), normalize_address(SPENDER))
    authority._allowances[key] = AllowanceState(amount=0, expiration=0, nonce=UINT48_MAX)
    permit = _single(nonce=UINT48_MAX)
    authority.register_allowance(ALICE.address, permit, sign_permit_single(authority, permit))
    assert authority.allowance(ALICE.address, TOKEN_A, SPENDER).nonce == 0


def test_batch_allowance_is_all_or_nothing(authority):
    good = PermitDetails(token=TOKEN_A, amount=5, expiration=FAR, nonce=0)
    bad = PermitDetails(token=TOKEN_B, amount=5, expiration=FAR, nonce=9)
    permit = PermitBatch(details=(good, bad), spender=SPENDER, sig_deadline=FAR)
    with pytest.raises(AuthorityError):
        authority.register_allowance(ALICE.address, permit, sign_permit_batch(authority, permit))
    assert authority.allowance(ALICE.address, TOKEN_A, SPENDER) == AllowanceState()


def test_spend_allowance_draws_down(authority, bank):
    fund(bank, authority, ALICE.address, {TOKEN_A: 1000})
    permit = _single(amount=100)
    authority.register_allowance(ALICE.address, permit, sign_permit_single(authority, permit))
    authority.move_via_allowance(SPENDER, ALICE.address, DEST, 60, TOKEN_A)
    assert authority.allowance(ALICE.address, TOKEN_A, SPENDER).amount == 40
    assert bank.balance_of(TOKEN_A, DEST) == 60
    with pytest.raises(AuthorityError) as e:
        authority.move_via_allowance(SPENDER, ALICE.address, DEST, 41, TOKEN_A)
    assert _code(e) == "InsufficientAllowance"
    assert bank.balance_of(TOKEN_A, DEST) == 60


def test_max_allowance_is_not_decremented(authority, bank):
    fund(bank, authority, ALICE.address, {TOKEN_A: 1000})
    permit = _single(amount=UINT160_MAX)
    authority.register_allowance(ALICE.address, permit, sign_permit_single(authority, permit))
    authority.move_via_allowance(SPENDER, ALICE.address, DEST, 500, TOKEN_A)
    assert authority.allowance(ALICE.address, TOKEN_A, SPENDER).amount == UINT160_MAX


def test_expired_allowance(authority, bank, clock):
    fund(bank, authority, ALICE.address, {TOKEN_A: 1000})
    permit = _single(expiration=NOW + 10)
    authority.register_allowance(ALICE.address, permit, sign_permit_single(authority, permit))
    clock.t = NOW + 11
    with pytest.raises(AuthorityError) as e:
        authority.move_via_allowance(SPENDER, ALICE.address, DEST, 1, TOKEN_A)
    assert _code(e) == "AllowanceExpired"


def test_allowance_batch_move_rolls_back(authority, bank):
    fund(bank, authority, ALICE.address, {TOKEN_A: 1000})
    permit = _single(amount=100)
    authority.register_allowance(ALICE.address, permit, sign_permit_single(authority, permit))
    legs = [
        AllowanceTransferDetails(from_=ALICE.address, to=DEST, amount=50, token=TOKEN_A),
        AllowanceTransferDetails(from_=ALICE.address, to=DEST, amount=51, token=TOKEN_A),
    ]
    with pytest.raises(AuthorityError):
        authority.move_via_allowance_batch(SPENDER, legs)
    assert authority.allowance(ALICE.address, TOKEN_A, SPENDER).amount == 100
    assert bank.balance_of(TOKEN_A, ALICE.address) == 1000


def test_asset_failure_is_transfer_from_failed(authority, bank):
    bank.mint(TOKEN_A, ALICE.address, 10)  # no approval for the authority
    permit = _single(amount=10)
    authority.register_allowance(ALICE.address, permit, sign_permit_single(authority, permit))
    with pytest.raises(AuthorityError) as e:
        authority.move_via_allowance(SPENDER, ALICE.address, DEST, 10, TOKEN_A)
    assert _code(e) == "TransferFromFailed"
    assert authority.allowance(ALICE.address, TOKEN_A, SPENDER).amount == 10


# ---------- one-shot path ----------


def _one_shot(amount=100, nonce=0, deadline=FAR, token=TOKEN_A):
    return PermitTransferFrom(
        permitted=TokenPermissions(token=token, amount=amount), nonce=nonce, deadline=deadline
    )


def test_one_shot_moves_and_consumes_nonce(authority, bank):
    fund(bank, authority, ALICE.address, {TOKEN_A: 1000})
    permit = _one_shot(nonce=257)
    sig = sign_transfer(authority, permit, SPENDER)
    authority.verify_and_move(
        SPENDER, permit, SignatureTransferDetails(to=DEST, requested_amount=100), ALICE.address, sig
    )
    assert bank.balance_of(TOKEN_A, DEST) == 100
    assert authority.nonce_bitmap(ALICE.address, 1) == 1 << 1
    with pytest.raises(AuthorityError) as e:
        authority.verify_and_move(
            SPENDER, permit, SignatureTransferDetails(to=DEST, requested_amount=100), ALICE.address, sig
        )
    assert _code(e) == "InvalidNonce"


def test_one_shot_requested_over_signed(authority, bank):
    fund(bank, authority, ALICE.address, {TOKEN_A: 1000})
    permit = _one_shot(amount=100)
    sig = sign_transfer(authority, permit, SPENDER)
    with pytest.raises(AuthorityError) as e:
        authority.verify_and_move(
            SPENDER, permit, SignatureTransferDetails(to=DEST, requested_amount=101), ALICE.address, sig
        )
    assert _code(e) == "InvalidAmount"
    assert authority.nonce_bitmap(ALICE.address, 0) == 0


def test_one_shot_signed_for_other_spender(authority, bank):
    fund(bank, authority, ALICE.address, {TOKEN_A: 1000})
    permit = _one_shot()
    sig = sign_transfer(authority, permit, DEST)
    with pytest.raises(AuthorityError) as e:
        authority.verify_and_move(
            SPENDER, permit, SignatureTransferDetails(to=DEST, requested_amount=100), ALICE.address, sig
        )
    assert _code(e) == "InvalidSigner"
    assert authority.nonce_bitmap(ALICE.address, 0) == 0


def test_one_shot_compact_signature(authority, bank):
    fund(bank, authority, ALICE.address, {TOKEN_A: 1000})
    permit = _one_shot()
    sig = to_compact(sign_transfer(authority, permit, SPENDER))
    assert len(sig) == 64
    authority.verify_and_move(
        SPENDER, permit, SignatureTransferDetails(to=DEST, requested_amount=100), ALICE.address, sig
    )
    assert bank.balance_of(TOKEN_A, DEST) == 100


def test_batch_one_shot_length_mismatch(authority, bank):
    fund(bank, authority, ALICE.address, {TOKEN_A: 1000, TOKEN_B: 1000})
    permit = PermitBatchTransferFrom(
        permitted=(TokenPermissions(TOKEN_A, 10), TokenPermissions(TOKEN_B, 20)), nonce=0, deadline=FAR
    )
    sig = sign_transfer_batch(authority, permit, SPENDER)
    with pytest.raises(AuthorityError) as e:
        authority.verify_and_move_batch(
            SPENDER, permit, [SignatureTransferDetails(to=DEST, requested_amount=10)], ALICE.address, sig
        )
    assert _code(e) == "LengthMismatch"


def test_batch_one_shot_zero_leg_is_skipped(authority, bank):
    fund(bank, authority, ALICE.address, {TOKEN_A: 1000})
    permit = PermitBatchTransferFrom(
        permitted=(TokenPermissions(TOKEN_A, 10), TokenPermissions(TOKEN_B, 20)), nonce=3, deadline=FAR
    )
    sig = sign_transfer_batch(authority, permit, SPENDER)
    authority.verify_and_move_batch(
        SPENDER,
        permit,
        [
            SignatureTransferDetails(to=DEST, requested_amount=10),
            SignatureTransferDetails(to=DEST, requested_amount=0),
        ],
        ALICE.address,
        sig,
    )
    assert bank.balance_of(TOKEN_A, DEST) == 10
    assert bank.balance_of(TOKEN_B, DEST) == 0


def test_invalidate_unordered_nonces(authority, bank):
    fund(bank, authority, ALICE.address, {TOKEN_A: 1000})
    authority.invalidate_unordered_nonces(ALICE.address, 0, 1 << 5)
    permit = _one_shot(nonce=5)
    sig = sign_transfer(authority, permit, SPENDER)
    with pytest.raises(AuthorityError) as e:
        authority.verify_and_move(
            SPENDER, permit, SignatureTransferDetails(to=DEST, requested_amount=1), ALICE.address, sig
        )
    assert _code(e) == "InvalidNonce"


# ---------- signature normalisation ----------


def test_normalize_signature_lengths():
    assert len(normalize_signature(b"\x01" * 65)) == 65
    assert normalize_signature("0x" + "01" * 65) == b"\x01" * 65
    with pytest.raises(AuthorityError) as e:
        normalize_signature(b"\x01" * 63)
    assert _code(e) == "InvalidSignatureLength"


def test_bad_v_is_invalid_signature(authority):
    permit = _single()
    sig = bytearray(sign_permit_single(authority, permit))
    sig[64] = 29
    with pytest.raises(AuthorityError) as e:
        authority.register_allowance(ALICE.address, permit, bytes(sig))
    assert _code(e) == "InvalidSignature"
