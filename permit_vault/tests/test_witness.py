# permit_vault/tests/test_witness.py
import pytest
from eth_abi import encode
from eth_utils import keccak

from permit_vault.witness import (
    WITNESS_TYPE_STRING,
    WITNESS_TYPEHASH,
    BeneficiaryWitness,
    Witness,
)

USER = "0x" + "cd" * 20


def test_typehash_is_keccak_of_type():
    assert WITNESS_TYPEHASH == keccak(text="Witness(address user)")


def test_beneficiary_struct_hash():
    w = BeneficiaryWitness(USER)
    assert w.struct_hash() == keccak(encode(["bytes32", "address"], [WITNESS_TYPEHASH, USER]))
    assert w.type_string == WITNESS_TYPE_STRING


def test_beneficiary_is_checksummed_and_validated():
    assert BeneficiaryWitness(USER).user == BeneficiaryWitness(USER.upper().replace("0X", "0x")).user
    with pytest.raises(ValueError):
        BeneficiaryWitness("0x1234")


def test_distinct_users_distinct_hashes():
    assert BeneficiaryWitness(USER).struct_hash() != BeneficiaryWitness("0x" + "ce" * 20).struct_hash()


def test_custom_witness_type_string():
    class Order(Witness):
        type_name = "Order"
        field_name = "order"

        @property
        def type_definition(self):
            return "Order(uint256 id)"

        def struct_hash(self):
            return keccak(encode(["bytes32", "uint256"], [keccak(text=self.type_definition), 1]))

    assert Order().type_string == (
        "Order order)Order(uint256 id)TokenPermissions(address token,uint256 amount)"
    )


def test_beneficiary_constant_matches_sorted_form():
    assert Witness.type_string.fget(BeneficiaryWitness(USER)) == WITNESS_TYPE_STRING
