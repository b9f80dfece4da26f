# permit_vault/tests/test_balances.py
import pytest

from permit_vault.balances import InMemoryBalanceStore, SQLiteBalanceStore
from permit_vault.errors import InsufficientBalance
from permit_vault.permits import UINT256_MAX, normalize_address

U = "0x" + "01" * 20
V = "0x" + "02" * 20
A = "0x" + "aa" * 20


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        s = InMemoryBalanceStore()
    else:
        s = SQLiteBalanceStore(str(tmp_path / "balances.db"))
    yield s
    s.close()


def test_credit_debit(store):
    with store.transaction() as txn:
        assert txn.credit(U, A, 10) == 10
        assert txn.debit(U, A, 4) == 6
    assert store.get(U, A) == 6
    assert store.get(V, A) == 0


def test_debit_more_than_balance(store):
    with store.transaction() as txn:
        txn.credit(U, A, 5)
    with pytest.raises(InsufficientBalance) as e:
        with store.transaction() as txn:
            txn.debit(U, A, 6)
    assert e.value.balance == 5
    assert e.value.requested == 6
    assert e.value.user == normalize_address(U)


def test_failure_rolls_back_whole_scope(store):
    with pytest.raises(RuntimeError):
        with store.transaction() as txn:
            txn.credit(U, A, 7)
            txn.credit(V, A, 3)
            raise RuntimeError("delegation failed")
    assert store.get(U, A) == 0
    assert store.snapshot() == {}


def test_uint256_amounts_survive(store):
    big = UINT256_MAX - 1
    with store.transaction() as txn:
        txn.credit(U, A, big)
    assert store.get(U, A) == big
    with pytest.raises(ValueError):
        with store.transaction() as txn:
            txn.credit(U, A, 2)
    assert store.get(U, A) == big


def test_total_and_snapshot(store):
    with store.transaction() as txn:
        txn.credit(U, A, 1)
        txn.credit(V, A, 2)
        txn.credit(V, A, 3)
        txn.debit(U, A, 1)
    assert store.total(A) == 5
    assert store.snapshot() == {(normalize_address(V), normalize_address(A)): 5}


def test_sqlite_is_durable(tmp_path):
    path = str(tmp_path / "durable.db")
    s = SQLiteBalanceStore(path)
    with s.transaction() as txn:
        txn.credit(U, A, 42)
    s.close()
    reopened = SQLiteBalanceStore(path)
    assert reopened.get(U, A) == 42
    reopened.close()
