# permit_vault/tests/conftest.py
from __future__ import annotations

import pytest

from permit_vault.assets import InMemoryAssetBank
from permit_vault.authority import InMemoryTransferAuthority
from permit_vault.balances import InMemoryBalanceStore
from permit_vault.events import EventLog
from permit_vault.ledger import Ledger
from permit_vault.tests.signing import LEDGER_ADDR, Clock


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def bank() -> InMemoryAssetBank:
    return InMemoryAssetBank()


@pytest.fixture
def authority(bank, clock) -> InMemoryTransferAuthority:
    return InMemoryTransferAuthority(bank, clock=clock)


@pytest.fixture
def ledger(bank, authority, clock) -> Ledger:
    return Ledger(
        address=LEDGER_ADDR,
        authority=authority,
        assets=bank,
        store=InMemoryBalanceStore(),
        events=EventLog(clock=clock),
    )
