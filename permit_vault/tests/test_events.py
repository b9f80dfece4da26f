# permit_vault/tests/test_events.py
import dataclasses

import pytest

from permit_vault.events import EventLog, verify_chain

A = "0x" + "aa" * 20
U = "0x" + "01" * 20


def _log(**kw):
    t = iter([10.0, 11.0, 9.0, 12.0, 13.0])
    return EventLog(clock=lambda: next(t), **kw)


def test_append_chains_records():
    log = _log()
    r0 = log.append("deposit", U, [(A, 5)], "permit")
    r1 = log.append("withdraw", U, [(A, 2)], "withdraw")
    assert (r0.seq, r1.seq) == (0, 1)
    assert r0.prev is None
    assert r1.prev == r0.head
    assert log.head() == r1.head
    assert log.verify()


def test_timestamps_never_go_backwards():
    log = _log()
    for _ in range(3):
        log.append("deposit", U, [(A, 1)], "allowance")
    ts = [r.ts for r in log.since(0)]
    assert ts == [10.0, 11.0, 11.0]


def test_tampering_breaks_verification():
    log = _log()
    log.append("deposit", U, [(A, 5)], "permit")
    log.append("deposit", U, [(A, 6)], "permit")
    recs = log.since(0)
    forged = dataclasses.replace(recs[1], items=((A, 600),))
    assert not verify_chain([recs[0], forged])
    assert not verify_chain([recs[1], recs[0]])
    assert verify_chain([])


def test_keyed_heads_differ():
    plain, keyed = _log(), _log(key=b"k" * 32)
    assert plain.append("deposit", U, [(A, 1)], "permit").head != keyed.append(
        "deposit", U, [(A, 1)], "permit"
    ).head


def test_unknown_kind_or_route():
    log = _log()
    with pytest.raises(ValueError):
        log.append("mint", U, [], "permit")
    with pytest.raises(ValueError):
        log.append("deposit", U, [], "airdrop")
    assert len(log) == 0


def test_subscribers_and_failures():
    log = _log()
    seen = []
    unsubscribe = log.subscribe(seen.append)
    log.subscribe(lambda rec: 1 / 0)
    log.append("deposit", U, [(A, 1)], "permit")
    unsubscribe()
    log.append("deposit", U, [(A, 1)], "permit")
    assert [r.seq for r in seen] == [0]
    assert len(log) == 2


def test_since_pages_and_export():
    log = _log()
    for _ in range(4):
        log.append("deposit_batch", U, [(A, 2**200), (A, 1)], "transfer")
    assert [r.seq for r in log.since(1, 2)] == [1, 2]
    assert log.export()[0]["items"][0] == {"asset": A, "amount": str(2**200)}
    with pytest.raises(ValueError):
        log.since(-1)
