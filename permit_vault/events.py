# FILE: permit_vault/events.py
from __future__ import annotations

"""
Append-only Deposit/Withdraw event log.

Every committed ledger call appends exactly one record. Records are immutable
and hash-chained: `head = H(record envelope, prev)`, so a consumer holding the
exported log can check it was neither reordered nor edited (`verify_chain`).

Notes:
  - The ledger appends only after its state change committed; a rejected call
    leaves no trace here.
  - Amounts are carried as ints in memory and as decimal strings in exported
    dicts (uint256 does not survive JSON consumers that use doubles).
  - Subscribers are called synchronously, in append order, after the record is
    visible. A failing subscriber is logged and does not affect the ledger.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .kv import canonical_kv_hash

logger = logging.getLogger(__name__)

KINDS = ("deposit", "deposit_batch", "withdraw", "withdraw_batch")
ROUTES = ("permit", "allowance", "transfer", "witness", "withdraw")

_HEAD_LABEL = "pv_event"

Item = Tuple[str, int]


@dataclass(frozen=True)
class EventRecord:
    seq: int
    kind: str
    user: str
    items: Tuple[Item, ...]
    route: str
    prev: Optional[str]
    head: str
    ts: float

    def envelope(self) -> Dict[str, Any]:
        return _envelope(self.seq, self.kind, self.user, self.items, self.route, self.prev, self.ts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "kind": self.kind,
            "user": self.user,
            "items": [{"asset": a, "amount": str(n)} for a, n in self.items],
            "route": self.route,
            "prev": self.prev,
            "head": self.head,
            "ts": self.ts,
        }


def _envelope(
    seq: int,
    kind: str,
    user: str,
    items: Sequence[Item],
    route: str,
    prev: Optional[str],
    ts: float,
) -> Dict[str, Any]:
    return {
        "seq": seq,
        "kind": kind,
        "user": user,
        "items": [[a, str(n)] for a, n in items],
        "route": route,
        "prev": prev,
        "ts": ts,
    }


def compute_head(envelope: Dict[str, Any], *, key: Optional[bytes] = None) -> str:
    return canonical_kv_hash(envelope, label=_HEAD_LABEL, key=key)


def verify_chain(records: Sequence[EventRecord], *, key: Optional[bytes] = None) -> bool:
    """
    Check a contiguous run of records:
      - each head recomputes from its envelope;
      - each prev equals the previous record's head (the first record may
        start anywhere; its prev is taken as given);
      - seq increases by one and ts never decreases.
    An empty sequence verifies trivially.
    """
    for i, rec in enumerate(records):
        if compute_head(rec.envelope(), key=key) != rec.head:
            return False
        if i == 0:
            continue
        before = records[i - 1]
        if rec.prev != before.head or rec.seq != before.seq + 1 or rec.ts < before.ts:
            return False
    return True


class EventLog:
    def __init__(
        self,
        *,
        key: Optional[bytes] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._key = key
        self._clock = clock or time.time
        self._records: List[EventRecord] = []
        self._subscribers: List[Callable[[EventRecord], None]] = []
        self._lock = threading.RLock()

    def append(self, kind: str, user: str, items: Sequence[Item], route: str) -> EventRecord:
        if kind not in KINDS:
            raise ValueError(f"unknown event kind: {kind!r}")
        if route not in ROUTES:
            raise ValueError(f"unknown event route: {route!r}")
        with self._lock:
            seq = len(self._records)
            prev = self._records[-1].head if self._records else None
            ts = float(self._clock())
            if self._records and ts < self._records[-1].ts:
                ts = self._records[-1].ts
            frozen_items = tuple((a, int(n)) for a, n in items)
            head = compute_head(
                _envelope(seq, kind, user, frozen_items, route, prev, ts), key=self._key
            )
            rec = EventRecord(
                seq=seq, kind=kind, user=user, items=frozen_items,
                route=route, prev=prev, head=head, ts=ts,
            )
            self._records.append(rec)
            subscribers = list(self._subscribers)
        for fn in subscribers:
            try:
                fn(rec)
            except Exception:
                logger.warning("event subscriber failed", exc_info=True)
        return rec

    def subscribe(self, fn: Callable[[EventRecord], None]) -> Callable[[], None]:
        """Register `fn`; returns a callable that unsubscribes it."""
        with self._lock:
            self._subscribers.append(fn)

        def _unsubscribe() -> None:
            with self._lock:
                if fn in self._subscribers:
                    self._subscribers.remove(fn)

        return _unsubscribe

    def head(self) -> Optional[str]:
        with self._lock:
            return self._records[-1].head if self._records else None

    def since(self, seq: int = 0, limit: int = 100) -> List[EventRecord]:
        if seq < 0 or limit <= 0:
            raise ValueError("seq must be >= 0 and limit > 0")
        with self._lock:
            return self._records[seq : seq + limit]

    def export(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [r.to_dict() for r in self._records]

    def verify(self) -> bool:
        with self._lock:
            return verify_chain(self._records, key=self._key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
