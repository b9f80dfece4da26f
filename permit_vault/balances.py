# FILE: permit_vault/balances.py
from __future__ import annotations

"""
Balance table persistence.

Goals:
  - One mapping (user, asset) -> non-negative int, never negative;
  - Mutations only inside a transaction: a failure anywhere in the caller's
    scope (including delegation to the transfer authority) undoes every
    credit and debit made in that scope;
  - Calls serialised against the table: an RLock for the in-memory store,
    a process lock plus BEGIN IMMEDIATE for SQLite.

Notes:
  - Amounts are uint256. SQLite integers are 64-bit, so the durable backend
    stores balances as decimal TEXT and does arithmetic in Python.
  - Zero balances are not materialised in snapshots.
"""

import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

from prometheus_client import Histogram

from .errors import InsufficientBalance
from .permits import UINT256_MAX, check_uint, normalize_address

_TX_LAT = Histogram(
    "pv_balance_tx_latency_seconds",
    "Balance store transaction latency (seconds)",
    buckets=(0.0005, 0.001, 0.002, 0.005, 0.010, 0.020, 0.050, 0.1, 0.2),
)

Key = Tuple[str, str]


def _key(user: str, asset: str) -> Key:
    return (normalize_address(user, name="user"), normalize_address(asset, name="asset"))


class BalanceTxn:
    """Mutable view of the table inside one transaction."""

    def get(self, user: str, asset: str) -> int:
        raise NotImplementedError

    def _put(self, key: Key, value: int) -> None:
        raise NotImplementedError

    def _read(self, key: Key) -> int:
        raise NotImplementedError

    def credit(self, user: str, asset: str, amount: int) -> int:
        check_uint(amount, name="amount")
        k = _key(user, asset)
        new = self._read(k) + amount
        if new > UINT256_MAX:
            raise ValueError("balance overflow")
        self._put(k, new)
        return new

    def debit(self, user: str, asset: str, amount: int) -> int:
        check_uint(amount, name="amount")
        k = _key(user, asset)
        bal = self._read(k)
        if bal < amount:
            raise InsufficientBalance(bal, amount, user=k[0], asset=k[1])
        self._put(k, bal - amount)
        return bal - amount


class BalanceStore:
    def get(self, user: str, asset: str) -> int:
        raise NotImplementedError

    @contextmanager
    def transaction(self) -> Iterator[BalanceTxn]:
        raise NotImplementedError

    def snapshot(self) -> Dict[Key, int]:
        raise NotImplementedError

    def total(self, asset: str) -> int:
        a = normalize_address(asset, name="asset")
        return sum(v for (_, k_asset), v in self.snapshot().items() if k_asset == a)

    def close(self) -> None:
        pass


# ---------- In-memory implementation (dev/test) ----------


class _MemoryTxn(BalanceTxn):
    def __init__(self, data: Dict[Key, int]) -> None:
        self._data = data
        self._journal: Dict[Key, Optional[int]] = {}

    def _read(self, key: Key) -> int:
        return self._data.get(key, 0)

    def get(self, user: str, asset: str) -> int:
        return self._read(_key(user, asset))

    def _put(self, key: Key, value: int) -> None:
        if key not in self._journal:
            self._journal[key] = self._data.get(key)
        if value == 0:
            self._data.pop(key, None)
        else:
            self._data[key] = value

    def _rollback(self) -> None:
        for key, old in self._journal.items():
            if old is None:
                self._data.pop(key, None)
            else:
                self._data[key] = old
        self._journal.clear()


class InMemoryBalanceStore(BalanceStore):
    def __init__(self) -> None:
        self._data: Dict[Key, int] = {}
        self._lock = threading.RLock()

    def get(self, user: str, asset: str) -> int:
        k = _key(user, asset)
        with self._lock:
            return self._data.get(k, 0)

    @contextmanager
    def transaction(self) -> Iterator[BalanceTxn]:
        t0 = time.perf_counter()
        with self._lock:
            txn = _MemoryTxn(self._data)
            try:
                yield txn
            except BaseException:
                txn._rollback()
                raise
            finally:
                _TX_LAT.observe(time.perf_counter() - t0)

    def snapshot(self) -> Dict[Key, int]:
        with self._lock:
            return dict(self._data)


# ---------- SQLite implementation (durable) ----------

_SCHEMA_V1 = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS balances (
  usr        TEXT NOT NULL,
  asset      TEXT NOT NULL,
  amount     TEXT NOT NULL,              -- decimal uint256
  updated_ts REAL NOT NULL,
  PRIMARY KEY (usr, asset)
);

CREATE INDEX IF NOT EXISTS idx_balances_asset ON balances(asset);
"""


class _SQLiteTxn(BalanceTxn):
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def _read(self, key: Key) -> int:
        row = self._conn.execute(
            "SELECT amount FROM balances WHERE usr=? AND asset=?", key
        ).fetchone()
        return int(row[0]) if row else 0

    def get(self, user: str, asset: str) -> int:
        return self._read(_key(user, asset))

    def _put(self, key: Key, value: int) -> None:
        if value == 0:
            self._conn.execute("DELETE FROM balances WHERE usr=? AND asset=?", key)
            return
        self._conn.execute(
            "INSERT INTO balances(usr, asset, amount, updated_ts) VALUES(?,?,?,?) "
            "ON CONFLICT(usr, asset) DO UPDATE SET amount=excluded.amount, "
            "updated_ts=excluded.updated_ts",
            (key[0], key[1], str(value), time.time()),
        )


class SQLiteBalanceStore(BalanceStore):
    """
    Single-file durable balance table. Per-thread connection (WAL) and a coarse
    process lock around write transactions.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self._path = path or os.environ.get("PV_BALANCES_DB", "pv_balances.db")
        self._lock = threading.RLock()
        self._local = threading.local()
        self._conns: List[sqlite3.Connection] = []
        self._migrate()

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return conn
        conn = sqlite3.connect(
            self._path,
            timeout=30.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        self._local.conn = conn
        with self._lock:
            self._conns.append(conn)
        return conn

    def _migrate(self) -> None:
        conn = self._get_conn()
        with self._lock:
            ver = conn.execute("PRAGMA user_version").fetchone()[0]
            if ver == 0:
                conn.executescript(_SCHEMA_V1)
                conn.execute("PRAGMA user_version=1")

    @contextmanager
    def transaction(self) -> Iterator[BalanceTxn]:
        t0 = time.perf_counter()
        with self._lock:
            conn = self._get_conn()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield _SQLiteTxn(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")
            finally:
                _TX_LAT.observe(time.perf_counter() - t0)

    def get(self, user: str, asset: str) -> int:
        k = _key(user, asset)
        row = self._get_conn().execute(
            "SELECT amount FROM balances WHERE usr=? AND asset=?", k
        ).fetchone()
        return int(row[0]) if row else 0

    def snapshot(self) -> Dict[Key, int]:
        rows = self._get_conn().execute("SELECT usr, asset, amount FROM balances").fetchall()
        return {(u, a): int(v) for u, a, v in rows}

    def total(self, asset: str) -> int:
        a = normalize_address(asset, name="asset")
        rows = self._get_conn().execute(
            "SELECT amount FROM balances WHERE asset=?", (a,)
        ).fetchall()
        return sum(int(r[0]) for r in rows)

    def close(self) -> None:
        with self._lock:
            for conn in self._conns:
                conn.close()
            self._conns.clear()
            self._local = threading.local()
