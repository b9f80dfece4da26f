# FILE: permit_vault/kv.py
from __future__ import annotations

"""
Stable key/value hashing.

Used to build:
  - event log heads (each record hashes its own envelope plus the previous head);
  - the settings fingerprint reported by /version and config reloads.

Properties:
  - Canonical, typed encoding of scalars so "1", 1 and True never collide;
  - Key order independent (keys are sorted);
  - Domain separation via a label, optional HMAC key for deployments that
    do not want heads to be recomputable by outsiders.
"""

import hashlib
import hmac
import json
import math
from typing import Any, Mapping, Optional

_MIN_KEY_BYTES = 16


def _hasher(key: Optional[bytes]):
    if key is None:
        return hashlib.sha256()
    if not isinstance(key, (bytes, bytearray)):
        raise TypeError("HMAC key must be bytes")
    if len(key) < _MIN_KEY_BYTES:
        raise ValueError(f"HMAC key must be at least {_MIN_KEY_BYTES} bytes")
    return hmac.new(bytes(key), digestmod=hashlib.sha256)


def encode_scalar(value: Any) -> bytes:
    """
    Tagged canonical bytes for one value: b"t:<tag>;<body>;".

    ints are decimal (uint256 stays exact), bytes are hex, anything that is not
    a scalar falls back to sorted compact JSON, so ints nested there must be
    JSON-safe (callers stringify amounts).
    """
    if value is None:
        tag, body = "none", ""
    elif isinstance(value, bool):
        tag, body = "bool", "1" if value else "0"
    elif isinstance(value, int):
        tag, body = "int", str(value)
    elif isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError("NaN or infinite values are not allowed in kv hashing")
        tag, body = "float", repr(value)
    elif isinstance(value, str):
        tag, body = "str", value
    elif isinstance(value, (bytes, bytearray)):
        tag, body = "hex", bytes(value).hex()
    else:
        tag = "json"
        body = json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return b"t:" + tag.encode() + b";" + body.encode("utf-8") + b";"


def canonical_kv_hash(
    mapping: Mapping[str, Any],
    *,
    label: str = "kv",
    key: Optional[bytes] = None,
) -> str:
    """Hex SHA-256 (or HMAC) over "k:<key>;v:<encoded value>;" in sorted key order."""
    h = _hasher(key)
    if label:
        h.update(b"kv.label:" + label.encode("utf-8") + b"\x00")
    for k in sorted(mapping, key=str):
        h.update(b"k:" + str(k).encode("utf-8") + b";v:")
        h.update(encode_scalar(mapping[k]))
        h.update(b";")
    return h.hexdigest()
