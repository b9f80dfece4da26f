# FILE: permit_vault/logging.py
from __future__ import annotations

"""
Structured JSON logging for the ledger and its HTTP surface.

One JSON object per line with a fixed envelope (service identity, level,
logger, message), the ledger fields of the current call, and whatever else
the caller passed via `extra=` under "meta".

Notes:
  - Context (request id, caller, path) is bound per request/coroutine through a
    contextvar; explicit record attributes win over bound values.
  - uint256 amounts are emitted as strings once they leave the double-safe
    range. Bytes become 0x-hex.
  - Signatures and secrets never reach "meta"; secret-bearing headers are
    masked by scrub_dict().
"""

import contextvars
import datetime as _dt
import json
import logging
import os
import sys
import traceback
from typing import Any, Dict, FrozenSet, Optional, Sequence, Tuple

# ---------- Env-driven identity ----------

_SCHEMA = os.environ.get("PV_LOG_SCHEMA", "pv.log.v1")
_SERVICE = os.environ.get("PV_SERVICE", "permit-vault")
_VERSION = os.environ.get("PV_BUILD_VERSION", os.environ.get("PV_VERSION", "0.0.0"))
_ENV = os.environ.get("PV_ENV", "dev")
_INSTANCE = os.environ.get("PV_INSTANCE") or (os.uname().nodename if hasattr(os, "uname") else "unknown")

try:
    _MAX_FIELD = max(512, int(os.environ.get("PV_LOG_MAX_FIELD", "8192")))
except ValueError:
    _MAX_FIELD = 8192

_INCLUDE_STACK = os.environ.get("PV_LOG_INCLUDE_STACK", "1") == "1"

# Header names masked by scrub_dict (case-insensitive); PV_LOG_REDACT replaces the set.
_REDACT: FrozenSet[str] = frozenset(
    k.strip().lower() for k in os.environ.get("PV_LOG_REDACT", "").split(",") if k.strip()
) or frozenset(
    {
        "authorization",
        "cookie",
        "set-cookie",
        "x-api-key",
        "x-pv-service-token",
        "x-pv-break-glass",
    }
)

# Signatures are bearer credentials until the authority consumes them.
_NEVER_IN_META: FrozenSet[str] = frozenset({"signature", "sig", "private_key", "token"})

# Envelope fields lifted from the record (or the bound context), in output order.
_ENVELOPE = (
    "req_id",
    "caller",
    "op",
    "route",
    "user",
    "asset",
    "amount",
    "items",
    "reason",
    "path",
    "method",
    "status",
    "latency_ms",
)

# Attributes every LogRecord carries; anything else came from `extra=`.
_RECORD_ATTRS: FrozenSet[str] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}


# ---------- Bound context ----------

_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("pv_log_ctx", default={})


def bind(**fields: Any) -> None:
    """Add non-None fields to the current logging context."""
    merged = dict(_ctx.get())
    merged.update({str(k): v for k, v in fields.items() if v is not None})
    _ctx.set(merged)


def unbind(*keys: str) -> None:
    _ctx.set({k: v for k, v in _ctx.get().items() if k not in keys})


def reset() -> None:
    _ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_ctx.get())


# ---------- Value shaping ----------


def _jsonable(v: Any) -> Any:
    if isinstance(v, int) and not isinstance(v, bool) and abs(v) > 2**53:
        return str(v)
    if isinstance(v, (bytes, bytearray)):
        return "0x" + bytes(v).hex()
    if isinstance(v, dict):
        return {str(k): _jsonable(x) for k, x in v.items()}
    if isinstance(v, (list, tuple)):
        return [_jsonable(x) for x in v]
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def scrub_dict(d: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Mask secret-bearing keys (typically HTTP headers) with "***", recursively."""
    return {
        k: "***" if k.lower() in _REDACT else (scrub_dict(v) if isinstance(v, dict) else v)
        for k, v in (d or {}).items()
    }


def _now_rfc3339() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------- Formatter ----------


class JSONFormatter(logging.Formatter):
    """
    Envelope: schema, service, version, env, instance, ts, lvl, logger, msg,
    then any of req_id, caller, op, route, user, asset, amount, items, reason,
    path, method, status, latency_ms that are set. Remaining extras go under
    "meta"; exceptions add exc_type/exc_message/stack.
    """

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        bound = context()
        evt: Dict[str, Any] = {
            "schema": _SCHEMA,
            "service": _SERVICE,
            "version": _VERSION,
            "env": _ENV,
            "instance": _INSTANCE,
            "ts": _now_rfc3339(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in _ENVELOPE:
            v = getattr(record, name, None)
            if v is None:
                v = bound.get(name)
            if v is not None:
                evt[name] = _jsonable(v)

        if record.exc_info and self.include_stack:
            etype, evalue, tb = record.exc_info
            evt["exc_type"] = getattr(etype, "__name__", str(etype))
            evt["exc_message"] = str(evalue)[:_MAX_FIELD]
            evt["stack"] = "".join(traceback.format_exception(etype, evalue, tb))[:_MAX_FIELD]

        meta = {
            k: _jsonable(v)
            for k, v in vars(record).items()
            if k not in _RECORD_ATTRS
            and k not in evt
            and not k.startswith("_")
            and k.lower() not in _NEVER_IN_META
        }
        if meta:
            evt["meta"] = meta
        return json.dumps(evt, ensure_ascii=False, separators=(",", ":"), default=str)


# ---------- Setup ----------


def configure_json_logging(
    level: str = "INFO",
    *,
    include_uvicorn: bool = True,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
) -> logging.Logger:
    """Route the root logger (and uvicorn's, when present) to one JSON stream handler."""
    lvl = logging.getLevelName((level or "INFO").upper())
    if not isinstance(lvl, int):
        lvl = logging.INFO
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(include_stack=include_stack))
    handler.setLevel(lvl)

    targets = [logging.getLogger()]
    if include_uvicorn:
        targets += [logging.getLogger(n) for n in ("uvicorn", "uvicorn.error", "uvicorn.access")]
    for i, lg in enumerate(targets):
        lg.setLevel(lvl)
        lg.handlers.clear()
        lg.addHandler(handler)
        if i:
            lg.propagate = False
    return targets[0]


_configured = False


def get_logger(name: str = "permit_vault") -> logging.Logger:
    """Named logger; the first call installs JSON output at PV_LOG_LEVEL."""
    global _configured
    if not _configured:
        configure_json_logging(level=os.environ.get("PV_LOG_LEVEL", "INFO"))
        _configured = True
    return logging.getLogger(name)


# ---------- Ledger calls ----------


def log_ledger_op(
    logger: logging.Logger,
    *,
    op: str,
    route: Optional[str],
    user: Optional[str],
    items: Sequence[Tuple[str, int]],
    ok: bool = True,
    reason: Optional[str] = None,
    latency_ms: Optional[float] = None,
    level: Optional[int] = None,
) -> None:
    """
    One line per ledger call: "ledger.applied" or "ledger.rejected". A single
    item is flattened to asset/amount; batches keep the ordered item list.
    """
    extra: Dict[str, Any] = {"op": op, "route": route, "user": user, "ok": ok}
    if len(items) == 1:
        extra["asset"], extra["amount"] = items[0][0], str(items[0][1])
    else:
        extra["items"] = [[a, str(n)] for a, n in items]
    if reason is not None:
        extra["reason"] = reason
    if latency_ms is not None:
        extra["latency_ms"] = round(latency_ms, 3)
    if level is None:
        level = logging.INFO if ok else logging.WARNING
    logger.log(level, "ledger.applied" if ok else "ledger.rejected", extra=extra)


__all__ = [
    "bind",
    "unbind",
    "reset",
    "context",
    "scrub_dict",
    "JSONFormatter",
    "configure_json_logging",
    "get_logger",
    "log_ledger_op",
]
