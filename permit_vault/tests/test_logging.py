# permit_vault/tests/test_logging.py
import io
import json
import logging

from permit_vault.logging import JSONFormatter, bind, log_ledger_op, reset, scrub_dict


def _capture():
    buf = io.StringIO()
    h = logging.StreamHandler(buf)
    h.setFormatter(JSONFormatter())
    lg = logging.getLogger("permit_vault.test")
    lg.handlers[:] = [h]
    lg.setLevel(logging.DEBUG)
    lg.propagate = False
    return lg, buf


def test_ledger_line_envelope():
    lg, buf = _capture()
    bind(req_id="abc123", caller="0xcaller")
    try:
        log_ledger_op(lg, op="deposit", route="allowance", user="0xuser", items=[("0xasset", 2**200)])
    finally:
        reset()
    evt = json.loads(buf.getvalue())
    assert evt["msg"] == "ledger.applied"
    assert evt["req_id"] == "abc123"
    assert evt["amount"] == str(2**200)
    assert evt["lvl"] == "INFO"


def test_rejection_and_forbidden_meta():
    lg, buf = _capture()
    log_ledger_op(
        lg, op="withdraw", route="withdraw", user="0xu", items=[("0xa", 1), ("0xb", 2)],
        ok=False, reason="InsufficientBalance",
    )
    lg.info("with secrets", extra={"signature": "0xdead", "note": b"\x01"})
    first, second = [json.loads(x) for x in buf.getvalue().splitlines()]
    assert first["msg"] == "ledger.rejected"
    assert first["lvl"] == "WARNING"
    assert first["items"] == [["0xa", "1"], ["0xb", "2"]]
    assert "signature" not in second.get("meta", {})
    assert second["meta"]["note"] == "0x01"


def test_scrub_dict():
    out = scrub_dict({"X-PV-Service-Token": "s", "nested": {"Authorization": "b"}, "ok": 1})
    assert out == {"X-PV-Service-Token": "***", "nested": {"Authorization": "***"}, "ok": 1}
