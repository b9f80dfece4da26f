# permit_vault/tests/test_config.py
import pytest
from pydantic import ValidationError

from permit_vault.config import (
    DEFAULT_LEDGER_ADDRESS,
    ReloadableSettings,
    Settings,
    make_reloadable_settings,
)
from permit_vault.permits import normalize_address

_ENV = (
    "PV_CONFIG_PATH",
    "PV_CHAIN_ID",
    "PV_LEDGER_ADDRESS",
    "PV_BALANCE_BACKEND",
    "PV_MAX_BATCH_ITEMS",
    "PV_REQUIRE_SERVICE_TOKEN",
    "PV_BREAK_GLASS_TOKEN",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    s = make_reloadable_settings().get()
    assert s.chain_id == 1
    assert s.ledger_address == DEFAULT_LEDGER_ADDRESS
    assert s.balance_backend == "memory"
    assert s.config_origin == "defaults"
    assert s.require_service_token is True


def test_env_overrides_and_bounds(monkeypatch):
    monkeypatch.setenv("PV_CHAIN_ID", "31337")
    monkeypatch.setenv("PV_LEDGER_ADDRESS", "0x" + "ab" * 20)
    monkeypatch.setenv("PV_MAX_BATCH_ITEMS", "5000")
    monkeypatch.setenv("PV_EVENTS_PAGE_LIMIT", "not-a-number")
    monkeypatch.setenv("PV_LOG_LEVEL", "debug")
    s = make_reloadable_settings().get()
    assert s.chain_id == 31337
    assert s.ledger_address == normalize_address("0x" + "ab" * 20)
    assert s.max_batch_items == 64
    assert s.events_page_limit == 100
    assert s.log_level == "DEBUG"


def test_yaml_file(monkeypatch, tmp_path):
    p = tmp_path / "pv.yaml"
    p.write_text("chain_id: 10\nbalance_backend: sqlite\nevents_page_limit: 25\n", encoding="utf-8")
    monkeypatch.setenv("PV_CONFIG_PATH", str(p))
    s = make_reloadable_settings().get()
    assert (s.chain_id, s.balance_backend, s.events_page_limit) == (10, "sqlite", 25)
    assert s.config_origin == "yaml"


def test_yaml_unknown_key_is_rejected(monkeypatch, tmp_path):
    p = tmp_path / "pv.yaml"
    p.write_text("no_such_setting: 1\n", encoding="utf-8")
    monkeypatch.setenv("PV_CONFIG_PATH", str(p))
    with pytest.raises(ValidationError):
        make_reloadable_settings()


def test_validation():
    with pytest.raises(ValidationError):
        Settings(chain_id=0)
    with pytest.raises(ValidationError):
        Settings(balance_backend="postgres")
    with pytest.raises(ValidationError):
        Settings(ledger_address="0x1234")


def test_runtime_override_rules(monkeypatch):
    rs = ReloadableSettings(Settings(require_service_token=True))
    s = rs.set(chain_id=5, max_batch_items=8, require_service_token=False)
    assert s.chain_id == 1
    assert s.max_batch_items == 8
    assert s.require_service_token is True
    with pytest.raises(ValueError):
        rs.set(nope=1)

    monkeypatch.setenv("PV_BREAK_GLASS_TOKEN", "on-call")
    s = rs.set(chain_id=5, require_service_token=False)
    assert (s.chain_id, s.require_service_token) == (5, False)


def test_refresh_keeps_immutables(monkeypatch):
    rs = ReloadableSettings(Settings())
    monkeypatch.setenv("PV_CHAIN_ID", "99")
    monkeypatch.setenv("PV_MAX_BATCH_ITEMS", "16")
    s = rs.refresh()
    assert s.chain_id == 1
    assert s.max_batch_items == 16


def test_config_hash_tracks_values():
    a, b = Settings(), Settings(max_batch_items=8)
    assert a.config_hash() == Settings().config_hash()
    assert a.config_hash() != b.config_hash()
