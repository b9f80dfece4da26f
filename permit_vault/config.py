# permit_vault/config.py
from __future__ import annotations

import logging
import os
import threading
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, field_validator

from .authority import PERMIT2_ADDRESS
from .digest import AUTHORITY_NAME
from .kv import canonical_kv_hash
from .permits import normalize_address

_log = logging.getLogger(__name__)

# Local dev-chain address of the first contract a fresh deployer creates.
DEFAULT_LEDGER_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"

_BACKENDS = ("memory", "sqlite")


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _parse_limit(raw: str) -> int:
    v = int(raw, 0)
    if not 1 <= v <= 1024:
        raise ValueError(f"{v} outside [1, 1024]")
    return v


def _parse_chain_id(raw: str) -> int:
    v = int(raw, 0)
    if v <= 0:
        raise ValueError("chain id must be positive")
    return v


# env var -> (settings field, parser). Unparseable or out-of-range values are
# logged and ignored; the file/default value stays.
_ENV_OVERRIDES: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "PV_DEBUG": ("debug", _parse_bool),
    "PV_VERSION": ("version", str.strip),
    "PV_CHAIN_ID": ("chain_id", _parse_chain_id),
    "PV_LEDGER_ADDRESS": ("ledger_address", str.strip),
    "PV_AUTHORITY_ADDRESS": ("authority_address", str.strip),
    "PV_BALANCE_BACKEND": ("balance_backend", str.strip),
    "PV_BALANCES_DB": ("sqlite_path", str.strip),
    "PV_REQUIRE_SERVICE_TOKEN": ("require_service_token", _parse_bool),
    "PV_MAX_BATCH_ITEMS": ("max_batch_items", _parse_limit),
    "PV_EVENTS_PAGE_LIMIT": ("events_page_limit", _parse_limit),
    "PV_METRICS_ENABLED": ("metrics_enabled", _parse_bool),
    "PV_LOG_LEVEL": ("log_level", lambda raw: raw.strip().upper()),
    "PV_ALLOW_RUNTIME_OVERRIDE": ("allow_runtime_override", _parse_bool),
}


def _env_overrides() -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for name, (field, parse) in _ENV_OVERRIDES.items():
        raw = os.environ.get(name, "")
        if not raw.strip():
            continue
        try:
            out[field] = parse(raw)
        except ValueError:
            _log.warning("ignoring invalid %s=%r", name, raw)
    return out


def _read_yaml(path: str) -> Dict[str, Any]:
    """
    Flat top-level mapping from a YAML file; {} if absent or unreadable.
    Non-scalar values are stringified so a file cannot inject structures.
    """
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        _log.warning("cannot read YAML config %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    scalar = (str, int, float, bool, type(None))
    return {str(k): v if isinstance(v, scalar) else str(v) for k, v in doc.items()}


def _break_glass_enabled() -> bool:
    return bool(os.environ.get("PV_BREAK_GLASS_TOKEN", "").strip())


# Bools that may only go False -> True without break-glass.
_TIGHTEN_ONLY_BOOL_FIELDS: FrozenSet[str] = frozenset({"require_service_token"})


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Core / identity --------------------------------------------------

    debug: bool = True
    version: str = "dev"
    app_name: str = "Permit Vault Ledger"
    config_origin: str = "defaults"

    # --- Chain / authority binding ----------------------------------------

    chain_id: int = 1
    ledger_address: str = DEFAULT_LEDGER_ADDRESS
    authority_address: str = PERMIT2_ADDRESS
    authority_name: str = AUTHORITY_NAME

    # --- Persistence ------------------------------------------------------

    balance_backend: str = "memory"  # "memory" | "sqlite"
    sqlite_path: str = "pv_balances.db"

    # --- HTTP surface -----------------------------------------------------

    require_service_token: bool = True
    max_batch_items: int = 64
    events_page_limit: int = 100
    metrics_enabled: bool = True
    log_level: str = "INFO"

    # --- Override safety --------------------------------------------------

    allow_runtime_override: bool = True
    # Preserved by refresh()/set() unless break-glass.
    immutable_fields: FrozenSet[str] = frozenset(
        {
            "chain_id",
            "ledger_address",
            "authority_address",
            "authority_name",
            "balance_backend",
            "sqlite_path",
        }
    )

    @field_validator("ledger_address", "authority_address")
    @classmethod
    def _checksum(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator("chain_id")
    @classmethod
    def _chain_id_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("chain_id must be positive")
        return v

    @field_validator("balance_backend")
    @classmethod
    def _known_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in _BACKENDS:
            raise ValueError(f"balance_backend must be one of {_BACKENDS}")
        return v

    @field_validator("max_batch_items", "events_page_limit")
    @classmethod
    def _positive_limit(cls, v: int) -> int:
        if not 1 <= v <= 1024:
            raise ValueError("limit must be within [1, 1024]")
        return v

    def config_hash(self) -> str:
        """Stable fingerprint of the current settings (no secrets live here)."""
        payload = self.model_dump(mode="json")
        payload["immutable_fields"] = sorted(self.immutable_fields)
        return canonical_kv_hash(payload, label="pv_settings")


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def _load_settings() -> Settings:
    """
    Priority, lowest first:
      1. Settings defaults.
      2. YAML file pointed to by PV_CONFIG_PATH (unknown keys are an error).
      3. PV_* environment variables, see _ENV_OVERRIDES.
    """
    data: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    file_values = _read_yaml(os.environ.get("PV_CONFIG_PATH", "").strip())
    if file_values:
        data = Settings(**{**data, **file_values}).model_dump()
        origin = "yaml"

    data.update(_env_overrides())
    data["config_origin"] = origin
    return Settings(**data)


# ---------------------------------------------------------------------------
# Reloadable wrapper
# ---------------------------------------------------------------------------


class ReloadableSettings:
    """
    Thread-safe holder of the current Settings snapshot.

      - get(): immutable snapshot.
      - refresh(): reload from file/env; immutable_fields keep their current
        values and tighten-only bools cannot relax, unless break-glass.
      - set(): in-memory overrides under the same rules.
    """

    def __init__(self, initial: Optional[Settings] = None) -> None:
        self._lock = threading.RLock()
        self._settings = initial or _load_settings()

    def get(self) -> Settings:
        with self._lock:
            return self._settings

    @staticmethod
    def _constrain(key: str, old_value: Any, new_value: Any, *, break_glass: bool) -> Any:
        if key in _TIGHTEN_ONLY_BOOL_FIELDS and old_value and not new_value and not break_glass:
            return old_value
        return new_value

    def refresh(self) -> Settings:
        with self._lock:
            old = self._settings
            new_data = _load_settings().model_dump()
            old_data = old.model_dump()
            break_glass = _break_glass_enabled()
            immutables = set(old.immutable_fields)

            if not break_glass:
                new_data["immutable_fields"] = old_data["immutable_fields"]

            for key, old_value in old_data.items():
                if not break_glass and key in immutables:
                    new_data[key] = old_value
                    continue
                new_data[key] = self._constrain(
                    key, old_value, new_data[key], break_glass=break_glass
                )

            self._settings = Settings(**new_data)
            return self._settings

    def set(self, **overrides: Any) -> Settings:
        with self._lock:
            current = self._settings
            break_glass = _break_glass_enabled()
            if not current.allow_runtime_override and not break_glass:
                return current

            data = current.model_dump()
            immutables = set(current.immutable_fields)
            for key, value in overrides.items():
                if key not in data:
                    raise ValueError(f"unknown setting: {key}")
                if not break_glass and (key in immutables or key == "immutable_fields"):
                    _log.warning("refusing override of immutable setting %s", key)
                    continue
                data[key] = self._constrain(key, data[key], value, break_glass=break_glass)

            self._settings = Settings(**data)
            return self._settings


def make_reloadable_settings() -> ReloadableSettings:
    return ReloadableSettings(_load_settings())
