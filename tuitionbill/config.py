"""
tuitionbill/config.py — configuration loader

The YAML file is read once at import time. Lookups use dotted paths:

    from tuitionbill.config import cfg
    cfg.get("billing.fallback_rate_minor", 3000)

Any key can be overridden from the environment with TUITIONBILL_ + the path in
upper case, dots replaced by underscores (TUITIONBILL_BILLING_INVOICE_DUE_DAYS).
"""

import os
from typing import Any, Dict

import yaml

VERSION = "1.0.0"
API_BASE = "/api/v1"

_ENV_PREFIX = "TUITIONBILL_"
_DEFAULT_PATH = "config.yaml"

DEFAULTS: Dict[str, Any] = {
    "app_name": "tuitionbill",
    "db": "sqlite:///data/tuitionbill.db",
    "log": {"level": "INFO", "file": ""},
    "billing": {
        "default_mode": "delivered",
        "fallback_rate_minor": 3000,
        "invoice_due_days": 14,
        "suppress_zero_invoices": False,
        "apply_make_up_credits": True,
        "currency_code": "GBP",
    },
    "credits": {"default_notice_hours": 24, "expiry_warning_days": 3},
    "jobs": {"enabled": True, "sweep_interval_seconds": 3600, "dispatch_interval_seconds": 60},
    "cors": {"allow_origins": ["*"]},
    "notifier": {"webhook_url": "", "timeout_seconds": 10},
    "outbox": {"max_attempts": 5, "batch_size": 100},
}


def _merge(base: Dict, override: Dict) -> Dict:
    merged = dict(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _coerce_env(raw: str, current: Any) -> Any:
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        try:
            return int(raw)
        except ValueError:
            return current
    return raw


class Config:
    def __init__(self, path: str = ""):
        self.path = path or os.getenv(_ENV_PREFIX + "CONFIG", _DEFAULT_PATH)
        self.config: Dict[str, Any] = {}
        self.reload()

    def reload(self) -> Dict[str, Any]:
        data = {}
        if self.path and os.path.exists(self.path):
            with open(self.path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        self.config = _merge(DEFAULTS, data)
        return self.config

    def _lookup(self, path: str):
        cursor: Any = self.config
        for key in [x for x in str(path or "").split(".") if x]:
            if not isinstance(cursor, dict) or key not in cursor:
                return False, None
            cursor = cursor[key]
        return True, cursor

    def get(self, path: str, default: Any = None) -> Any:
        found, value = self._lookup(path)
        env_key = _ENV_PREFIX + str(path).replace(".", "_").upper()
        if env_key in os.environ:
            return _coerce_env(os.environ[env_key], value if found else default)
        if not found or value is None:
            return default
        return value

    def set(self, path: str, value: Any) -> None:
        keys = [x for x in str(path or "").split(".") if x]
        if not keys:
            return
        cursor = self.config
        for key in keys[:-1]:
            if not isinstance(cursor.get(key), dict):
                cursor[key] = {}
            cursor = cursor[key]
        cursor[keys[-1]] = value

    def save_config(self) -> None:
        folder = os.path.dirname(self.path)
        if folder:
            os.makedirs(folder, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.config, f, allow_unicode=True, sort_keys=False)


cfg = Config()
