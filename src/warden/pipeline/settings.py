"""Run settings loader.

Defaults come from ``warden.config``; an optional ``config/warden.yml``
overrides them, and ``WARDEN_*`` environment variables override both.
"""
from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import yaml

from .. import config

_ENV_MAP = {
    "scan_timeout_sec": ("WARDEN_SCAN_TIMEOUT_SEC", float),
    "scan_poll_interval_sec": ("WARDEN_SCAN_POLL_INTERVAL_SEC", float),
    "scan_max_attempts": ("WARDEN_SCAN_MAX_ATTEMPTS", int),
    "sign_max_attempts": ("WARDEN_SIGN_MAX_ATTEMPTS", int),
    "backoff_base_sec": ("WARDEN_BACKOFF_BASE_SEC", float),
    "run_timeout_sec": ("WARDEN_RUN_TIMEOUT_SEC", float),
}


@dataclass(frozen=True)
class RunSettings:
    scan_timeout_sec: float = config.SCAN_TIMEOUT_SEC
    scan_poll_interval_sec: float = config.SCAN_POLL_INTERVAL_SEC
    scan_max_attempts: int = config.SCAN_MAX_ATTEMPTS
    sign_max_attempts: int = config.SIGN_MAX_ATTEMPTS
    backoff_base_sec: float = config.BACKOFF_BASE_SEC
    run_timeout_sec: Optional[float] = None


def load_settings(path: Optional[str] = None) -> RunSettings:
    path = path or config.SETTINGS_FILE
    data: Dict[str, Any] = {}
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            file_cfg = yaml.safe_load(f) or {}
        if isinstance(file_cfg, dict):
            data.update({k: v for k, v in file_cfg.items() if k in _ENV_MAP})
    for k, (env, cast) in _ENV_MAP.items():
        if env in os.environ:
            data[k] = cast(os.environ[env])
        elif k in data and data[k] is not None:
            data[k] = cast(data[k])
    return RunSettings(**data)
