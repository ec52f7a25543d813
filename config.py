# config.py - sane config with loud failures

import os
import time
from typing import Any, Dict, Optional

# Optional knobs with defaults that won't sandbag you at runtime.
DEFAULTS = {
    # Effective-set cache
    "AUTHZ_CACHE_ENABLED": True,
    "AUTHZ_CACHE_TTL_SECONDS": 60.0,
    "AUTHZ_CACHE_CLEANUP_INTERVAL_SECONDS": 30.0,

    # Auditing
    "AUTHZ_AUDIT_DENIALS": True,

    # Role templates YAML; None = built-in templates only
    "AUTHZ_ROLE_PRESETS_PATH": None,

    # Header the upstream identity layer sets with the caller's member id
    "AUTHZ_MEMBER_HEADER": "X-Member-Id",

    "LOG_LEVEL": "INFO",
}

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

_TRUTHY = ('true', '1', 'yes', 'on')


def _as_bool(val) -> bool:
    return val.lower() in _TRUTHY if isinstance(val, str) else bool(val)


def _as_positive_float(key: str, val) -> float:
    try:
        val = float(val)
        if val <= 0:
            raise ValueError(f"{key} must be positive")
    except (ValueError, TypeError):
        raise RuntimeError(f"{key} must be a positive number, got: {val}")
    return val


def load_config() -> Dict[str, Any]:
    """
    Load env config, erroring clearly if any value is invalid.
    Returns a dict of every key in DEFAULTS with types normalized.
    """
    cfg: Dict[str, Any] = {}

    for k, v in DEFAULTS.items():
        val = os.getenv(k, v)

        if k in {"AUTHZ_CACHE_ENABLED", "AUTHZ_AUDIT_DENIALS"}:
            val = _as_bool(val)
        elif k in {"AUTHZ_CACHE_TTL_SECONDS", "AUTHZ_CACHE_CLEANUP_INTERVAL_SECONDS"}:
            val = _as_positive_float(k, val)
        elif k == "AUTHZ_ROLE_PRESETS_PATH":
            val = val or None
        elif k == "AUTHZ_MEMBER_HEADER":
            if not val or not val.strip():
                raise RuntimeError("AUTHZ_MEMBER_HEADER must be a non-empty header name")
            val = val.strip()
        elif k == "LOG_LEVEL":
            val = str(val).upper()
            if val not in VALID_LOG_LEVELS:
                raise RuntimeError(f"LOG_LEVEL must be one of {VALID_LOG_LEVELS}, got: {val}")

        cfg[k] = val

    if cfg["AUTHZ_CACHE_CLEANUP_INTERVAL_SECONDS"] > cfg["AUTHZ_CACHE_TTL_SECONDS"]:
        raise RuntimeError(
            "AUTHZ_CACHE_CLEANUP_INTERVAL_SECONDS must not exceed AUTHZ_CACHE_TTL_SECONDS"
        )

    return cfg


def get_debug_config(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Get configuration for debug endpoint.
    Returns sanitized config (no secrets). Loads from the environment when
    no config is given.
    """
    cfg = cfg if cfg is not None else load_config()

    sanitized = {
        k: v for k, v in cfg.items()
        if not any(secret in k.upper() for secret in ["KEY", "SECRET", "PASSWORD", "TOKEN"])
    }

    sanitized["_metadata"] = {
        "version": "1.0",
        "environment": os.getenv("ENVIRONMENT", "development"),
        "loaded_at": time.time()
    }

    return sanitized
