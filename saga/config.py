"""
Onboarding Saga — Configuration Loader

Three-tier configuration loading:
  1. Base YAML file (saga_config.yaml)
  2. Per-environment overlay files (config/{SAGA_ENV}.yaml merged over base)
  3. Environment variable overrides (SAGA_ prefixed, "__" separates levels)

Usage:
    from saga.config import load_config, load_settings

    cfg = load_config(base_path="saga_config.yaml", env="prod")
    settings = load_settings(cfg)
    settings.review_timeout   # seconds

Environment variables:
    SAGA_ENV                       active profile (dev, staging, prod)
    SAGA_CONFIG_DIR                directory for overlay files (default: config/)
    SAGA_MANDATE__MAX_RETRIES=8    → {"mandate": {"max_retries": 8}}
"""

from __future__ import annotations

import copy
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from saga.retry import RetryPolicy

logger = logging.getLogger("saga.config")

_META_VARS = {"SAGA_ENV", "SAGA_CONFIG_DIR", "SAGA_VERSION", "SAGA_DB_PATH", "SAGA_CONFIG"}


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: Any):
    """Set a nested dict value from a list of keys."""
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


# ═══════════════════════════════════════════════════════════════════
# Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(
    base_path: str,
    env: str = "",
    config_dir: str = "",
) -> dict[str, Any]:
    """
    Load config/{env}.yaml. Returns empty dict if no env is active or
    no overlay exists.
    """
    env = env or os.environ.get("SAGA_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("SAGA_CONFIG_DIR", "config")
    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path) or ".") / "config" / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            with open(path) as f:
                overlay = yaml.safe_load(f) or {}
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(prefix: str = "SAGA_") -> dict[str, Any]:
    """
    Load SAGA_ prefixed environment variables as config overrides.

      SAGA_SECTION__KEY=value → {"section": {"key": value}}

    Values are parsed as YAML scalars so numbers and booleans survive.
    """
    overrides: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in _META_VARS:
            continue
        path = [p for p in key[len(prefix):].lower().split("__") if p]
        if not path:
            continue
        try:
            parsed = yaml.safe_load(value)
        except yaml.YAMLError:
            parsed = value
        _set_nested(overrides, path, parsed)

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str = "saga_config.yaml",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Priority (highest wins):
      1. Environment variable overrides (SAGA_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file
    """
    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        with open(base_path) as f:
            config = yaml.safe_load(f) or {}
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("SAGA_ENV", "default")
    config["_config_source"] = base_path
    return config


def get_config_value(
    path: str,
    config: dict[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("timeouts.review", cfg, "7d")
    """
    if config is None:
        config = load_config()

    current: Any = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current


# ═══════════════════════════════════════════════════════════════════
# Durations
# ═══════════════════════════════════════════════════════════════════

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhdw]?)\s*$")
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}


def parse_duration(value: str | int | float) -> float:
    """
    Parse "7d", "48h", "30m", "10s", "2w" or a bare number of seconds.

    Raises ValueError on anything else.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must be non-negative: {value!r}")
        return float(value)
    match = _DURATION_RE.match(str(value).lower())
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _UNIT_SECONDS[unit]


# ═══════════════════════════════════════════════════════════════════
# Typed Settings
# ═══════════════════════════════════════════════════════════════════

@dataclass
class SagaSettings:
    """SOP constants, all durations in seconds."""
    workflow_timeout: float = 30 * 86400
    stage_timeout: float = 14 * 86400
    review_timeout: float = 7 * 86400
    mandate_retry_interval: float = 7 * 86400
    max_mandate_retries: int = 8
    # 0 disables the post-exhaustion salvage window
    mandate_salvage_window: float = 0.0
    overlimit_threshold_cents: int = 500_000_00
    step_retry: RetryPolicy = field(default_factory=RetryPolicy)


def load_settings(config: dict[str, Any] | None = None) -> SagaSettings:
    """Build SagaSettings from a loaded config dict (missing keys keep defaults)."""
    cfg = config if config is not None else {}
    d = SagaSettings()

    def dur(path: str, default: float) -> float:
        raw = get_config_value(path, cfg, None)
        return default if raw is None else parse_duration(raw)

    retry_cfg = get_config_value("step_retry", cfg, {}) or {}
    settings = SagaSettings(
        workflow_timeout=dur("timeouts.workflow", d.workflow_timeout),
        stage_timeout=dur("timeouts.stage", d.stage_timeout),
        review_timeout=dur("timeouts.review", d.review_timeout),
        mandate_retry_interval=dur("mandate.retry_interval", d.mandate_retry_interval),
        max_mandate_retries=int(get_config_value(
            "mandate.max_retries", cfg, d.max_mandate_retries)),
        mandate_salvage_window=dur("mandate.salvage_window", d.mandate_salvage_window),
        overlimit_threshold_cents=int(get_config_value(
            "quote.overlimit_threshold_cents", cfg, d.overlimit_threshold_cents)),
        step_retry=RetryPolicy(
            max_attempts=int(retry_cfg.get("max_attempts", d.step_retry.max_attempts)),
            backoff_base=float(retry_cfg.get("backoff_base", d.step_retry.backoff_base)),
            backoff_max=float(retry_cfg.get("backoff_max", d.step_retry.backoff_max)),
            jitter=float(retry_cfg.get("jitter", d.step_retry.jitter)),
        ),
    )

    if not 1 <= settings.max_mandate_retries <= 8:
        raise ValueError(
            f"mandate.max_retries must be between 1 and 8, got {settings.max_mandate_retries}"
        )
    return settings
