"""
Secure Ward - Environment Config Loader

Three-tier configuration loading:
  1. Packaged base file (ward/defaults.yaml) or an explicit base path
  2. Per-environment overlay files (config/{WARD_ENV}.yaml merged over base)
  3. Environment variable overrides (WARD_ prefixed)

Usage:
    from clinic.config import load_config, get_config_value

    cfg = load_config(env="demo")
    model = get_config_value("advisory.model", cfg, default="command-r")

Environment variables:
    WARD_ENV         - active profile (dev, demo, prod)
    WARD_CONFIG_DIR  - directory for overlay files (default: config/)
    WARD_*           - flat overrides (e.g., WARD_ADVISORY_PROVIDER=openai)
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("secure_ward.config")

DEFAULT_BASE_PATH = str(Path(__file__).resolve().parent.parent / "ward" / "defaults.yaml")

_META_KEYS = {"WARD_ENV", "WARD_CONFIG_DIR", "WARD_VERSION"}


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

def _load_overlay_file(env: str = "", config_dir: str = "") -> dict[str, Any]:
    """
    Load per-environment overlay file from {config_dir}/{env}.yaml.
    Returns empty dict if no profile is active or no file is found.
    """
    env = env or os.environ.get("WARD_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("WARD_CONFIG_DIR", "config")

    for path in (Path(config_dir) / f"{env}.yaml", Path(config_dir) / f"{env}.yml"):
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

def _load_env_overrides(prefix: str = "WARD_") -> dict[str, Any]:
    """
    Load WARD_ prefixed environment variables as config overrides.

      WARD_SECTION_KEY=value → {"section": {"key": value}}

    Values are parsed as YAML scalars, so numbers and booleans keep
    their type. Meta variables (WARD_ENV, WARD_CONFIG_DIR) are skipped.
    """
    overrides: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in _META_KEYS:
            continue

        path = key[len(prefix):].lower().split("_", 1)
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
    base_path: str = "",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Priority (highest wins):
      1. Environment variable overrides (WARD_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file (ward/defaults.yaml)
    """
    base_path = base_path or DEFAULT_BASE_PATH
    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        with open(base_path) as f:
            config = yaml.safe_load(f) or {}
        logger.debug("Loaded base config: %s", base_path)
    else:
        logger.warning("Base config not found: %s", base_path)

    overlay = _load_overlay_file(env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("WARD_ENV", "default")
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
        get_config_value("advisory.fallbacks.SPECIALIST.amount", cfg, 250)
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
