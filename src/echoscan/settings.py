"""Configuration file management for echoscan.

Handles loading and saving persistent engine and audio defaults.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# Default configuration directory
CONFIG_DIR = Path.home() / ".config" / "echoscan"
CONFIG_FILE = CONFIG_DIR / "init.json"

ENGINE_KEYS = (
    "pulse_ms",
    "start_freq",
    "end_freq",
    "rec_ms",
    "blind_ms",
    "noise_gate",
    "smoothing_alpha",
    "settle_ms",
    "min_interval_ms",
)

# Default settings
DEFAULT_SETTINGS = {
    "pulse_ms": 40.0,
    "start_freq": 15000.0,
    "end_freq": 17000.0,
    "rec_ms": 200.0,
    "blind_ms": 2.0,
    "noise_gate": 0.05,
    "smoothing_alpha": 0.15,
    "settle_ms": 50.0,
    "min_interval_ms": 250.0,
    "sample_rate": 48000,
    "version": "0.1.0",
}


def ensure_config_dir():
    """Ensure configuration directory exists."""
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)


def load_settings() -> dict[str, Any]:
    """Load settings from init.json file.

    Returns:
        Dictionary with settings. If file doesn't exist, returns defaults.
    """
    if not CONFIG_FILE.exists():
        return DEFAULT_SETTINGS.copy()

    try:
        with open(CONFIG_FILE, "r") as f:
            settings = json.load(f)

        # Merge with defaults to ensure all keys exist
        result = DEFAULT_SETTINGS.copy()
        result.update(settings)
        return result

    except (json.JSONDecodeError, IOError) as e:
        logger.warning("Failed to load config from %s: %s; using defaults", CONFIG_FILE, e)
        return DEFAULT_SETTINGS.copy()


def save_settings(settings: dict[str, Any]) -> bool:
    """Save settings to init.json file.

    Args:
        settings: Dictionary with settings to save

    Returns:
        True if successful, False otherwise
    """
    try:
        ensure_config_dir()

        # Merge with existing settings to preserve other values
        current = load_settings()
        current.update(settings)

        with open(CONFIG_FILE, "w") as f:
            json.dump(current, f, indent=2)

        logger.info("Settings saved to %s", CONFIG_FILE)
        return True

    except (IOError, OSError) as e:
        logger.error("Failed to save config to %s: %s", CONFIG_FILE, e)
        return False


def get_engine_settings() -> dict[str, Any]:
    """Return engine-related settings (merged with defaults)."""
    s = load_settings()
    return {key: s.get(key, DEFAULT_SETTINGS[key]) for key in ENGINE_KEYS}


def set_engine_settings(values: dict[str, Any]) -> bool:
    """Save a subset of engine-related settings.

    Values are checked by building an EngineConfig first, so an invalid
    combination never reaches the file.
    """
    from echoscan.config import EngineConfig

    payload = {k: v for k, v in values.items() if k in ENGINE_KEYS}
    if not payload:
        return True
    merged = get_engine_settings()
    merged.update(payload)
    checked = EngineConfig.from_dict(merged)
    return save_settings({k: getattr(checked, k) for k in payload})


def get_sample_rate() -> int:
    """Get sample rate (Hz) from config."""
    value = load_settings().get("sample_rate", DEFAULT_SETTINGS["sample_rate"])
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(DEFAULT_SETTINGS["sample_rate"])


def set_sample_rate(sample_rate: int) -> bool:
    """Save sample rate (Hz) to configuration."""
    try:
        value = int(sample_rate)
    except (TypeError, ValueError):
        raise ValueError(f"sample_rate must be an integer, got {sample_rate!r}")
    if value <= 0:
        raise ValueError(f"sample_rate must be > 0, got {value}")
    return save_settings({"sample_rate": value})


def get_config_file_path() -> Path:
    """Get path to configuration file.

    Returns:
        Path to init.json
    """
    return CONFIG_FILE
