"""Configuration defaults and the JSON config loader."""

import copy
import json
import os
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = str(PROJECT_ROOT / "config" / "config.json")

APP_NAME = "SaveSync"
DEVICE_LABEL = "This device"

# Per-user data directory: state.json, local snapshot archives, temp-backups/
DEFAULT_DATA_DIR = os.path.join(os.path.expanduser("~"), ".savesync")

# Quiet period after the last mutation before an automatic capture
SETTLE_WINDOW_MS = 10000

# A file must keep the same size/mtime this long before it counts as written
STABILITY_THRESHOLD_MS = 1500
STABILITY_POLL_MS = 250

# Process table polling for play-time tracking
PROCESS_POLL_INTERVAL_MS = 15000
MIN_PROCESS_POLL_INTERVAL_MS = 5000

# Restore scratch workspaces older than this are swept at startup
TEMP_BACKUP_RETENTION_DAYS = 7

DRIVE_ROOT_FOLDER_NAME = "SaveSync Vault"

DEFAULTS = {
    "app_name": APP_NAME,
    "device_label": DEVICE_LABEL,
    "data_dir": DEFAULT_DATA_DIR,
    "sync": {
        "settle_window_ms": SETTLE_WINDOW_MS,
        "stability_threshold_ms": STABILITY_THRESHOLD_MS,
        "stability_poll_ms": STABILITY_POLL_MS,
        "process_poll_interval_ms": PROCESS_POLL_INTERVAL_MS,
    },
    "retention": {
        "temp_backup_days": TEMP_BACKUP_RETENTION_DAYS,
    },
    "drive": {
        "root_folder_name": DRIVE_ROOT_FOLDER_NAME,
        "token_path": None,
    },
    "database": {
        "path": None,
    },
}


def resolve_path(path_str: str) -> Path:
    return Path(os.path.expanduser(os.path.expandvars(path_str))).resolve()


def _merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: str = None) -> dict:
    """Load config.json merged over the defaults.

    A missing file yields the defaults; a malformed one raises
    ``json.JSONDecodeError`` so a typo is not silently ignored.
    """
    config = copy.deepcopy(DEFAULTS)
    path = Path(config_path or DEFAULT_CONFIG_PATH)
    if path.is_file():
        with open(path) as f:
            config = _merge(config, json.load(f))

    data_dir = resolve_path(config["data_dir"])
    config["data_dir"] = str(data_dir)
    if not config["database"].get("path"):
        config["database"]["path"] = str(data_dir / "events.db")
    return config


def process_poll_interval_seconds(config: dict) -> float:
    interval_ms = config["sync"].get("process_poll_interval_ms", PROCESS_POLL_INTERVAL_MS)
    return max(MIN_PROCESS_POLL_INTERVAL_MS, int(interval_ms)) / 1000.0
