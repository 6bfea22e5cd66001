"""Bootstrap environment variables. No local dependencies - import first."""

import json
import os
from pathlib import Path


def string_to_bool(s: str) -> bool:
    """Convert string to boolean."""
    return s.lower() in ["true", "yes", "1", "y"]


def _read_debug_from_config() -> bool:
    """Read DEBUG from env var or settings file (import-time safe)."""
    env_debug = os.environ.get("DEBUG")
    if env_debug is not None:
        return string_to_bool(env_debug)

    config_file = Path(os.getenv("CONFIG_DIR", "/config")) / "settings.json"
    if config_file.exists():
        try:
            with open(config_file, "r") as f:
                config = json.load(f)
                if "debug" in config:
                    return bool(config["debug"])
        except (json.JSONDecodeError, OSError):
            pass

    return False


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# =============================================================================
# Bootstrap paths - needed before settings are loaded
# =============================================================================

CONFIG_DIR = Path(os.getenv("CONFIG_DIR", "/config"))
SETTINGS_FILE = CONFIG_DIR / "settings.json"
DB_FILE = CONFIG_DIR / "db" / "requestarr.db"
LOG_ROOT = Path(os.getenv("LOG_ROOT", "/var/log/"))
LOG_DIR = LOG_ROOT / "requestarr"
LOG_FILE = LOG_DIR / "requestarr.log"


# =============================================================================
# Logger configuration
# =============================================================================

DEBUG = _read_debug_from_config()
LOG_LEVEL = "DEBUG" if DEBUG else "INFO"
ENABLE_LOGGING = string_to_bool(os.getenv("ENABLE_LOGGING", "true"))


# =============================================================================
# Outbound HTTP and background work
# =============================================================================

# Per-request transport timeout in seconds for every external service
HTTP_TIMEOUT = _int_from_env("HTTP_TIMEOUT", 30)

# Worker threads for detached add-media calls
DISPATCH_WORKERS = _int_from_env("DISPATCH_WORKERS", 4)
