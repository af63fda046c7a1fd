"""Configuration settings for SiteDetox."""

import os
import sys
from pathlib import Path
from dotenv import load_dotenv


def get_user_data_dir() -> Path:
    """
    Get the directory for user-writable data (persisted state, lock file).

    SITEDETOX_DATA_DIR wins when set. Otherwise a per-platform location
    in the user's home directory is used so state survives upgrades.

    Returns:
        Path to the user data directory.
    """
    override = os.getenv("SITEDETOX_DATA_DIR", "")
    if override:
        return Path(override).expanduser()

    if sys.platform == 'darwin':
        # macOS: ~/Library/Application Support/SiteDetox
        return Path.home() / "Library" / "Application Support" / "SiteDetox"
    elif sys.platform == 'win32':
        # Windows: %APPDATA%/SiteDetox
        appdata = os.environ.get('APPDATA')
        if appdata:
            return Path(appdata) / "SiteDetox"
        return Path.home() / "AppData" / "Roaming" / "SiteDetox"
    else:
        # Linux: ~/.local/share/SiteDetox
        return Path.home() / ".local" / "share" / "SiteDetox"


def _env_float(name: str, default: float) -> float:
    """Read a float from the environment, falling back on bad values."""
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        import logging
        logging.getLogger(__name__).warning(
            f"{name}={raw!r} is not a number, using default {default}"
        )
        return default


# Explicitly load from the project root (where config.py lives)
# so .env is found regardless of current working directory
load_dotenv(Path(__file__).parent / ".env")

USER_DATA_DIR = get_user_data_dir()

# Single JSON document holding every persisted key
STATE_FILE = USER_DATA_DIR / "state.json"

# Lock file guaranteeing one coordinator (the only store writer)
LOCK_FILE = USER_DATA_DIR / ".sitedetox_coordinator.lock"

# --- Detox quota curve (minutes) ---
# Day 0 gets DETOX_INITIAL_MINUTES, every following day loses
# DETOX_DECAY_MINUTES until DETOX_FLOOR_MINUTES is reached.
DETOX_INITIAL_MINUTES = _env_float("DETOX_INITIAL_MINUTES", 60.0)
DETOX_DECAY_MINUTES = _env_float("DETOX_DECAY_MINUTES", 10.0)
DETOX_FLOOR_MINUTES = _env_float("DETOX_FLOOR_MINUTES", 5.0)

SECONDS_PER_DAY = 24 * 60 * 60

# --- Tick sources ---
ALARM_DAILY_RESET = "daily_reset"
ALARM_TIME_TRACKING = "time_tracking"
DAILY_RESET_PERIOD_SECONDS = SECONDS_PER_DAY
TRACKING_INTERVAL_SECONDS = _env_float("TRACKING_INTERVAL_SECONDS", 60.0)

# A session is flushed once this much time has elapsed since the last flush.
# Bounds the usage lost on a crash to one flush interval.
FLUSH_THRESHOLD_SECONDS = _env_float("FLUSH_THRESHOLD_SECONDS", 30.0)

# --- Modes ---
MODE_DETOX = "detox"    # New rules get a decaying daily quota
MODE_NORMAL = "normal"  # New rules are always blocked
VALID_MODES = (MODE_DETOX, MODE_NORMAL)

# --- Categories (keyword heuristic, see blocking/rules.py) ---
CATEGORY_SOCIAL = "social"
CATEGORY_GAME = "game"
CATEGORY_OTHER = "other"
CATEGORY_KEYWORDS = {
    CATEGORY_SOCIAL: ["facebook", "instagram", "tiktok", "twitter", "reddit", "zalo"],
    CATEGORY_GAME: ["game", "chess", "steam", "epic", "play", "lichess"],
}

# --- Blocking ---
# Only pages served over these schemes are tracked or blocked
TRACKED_URL_SCHEMES = ("http", "https")
BLOCK_PAGE_URL = os.getenv("BLOCK_PAGE_URL", "sitedetox://blocked")
BLOCK_REASON_BLOCKED = "blocked"  # Hard rule
BLOCK_REASON_TIMEOUT = "timeout"  # Detox quota exhausted

# --- Display thresholds (minutes remaining) ---
CRITICAL_TIME_MINUTES = 5
WARNING_TIME_MINUTES = 15
LOW_TIME_WARNING_MINUTES = 5

# Badge text shown when blocking is switched off
BADGE_DISABLED_TEXT = "OFF"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")  # Can override in .env: DEBUG, INFO, WARNING, ERROR
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
