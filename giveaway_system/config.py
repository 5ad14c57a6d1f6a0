"""
Giveaway System Configuration
All configurable parameters for the settlement tick and intro ledger
"""

import os

from dotenv import load_dotenv

from .exceptions import ConfigurationError

load_dotenv()

_TRUE_VALUES = ("1", "true", "yes", "y", "on")
_FALSE_VALUES = ("0", "false", "no", "n", "off")


def env_int(name, default):
    """Read an integer env var; junk or empty values fall back to the default"""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(float(raw))
    except (ValueError, OverflowError):
        return default


def env_bool(name, default=False):
    """Read a boolean env var (1/true/yes/y/on, 0/false/no/n/off)"""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return default


# Environment
APP_ENV = os.getenv("APP_ENV", "dev")
KEY_PREFIX = os.getenv("KEY_PREFIX", "mg")

# Connections
DATABASE_URL = os.getenv("DATABASE_URL", "")
REDIS_URL = os.getenv("REDIS_URL", "")
BOT_TOKEN = os.getenv("BOT_TOKEN", "")
CRON_SECRET = os.getenv("CRON_SECRET", "")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE") or None

# Tick lock and batch sizes (fixed on purpose, keep tick duration bounded)
CRON_LOCK_TTL_SEC = 55
CRON_END_BATCH = 50
CRON_DRAW_BATCH = 50
CRON_OFFICIAL_EXPIRE_BATCH = 50
CRON_RETRY_BATCH = 50
CRON_RETRY_EXPIRE_BATCH = 200

# Official channel publishing
OFFICIAL_PUBLISH_ENABLED = env_bool("OFFICIAL_PUBLISH_ENABLED", False)

# Intro credits & anti-spam
INTRO_TRIAL_CREDITS = env_int("INTRO_TRIAL_CREDITS", 3)
INTRO_COST_PER_INTRO = env_int("INTRO_COST_PER_INTRO", 1)
INTRO_DAILY_LIMIT = env_int("INTRO_DAILY_LIMIT", 20)

# Intro retry credits (fairness): no reply -> retry credit
INTRO_RETRY_ENABLED = env_bool("INTRO_RETRY_ENABLED", False)
INTRO_RETRY_AFTER_HOURS = env_int("INTRO_RETRY_AFTER_HOURS", 24)
INTRO_RETRY_EXPIRES_DAYS = env_int("INTRO_RETRY_EXPIRES_DAYS", 7)
INTRO_RETRY_NOTIFY = env_bool("INTRO_RETRY_NOTIFY", True)


def assert_env():
    """
    Fail fast when required settings are missing

    Raises:
        ConfigurationError: listing every missing variable
    """
    missing = []
    if not DATABASE_URL:
        missing.append("DATABASE_URL")
    if not REDIS_URL:
        missing.append("REDIS_URL")
    if OFFICIAL_PUBLISH_ENABLED and not BOT_TOKEN:
        missing.append("BOT_TOKEN")
    if APP_ENV == "prod" and not CRON_SECRET:
        missing.append("CRON_SECRET")

    if missing:
        raise ConfigurationError(f"Missing env: {', '.join(missing)}")
