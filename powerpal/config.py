"""Runtime settings for the PowerPal dashboard.

Everything is read from the environment (or a local ``.env`` file) so the
same code runs on a laptop and on the deployed box without edits.
"""

import os

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# MongoDB
MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
MONGO_DB = os.getenv("MONGO_DB", "powerpal")

# Flask
SKEY = os.getenv("SKEY") or "change_me_powerpal_secret"
APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = int(os.getenv("APP_PORT", "7000"))

# ThingSpeak telemetry feed
THINGSPEAK_URL = os.getenv("THINGSPEAK_URL", "https://api.thingspeak.com")
THINGSPEAK_CHANNEL_ID = os.getenv("THINGSPEAK_CHANNEL_ID", "")
THINGSPEAK_READ_KEY = os.getenv("THINGSPEAK_READ_KEY", "")
THINGSPEAK_WRITE_KEY = os.getenv("THINGSPEAK_WRITE_KEY", "")
THINGSPEAK_CONTROL_WRITE_KEY = os.getenv("THINGSPEAK_CONTROL_WRITE_KEY", "")

POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "20"))
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "10"))

DEFAULT_PERMISSIBLE_LIMIT_W = float(os.getenv("DEFAULT_PERMISSIBLE_LIMIT_W", "1000"))
TARIFF_PER_KWH = float(os.getenv("TARIFF_PER_KWH", "11.60"))

# Load switching: "local" (Modbus relay controller), "cloud" (ThingSpeak
# control channel) or "none"
CONTROL_BACKEND = os.getenv("CONTROL_BACKEND", "none").strip().lower()
CONTROLLER_HOST = os.getenv("CONTROLLER_HOST", "localhost")
CONTROLLER_PORT = int(os.getenv("CONTROLLER_PORT", "502"))
CONTROLLER_UNIT_ID = int(os.getenv("CONTROLLER_UNIT_ID", "1"))

# Login throttling
LOGIN_MAX_ATTEMPTS = int(os.getenv("LOGIN_MAX_ATTEMPTS", "5"))
LOGIN_LOCKOUT_SECONDS = int(os.getenv("LOGIN_LOCKOUT_SECONDS", "300"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

# Logging
LOG_FILE = os.getenv("LOG_FILE", os.path.join(BASE_DIR, "powerpal.log"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

SETTING_NAMES = (
    "MONGO_URI", "MONGO_DB", "SKEY", "APP_HOST", "APP_PORT",
    "THINGSPEAK_URL", "THINGSPEAK_CHANNEL_ID", "THINGSPEAK_READ_KEY",
    "THINGSPEAK_WRITE_KEY", "THINGSPEAK_CONTROL_WRITE_KEY",
    "POLL_INTERVAL_SECONDS", "REQUEST_TIMEOUT_SECONDS",
    "DEFAULT_PERMISSIBLE_LIMIT_W", "TARIFF_PER_KWH",
    "CONTROL_BACKEND", "CONTROLLER_HOST", "CONTROLLER_PORT", "CONTROLLER_UNIT_ID",
    "LOGIN_MAX_ATTEMPTS", "LOGIN_LOCKOUT_SECONDS", "BCRYPT_ROUNDS",
    "LOG_FILE", "LOG_LEVEL",
)


def as_dict(overrides=None):
    """Snapshot of all settings, with optional per-instance overrides."""
    settings = {name: globals()[name] for name in SETTING_NAMES}
    if overrides:
        settings.update(overrides)
    return settings
