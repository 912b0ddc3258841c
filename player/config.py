"""Centralized configuration: all env vars in one place."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# --- Host discovery ---
HOST_INFO_URL = os.getenv("HOST_INFO_URL", "http://localhost:4310")  # empty = skip discovery
DISCOVERY_PATH = os.getenv("DISCOVERY_PATH", "/api/host-info")
DISCOVERY_TIMEOUT = float(os.getenv("DISCOVERY_TIMEOUT", "5"))

# --- Host WebSocket (fallback when discovery fails) ---
WS_URL = os.getenv("WS_URL", "")  # explicit override
HOST_ADDRESS = os.getenv("HOST_ADDRESS", "localhost")
HOST_PORT = int(os.getenv("HOST_PORT", "4310"))
HOST_SECURE = _env_bool("HOST_SECURE")
WS_PATH = os.getenv("WS_PATH", "/events")

# --- Connection lifecycle ---
CONNECT_TIMEOUT = float(os.getenv("CONNECT_TIMEOUT", "5"))
INITIAL_CONNECT_DELAY = float(os.getenv("INITIAL_CONNECT_DELAY", "0.5"))
MAX_RECONNECT_ATTEMPTS = int(os.getenv("MAX_RECONNECT_ATTEMPTS", "15"))
RECONNECT_BASE_DELAY_MS = 1000
RECONNECT_MAX_DELAY_MS = 30000
MAX_WS_MESSAGE_SIZE = 8 * 1024 * 1024  # team photos and slideshow payloads are large

# --- Game flow timing (seconds) ---
LOCK_GRACE_SECONDS = float(os.getenv("LOCK_GRACE_SECONDS", "1.0"))
APPROVAL_DISPLAY_DELAY = 2.0
FASTEST_OVERLAY_SECONDS = 5.0
TIMER_TICK_SECONDS = 1.0
DEFAULT_TIMER_SECONDS = 30

# --- Answers ---
GO_WIDE_MAX_ANSWERS = 2

# --- Display ---
DEFAULT_DISPLAY_MODE = "basic"
DEFAULT_ROTATION_INTERVAL_MS = 10000

# --- Presence ---
PRESENCE_DEBOUNCE_SECONDS = 0.1
PRESENCE_COALESCE_SECONDS = 0.5

# --- Identity ---
DATA_DIR = os.getenv("DATA_DIR", os.path.join(os.path.expanduser("~"), ".popquiz-player"))
IDENTITY_FILE = "identity.json"
MAX_TEAM_NAME_LENGTH = 30
MAX_PHOTO_BYTES = 2 * 1024 * 1024  # base64 text length

# --- Local rendering API ---
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "5174"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")  # empty = stdout only


def fallback_ws_url() -> str:
    """Host WebSocket URL used when discovery is unavailable."""
    if WS_URL:
        return WS_URL
    scheme = "wss" if HOST_SECURE else "ws"
    return f"{scheme}://{HOST_ADDRESS}:{HOST_PORT}{WS_PATH}"


def setup_logging():
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
