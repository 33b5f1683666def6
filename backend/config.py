"""Application-wide configuration constants."""

import os
import platform
from pathlib import Path

# --- Identity ---
PROTOCOL_VERSION = "1.0.0"
CONFIG_DIR = Path(
    os.environ.get("ZENITH_CONFIG_DIR", Path.home() / ".zenith-link")
)
DATA_SUBDIR = "data"  # blob store root under the config dir (profiles, m3u cache, user data)

DEVICE_NAME = platform.node() or "Zenith TV"  # default to hostname, user can override

# --- Control API (local UI) ---
API_HOST = "127.0.0.1"
API_PORT = 8765

# --- Peer listener (server mode) ---
P2P_HOST = "0.0.0.0"
P2P_PORT = 8080

# --- Discovery ---
PROBE_TIMEOUT = 0.3  # seconds, per host
SCAN_HOSTS = range(1, 255)

# --- Sessions ---
CONNECT_TIMEOUT = 5.0  # seconds
PAIRING_TIMEOUT = 60.0  # seconds an operator has to answer a pairing request
FULL_SYNC_TIMEOUT = 30.0  # seconds per full-sync attempt
AUTO_CONNECT = True
MAX_RETRIES = 3
RETRY_DELAY = 2  # seconds, doubled on every attempt
