"""
Runtime configuration for the tracking relay.

Every value can be overridden through an environment variable of the same
name, which is how the service is configured when deployed.
"""

import logging
import os
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logging.getLogger('Config').warning(f"⚠️ Ignoring invalid {name}={value!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logging.getLogger('Config').warning(f"⚠️ Ignoring invalid {name}={value!r}, using {default}")
        return default


# ============================================================================
# CONSTANTS
# ============================================================================

HOST = os.environ.get('HOST', '0.0.0.0')
WEBSOCKET_PORT = _env_int('PORT', 8000)
HTTP_PORT = _env_int('HTTP_PORT', 8001)
ORGANIZER_PASSWORD = os.environ.get('ORGANIZER_PASSWORD', '')
DATA_DIR = Path(os.environ.get('DATA_DIR', 'data'))

HEARTBEAT_INTERVAL = _env_float('HEARTBEAT_INTERVAL', 30.0)  # Seconds between liveness sweeps
PERSIST_INTERVAL = _env_float('PERSIST_INTERVAL', 30.0)      # Seconds between state snapshots
STATS_INTERVAL = _env_float('STATS_INTERVAL', 300.0)         # Seconds between stats log lines

TRACKING_FILE = 'tracking_state.json'
PARTICIPANTS_FILE = 'participants.json'

# Legacy numeric participant numbers
MIN_PARTICIPANT_NUMBER = 1
MAX_PARTICIPANT_NUMBER = 200

# Client reconnection defaults
RECONNECT_DELAY = 3.0
MAX_RECONNECT_ATTEMPTS = 5

TRACKING_COLORS = ['#1a73e8', '#4caf50', '#f44336', '#ff9800', '#9c27b0', '#795548', '#607d8b']

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Configure root logging once for the whole service."""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='[%(asctime)s] [%(levelname)s] %(message)s',
        datefmt='%H:%M:%S'
    )
