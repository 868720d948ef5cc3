"""Constants used across the rc-relay package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "rc-relay"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_RELAY_HOST = "0.0.0.0"
DEFAULT_RELAY_PORT = 8080
DEFAULT_SERVER_URL = f"ws://localhost:{DEFAULT_RELAY_PORT}"

DEFAULT_SUBSCRIBER_QUEUE_SIZE = 16

SERVER_URL_ENV = "RC_RELAY_SERVER_URL"

# No battery monitoring exists on the vehicle yet; status replies report this.
PLACEHOLDER_BATTERY_LEVEL = 100
