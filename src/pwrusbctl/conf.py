"""Application settings and config persistence for pwrusbctl.

Config is stored at ~/.config/pwrusbctl/config.json (XDG-compliant).

Usage:
    from pwrusbctl.conf import settings

    settings.line_voltage     # AC volts assumed for kWh estimates
    settings.poll_interval    # seconds between monitor samples
    settings.backend          # 'auto', 'hidapi' or 'pyusb'
    settings.read_timeout_ms  # HID read timeout

    # Low-level config access
    from pwrusbctl.conf import load_config, save_config
"""
from __future__ import annotations

import json
import logging
import math
import os

from .device_factory import BACKENDS

log = logging.getLogger(__name__)

# =========================================================================
# Config file location (XDG-compliant)
# =========================================================================

_XDG_CONFIG = os.environ.get('XDG_CONFIG_HOME', os.path.expanduser('~/.config'))
CONFIG_DIR = os.path.join(_XDG_CONFIG, 'pwrusbctl')
CONFIG_PATH = os.path.join(CONFIG_DIR, 'config.json')

DEFAULT_LINE_VOLTAGE = 110.0
DEFAULT_POLL_INTERVAL = 10.0
DEFAULT_BACKEND = 'auto'
DEFAULT_READ_TIMEOUT_MS = 1000


# =========================================================================
# Low-level config persistence
# =========================================================================

def load_config() -> dict:
    """Load user config from disk. Returns empty dict on missing/corrupt file."""
    try:
        with open(CONFIG_PATH, 'r') as f:
            config = json.load(f)
    except FileNotFoundError:
        return {}
    except (json.JSONDecodeError, OSError) as e:
        log.warning("Ignoring unreadable config %s: %s", CONFIG_PATH, e)
        return {}
    return config if isinstance(config, dict) else {}


def save_config(config: dict):
    """Save user config to disk."""
    os.makedirs(CONFIG_DIR, exist_ok=True)
    with open(CONFIG_PATH, 'w') as f:
        json.dump(config, f, indent=2)


def _save_setting(key: str, value) -> None:
    config = load_config()
    config[key] = value
    save_config(config)


def _is_positive(value) -> bool:
    return math.isfinite(value) and value > 0


def _positive_float(config: dict, key: str, default: float) -> float:
    try:
        value = float(config.get(key, default))
    except (TypeError, ValueError):
        return default
    return value if _is_positive(value) else default


# =========================================================================
# Settings singleton
# =========================================================================

class Settings:
    """Application-wide settings singleton.

    Values are loaded once; setters validate and persist immediately.
    """

    def __init__(self) -> None:
        self.reload()

    def reload(self) -> None:
        """Re-read every value from the config file."""
        config = load_config()
        self._line_voltage = _positive_float(config, 'line_voltage', DEFAULT_LINE_VOLTAGE)
        self._poll_interval = _positive_float(config, 'poll_interval', DEFAULT_POLL_INTERVAL)
        backend = config.get('backend', DEFAULT_BACKEND)
        self._backend = backend if backend in BACKENDS else DEFAULT_BACKEND
        self._read_timeout_ms = int(_positive_float(
            config, 'read_timeout_ms', DEFAULT_READ_TIMEOUT_MS))

    @property
    def line_voltage(self) -> float:
        return self._line_voltage

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    @property
    def backend(self) -> str:
        return self._backend

    @property
    def read_timeout_ms(self) -> int:
        return self._read_timeout_ms

    def set_line_voltage(self, volts: float, persist: bool = True) -> None:
        if not _is_positive(volts):
            raise ValueError(f"Line voltage must be a positive number, got {volts}")
        self._line_voltage = float(volts)
        if persist:
            _save_setting('line_voltage', self._line_voltage)

    def set_poll_interval(self, seconds: float, persist: bool = True) -> None:
        if not _is_positive(seconds):
            raise ValueError(f"Poll interval must be a positive number, got {seconds}")
        self._poll_interval = float(seconds)
        if persist:
            _save_setting('poll_interval', self._poll_interval)

    def set_backend(self, backend: str, persist: bool = True) -> None:
        if backend not in BACKENDS:
            raise ValueError(
                f"Unknown backend {backend!r} (expected one of {', '.join(BACKENDS)})"
            )
        self._backend = backend
        if persist:
            _save_setting('backend', backend)

    def set_read_timeout_ms(self, timeout_ms: int, persist: bool = True) -> None:
        if not _is_positive(timeout_ms):
            raise ValueError(f"Read timeout must be a positive number, got {timeout_ms}")
        self._read_timeout_ms = int(timeout_ms)
        if persist:
            _save_setting('read_timeout_ms', self._read_timeout_ms)

    def as_dict(self) -> dict:
        return {
            'line_voltage': self._line_voltage,
            'poll_interval': self._poll_interval,
            'backend': self._backend,
            'read_timeout_ms': self._read_timeout_ms,
        }


# Module-level singleton - import and use directly
settings = Settings()
