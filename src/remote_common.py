#!/usr/bin/env python3
"""
Shared utilities for the keymote host
- Logging
- Platform detection
- Config file (~/.config/keymote/config.json)
- Server settings
- Result / error taxonomy shared by the pipeline
"""

import sys
import os
import json
import random
import socket
import threading
import logging
from logging.handlers import RotatingFileHandler
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

# ============================================================================
#                              LOGGING
# ============================================================================

_logger = None

def setup_logging(name="keymote", log_dir=None):
    """
    Setup logging to both console and file.
    Log file: keymote_YYYY-MM-DD.log
    """
    global _logger

    if _logger is not None:
        return _logger

    _logger = logging.getLogger(name)
    _logger.setLevel(logging.DEBUG)

    # Prevent duplicate handlers
    if _logger.handlers:
        return _logger

    fmt = logging.Formatter(
        '[%(asctime)s] %(levelname)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Console handler (INFO and above)
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    console.setFormatter(fmt)
    _logger.addHandler(console)

    # File handler (DEBUG and above)
    if log_dir is None:
        script_dir = os.path.dirname(os.path.abspath(__file__))
        root_dir = os.path.dirname(script_dir)  # Go up from src/ to root
        log_dir = os.path.join(root_dir, "logs")

    log_file = os.path.join(log_dir, f"keymote_{datetime.now().strftime('%Y-%m-%d')}.log")

    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=10_000_000, backupCount=3, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(fmt)
        _logger.addHandler(file_handler)
    except Exception as e:
        print(f"Warning: Could not create log file: {e}")

    return _logger

def get_logger():
    """Get the logger instance"""
    global _logger
    if _logger is None:
        return setup_logging()
    return _logger

def log_info(msg): get_logger().info(msg)
def log_debug(msg): get_logger().debug(msg)
def log_warning(msg): get_logger().warning(msg)
def log_error(msg, exc_info=None): get_logger().error(msg, exc_info=exc_info)

# ============================================================================
#                           PLATFORM DETECTION
# ============================================================================

def get_platform():
    """Returns 'linux', 'windows', or 'macos'"""
    if sys.platform.startswith('linux'):
        return 'linux'
    elif sys.platform == 'win32':
        return 'windows'
    elif sys.platform == 'darwin':
        return 'macos'
    return 'unknown'

PLATFORM = get_platform()

def get_display_server():
    """Returns 'x11', 'wayland', 'n/a' (non-Linux) or 'unknown'"""
    if PLATFORM != 'linux':
        return 'n/a'
    session_type = os.environ.get('XDG_SESSION_TYPE', '').lower()
    if session_type in ('x11', 'wayland'):
        return session_type
    if os.environ.get('WAYLAND_DISPLAY'):
        return 'wayland'
    if os.environ.get('DISPLAY'):
        return 'x11'
    return 'unknown'

def get_computer_name():
    """Host name shown to the phone and checked during PIN auth"""
    return socket.gethostname()

def generate_pin():
    """6-digit session PIN"""
    return str(random.SystemRandom().randint(100000, 999999))

def _is_preferred_lan_ip(ip):
    """192.168.x.x / 172.x.x.x rank above 10.x.x.x (often a VPN)"""
    if ip.startswith('192.168.') or ip.startswith('172.'):
        return 2
    if ip.startswith('10.'):
        return 1
    return 0

def get_local_ip():
    """Get local IP address. Prefers WiFi/LAN IPs over VPN on multi-NIC systems."""
    primary_ip = None
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            s.connect(('8.8.8.8', 80))
            primary_ip = s.getsockname()[0]
        finally:
            s.close()
    except Exception as e:
        log_debug(f"get_local_ip socket probe failed: {e}")

    if primary_ip and not primary_ip.startswith('127.'):
        return primary_ip

    # Fallback: enumerate all interfaces, pick best RFC1918 address
    try:
        addrs = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
        candidates = [addr[4][0] for addr in addrs if not addr[4][0].startswith('127.')]
        if candidates:
            candidates.sort(key=_is_preferred_lan_ip, reverse=True)
            return candidates[0]
    except Exception as e2:
        log_debug(f"get_local_ip interface enum failed: {e2}")

    return primary_ip or '127.0.0.1'

# ============================================================================
#                              CONFIG FILE
# ============================================================================

CONFIG_DIR = os.path.join(os.path.expanduser("~"), ".config", "keymote")
CONFIG_FILE_NAME = "config.json"
TOKENS_FILE_NAME = "device-tokens.json"

# Guards all config read-modify-write sequences. Config I/O is tiny and local,
# so briefly holding a threading.Lock on the event loop is acceptable.
_config_lock = threading.Lock()

def _config_path(config_dir=None):
    return os.path.join(config_dir or CONFIG_DIR, CONFIG_FILE_NAME)

def _load_config(config_dir=None):
    """Load config.json.
    Caller MUST hold _config_lock when part of a read-modify-write."""
    path = _config_path(config_dir)
    if os.path.exists(path):
        try:
            with open(path, "r") as f:
                return json.load(f)
        except Exception as e:
            log_warning(f"Failed to load config {path}: {e}")
    return {}

def _save_config(config, config_dir=None):
    """Save config.json.
    Caller MUST hold _config_lock when part of a read-modify-write."""
    os.makedirs(config_dir or CONFIG_DIR, exist_ok=True)
    with open(_config_path(config_dir), "w") as f:
        json.dump(config, f, indent=2)

def get_server_id(config_dir=None):
    """Get or generate a persistent server identity.
    16-char hex string derived from a UUID4 generated once."""
    with _config_lock:
        config = _load_config(config_dir)
        sid = config.get("server_id", "")
        if not sid:
            import uuid
            sid = uuid.uuid4().hex[:16]
            config["server_id"] = sid
            _save_config(config, config_dir)
        return sid

# ============================================================================
#                              SETTINGS
# ============================================================================

DEFAULT_PORT = 8765
DEFAULT_FPS = 5
HEARTBEAT_INTERVAL = 30.0

# config.json keys that may override ServerSettings defaults
_SETTINGS_KEYS = ("port", "host", "computer_name", "fps", "heartbeat_interval",
                  "worker_response_timeout", "worker_ready_timeout", "tls", "lan_only")

@dataclass
class ServerSettings:
    port: int = DEFAULT_PORT
    host: str = "0.0.0.0"
    pin: Optional[str] = None            # None = no auth required
    computer_name: str = field(default_factory=get_computer_name)
    fps: int = DEFAULT_FPS
    heartbeat_interval: float = HEARTBEAT_INTERVAL
    worker_response_timeout: float = 5.0
    worker_ready_timeout: float = 15.0
    worker_max_restarts: int = 3
    tls: bool = False
    lan_only: bool = False
    config_dir: str = CONFIG_DIR

    @property
    def auth_required(self) -> bool:
        return bool(self.pin)

    @property
    def tokens_path(self) -> str:
        return os.path.join(self.config_dir, TOKENS_FILE_NAME)

def load_settings(config_dir=None, **overrides) -> ServerSettings:
    """Defaults, then config.json, then explicit overrides (CLI).
    Overrides whose value is None are ignored."""
    config_dir = config_dir or CONFIG_DIR
    with _config_lock:
        saved = _load_config(config_dir).get("settings", {})
    values = {k: v for k, v in saved.items() if k in _SETTINGS_KEYS}
    values.update({k: v for k, v in overrides.items() if v is not None})
    return ServerSettings(config_dir=config_dir, **values)

def save_settings(settings: ServerSettings):
    """Persist the overridable settings (never the PIN)"""
    with _config_lock:
        config = _load_config(settings.config_dir)
        config["settings"] = {k: getattr(settings, k) for k in _SETTINGS_KEYS}
        _save_config(config, settings.config_dir)

# ============================================================================
#                          RESULTS AND ERRORS
# ============================================================================

class ErrorKind(Enum):
    AUTH_FAILURE = "auth_failure"
    NOT_AUTHENTICATED = "not_authenticated"
    UNKNOWN_KEY = "unknown_key"
    UNKNOWN_MESSAGE_TYPE = "unknown_message_type"
    WORKER_UNAVAILABLE = "worker_unavailable"
    ACTUATOR_FAULT = "actuator_fault"
    TRANSPORT_ERROR = "transport_error"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Result:
    """Outcome of one actuator command. Worker failures are values, not exceptions."""
    success: bool
    error: Optional[ErrorKind] = None
    detail: str = ""

    @classmethod
    def ok(cls):
        return cls(True)

    @classmethod
    def failure(cls, kind: ErrorKind, detail: str = ""):
        return cls(False, kind, detail)

    def __bool__(self):
        return self.success


class RemoteInputError(Exception):
    """Base for errors raised while handling one inbound message"""
    kind = None


class MessageDecodeError(RemoteInputError):
    kind = ErrorKind.UNKNOWN_MESSAGE_TYPE


class UnknownMessageType(RemoteInputError):
    kind = ErrorKind.UNKNOWN_MESSAGE_TYPE

    def __init__(self, msg_type):
        super().__init__(f"Unknown message type: {msg_type!r}")
        self.msg_type = msg_type


class UnknownKey(RemoteInputError):
    kind = ErrorKind.UNKNOWN_KEY

    def __init__(self, name):
        super().__init__(f"Unknown key: {name!r}")
        self.name = name


class TransportError(Exception):
    """Send or receive failed on a session's carrier"""
    kind = ErrorKind.TRANSPORT_ERROR

# ============================================================================
#                              ASYNC HELPERS
# ============================================================================

def _task_done(t):
    """Callback for fire-and-forget asyncio tasks, logs exceptions instead of silently swallowing them."""
    if t.cancelled():
        return
    exc = t.exception()
    if exc:
        log_error(f"Task failed: {exc}", exc_info=exc)
