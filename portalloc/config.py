"""Defaults and environment-variable overrides."""
import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger('portalloc')

# Port search window [start, end)
DEFAULT_START_PORT = 20000
DEFAULT_END_PORT = 30000
DEFAULT_PORT_RETRIES = 10
DEFAULT_PORT_RETRY_DELAY = 1.0

# Isolation ID collision resolution
DEFAULT_ID_RETRIES = 999
DEFAULT_COLLISION_BACKOFF = 0.001

LOCK_PREFIX = 'env-'
LOCK_SUFFIX = '.lock'
TEMP_DIR_PREFIX = 'portalloc-env-'
ENV_FILE_NAME = '.env.isolation'
STATE_FILE_NAME = 'state.json'
STATE_VERSION = '1.0'

# Descriptor names for the first allocated ports, in slot order
NAMED_PORTS = ['FIRESTORE_PORT', 'AUTH_PORT', 'API_PORT', 'METRICS_PORT', 'DEBUG_PORT']


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring {name}={raw!r}: not an integer, using {default}")
        return default


def default_lock_dir() -> Path:
    return Path(os.environ.get(
        'PORTALLOC_LOCK_DIR',
        os.path.join(tempfile.gettempdir(), 'portalloc-locks')
    ))


def default_temp_root() -> Path:
    return Path(tempfile.gettempdir())


def default_state_dir() -> Path:
    return Path(os.environ.get('PORTALLOC_STATE_DIR', str(Path.home() / '.portalloc')))


def default_start_port() -> int:
    return _env_int('PORTALLOC_PORT_START', DEFAULT_START_PORT)


def default_end_port() -> int:
    return _env_int('PORTALLOC_PORT_END', DEFAULT_END_PORT)


def default_port_retries() -> int:
    return _env_int('PORTALLOC_PORT_RETRIES', DEFAULT_PORT_RETRIES)


def log_file() -> str:
    return os.environ.get('PORTALLOC_LOG_FILE', '')
