"""
Configuration for the Event Check-in Service

Settings come from environment variables, optionally loaded from a .env
file, merged over the defaults below. Explicit overrides passed to the
application factory win over both.
"""

import os
from typing import Dict, Optional

from dotenv import find_dotenv, load_dotenv


DEFAULT_CONFIG = {
    'SECRET_KEY': 'dev-secret-key-change-in-production',
    'DEBUG': False,
    'SESSION_LIFETIME_HOURS': 24,
    'STORE_BACKEND': 'memory',
    'PARTICIPANTS_FILE': 'data/participants.json',
    'STAFF_FILE': 'data/staff.json',
    'REDIS_HOST': 'localhost',
    'REDIS_PORT': 6379,
    'REDIS_DB': 0,
    'REDIS_PREFIX': 'checkin:',
    'SCANNER_AUTH_REQUIRED': True,
    'RECENT_SCANS_LIMIT': 10,
    'LOG_LEVEL': 'INFO',
    'LOG_FILE': None,
}

BOOLEAN_KEYS = ('DEBUG', 'SCANNER_AUTH_REQUIRED')
INTEGER_KEYS = ('SESSION_LIFETIME_HOURS', 'REDIS_PORT', 'REDIS_DB', 'RECENT_SCANS_LIMIT')


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def load_config(overrides: Optional[Dict] = None, env_file: Optional[str] = None) -> Dict:
    """
    Build the effective configuration

    Args:
        overrides: Values that take precedence over the environment
        env_file: Optional path to a .env file (default: the nearest .env
            found from the working directory upwards)

    Returns:
        Configuration dictionary with typed values
    """
    if env_file is None:
        env_file = find_dotenv(usecwd=True)
    if env_file:
        load_dotenv(env_file)

    config = dict(DEFAULT_CONFIG)
    for key in DEFAULT_CONFIG:
        value = os.environ.get(key)
        if value is None or value == "":
            continue
        if key in BOOLEAN_KEYS:
            config[key] = _parse_bool(value)
        elif key in INTEGER_KEYS:
            config[key] = int(value)
        else:
            config[key] = value

    if overrides:
        config.update(overrides)
    return config
