#!/usr/bin/env python3
"""
Harness configuration helper.

Settings come from three layers, later ones winning:
  1. built-in defaults (UUT address, port and database location of the bench)
  2. hwtest.json next to this file, or the file named by $HWTEST_CONFIG
  3. HWTEST_<KEY> environment variables, e.g. HWTEST_UUT_HOST=10.0.0.5

Usage:
  import config

  host = config.get("uut_host")
  timeout = config.get("ack_timeout")
"""

import json
import logging
import os

from errors import UsageError

log = logging.getLogger("hwtest.config")

DEFAULTS = {
    "uut_host": "192.168.1.177",
    "uut_port": 54321,
    "db_path": os.path.join("~", "HW_tester", "records.db"),
    "ack_timeout": 5.0,
    "log_level": "INFO",
}

_DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "hwtest.json")
_cache = None


def config_path():
    return os.environ.get("HWTEST_CONFIG", _DEFAULT_CONFIG_PATH)


def _coerce(key, value, source):
    """Convert a raw value to the type of its default. Raises UsageError if it cannot."""
    kind = type(DEFAULTS[key])
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise UsageError(f"Invalid {kind.__name__} value {value!r} for setting '{key}' in {source}") from None


def load():
    """Return the merged settings dict (cached after the first call)."""
    global _cache
    if _cache is not None:
        return _cache

    settings = dict(DEFAULTS)
    path = config_path()
    if os.path.isfile(path):
        with open(path) as f:
            file_settings = json.load(f)
        for key, value in file_settings.items():
            if key not in DEFAULTS:
                log.warning("Ignoring unknown setting '%s' in %s", key, path)
                continue
            settings[key] = _coerce(key, value, path)

    for key in DEFAULTS:
        env_name = f"HWTEST_{key.upper()}"
        env_value = os.environ.get(env_name)
        if env_value is not None:
            settings[key] = _coerce(key, env_value, env_name)

    settings["db_path"] = os.path.expanduser(settings["db_path"])
    _cache = settings
    return _cache


def get(name):
    """Return one setting. Raises KeyError for unknown names."""
    settings = load()
    if name not in settings:
        raise KeyError(f"Unknown setting '{name}'. Known: {', '.join(settings.keys())}")
    return settings[name]


def reset_cache():
    """Forget loaded settings so the next get() re-reads file and environment."""
    global _cache
    _cache = None
