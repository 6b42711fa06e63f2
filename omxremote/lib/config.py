"""
Shared configuration loader for OMX Remote.

Loads a single JSON config file.  Search order:
  1. $OMXREMOTE_CONFIG               (explicit override)
  2. /etc/omxremote/config.json      (system install)
  3. config.json                     (CWD, for local dev)

Every key has a default, so running without any config file is fine.

Usage:
    from omxremote.lib.config import cfg

    port      = cfg("server", "port", default=8080)
    player    = cfg("player", "command", default="omxplayer")
    history   = cfg("playlist", "history", default=3)
    zeroconf  = cfg("zeroconf")  # returns the whole dict
"""

import json
import logging
import os

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/omxremote/config.json",
    "config.json",
]

# section → key → expected type(s)
_SCHEMA = {
    "server": {"host": str, "port": int},
    "player": {"command": str, "args": list, "kill_names": list, "debug_output": bool},
    "playlist": {"history": int},
    "commands": {"queue_size": int},
    "zeroconf": {"enabled": bool, "name": str},
}


def _search_paths() -> list[str]:
    override = os.getenv("OMXREMOTE_CONFIG")
    return ([override] if override else []) + _SEARCH_PATHS


def _validate(config: dict, path: str) -> None:
    """Warn about unknown sections and values of the wrong type."""
    for section, values in config.items():
        schema = _SCHEMA.get(section)
        if schema is None:
            logger.warning("Config %s: unknown section '%s'", path, section)
            continue
        if not isinstance(values, dict):
            logger.warning("Config %s: section '%s' should be an object", path, section)
            continue
        for key, val in values.items():
            expected = schema.get(key)
            if expected is None:
                logger.warning("Config %s: unknown key '%s.%s'", path, section, key)
            elif not isinstance(val, expected) or (expected is int and isinstance(val, bool)):
                logger.warning("Config %s: '%s.%s' should be %s, got %r",
                               path, section, key, expected.__name__, val)
    history = (config.get("playlist") or {}).get("history")
    if isinstance(history, int) and history < 1:
        logger.warning("Config %s: playlist.history must be >= 1 (got %d)", path, history)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _search_paths():
        try:
            with open(path) as f:
                _config = json.load(f)
                logger.info("Config loaded from %s", path)
                _validate(_config, path)
                return _config
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue

    logger.info("No config.json found, using defaults")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("zeroconf")                  → config["zeroconf"]
    cfg("player", "command")         → config["player"]["command"]
    cfg("server", "port", default=8080)  → config["server"]["port"] or 8080
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()
