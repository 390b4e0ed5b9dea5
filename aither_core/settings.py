"""Hub and loader settings: built-in defaults, config/settings.yaml, then AITHER_* environment overrides.

An override names a dotted path with double underscores, e.g.
``AITHER_COMMS__MAX_QUEUE_SIZE=50`` or ``AITHER_SECURITY__ENABLED=true``. Values
are parsed as YAML scalars so numbers and booleans keep their types.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Mapping

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "AITHER_"

_DEFAULTS: dict[str, Any] = {
    "comms": {
        "max_queue_size": 1000,
        "default_ttl_seconds": 300,
        "max_event_history": 1000,
        "max_concurrent_handlers": 10,
        "poll_interval": 0.5,
        "max_subscription_errors": 100,
    },
    "api": {
        "default_timeout": 30.0,
        "call_history_size": 1000,
        "retry_base_delay": 1.0,
        "retry_max_delay": 30.0,
        "log_calls": True,
    },
    "circuit_breaker": {
        "failure_threshold": 5,
        "cooldown_seconds": 60.0,
    },
    "security": {
        "enabled": False,
        "token_expiration_minutes": 60,
        "require_authentication": True,
        "allowed_modules": [],
    },
    "loader": {
        "modules_dir": "sandbox/modules",
        # None: one worker per logical CPU
        "max_parallel": None,
        "use_legacy_mode": False,
        "bootstrap_module": "Logging",
        # Static descriptors [{name, path, description, required}]; empty = discover modules_dir
        "modules": [],
    },
    "logging": {
        "file": "logs/aither.log",
        "level": "INFO",
        "log_to_console": False,
        "max_bytes": 10485760,  # 10 MB
        "backup_count": 3,
    },
}

_cached: dict[str, Any] | None = None


def _merge(base: dict[str, Any], overlay: Mapping[str, Any]) -> None:
    for key, value in overlay.items():
        if value is None:
            continue
        if isinstance(base.get(key), dict) and isinstance(value, Mapping):
            _merge(base[key], value)
        else:
            base[key] = value


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """AITHER_SECTION__KEY=value pairs as a nested dict."""
    overrides: dict[str, Any] = {}
    for name, raw in environ.items():
        if not name.startswith(ENV_PREFIX) or "__" not in name:
            continue
        parts = name[len(ENV_PREFIX) :].lower().split("__")
        try:
            value = yaml.safe_load(raw)
        except yaml.YAMLError:
            value = raw
        node = overrides
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value
    return overrides


def get_setting(settings: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """Nested value by dot path, e.g. 'comms.max_queue_size'."""
    current: Any = settings
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return default
        current = current[part]
    return current


def reload_settings() -> None:
    """Drop the cached settings; the next load_settings() reads files and environment again."""
    global _cached
    _cached = None


def load_settings(
    config_dir: Path | None = None, environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """Defaults, overlaid by config/settings.yaml, overlaid by AITHER_* variables. Cached."""
    global _cached
    if _cached is not None:
        return _cached

    if config_dir is None:
        config_dir = Path(__file__).resolve().parent.parent / "config"
    path = config_dir / "settings.yaml"

    result = copy.deepcopy(_DEFAULTS)
    if path.exists():
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as e:
            logger.warning("Ignoring unreadable %s, using defaults: %s", path, e)
        else:
            if isinstance(data, dict):
                _merge(result, data)
    _merge(result, _env_overrides(os.environ if environ is None else environ))

    _cached = result
    return result
