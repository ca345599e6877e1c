import copy
import json
import os
from typing import Any, Dict, Optional

from jsonschema import ValidationError, validate

from .logger import logger

"""
Configuration loader for SmartMail.

Behavior:
- Looks for config path in env var `SMARTMAIL_CONFIG`.
- Falls back to `smartmail/config.json` next to the package.
- Then `smartmail/config.json.example`, then built-in defaults.
- Every candidate is validated against `json_schema/config.schema.json`.

Secrets never live here; see utils.secrets.
"""

_DEFAULT_CONFIG: Dict[str, Any] = {
    "provider": "gemini",
    "ai_enabled": False,
    "providers": {
        "gemini": {"model": "gemini-2.0-flash", "timeout": 10},
        "ollama": {"base_url": "http://localhost:11434", "model": "llama3", "timeout": 30},
    },
    "rate_limit": {"max_calls": 10, "window_seconds": 60},
    "batch": {
        "chunk_size": 5,
        "chunk_delay": 2.0,
        "page_size": 50,
        "default_batch_size": 100,
        "max_batch_sizes": {
            "fetchEmails": 500,
            "analyzeEmails": 200,
            "assignLabels": 200,
            "fullProcess": 200,
        },
    },
    "circuit_breaker": {"failure_threshold": 3, "recovery_timeout": 30.0},
    "storage": {"backend": "memory"},
    "gmail": {
        "token_uri": "https://oauth2.googleapis.com/token",
        "timeout": 15,
    },
    "log_level": "INFO",
}

_SCHEMA_PATH = os.path.join(
    os.path.dirname(__file__), "..", "json_schema", "config.schema.json"
)

_config_cache: Dict[str, Any] = {}
_schema_cache: Dict[str, Any] = {}


def _default_config_path() -> str:
    base_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    return os.path.join(base_dir, "config.json")


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    use_gemini = os.environ.get("USE_GEMINI")
    if use_gemini is not None:
        cfg["ai_enabled"] = use_gemini.strip().lower() == "true"
    return cfg


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from JSON with sensible fallbacks.

    Values missing from the file are filled from the built-in defaults, so
    callers can index nested sections without guarding every key.
    """
    global _config_cache
    if _config_cache:
        return _config_cache

    env_path = os.environ.get("SMARTMAIL_CONFIG")
    candidates = []
    if path:
        candidates.append(path)
    if env_path:
        candidates.append(env_path)
    candidates.append(_default_config_path())
    candidates.append(
        os.path.join(os.path.dirname(__file__), "..", "config.json.example")
    )

    for p in candidates:
        p_abs = os.path.abspath(p)
        if not os.path.exists(p_abs):
            continue
        try:
            with open(p_abs, "r", encoding="utf-8") as f:
                cfg = json.load(f)
            validate_config(cfg)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in config file {p}: {e}")
            continue
        except (ValidationError, ValueError) as e:
            logger.error(f"Config file {p} failed validation: {e}")
            continue
        except OSError as e:
            logger.warning(f"Failed to read config {p}: {e}")
            continue

        _config_cache = _apply_env_overrides(_merge(_DEFAULT_CONFIG, cfg))
        logger.info(f"Configuration loaded from {p_abs}")
        return _config_cache

    logger.warning(
        "No config found; using default configuration. Create 'smartmail/config.json' to customize."
    )
    _config_cache = _apply_env_overrides(copy.deepcopy(_DEFAULT_CONFIG))
    return _config_cache


def reset_config_cache() -> None:
    """Forget the cached configuration (tests, config reloads)."""
    global _config_cache
    _config_cache = {}


def _load_schema() -> Dict[str, Any]:
    if not _schema_cache:
        with open(_SCHEMA_PATH, "r", encoding="utf-8") as f:
            _schema_cache.update(json.load(f))
    return _schema_cache


def validate_config(cfg: Dict[str, Any]) -> None:
    """Validate configuration using the bundled JSON Schema.

    Raises jsonschema.ValidationError on invalid configs.
    """
    if not isinstance(cfg, dict):
        raise ValueError("Configuration must be a JSON object/dict")

    validate(instance=cfg, schema=_load_schema())


def get_default_config() -> Dict[str, Any]:
    """Deep copy of the built-in defaults."""
    return copy.deepcopy(_DEFAULT_CONFIG)


if __name__ == "__main__":
    # Simple CLI for debugging
    print(json.dumps(load_config(), indent=2))
