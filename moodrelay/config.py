"""
Config loader for moodrelay.
Reads config.yaml once at startup. All other modules import from here.

${ENV_VAR} references anywhere in the file are resolved from the environment
(after .env is loaded), which is how the upstream API key gets in without
being written to disk. A missing config file is not an error: the built-in
defaults below are used, and a partial file is merged over them.
"""

import copy
import os
import re
import yaml
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(os.environ.get("MOODRELAY_CONFIG", Path(__file__).parent.parent / "config.yaml"))

_config: dict | None = None

DEFAULTS: dict = {
    "server": {"host": "0.0.0.0", "port": 3000},
    "environment": "${MOODRELAY_ENV}",
    "upstream": {
        "url": "https://api.deepseek.com/v1",
        "api_key": "${DEEPSEEK_API_KEY}",
        "model": "deepseek-chat",
        "timeout": 9,
        "max_tokens": 300,
        "stream_max_tokens": 500,
        "presence_penalty": 0.6,
        "frequency_penalty": 0.6,
        "history_window": 3,
        "max_retries": 2,
        "retry_backoff": 1.0,
    },
    "coach": {"persona": "You are an empathetic AI life coach."},
    "storage": {"snapshot_path": ""},
    "cors": {"production_origins": []},
    "polling": {"ttl_seconds": 300},
    "logging": {"level": "INFO", "file": ""},
    "wiretap": {"enabled": True, "path": "./data/wire.jsonl"},
}


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Path | None = None) -> dict:
    """Load and cache config from YAML file, merged over DEFAULTS."""
    global _config
    if _config is not None and path is None:
        return _config

    config_path = Path(path) if path else _CONFIG_PATH
    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    _config = _walk_and_resolve(_deep_merge(DEFAULTS, raw))
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config():
    """Drop the cached config so the next get_config() re-reads the file."""
    global _config
    _config = None


def is_production(cfg: dict) -> bool:
    env = cfg.get("environment") or os.environ.get("MOODRELAY_ENV", "")
    return str(env).strip().lower() == "production"
