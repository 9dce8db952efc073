"""Persisted configuration management."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Mapping, Optional

from .models import Config

APP_DIR = Path.home() / ".noteme"
CONFIG_PATH = (APP_DIR / "config.json").expanduser()

# Environment variables win over the file so deployments can inject secrets.
ENV_OVERRIDES = {
    "STT_PROVIDER": "stt_provider",
    "FPT_AI_API_KEY": "fpt_api_key",
    "FPT_AI_STT_URL": "fpt_stt_url",
    "GOOGLE_STT_PROJECT_ID": "google_project_id",
    "GOOGLE_STT_KEY_FILE": "google_key",
    "OPENAI_API_KEY": "openai_api_key",
    "NOTEME_DATABASE_PATH": "database_path",
    "NOTEME_MEDIA_ROOT": "media_root",
}


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or saved."""


def load_config(environ: Optional[Mapping[str, str]] = None) -> Config:
    config = _load_file()
    return apply_env_overrides(config, os.environ if environ is None else environ)


def _load_file() -> Config:
    if not CONFIG_PATH.exists():
        return Config()
    try:
        payload = json.loads(CONFIG_PATH.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Failed to parse configuration file: {exc}") from exc
    known = {f.name for f in fields(Config)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
    return Config(**payload)


def apply_env_overrides(config: Config, environ: Mapping[str, str]) -> Config:
    for variable, key in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value:
            setattr(config, key, value.strip())
    config.stt_provider = (config.stt_provider or "fpt").lower()
    return config


def save_config(config: Config) -> None:
    CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    data = {k: v for k, v in asdict(config).items() if v is not None}
    CONFIG_PATH.write_text(json.dumps(data, indent=2))


def update_config(**kwargs: Any) -> Config:
    config = _load_file()
    for key, value in kwargs.items():
        if hasattr(config, key):
            setattr(config, key, value)
        else:
            raise ConfigError(f"Unknown configuration key: {key}")
    save_config(config)
    return config
