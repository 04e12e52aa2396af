"""Configuration loading and management for backup-gateway.

Configuration sources (highest to lowest priority):
  1. Environment variables (BACKUP_GATEWAY_* prefix)
  2. Config file (~/.config/backup-gateway/config.toml or --config)
  3. Defaults

The same parsing path validates configurations submitted to the
``POST /backup/config`` endpoint, so a document that loads from disk is
exactly a document the API accepts.
"""

from __future__ import annotations

import contextlib
import enum
import json
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

import tomli_w
from pydantic import BaseModel, SecretStr, ValidationError

from backup_gateway.core.exceptions import ConfigError
from backup_gateway.core.models import AppConfig

# ──────────────────── Paths ──────────────────────────────

_APP_NAME = "backup-gateway"


def _get_config_dir() -> Path:
    """Return the platform-appropriate config directory."""
    if sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    elif sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return base / _APP_NAME


CONFIG_DIR = _get_config_dir()
CONFIG_FILE = CONFIG_DIR / "config.toml"

# ──────────────────── Environment Loading ────────────────

_ENV_PREFIX = "BACKUP_GATEWAY_"

# env suffix -> (section, field)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "REMOTE_STORAGE": ("general", "remote_storage"),
    "API_LISTEN_ADDR": ("api", "listen_addr"),
    "DATA_PATH": ("database", "data_path"),
    "BACKUP_PATH": ("database", "backup_path"),
    "LOCAL_ROOT": ("local", "root"),
    "S3_BUCKET": ("s3", "bucket"),
    "S3_PATH": ("s3", "path"),
    "S3_REGION": ("s3", "region"),
    "S3_ENDPOINT": ("s3", "endpoint"),
    "S3_ACCESS_KEY": ("s3", "access_key"),
    "S3_SECRET_KEY": ("s3", "secret_key"),
    "GCS_BUCKET": ("gcs", "bucket"),
    "GCS_PATH": ("gcs", "path"),
    "GCS_CREDENTIALS_FILE": ("gcs", "credentials_file"),
    "GCS_CREDENTIALS_JSON": ("gcs", "credentials_json"),
    "COS_BUCKET": ("cos", "bucket"),
    "COS_PATH": ("cos", "path"),
    "COS_REGION": ("cos", "region"),
    "COS_SECRET_ID": ("cos", "secret_id"),
    "COS_SECRET_KEY": ("cos", "secret_key"),
    "LOG_LEVEL": ("logging", "level"),
    "LOG_FILE": ("logging", "log_file"),
    "LOG_FORMAT": ("logging", "format"),
}


def _env(key: str, default: str | None = None) -> str | None:
    """Read an environment variable with the BACKUP_GATEWAY_ prefix."""
    return os.environ.get(f"{_ENV_PREFIX}{key}", default)


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Merge BACKUP_GATEWAY_* variables into a raw config dict."""
    for suffix, (section, field) in _ENV_OVERRIDES.items():
        value = _env(suffix)
        if value is None:
            continue
        raw.setdefault(section, {})[field] = value
    return raw


# ──────────────────── Parsing & Validation ───────────────


def parse_config(raw: dict[str, Any]) -> AppConfig:
    """Validate a raw config mapping into an AppConfig.

    Raises:
        ConfigError: If any section fails validation.
    """
    try:
        return AppConfig.model_validate(raw)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from exc


def parse_config_text(text: str, fmt: str = "toml") -> AppConfig:
    """Parse a TOML or JSON document and validate it."""
    try:
        raw = json.loads(text) if fmt == "json" else tomllib.loads(text)
    except (tomllib.TOMLDecodeError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Invalid {fmt.upper()} configuration: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError("Configuration document must be a table/object")
    return parse_config(raw)


# ──────────────────── TOML File Loading ──────────────────


def load_config_file(path: Path | None = None) -> dict[str, Any]:
    """Load and return the raw TOML config dict. Returns empty dict if file missing."""
    config_path = path or CONFIG_FILE
    if not config_path.exists():
        return {}
    try:
        with open(config_path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc


def save_config_file(config: AppConfig, path: Path | None = None) -> Path:
    """Save AppConfig to a TOML file, credentials included."""
    config_path = path or CONFIG_FILE
    config_path.parent.mkdir(parents=True, exist_ok=True)

    data = config_to_dict(config, reveal_secrets=True)
    with open(config_path, "wb") as f:
        tomli_w.dump(data, f)

    # Restrict file permissions (Unix only)
    with contextlib.suppress(OSError):
        config_path.chmod(0o600)

    return config_path


def config_to_dict(config: AppConfig, *, reveal_secrets: bool = False) -> dict[str, Any]:
    """Convert an AppConfig to a TOML/JSON-serialisable dict.

    Secrets are masked unless *reveal_secrets* is set; ``None`` values are
    dropped because TOML has no null.
    """
    return _plain(config.model_dump(), reveal_secrets)


def _plain(value: Any, reveal: bool) -> Any:
    if isinstance(value, dict):
        return {k: _plain(v, reveal) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_plain(v, reveal) for v in value]
    if isinstance(value, SecretStr):
        return value.get_secret_value() if reveal else str(value)
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    return value


SECRET_MASK = str(SecretStr("secret"))


def restore_masked_secrets(config: AppConfig, current: AppConfig) -> AppConfig:
    """Replace secrets still holding the display mask with the values in *current*.

    ``config_to_dict`` masks credentials, so a document fetched from
    ``GET /backup/config`` and submitted back unchanged keeps the credentials
    that are being served instead of storing the mask.
    """
    updates: dict[str, BaseModel] = {}
    for section_name in AppConfig.model_fields:
        section = getattr(config, section_name)
        served = {
            name: getattr(getattr(current, section_name), name)
            for name, value in section
            if isinstance(value, SecretStr) and value.get_secret_value() == SECRET_MASK
        }
        if served:
            updates[section_name] = section.model_copy(update=served)
    return config.model_copy(update=updates) if updates else config


def default_config() -> AppConfig:
    """Return the built-in default configuration."""
    return AppConfig()


# ──────────────────── Main Loader ────────────────────────


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the full application config (file + env overrides)."""
    raw = load_config_file(config_path)
    return parse_config(_apply_env_overrides(raw))
