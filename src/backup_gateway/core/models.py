"""Pydantic models for backup-gateway configuration and API payloads."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, SecretStr, field_validator, model_validator

_MIB = 1024 * 1024


# ──────────────────────── Enums ──────────────────────────


class StorageType(enum.StrEnum):
    """Supported remote storage backends."""

    NONE = "none"
    LOCAL = "local"
    S3 = "s3"
    GCS = "gcs"
    COS = "cos"


class LogFormat(enum.StrEnum):
    """Structured log output format."""

    CONSOLE = "console"
    JSON = "json"


# ──────────────────── Value Types ────────────────────────


@dataclass(frozen=True)
class RemoteFile:
    """Metadata of one remote object, valid only at query time."""

    name: str  # backend-relative key
    size: int
    last_modified: datetime


# ──────────────────── Config Models ──────────────────────


class _BackendConfig(BaseModel):
    """Settings shared by every remote storage backend."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = ""
    part_size: int = 64 * _MIB
    concurrency: int = 10
    timeout_seconds: float = 300.0
    embed_hostname: bool = False

    @field_validator("part_size")
    @classmethod
    def validate_part_size(cls, v: int) -> int:
        if v < 5 * _MIB:
            msg = "part_size must be at least 5 MiB"
            raise ValueError(msg)
        return v

    @field_validator("concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if v < 1:
            msg = "concurrency must be at least 1"
            raise ValueError(msg)
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            msg = "timeout_seconds must be positive"
            raise ValueError(msg)
        return v


class LocalStorageConfig(_BackendConfig):
    """Filesystem "remote" storage (local disk, NFS or SMB mounts)."""

    root: Path = Path("./remote")
    page_size: int = 1000


class S3Config(_BackendConfig):
    """S3 and S3-compatible storage settings."""

    access_key: str = ""
    secret_key: SecretStr = SecretStr("")
    bucket: str = ""
    endpoint: str = ""
    region: str = "us-east-1"
    acl: str = "private"
    force_path_style: bool = False
    disable_ssl: bool = False
    disable_cert_verification: bool = False
    sse: str = ""


class GCSConfig(_BackendConfig):
    """Google Cloud Storage settings."""

    credentials_file: str = ""
    credentials_json: SecretStr = SecretStr("")
    bucket: str = ""


class COSConfig(_BackendConfig):
    """Tencent Cloud Object Storage settings."""

    secret_id: str = ""
    secret_key: SecretStr = SecretStr("")
    bucket: str = ""  # e.g. "backups-1250000000"
    region: str = ""
    endpoint: str = ""
    acl: str = ""
    disable_ssl: bool = False
    debug: bool = False


class GeneralConfig(BaseModel):
    """General settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    remote_storage: StorageType = StorageType.NONE


class ApiConfig(BaseModel):
    """REST control plane settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    listen_addr: str = "localhost:7171"

    @field_validator("listen_addr")
    @classmethod
    def validate_listen_addr(cls, v: str) -> str:
        parse_listen_addr(v)
        return v

    @property
    def host(self) -> str:
        return parse_listen_addr(self.listen_addr)[0]

    @property
    def port(self) -> int:
        return parse_listen_addr(self.listen_addr)[1]


class DatabaseConfig(BaseModel):
    """Where the database files, the freeze staging area and local backups live."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    data_path: Path = Path("./data")
    backup_path: Path = Path("./backups")
    shadow_path: Path | None = None

    @property
    def shadow_dir(self) -> Path:
        return self.shadow_path or self.data_path / "shadow"


class LoggingConfig(BaseModel):
    """Logging settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    level: str = "INFO"
    log_file: Path | None = None
    format: LogFormat = LogFormat.CONSOLE

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            msg = f"Unknown log level: {v}"
            raise ValueError(msg)
        return level


class AppConfig(BaseModel):
    """Top-level application configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    general: GeneralConfig = GeneralConfig()
    api: ApiConfig = ApiConfig()
    database: DatabaseConfig = DatabaseConfig()
    local: LocalStorageConfig = LocalStorageConfig()
    s3: S3Config = S3Config()
    gcs: GCSConfig = GCSConfig()
    cos: COSConfig = COSConfig()
    logging: LoggingConfig = LoggingConfig()

    @model_validator(mode="after")
    def check_remote_storage(self) -> AppConfig:
        storage = self.general.remote_storage
        if storage == StorageType.S3 and not self.s3.bucket:
            msg = "s3.bucket is required when remote_storage is 's3'"
            raise ValueError(msg)
        if storage == StorageType.GCS and not self.gcs.bucket:
            msg = "gcs.bucket is required when remote_storage is 'gcs'"
            raise ValueError(msg)
        if storage == StorageType.COS:
            if not self.cos.bucket:
                msg = "cos.bucket is required when remote_storage is 'cos'"
                raise ValueError(msg)
            if not (self.cos.region or self.cos.endpoint):
                msg = "cos.region or cos.endpoint is required when remote_storage is 'cos'"
                raise ValueError(msg)
        return self


# ──────────────────── API Models ─────────────────────────


class BackupInfo(BaseModel):
    """One local or remote backup as reported by the list endpoints."""

    name: str
    size: int = 0
    created: datetime | None = None
    location: str = "local"


class BackupMetadata(BaseModel):
    """Contents of ``metadata.json`` stored alongside every backup."""

    name: str
    created: datetime
    tables: list[str] = []
    diff_from: str = ""
    # relative file path -> remote key; filled in on upload
    files: dict[str, str] = {}


class ApiResult(BaseModel):
    """JSON envelope returned by every control-plane endpoint."""

    success: bool
    result: Any = None
    message: str | None = None


# ──────────────────── Helpers ────────────────────────────


def parse_listen_addr(addr: str) -> tuple[str, int]:
    """Split ``host:port`` (``[v6]:port`` also accepted) into its parts."""
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        msg = f"listen_addr must look like 'host:port', got {addr!r}"
        raise ValueError(msg)
    port_num = int(port)
    if port_num > 65535:
        msg = f"listen_addr port out of range: {port_num}"
        raise ValueError(msg)
    host = host.strip("[]") or "0.0.0.0"
    return host, port_num


def human_size(nbytes: int) -> str:
    """Convert bytes to human-readable string."""
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(nbytes) < 1024:
            return f"{nbytes:.1f} {unit}"
        nbytes /= 1024  # type: ignore[assignment]
    return f"{nbytes:.1f} PB"


def storage_section(config: AppConfig) -> _BackendConfig | None:
    """Return the backend config selected by ``general.remote_storage``."""
    sections: dict[StorageType, _BackendConfig] = {
        StorageType.LOCAL: config.local,
        StorageType.S3: config.s3,
        StorageType.GCS: config.gcs,
        StorageType.COS: config.cos,
    }
    return sections.get(config.general.remote_storage)

