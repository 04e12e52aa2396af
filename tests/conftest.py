"""Shared pytest fixtures."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

import pytest

from backup_gateway.core.models import (
    AppConfig,
    BackupInfo,
    DatabaseConfig,
    GeneralConfig,
    LocalStorageConfig,
    StorageType,
)
from backup_gateway.engines.base import BaseEngine


@pytest.fixture()
def sample_file(tmp_path: Path) -> Path:
    """Create a sample file with repeating content."""
    f = tmp_path / "sample.dat"
    content = b"The quick brown fox jumps over the lazy dog.\n" * 10_000
    f.write_bytes(content)
    return f


@pytest.fixture()
def data_dir(tmp_path: Path) -> Path:
    """Create a data directory holding one SQLite database with sample rows."""
    data = tmp_path / "data"
    data.mkdir()
    conn = sqlite3.connect(str(data / "shop.db"))
    cur = conn.cursor()

    cur.execute("""
                CREATE TABLE users
                (
                    id    INTEGER PRIMARY KEY,
                    name  TEXT NOT NULL,
                    email TEXT NOT NULL
                )
                """)
    cur.execute("""
                CREATE TABLE orders
                (
                    id      INTEGER PRIMARY KEY,
                    user_id INTEGER,
                    product TEXT,
                    amount  REAL,
                    FOREIGN KEY (user_id) REFERENCES users (id)
                )
                """)

    users = [
        (1, "Alice", "alice@example.com"),
        (2, "Bob", "bob@example.com"),
        (3, "Charlie", "charlie@example.com"),
    ]
    cur.executemany("INSERT INTO users VALUES (?, ?, ?)", users)

    orders = [
        (1, 1, "Widget", 29.99),
        (2, 1, "Gadget", 49.99),
        (3, 2, "Widget", 29.99),
        (4, 3, "Thingamajig", 99.99),
    ]
    cur.executemany("INSERT INTO orders VALUES (?, ?, ?, ?)", orders)

    conn.commit()
    conn.close()
    return data


@pytest.fixture()
def local_storage_config(tmp_path: Path) -> LocalStorageConfig:
    """Return a LocalStorageConfig rooted in a temp directory."""
    return LocalStorageConfig(root=tmp_path / "remote")


@pytest.fixture()
def app_config(tmp_path: Path, data_dir: Path, local_storage_config: LocalStorageConfig) -> AppConfig:
    """Return an AppConfig using the sample databases and local remote storage."""
    return AppConfig(
        general=GeneralConfig(remote_storage=StorageType.LOCAL),
        database=DatabaseConfig(data_path=data_dir, backup_path=tmp_path / "backups"),
        local=local_storage_config,
    )


class FakeEngine(BaseEngine):
    """In-memory engine recording calls; set ``fail`` to make operations raise."""

    def __init__(self, config: AppConfig) -> None:
        super().__init__(config)
        self.calls: list[tuple] = []
        self.fail: Exception | None = None

    def _record(self, *call) -> None:
        self.calls.append(call)
        if self.fail is not None:
            raise self.fail

    def list_tables(self) -> list[str]:
        self._record("list_tables")
        return ["shop.orders", "shop.users"]

    def freeze(self, table_pattern: str = "", freeze_one_by_one: bool = False) -> None:
        self._record("freeze", table_pattern, freeze_one_by_one)

    def create_backup(self, name="", table_pattern="", freeze_one_by_one=False) -> str:
        self._record("create", name, table_pattern, freeze_one_by_one)
        return name or "generated"

    def clean(self) -> None:
        self._record("clean")

    def restore(self, name, table_pattern="", schema_only=False, data_only=False) -> None:
        self._record("restore", name, table_pattern, schema_only, data_only)

    def list_local_backups(self) -> list[BackupInfo]:
        self._record("list_local")
        return [BackupInfo(name="b1", size=10, created=datetime(2026, 1, 1, tzinfo=UTC))]

    def remove_local(self, name: str) -> None:
        self._record("remove_local", name)

    def upload(self, name: str, diff_from: str = "") -> None:
        self._record("upload", name, diff_from)

    def download(self, name: str) -> None:
        self._record("download", name)

    def list_remote_backups(self) -> list[BackupInfo]:
        self._record("list_remote")
        return [BackupInfo(name="b0", size=5, location="remote")]

    def remove_remote(self, name: str) -> None:
        self._record("remove_remote", name)


@pytest.fixture()
def fake_engine_cls() -> type[FakeEngine]:
    return FakeEngine
