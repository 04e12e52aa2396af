"""Abstract base class for backup engines.

The control plane treats the engine as an opaque collaborator: it passes the
request parameters through and reports success or the raised error.
"""

from __future__ import annotations

import abc
from collections.abc import Callable

from backup_gateway.core.models import AppConfig, BackupInfo
from backup_gateway.storage import BaseStorage, get_storage


class BaseEngine(abc.ABC):
    """Interface that every backup engine must implement."""

    def __init__(
            self,
            config: AppConfig,
            storage_factory: Callable[[AppConfig], BaseStorage] = get_storage,
    ) -> None:
        self.config = config
        self._storage_factory = storage_factory

    # ────────────── Introspection ───────────

    @abc.abstractmethod
    def list_tables(self) -> list[str]:
        """Return the tables available for backup."""

    # ────────────── Local backups ───────────

    @abc.abstractmethod
    def freeze(self, table_pattern: str = "", freeze_one_by_one: bool = False) -> None:
        """Snapshot matching tables into the staging (shadow) area.

        With *freeze_one_by_one* every table is snapshotted on its own instead
        of in one pass per database.
        """

    @abc.abstractmethod
    def create_backup(
            self,
            name: str = "",
            table_pattern: str = "",
            freeze_one_by_one: bool = False,
    ) -> str:
        """Create a local backup and return its name.

        Raises:
            backup_gateway.core.exceptions.BackupError on failure.
        """

    @abc.abstractmethod
    def clean(self) -> None:
        """Remove everything from the staging (shadow) area."""

    @abc.abstractmethod
    def restore(
            self,
            name: str,
            table_pattern: str = "",
            schema_only: bool = False,
            data_only: bool = False,
    ) -> None:
        """Restore schema and/or data from a local backup.

        Raises:
            backup_gateway.core.exceptions.RestoreError on failure.
        """

    @abc.abstractmethod
    def list_local_backups(self) -> list[BackupInfo]:
        """Return local backups, oldest first."""

    @abc.abstractmethod
    def remove_local(self, name: str) -> None:
        """Delete a local backup."""

    # ────────────── Remote backups ──────────

    @abc.abstractmethod
    def upload(self, name: str, diff_from: str = "") -> None:
        """Upload a local backup, reusing unchanged files of *diff_from*."""

    @abc.abstractmethod
    def download(self, name: str) -> None:
        """Download a remote backup into the local backup directory."""

    @abc.abstractmethod
    def list_remote_backups(self) -> list[BackupInfo]:
        """Return remote backups, oldest first."""

    @abc.abstractmethod
    def remove_remote(self, name: str) -> None:
        """Delete a remote backup."""

    # ────────────── Helpers ─────────────────

    def connect_storage(self) -> BaseStorage:
        """Create and connect a storage backend for one operation."""
        storage = self._storage_factory(self.config)
        storage.connect()
        return storage

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} data={self.config.database.data_path}>"
