"""SQLite backup engine.

Treats every ``*.db`` file in ``database.data_path`` as a database whose
tables are addressed as ``<db>.<table>``. Freezing snapshots them with the
SQLite online-backup API into the shadow directory; a backup is the frozen
snapshots plus ``metadata.json`` under ``backup_path/<name>``.
"""

from __future__ import annotations

import contextlib
import fnmatch
import hashlib
import io
import posixpath
import shutil
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from backup_gateway.core.exceptions import (
    BackupError,
    BackupNotFoundError,
    ConnectionError,
    NotFoundError,
    RestoreError,
)
from backup_gateway.core.models import BackupInfo, BackupMetadata, RemoteFile
from backup_gateway.engines.base import BaseEngine
from backup_gateway.logging import get_logger
from backup_gateway.storage import BaseStorage

log = get_logger(__name__)

METADATA_FILE = "metadata.json"
_NAME_FORMAT = "%Y-%m-%dT%H-%M-%S"


class SQLiteEngine(BaseEngine):
    """Engine for a directory of SQLite databases."""

    @property
    def _data_path(self) -> Path:
        return self.config.database.data_path

    @property
    def _backup_path(self) -> Path:
        return self.config.database.backup_path

    @property
    def _shadow_path(self) -> Path:
        return self.config.database.shadow_dir

    # ────────────── Introspection ───────────

    def list_tables(self) -> list[str]:
        tables: list[str] = []
        for db_path in self._databases():
            tables.extend(f"{db_path.stem}.{t}" for t in _table_names(db_path))
        return tables

    # ────────────── Local backups ───────────

    def freeze(self, table_pattern: str = "", freeze_one_by_one: bool = False) -> None:
        self._freeze(table_pattern, freeze_one_by_one)

    def create_backup(
            self,
            name: str = "",
            table_pattern: str = "",
            freeze_one_by_one: bool = False,
    ) -> str:
        name = name or datetime.now(UTC).strftime(_NAME_FORMAT)
        _check_name(name)
        target = self._backup_path / name
        if target.exists():
            raise BackupError(f"Backup '{name}' already exists")

        log.info("backup_create_start", backup=name, tables=table_pattern or "*")
        self.clean()
        try:
            tables = self._freeze(table_pattern, freeze_one_by_one)
            if not tables:
                raise BackupError(f"No tables match pattern '{table_pattern}'")
            target.mkdir(parents=True)
            shutil.move(str(self._shadow_path), str(target / "shadow"))
            metadata = BackupMetadata(name=name, created=datetime.now(UTC), tables=tables)
            (target / METADATA_FILE).write_text(metadata.model_dump_json(indent=2))
        except BaseException:
            shutil.rmtree(target, ignore_errors=True)
            self.clean()
            raise

        log.info("backup_create_complete", backup=name, tables=len(tables))
        return name

    def clean(self) -> None:
        if self._shadow_path.exists():
            shutil.rmtree(self._shadow_path)
            log.info("shadow_cleaned", path=str(self._shadow_path))

    def restore(
            self,
            name: str,
            table_pattern: str = "",
            schema_only: bool = False,
            data_only: bool = False,
    ) -> None:
        source = self._local_backup_dir(name)
        restore_schema = schema_only or not data_only
        restore_data = data_only or not schema_only
        patterns = _patterns(table_pattern)

        log.info("restore_start", backup=name, schema=restore_schema, data=restore_data)
        restored = 0
        for snapshot in sorted((source / "shadow").glob("*.db")):
            db = snapshot.stem
            tables = [t for t in _table_names(snapshot) if _matches(f"{db}.{t}", patterns)]
            if not tables:
                continue
            target = self._data_path / snapshot.name
            target.parent.mkdir(parents=True, exist_ok=True)
            try:
                _restore_tables(snapshot, target, tables, restore_schema, restore_data)
            except sqlite3.Error as exc:
                raise RestoreError(f"Restore of {db} from '{name}' failed: {exc}") from exc
            restored += len(tables)

        if not restored:
            raise RestoreError(f"No tables in backup '{name}' match pattern '{table_pattern}'")
        log.info("restore_complete", backup=name, tables=restored)

    def list_local_backups(self) -> list[BackupInfo]:
        if not self._backup_path.exists():
            return []
        backups: list[BackupInfo] = []
        for entry in self._backup_path.iterdir():
            meta_file = entry / METADATA_FILE
            if not meta_file.is_file():
                continue
            metadata = BackupMetadata.model_validate_json(meta_file.read_text())
            size = sum(f.stat().st_size for f in entry.rglob("*") if f.is_file())
            backups.append(BackupInfo(name=entry.name, size=size, created=metadata.created))
        return sorted(backups, key=lambda b: b.created or datetime.min.replace(tzinfo=UTC))

    def remove_local(self, name: str) -> None:
        target = self._local_backup_dir(name)
        shutil.rmtree(target)
        log.info("backup_removed_local", backup=name)

    # ────────────── Remote backups ──────────

    def upload(self, name: str, diff_from: str = "") -> None:
        source = self._local_backup_dir(name)
        metadata = BackupMetadata.model_validate_json((source / METADATA_FILE).read_text())
        storage = self.connect_storage()
        try:
            if self._remote_objects(storage, name):
                raise BackupError(f"Remote backup '{name}' already exists")

            base_files: dict[str, str] = {}
            if diff_from:
                base_files = self._remote_metadata(storage, diff_from).files
            base_dir = self._backup_path / diff_from if diff_from else None

            files: dict[str, str] = {}
            reused = 0
            for path in sorted(p for p in source.rglob("*") if p.is_file()):
                rel = path.relative_to(source).as_posix()
                if rel == METADATA_FILE:
                    continue
                if base_dir is not None and rel in base_files and _same_content(path, base_dir / rel):
                    files[rel] = base_files[rel]
                    reused += 1
                    continue
                with open(path, "rb") as body:
                    files[rel] = storage.put_file(f"{name}/{rel}", body)

            remote_meta = metadata.model_copy(update={"diff_from": diff_from, "files": files})
            storage.put_file(
                f"{name}/{METADATA_FILE}",
                io.BytesIO(remote_meta.model_dump_json(indent=2).encode()),
            )
        finally:
            storage.close()
        log.info("backup_uploaded", backup=name, files=len(files), reused=reused, diff_from=diff_from)

    def download(self, name: str) -> None:
        _check_name(name)
        target = self._backup_path / name
        if target.exists():
            raise BackupError(f"Local backup '{name}' already exists")

        storage = self.connect_storage()
        try:
            metadata = self._remote_metadata(storage, name)
            target.mkdir(parents=True)
            try:
                for rel, key in metadata.files.items():
                    dest = target / rel
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    with contextlib.closing(storage.get_file_reader(key)) as reader, \
                            open(dest, "wb") as out:
                        shutil.copyfileobj(reader, out, 1024 * 1024)
                (target / METADATA_FILE).write_text(metadata.model_dump_json(indent=2))
            except BaseException:
                shutil.rmtree(target, ignore_errors=True)
                raise
        finally:
            storage.close()
        log.info("backup_downloaded", backup=name, files=len(metadata.files))

    def list_remote_backups(self) -> list[BackupInfo]:
        storage = self.connect_storage()
        backups: dict[str, BackupInfo] = {}

        def collect(remote: RemoteFile) -> None:
            name = remote.name.split("/", 1)[0]
            info = backups.setdefault(name, BackupInfo(name=name, location="remote"))
            info.size += remote.size
            if info.created is None or remote.last_modified > info.created:
                info.created = remote.last_modified

        try:
            storage.walk("", collect)
        finally:
            storage.close()
        return sorted(backups.values(), key=lambda b: b.created or datetime.min.replace(tzinfo=UTC))

    def remove_remote(self, name: str) -> None:
        _check_name(name)
        storage = self.connect_storage()
        try:
            objects = self._remote_objects(storage, name)
            if not objects:
                raise BackupNotFoundError(f"Remote backup '{name}' not found")
            for remote in objects:
                storage.delete_file(remote.name)
        finally:
            storage.close()
        log.info("backup_removed_remote", backup=name, objects=len(objects))

    # ────────────── Helpers ─────────────────

    def _databases(self) -> list[Path]:
        if not self._data_path.is_dir():
            raise ConnectionError(f"Data path not found: {self._data_path}")
        return sorted(self._data_path.glob("*.db"))

    def _freeze(self, table_pattern: str, one_by_one: bool = False) -> list[str]:
        """Snapshot matching tables into the shadow dir; return ``db.table`` names."""
        patterns = _patterns(table_pattern)
        self._shadow_path.mkdir(parents=True, exist_ok=True)
        frozen: list[str] = []
        for db_path in self._databases():
            all_tables = _table_names(db_path)
            tables = [t for t in all_tables if _matches(f"{db_path.stem}.{t}", patterns)]
            if not tables:
                continue
            snapshot = self._shadow_path / db_path.name
            snapshot.unlink(missing_ok=True)
            try:
                if one_by_one:
                    for table in tables:
                        _backup_tables(db_path, snapshot, [table])
                elif tables == all_tables:
                    with contextlib.closing(sqlite3.connect(str(db_path))) as src, \
                            contextlib.closing(sqlite3.connect(str(snapshot))) as dest:
                        src.backup(dest)
                else:
                    _backup_tables(db_path, snapshot, tables)
            except sqlite3.Error as exc:
                snapshot.unlink(missing_ok=True)
                raise BackupError(f"Freeze of {db_path.name} failed: {exc}") from exc
            frozen.extend(f"{db_path.stem}.{t}" for t in tables)
            log.debug("database_frozen", database=db_path.name, tables=len(tables))
        return frozen

    def _local_backup_dir(self, name: str) -> Path:
        _check_name(name)
        path = self._backup_path / name
        if not (path / METADATA_FILE).is_file():
            raise BackupNotFoundError(f"Local backup '{name}' not found")
        return path

    @staticmethod
    def _remote_objects(storage: BaseStorage, name: str) -> list[RemoteFile]:
        objects: list[RemoteFile] = []
        storage.walk(f"{name}/", objects.append)
        return objects

    def _remote_metadata(self, storage: BaseStorage, name: str) -> BackupMetadata:
        # With hostname embedding the file is stored as "<host>_metadata.json".
        candidates = [
            r for r in self._remote_objects(storage, name)
            if posixpath.basename(r.name).endswith(METADATA_FILE)
            and posixpath.dirname(r.name) == name
        ]
        if not candidates:
            raise BackupNotFoundError(f"Remote backup '{name}' not found")
        try:
            with contextlib.closing(storage.get_file_reader(candidates[0].name)) as reader:
                return BackupMetadata.model_validate_json(reader.read())
        except NotFoundError as exc:
            raise BackupNotFoundError(f"Remote backup '{name}' not found") from exc


def _check_name(name: str) -> None:
    if not name or name in (".", "..") or "/" in name or "\\" in name:
        raise BackupError(f"Invalid backup name: {name!r}")


def _patterns(table_pattern: str) -> list[str]:
    return [p.strip() for p in table_pattern.split(",") if p.strip()]


def _matches(table: str, patterns: list[str]) -> bool:
    return not patterns or any(fnmatch.fnmatchcase(table, p) for p in patterns)


def _table_names(db_path: Path) -> list[str]:
    try:
        with contextlib.closing(sqlite3.connect(str(db_path), timeout=10)) as conn:
            rows = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' "
                "AND name NOT LIKE 'sqlite_%' ORDER BY name"
            ).fetchall()
    except sqlite3.Error as exc:
        raise ConnectionError(f"Failed to list tables of {db_path.name}: {exc}") from exc
    return [row[0] for row in rows]


def _same_content(a: Path, b: Path) -> bool:
    if not b.is_file() or a.stat().st_size != b.stat().st_size:
        return False
    return _sha256(a) == _sha256(b)


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _backup_tables(source_path: Path, dest_path: Path, tables: list[str]) -> None:
    """Selectively copy specific tables into a new SQLite database."""
    with contextlib.closing(sqlite3.connect(str(source_path))) as source, \
            contextlib.closing(sqlite3.connect(str(dest_path))) as dest:
        for table in tables:
            row = source.execute(
                "SELECT sql FROM sqlite_master WHERE type='table' AND name=?",
                (table,),
            ).fetchone()
            dest.execute(row[0])
            rows = source.execute(f"SELECT * FROM [{table}]").fetchall()
            if rows:
                placeholders = ", ".join("?" * len(rows[0]))
                dest.executemany(f"INSERT INTO [{table}] VALUES ({placeholders})", rows)
        dest.commit()


def _restore_tables(
        backup_path: Path,
        target_path: Path,
        tables: list[str],
        schema: bool,
        data: bool,
) -> None:
    """Restore schema and/or rows of specific tables from a snapshot."""
    with contextlib.closing(sqlite3.connect(str(backup_path))) as backup_conn, \
            contextlib.closing(sqlite3.connect(str(target_path))) as target_conn:
        for table in tables:
            if schema:
                create_sql = backup_conn.execute(
                    "SELECT sql FROM sqlite_master WHERE type='table' AND name=?",
                    (table,),
                ).fetchone()[0]
                target_conn.execute(
                    create_sql.replace("CREATE TABLE", "CREATE TABLE IF NOT EXISTS", 1)
                )
            if data:
                rows = backup_conn.execute(f"SELECT * FROM [{table}]").fetchall()
                if rows:
                    placeholders = ", ".join("?" * len(rows[0]))
                    target_conn.executemany(
                        f"INSERT INTO [{table}] VALUES ({placeholders})", rows
                    )
        target_conn.commit()
