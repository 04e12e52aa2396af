"""Local filesystem storage backend (plain disk, NFS or SMB mounts)."""

from __future__ import annotations

import shutil
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import BinaryIO

from backup_gateway.core.exceptions import ConnectionError, NotFoundError
from backup_gateway.core.models import LocalStorageConfig, RemoteFile
from backup_gateway.logging import get_logger
from backup_gateway.storage.base import BaseStorage, Visitor

log = get_logger(__name__)

_CHUNK_SIZE = 1024 * 1024


class LocalStorage(BaseStorage):
    """Store backup objects as files under a root directory.

    The "bucket" is a sub-directory of ``root``; an empty bucket means the
    root itself. Listing walks the tree in ``page_size`` batches so callers
    see the same paged behaviour as the cloud backends.
    """

    config: LocalStorageConfig

    def __init__(self, config: LocalStorageConfig) -> None:
        super().__init__(config)
        self._root: Path | None = None

    def connect(self, override_bucket: str = "") -> None:
        root = self.config.root.expanduser().resolve()
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConnectionError(f"Local storage root is not usable: {exc}") from exc
        if override_bucket and not (root / override_bucket).is_dir():
            raise ConnectionError(f"Bucket directory not found: {root / override_bucket}")
        self._root = root
        log.debug("local_connect_ok", root=str(root))

    def kind(self) -> str:
        return "local"

    def _path(self, full_key: str, bucket: str) -> Path:
        if self._root is None:
            raise ConnectionError("LocalStorage.connect() has not been called")
        base = self._root / bucket if bucket else self._root
        return base / full_key

    def get_file(self, key: str, override_bucket: str = "") -> RemoteFile:
        target = self._path(self._full_key(key), self._bucket(override_bucket))
        if not target.is_file():
            raise NotFoundError(f"Object not found: {key}")
        stat = target.stat()
        return RemoteFile(
            name=key,
            size=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
        )

    def get_file_reader(self, key: str, override_bucket: str = "") -> BinaryIO:
        target = self._path(self._full_key(key), self._bucket(override_bucket))
        if not target.is_file():
            raise NotFoundError(f"Object not found: {key}")
        return open(target, "rb")

    def _put(self, full_key: str, stream: BinaryIO, bucket: str) -> None:
        dest = self._path(full_key, bucket)
        dest.parent.mkdir(parents=True, exist_ok=True)
        partial = dest.with_name(dest.name + ".part")
        with open(partial, "wb") as out:
            shutil.copyfileobj(stream, out, _CHUNK_SIZE)
        partial.replace(dest)

    def delete_file(self, key: str, override_bucket: str = "") -> None:
        target = self._path(self._full_key(key), self._bucket(override_bucket))
        if not target.is_file():
            raise NotFoundError(f"Object not found: {key}")
        target.unlink()
        log.info("local_delete_complete", path=str(target))

    def _list(
            self,
            prefix: str,
            bucket: str,
            visit: Visitor,
            abandoned: threading.Event,
    ) -> None:
        base = self._path("", bucket)
        if not base.exists():
            return
        page: list[RemoteFile] = []
        for file_path in sorted(base.rglob("*")):
            if not file_path.is_file() or file_path.name.endswith(".part"):
                continue
            name = file_path.relative_to(base).as_posix()
            if not name.startswith(prefix):
                continue
            stat = file_path.stat()
            page.append(RemoteFile(
                name=name,
                size=stat.st_size,
                last_modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
            ))
            if len(page) >= self.config.page_size:
                if not _deliver(page, visit, abandoned):
                    return
                page = []
        _deliver(page, visit, abandoned)


def _deliver(page: list[RemoteFile], visit: Visitor, abandoned: threading.Event) -> bool:
    for remote in page:
        if abandoned.is_set():
            return False
        visit(remote)
    return True
