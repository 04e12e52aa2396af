"""Tests for the local filesystem storage backend and shared walk behaviour."""

from __future__ import annotations

import io
import threading
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from backup_gateway.core.exceptions import ConnectionError, ListingTimeoutError, NotFoundError
from backup_gateway.core.models import LocalStorageConfig, RemoteFile
from backup_gateway.storage.base import embed_hostname
from backup_gateway.storage.local import LocalStorage


def _connected(config: LocalStorageConfig) -> LocalStorage:
    storage = LocalStorage(config)
    storage.connect()
    return storage


def _walk(storage: LocalStorage, path: str = "", **kwargs) -> list[RemoteFile]:
    seen: list[RemoteFile] = []
    storage.walk(path, seen.append, **kwargs)
    return seen


class TestLocalStorage:
    def test_put_get_roundtrip(self, local_storage_config: LocalStorageConfig, sample_file: Path) -> None:
        storage = _connected(local_storage_config)
        with open(sample_file, "rb") as f:
            key = storage.put_file("db/backup.dat", f)

        assert key == "db/backup.dat"
        with storage.get_file_reader(key) as reader:
            assert reader.read() == sample_file.read_bytes()

        info = storage.get_file(key)
        assert info.name == "db/backup.dat"
        assert info.size == sample_file.stat().st_size

    def test_kind(self, local_storage_config: LocalStorageConfig) -> None:
        assert LocalStorage(local_storage_config).kind() == "local"

    def test_get_missing(self, local_storage_config: LocalStorageConfig) -> None:
        storage = _connected(local_storage_config)
        with pytest.raises(NotFoundError):
            storage.get_file("nope.dat")
        with pytest.raises(NotFoundError):
            storage.get_file_reader("nope.dat")

    def test_delete(self, local_storage_config: LocalStorageConfig) -> None:
        storage = _connected(local_storage_config)
        storage.put_file("a.dat", io.BytesIO(b"abc"))
        storage.delete_file("a.dat")
        with pytest.raises(NotFoundError):
            storage.get_file("a.dat")

    def test_delete_missing(self, local_storage_config: LocalStorageConfig) -> None:
        storage = _connected(local_storage_config)
        with pytest.raises(NotFoundError):
            storage.delete_file("nope.dat")

    def test_connect_missing_override_bucket(self, local_storage_config: LocalStorageConfig) -> None:
        storage = LocalStorage(local_storage_config)
        with pytest.raises(ConnectionError):
            storage.connect(override_bucket="missing")

    def test_override_bucket(self, local_storage_config: LocalStorageConfig) -> None:
        storage = _connected(local_storage_config)
        storage.put_file("x.dat", io.BytesIO(b"1"), override_bucket="other")

        assert (local_storage_config.root / "other" / "x.dat").is_file()
        with pytest.raises(NotFoundError):
            storage.get_file("x.dat")
        assert storage.get_file("x.dat", override_bucket="other").size == 1

    def test_path_prefix_is_transparent(self, tmp_path: Path) -> None:
        config = LocalStorageConfig(root=tmp_path / "remote", path="backups/prod")
        storage = _connected(config)
        storage.put_file("b1/metadata.json", io.BytesIO(b"{}"))

        assert (tmp_path / "remote" / "backups" / "prod" / "b1" / "metadata.json").is_file()
        names = [r.name for r in _walk(storage)]
        assert names == ["b1/metadata.json"]
        assert storage.get_file(names[0]).size == 2

    def test_override_path(self, tmp_path: Path) -> None:
        config = LocalStorageConfig(root=tmp_path / "remote", path="one")
        storage = _connected(config)
        storage.put_file("k.dat", io.BytesIO(b"1"))
        (tmp_path / "remote" / "two").mkdir()
        (tmp_path / "remote" / "two" / "z.dat").write_bytes(b"22")

        assert [r.name for r in _walk(storage, override_path="two")] == ["z.dat"]

    def test_override_path_names_are_relative_to_override(self, tmp_path: Path) -> None:
        config = LocalStorageConfig(root=tmp_path / "remote", path="one")
        storage = _connected(config)
        storage.put_file("sub/k.dat", io.BytesIO(b"1"))

        assert [r.name for r in _walk(storage, override_path="one")] == ["sub/k.dat"]
        assert storage.get_file("sub/k.dat").size == 1
        assert [r.name for r in _walk(storage, override_path="one/sub")] == ["k.dat"]
        with pytest.raises(NotFoundError):
            storage.get_file("k.dat")

    def test_walk_empty(self, local_storage_config: LocalStorageConfig) -> None:
        storage = _connected(local_storage_config)
        assert _walk(storage) == []


class TestWalkPaging:
    @pytest.mark.parametrize("page_size", [1, 2, 3, 1000])
    def test_visits_every_object_once(self, tmp_path: Path, page_size: int) -> None:
        storage = _connected(LocalStorageConfig(root=tmp_path / "remote", page_size=page_size))
        keys = [f"b{i}/file{j}.bin" for i in range(3) for j in range(2)]
        for key in keys:
            storage.put_file(key, io.BytesIO(key.encode()))

        names = [r.name for r in _walk(storage)]
        assert sorted(names) == sorted(keys)
        assert len(names) == len(set(names))

    def test_walk_subpath(self, local_storage_config: LocalStorageConfig) -> None:
        storage = _connected(local_storage_config)
        storage.put_file("b1/a.bin", io.BytesIO(b"a"))
        storage.put_file("b2/b.bin", io.BytesIO(b"b"))

        assert [r.name for r in _walk(storage, "b1/")] == ["b1/a.bin"]


class _SlowLocalStorage(LocalStorage):
    def __init__(self, config: LocalStorageConfig, delay: float) -> None:
        super().__init__(config)
        self.delay = delay
        self.finished = threading.Event()

    def _list(self, prefix, bucket, visit, abandoned) -> None:
        time.sleep(self.delay)
        try:
            super()._list(prefix, bucket, visit, abandoned)
        finally:
            self.finished.set()


class TestWalkTimeout:
    def test_timeout_raises(self, tmp_path: Path) -> None:
        config = LocalStorageConfig(root=tmp_path / "remote", timeout_seconds=0.05)
        storage = _SlowLocalStorage(config, delay=0.5)
        storage.connect()
        storage.put_file("a.bin", io.BytesIO(b"a"))

        seen: list[RemoteFile] = []
        with pytest.raises(ListingTimeoutError, match="request timeout"):
            storage.walk("", seen.append)

        # the background listing completes but no longer calls the visitor
        assert storage.finished.wait(timeout=5)
        assert seen == []

    def test_timeout_is_builtin_timeout(self) -> None:
        assert issubclass(ListingTimeoutError, TimeoutError)

    def test_fast_listing_within_deadline(self, tmp_path: Path) -> None:
        config = LocalStorageConfig(root=tmp_path / "remote", timeout_seconds=5)
        storage = _SlowLocalStorage(config, delay=0)
        storage.connect()
        storage.put_file("a.bin", io.BytesIO(b"a"))

        assert [r.name for r in _walk(storage)] == ["a.bin"]


class TestHostnameEmbedding:
    def test_embed_hostname(self) -> None:
        assert embed_hostname("dir/name.ext", "h1") == "dir/h1_name.ext"
        assert embed_hostname("a/b/c.tar", "h1") == "a/b/h1_c.tar"
        assert embed_hostname("name.ext", "h1") == "h1_name.ext"

    def test_put_file_embeds_hostname(self, tmp_path: Path) -> None:
        config = LocalStorageConfig(root=tmp_path / "remote", embed_hostname=True)
        storage = _connected(config)
        with patch("backup_gateway.storage.base.socket.gethostname", return_value="h1"):
            key = storage.put_file("dir/name.ext", io.BytesIO(b"x"))

        assert key == "dir/h1_name.ext"
        assert (tmp_path / "remote" / "dir" / "h1_name.ext").is_file()
        assert storage.get_file(key).size == 1

    def test_disabled_by_default(self, local_storage_config: LocalStorageConfig) -> None:
        storage = _connected(local_storage_config)
        assert storage.put_file("dir/name.ext", io.BytesIO(b"x")) == "dir/name.ext"
