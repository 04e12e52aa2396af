"""Abstract base class for remote storage backends.

Every backend exposes the same capability set: connect, kind, get_file,
get_file_reader, put_file, delete_file and walk. Keys handed to these methods
are relative to the backend's configured ``path``; the prefix is joined
internally and stripped again from listing results, so a name produced by
:meth:`BaseStorage.walk` can be passed straight back to :meth:`get_file`
unless the walk used ``override_path``.

Backends never retry. A failed SDK call surfaces as a single failure.
"""

from __future__ import annotations

import abc
import posixpath
import socket
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import BinaryIO

from backup_gateway.core.exceptions import ListingTimeoutError
from backup_gateway.core.models import RemoteFile
from backup_gateway.logging import get_logger

log = get_logger(__name__)

Visitor = Callable[[RemoteFile], None]


class BaseStorage(abc.ABC):
    """Interface for remote backup storage backends."""

    def __init__(self, config) -> None:
        self.config = config

    # ────────────── Capability set ──────────

    @abc.abstractmethod
    def connect(self, override_bucket: str = "") -> None:
        """Create the SDK client and probe the bucket.

        Safe to call again after a configuration reload; the previous client
        is released first.

        Raises:
            backup_gateway.core.exceptions.ConnectionError on auth or
            reachability failure.
        """

    @abc.abstractmethod
    def kind(self) -> str:
        """Stable identity tag used in logs."""

    @abc.abstractmethod
    def get_file(self, key: str, override_bucket: str = "") -> RemoteFile:
        """Return metadata for *key* without transferring the body.

        Raises:
            backup_gateway.core.exceptions.NotFoundError if the object is absent.
        """

    @abc.abstractmethod
    def get_file_reader(self, key: str, override_bucket: str = "") -> BinaryIO:
        """Open a streaming reader for *key*. The caller must close it."""

    @abc.abstractmethod
    def _put(self, full_key: str, stream: BinaryIO, bucket: str) -> None:
        """Stream *stream* to *full_key* in *bucket*."""

    @abc.abstractmethod
    def delete_file(self, key: str, override_bucket: str = "") -> None:
        """Delete *key*.

        Raises:
            backup_gateway.core.exceptions.NotFoundError if the object is absent.
        """

    @abc.abstractmethod
    def _list(
            self,
            prefix: str,
            bucket: str,
            visit: Visitor,
            abandoned: threading.Event,
    ) -> None:
        """Drain every listing page under *prefix*, calling *visit* per object.

        Implementations must stop calling *visit* once *abandoned* is set.
        Object names passed to *visit* are full keys; :meth:`walk` relativises
        them.
        """

    # ────────────── Shared behaviour ────────

    def put_file(self, key: str, stream: BinaryIO, override_bucket: str = "") -> str:
        """Upload *stream* under *key* and return the key actually written.

        With ``embed_hostname`` enabled the base name is rewritten to
        ``<hostname>_<base>`` so several hosts can share one prefix.
        """
        if self.config.embed_hostname:
            key = embed_hostname(key, socket.gethostname())
        full_key = self._full_key(key)
        bucket = self._bucket(override_bucket)
        log.info("storage_put_start", backend=self.kind(), bucket=bucket, key=full_key)
        self._put(full_key, stream, bucket)
        log.info("storage_put_complete", backend=self.kind(), bucket=bucket, key=full_key)
        return key

    def walk(
            self,
            path: str,
            visit: Visitor,
            override_bucket: str = "",
            override_path: str = "",
    ) -> None:
        """Visit every object under *path*, draining all listing pages.

        The listing runs on a worker thread raced against ``timeout_seconds``.
        On timeout :class:`ListingTimeoutError` is raised; the worker is left
        to finish its in-flight SDK call but no longer calls *visit*.

        Names are relative to *override_path* when it is given, not to the
        configured ``path``. The other methods always join the configured
        ``path``, so such names only address the same objects when
        *override_path* equals it.
        """
        base = override_path or self.config.path
        prefix = _join(base, path)
        if base.strip("/") and not path:
            prefix += "/"
        bucket = self._bucket(override_bucket)
        abandoned = threading.Event()

        def relative(remote: RemoteFile) -> None:
            visit(RemoteFile(
                name=_strip_prefix(remote.name, base),
                size=remote.size,
                last_modified=remote.last_modified,
            ))

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"walk-{self.kind()}")
        future = executor.submit(self._list, prefix, bucket, relative, abandoned)
        executor.shutdown(wait=False)
        try:
            future.result(timeout=self.config.timeout_seconds)
        except FutureTimeoutError:
            abandoned.set()
            log.warning(
                "storage_walk_timeout",
                backend=self.kind(),
                prefix=prefix,
                timeout=self.config.timeout_seconds,
            )
            raise ListingTimeoutError(
                f"{self.kind()} request timeout after {self.config.timeout_seconds:g}s"
            ) from None

    def close(self) -> None:
        """Release the SDK client, if any."""

    # ────────────── Helpers ─────────────────

    def _bucket(self, override_bucket: str = "") -> str:
        return override_bucket or getattr(self.config, "bucket", "")

    def _full_key(self, key: str) -> str:
        return _join(self.config.path, key)

    def _relative_key(self, full_key: str) -> str:
        return _strip_prefix(full_key, self.config.path)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} bucket={self._bucket()!r} path={self.config.path!r}>"


def embed_hostname(key: str, hostname: str) -> str:
    """Rewrite ``dir/base`` to ``dir/<hostname>_<base>``."""
    directory, base = posixpath.split(key)
    renamed = f"{hostname}_{base}"
    return f"{directory}/{renamed}" if directory else renamed


def _join(prefix: str, key: str) -> str:
    prefix = prefix.strip("/")
    key = key.lstrip("/")
    if not prefix:
        return key
    if not key:
        return prefix
    return f"{prefix}/{key}"


def _strip_prefix(full_key: str, prefix: str) -> str:
    prefix = prefix.strip("/")
    if prefix and full_key.startswith(prefix + "/"):
        return full_key[len(prefix) + 1:]
    return full_key
