"""Google Cloud Storage backend."""

from __future__ import annotations

import json
import threading
from typing import Any, BinaryIO

from google.api_core.exceptions import GoogleAPIError, NotFound
from google.cloud import storage
from google.oauth2 import service_account

from backup_gateway.core.exceptions import ConnectionError, NotFoundError
from backup_gateway.core.models import GCSConfig, RemoteFile
from backup_gateway.logging import get_logger
from backup_gateway.storage.base import BaseStorage, Visitor

log = get_logger(__name__)

# Resumable upload chunks must be a multiple of 256 KB.
_CHUNK_ALIGNMENT = 256 * 1024
_LIST_PAGE_SIZE = 1000


class GCSStorage(BaseStorage):
    """Store backup objects in a Google Cloud Storage bucket.

    Credentials come from inline JSON, a key file, or the application
    default credentials, in that order.
    """

    config: GCSConfig

    def __init__(self, config: GCSConfig) -> None:
        super().__init__(config)
        self._client: Any = None

    def connect(self, override_bucket: str = "") -> None:
        self.close()

        bucket = self._bucket(override_bucket)
        try:
            credentials_json = self.config.credentials_json.get_secret_value()
            if credentials_json:
                info = json.loads(credentials_json)
                credentials = service_account.Credentials.from_service_account_info(info)
                self._client = storage.Client(project=info.get("project_id"), credentials=credentials)
            elif self.config.credentials_file:
                self._client = storage.Client.from_service_account_json(self.config.credentials_file)
            else:
                self._client = storage.Client()

            exists = self._client.bucket(bucket).exists(retry=None)
        except (GoogleAPIError, ValueError, OSError) as exc:
            self.close()
            raise ConnectionError(f"GCS connect to bucket {bucket!r} failed: {exc}") from exc
        if not exists:
            self.close()
            raise ConnectionError(f"GCS bucket not found: {bucket}")
        log.info("gcs_connect_ok", bucket=bucket)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def kind(self) -> str:
        return "GCS"

    def _blob(self, full_key: str, bucket: str) -> storage.Blob:
        return self._client.bucket(bucket).blob(full_key, chunk_size=_aligned(self.config.part_size))

    def get_file(self, key: str, override_bucket: str = "") -> RemoteFile:
        full_key = self._full_key(key)
        blob = self._client.bucket(self._bucket(override_bucket)).get_blob(full_key, retry=None)
        if blob is None:
            raise NotFoundError(f"Object not found: {full_key}")
        return RemoteFile(name=key, size=blob.size, last_modified=blob.updated)

    def get_file_reader(self, key: str, override_bucket: str = "") -> BinaryIO:
        full_key = self._full_key(key)
        blob = self._blob(full_key, self._bucket(override_bucket))
        try:
            # Fetch metadata eagerly so an absent object fails here, not on first read.
            blob.reload(retry=None)
        except NotFound as exc:
            raise NotFoundError(f"Object not found: {full_key}") from exc
        return blob.open("rb", retry=None)

    def _put(self, full_key: str, stream: BinaryIO, bucket: str) -> None:
        # With chunk_size set the client performs a resumable upload, sending
        # one part_size chunk at a time instead of buffering the body.
        blob = self._blob(full_key, bucket)
        blob.upload_from_file(stream, rewind=False, retry=None)

    def delete_file(self, key: str, override_bucket: str = "") -> None:
        full_key = self._full_key(key)
        bucket = self._bucket(override_bucket)
        try:
            self._client.bucket(bucket).blob(full_key).delete(retry=None)
        except NotFound as exc:
            raise NotFoundError(f"Object not found: {full_key}") from exc
        log.info("gcs_delete_complete", bucket=bucket, key=full_key)

    def _list(
            self,
            prefix: str,
            bucket: str,
            visit: Visitor,
            abandoned: threading.Event,
    ) -> None:
        blobs = self._client.list_blobs(
            bucket,
            prefix=prefix or None,
            page_size=_LIST_PAGE_SIZE,
            retry=None,
        )
        for page in blobs.pages:
            for blob in page:
                if abandoned.is_set():
                    return
                visit(RemoteFile(name=blob.name, size=blob.size, last_modified=blob.updated))


def _aligned(part_size: int) -> int:
    """Round *part_size* up to the resumable-upload chunk alignment."""
    return -(-part_size // _CHUNK_ALIGNMENT) * _CHUNK_ALIGNMENT
