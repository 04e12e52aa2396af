"""Tencent Cloud Object Storage (COS) backend."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, BinaryIO

from qcloud_cos import CosConfig, CosS3Client
from qcloud_cos.cos_exception import CosClientError, CosServiceError

from backup_gateway.core.exceptions import ConnectionError, NotFoundError, TransferError
from backup_gateway.core.models import COSConfig, RemoteFile
from backup_gateway.logging import get_logger
from backup_gateway.storage.base import BaseStorage, Visitor

log = get_logger(__name__)

_LIST_PAGE_SIZE = 1000
_NOT_FOUND_CODES = frozenset({"NoSuchKey", "NotFound"})


class COSStorage(BaseStorage):
    """Store backup objects in a Tencent COS bucket.

    Bodies larger than ``part_size`` go through a multipart upload whose parts
    are sent by a pool of ``concurrency`` workers. At most ``concurrency``
    parts are buffered at once, so memory stays bounded by
    ``part_size * (concurrency + 1)`` whatever the object size.
    """

    config: COSConfig

    def __init__(self, config: COSConfig) -> None:
        super().__init__(config)
        self._client: Any = None

    def connect(self, override_bucket: str = "") -> None:
        self.close()

        cos_config = CosConfig(
            Region=self.config.region or None,
            Endpoint=self.config.endpoint or None,
            SecretId=self.config.secret_id,
            SecretKey=self.config.secret_key.get_secret_value(),
            Scheme="http" if self.config.disable_ssl else "https",
            Timeout=int(self.config.timeout_seconds),
            PoolConnections=max(10, self.config.concurrency),
            PoolMaxSize=max(10, self.config.concurrency),
        )
        logging.getLogger("qcloud_cos").setLevel(logging.DEBUG if self.config.debug else logging.WARNING)

        bucket = self._bucket(override_bucket)
        try:
            self._client = CosS3Client(cos_config, retry=0)
            self._client.head_bucket(Bucket=bucket)
        except (CosServiceError, CosClientError) as exc:
            self.close()
            raise ConnectionError(f"COS connect to bucket {bucket!r} failed: {_describe(exc)}") from exc
        log.info("cos_connect_ok", bucket=bucket, region=self.config.region)

    def close(self) -> None:
        self._client = None

    def kind(self) -> str:
        return "COS"

    def get_file(self, key: str, override_bucket: str = "") -> RemoteFile:
        full_key = self._full_key(key)
        try:
            headers = self._client.head_object(Bucket=self._bucket(override_bucket), Key=full_key)
        except CosServiceError as exc:
            if _is_not_found(exc):
                raise NotFoundError(f"Object not found: {full_key}") from exc
            raise
        return RemoteFile(
            name=key,
            size=int(headers.get("Content-Length", 0)),
            last_modified=_parse_http_date(headers.get("Last-Modified")),
        )

    def get_file_reader(self, key: str, override_bucket: str = "") -> BinaryIO:
        full_key = self._full_key(key)
        try:
            response = self._client.get_object(Bucket=self._bucket(override_bucket), Key=full_key)
        except CosServiceError as exc:
            if _is_not_found(exc):
                raise NotFoundError(f"Object not found: {full_key}") from exc
            raise
        return response["Body"].get_raw_stream()

    def _put(self, full_key: str, stream: BinaryIO, bucket: str) -> None:
        part_size = self.config.part_size
        first = _read_part(stream, part_size)
        if len(first) < part_size:
            self._client.put_object(Bucket=bucket, Key=full_key, Body=first, **self._object_args())
            return

        upload_id = self._client.create_multipart_upload(
            Bucket=bucket, Key=full_key, **self._object_args()
        )["UploadId"]
        log.debug("cos_multipart_start", bucket=bucket, key=full_key, upload_id=upload_id)
        try:
            parts = self._upload_parts(bucket, full_key, upload_id, first, stream)
            self._client.complete_multipart_upload(
                Bucket=bucket,
                Key=full_key,
                UploadId=upload_id,
                MultipartUpload={"Part": parts},
            )
        except Exception as exc:
            # Release the multipart session; the object itself was never created.
            try:
                self._client.abort_multipart_upload(Bucket=bucket, Key=full_key, UploadId=upload_id)
            except (CosServiceError, CosClientError) as abort_exc:
                log.warning("cos_multipart_abort_failed", key=full_key, error=_describe(abort_exc))
            raise TransferError(f"COS multipart upload of {full_key} failed: {_describe(exc)}") from exc

    def _upload_parts(
            self,
            bucket: str,
            full_key: str,
            upload_id: str,
            first: bytes,
            stream: BinaryIO,
    ) -> list[dict[str, Any]]:
        slots = threading.BoundedSemaphore(self.config.concurrency)
        futures: list[Future[dict[str, Any]]] = []

        def upload(number: int, body: bytes) -> dict[str, Any]:
            try:
                response = self._client.upload_part(
                    Bucket=bucket,
                    Key=full_key,
                    Body=body,
                    PartNumber=number,
                    UploadId=upload_id,
                )
            finally:
                slots.release()
            return {"PartNumber": number, "ETag": response["ETag"]}

        with ThreadPoolExecutor(
                max_workers=self.config.concurrency,
                thread_name_prefix="cos-part",
        ) as pool:
            number, body = 1, first
            while body:
                slots.acquire()
                if any(f.done() and f.exception() for f in futures):
                    slots.release()
                    break
                futures.append(pool.submit(upload, number, body))
                number += 1
                body = _read_part(stream, self.config.part_size)
        return [f.result() for f in futures]

    def _object_args(self) -> dict[str, str]:
        args: dict[str, str] = {}
        if self.config.acl:
            args["ACL"] = self.config.acl
        return args

    def delete_file(self, key: str, override_bucket: str = "") -> None:
        # DeleteObject succeeds for absent keys, so probe first.
        full_key = self._full_key(key)
        bucket = self._bucket(override_bucket)
        try:
            self._client.head_object(Bucket=bucket, Key=full_key)
        except CosServiceError as exc:
            if _is_not_found(exc):
                raise NotFoundError(f"Object not found: {full_key}") from exc
            raise
        self._client.delete_object(Bucket=bucket, Key=full_key)
        log.info("cos_delete_complete", bucket=bucket, key=full_key)

    def _list(
            self,
            prefix: str,
            bucket: str,
            visit: Visitor,
            abandoned: threading.Event,
    ) -> None:
        marker = ""
        while True:
            page = self._client.list_objects(
                Bucket=bucket,
                Prefix=prefix,
                Marker=marker,
                MaxKeys=_LIST_PAGE_SIZE,
            )
            contents = page.get("Contents", [])
            for obj in contents:
                if abandoned.is_set():
                    return
                visit(RemoteFile(
                    name=obj["Key"],
                    size=int(obj["Size"]),
                    last_modified=_parse_iso_date(obj.get("LastModified")),
                ))
            if page.get("IsTruncated") != "true":
                return
            marker = page.get("NextMarker") or (contents[-1]["Key"] if contents else "")
            if not marker:
                return


def _read_part(stream: BinaryIO, size: int) -> bytes:
    """Read up to *size* bytes, looping over short reads from network streams."""
    chunks: list[bytes] = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _is_not_found(exc: CosServiceError) -> bool:
    return exc.get_error_code() in _NOT_FOUND_CODES or exc.get_status_code() == 404


def _describe(exc: Exception) -> str:
    if isinstance(exc, CosServiceError):
        return f"{exc.get_error_code()} ({exc.get_status_code()}): {exc.get_error_msg()}"
    return str(exc)


def _parse_http_date(value: str | None) -> datetime:
    if not value:
        return datetime.fromtimestamp(0, tz=UTC)
    return parsedate_to_datetime(value)


def _parse_iso_date(value: str | None) -> datetime:
    if not value:
        return datetime.fromtimestamp(0, tz=UTC)
    return datetime.fromisoformat(value)
