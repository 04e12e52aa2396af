"""AWS S3 (and S3-compatible) storage backend with multipart upload support."""

from __future__ import annotations

import threading
from typing import Any, BinaryIO

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from backup_gateway.core.exceptions import ConnectionError, NotFoundError
from backup_gateway.core.models import RemoteFile, S3Config
from backup_gateway.logging import get_logger
from backup_gateway.storage.base import BaseStorage, Visitor

log = get_logger(__name__)

_LIST_PAGE_SIZE = 1000
_NOT_FOUND_CODES = frozenset({"404", "NotFound", "NoSuchKey"})
_PROGRESS_STEP = 256 * 1024 * 1024  # log every 256 MB


class S3Storage(BaseStorage):
    """Store backup objects in AWS S3 or any S3-compatible service."""

    config: S3Config

    def __init__(self, config: S3Config) -> None:
        super().__init__(config)
        self._client: Any = None
        self._transfer_config = TransferConfig(
            multipart_threshold=config.part_size,
            multipart_chunksize=config.part_size,
            max_concurrency=config.concurrency,
            use_threads=True,
        )

    def connect(self, override_bucket: str = "") -> None:
        self.close()

        boto_config = BotoConfig(
            region_name=self.config.region,
            retries={"total_max_attempts": 1},
            s3={"addressing_style": "path" if self.config.force_path_style else "auto"},
            max_pool_connections=max(10, self.config.concurrency),
        )

        # Static keys take precedence; otherwise fall back to the default
        # credential chain (env, shared config, instance role).
        session_kwargs: dict[str, Any] = {}
        if self.config.access_key:
            session_kwargs["aws_access_key_id"] = self.config.access_key
            session_kwargs["aws_secret_access_key"] = self.config.secret_key.get_secret_value()

        client_kwargs: dict[str, Any] = {
            "config": boto_config,
            "use_ssl": not self.config.disable_ssl,
        }
        if self.config.endpoint:
            client_kwargs["endpoint_url"] = self.config.endpoint
        if self.config.disable_cert_verification:
            client_kwargs["verify"] = False

        bucket = self._bucket(override_bucket)
        try:
            session = boto3.Session(**session_kwargs)
            self._client = session.client("s3", **client_kwargs)
            self._client.head_bucket(Bucket=bucket)
        except (ClientError, BotoCoreError) as exc:
            self.close()
            raise ConnectionError(f"S3 connect to bucket {bucket!r} failed: {exc}") from exc
        log.info("s3_connect_ok", bucket=bucket, region=self.config.region)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def kind(self) -> str:
        return "S3"

    def get_file(self, key: str, override_bucket: str = "") -> RemoteFile:
        full_key = self._full_key(key)
        try:
            head = self._client.head_object(Bucket=self._bucket(override_bucket), Key=full_key)
        except ClientError as exc:
            if _is_not_found(exc):
                raise NotFoundError(f"Object not found: {full_key}") from exc
            raise
        return RemoteFile(
            name=key,
            size=head["ContentLength"],
            last_modified=head["LastModified"],
        )

    def get_file_reader(self, key: str, override_bucket: str = "") -> BinaryIO:
        full_key = self._full_key(key)
        try:
            response = self._client.get_object(Bucket=self._bucket(override_bucket), Key=full_key)
        except ClientError as exc:
            if _is_not_found(exc):
                raise NotFoundError(f"Object not found: {full_key}") from exc
            raise
        return response["Body"]

    def _put(self, full_key: str, stream: BinaryIO, bucket: str) -> None:
        extra_args: dict[str, str] = {}
        if self.config.acl:
            extra_args["ACL"] = self.config.acl
        if self.config.sse:
            extra_args["ServerSideEncryption"] = self.config.sse

        # upload_fileobj reads part_size chunks and uploads at most
        # `concurrency` of them at a time.
        self._client.upload_fileobj(
            stream,
            bucket,
            full_key,
            ExtraArgs=extra_args or None,
            Config=self._transfer_config,
            Callback=_ProgressCallback(full_key),
        )

    def delete_file(self, key: str, override_bucket: str = "") -> None:
        # DeleteObject succeeds for absent keys, so probe first.
        full_key = self._full_key(key)
        bucket = self._bucket(override_bucket)
        try:
            self._client.head_object(Bucket=bucket, Key=full_key)
        except ClientError as exc:
            if _is_not_found(exc):
                raise NotFoundError(f"Object not found: {full_key}") from exc
            raise
        self._client.delete_object(Bucket=bucket, Key=full_key)
        log.info("s3_delete_complete", bucket=bucket, key=full_key)

    def _list(
            self,
            prefix: str,
            bucket: str,
            visit: Visitor,
            abandoned: threading.Event,
    ) -> None:
        params: dict[str, Any] = {
            "Bucket": bucket,
            "PaginationConfig": {"PageSize": _LIST_PAGE_SIZE},
        }
        if prefix and prefix != "/":
            params["Prefix"] = prefix

        paginator = self._client.get_paginator("list_objects_v2")
        for page in paginator.paginate(**params):
            for obj in page.get("Contents", []):
                if abandoned.is_set():
                    return
                visit(RemoteFile(
                    name=obj["Key"],
                    size=obj["Size"],
                    last_modified=obj["LastModified"],
                ))


def _is_not_found(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") in _NOT_FOUND_CODES


class _ProgressCallback:
    """Callback for tracking S3 upload progress on streams of unknown size."""

    def __init__(self, key: str) -> None:
        self._key = key
        self._uploaded = 0
        self._next_report = _PROGRESS_STEP
        self._lock = threading.Lock()

    def __call__(self, bytes_transferred: int) -> None:
        # s3transfer invokes this from its worker threads
        with self._lock:
            self._uploaded += bytes_transferred
            if self._uploaded >= self._next_report:
                self._next_report += _PROGRESS_STEP
                log.debug("s3_upload_progress", key=self._key, uploaded=self._uploaded)
