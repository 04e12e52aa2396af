"""Tests for the S3 storage backend with a mocked boto3 client."""

from __future__ import annotations

import io
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from backup_gateway.core.exceptions import ConnectionError, NotFoundError
from backup_gateway.core.models import RemoteFile, S3Config
from backup_gateway.storage.s3 import S3Storage

_NOW = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)


def _client_error(code: str, op: str = "HeadObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, op)


@pytest.fixture()
def s3_client() -> MagicMock:
    client = MagicMock()
    with patch("backup_gateway.storage.s3.boto3.Session") as session_cls:
        session_cls.return_value.client.return_value = client
        yield client


def _storage(**overrides) -> S3Storage:
    config = S3Config(bucket="bkt", path="base", **overrides)
    storage = S3Storage(config)
    storage.connect()
    return storage


class TestConnect:
    def test_probes_bucket(self, s3_client: MagicMock) -> None:
        _storage()
        s3_client.head_bucket.assert_called_once_with(Bucket="bkt")

    def test_override_bucket(self, s3_client: MagicMock) -> None:
        storage = S3Storage(S3Config(bucket="bkt"))
        storage.connect(override_bucket="other")
        s3_client.head_bucket.assert_called_once_with(Bucket="other")

    def test_failure_wrapped(self, s3_client: MagicMock) -> None:
        s3_client.head_bucket.side_effect = _client_error("403", "HeadBucket")
        with pytest.raises(ConnectionError, match="bkt"):
            _storage()

    def test_static_keys_and_no_retries(self) -> None:
        with patch("backup_gateway.storage.s3.boto3.Session") as session_cls:
            S3Storage(S3Config(bucket="bkt", access_key="AK", secret_key="SK", endpoint="http://minio:9000")).connect()

        session_cls.assert_called_once_with(aws_access_key_id="AK", aws_secret_access_key="SK")
        _, kwargs = session_cls.return_value.client.call_args
        assert kwargs["endpoint_url"] == "http://minio:9000"
        assert kwargs["config"].retries == {"total_max_attempts": 1}

    def test_default_credential_chain(self) -> None:
        with patch("backup_gateway.storage.s3.boto3.Session") as session_cls:
            S3Storage(S3Config(bucket="bkt")).connect()
        session_cls.assert_called_once_with()

    def test_reconnect_closes_previous_client(self, s3_client: MagicMock) -> None:
        storage = _storage()
        storage.connect()
        s3_client.close.assert_called_once()

    def test_kind(self) -> None:
        assert S3Storage(S3Config(bucket="bkt")).kind() == "S3"


class TestObjects:
    def test_get_file(self, s3_client: MagicMock) -> None:
        s3_client.head_object.return_value = {"ContentLength": 42, "LastModified": _NOW}
        info = _storage().get_file("b1/data.bin")

        assert info == RemoteFile(name="b1/data.bin", size=42, last_modified=_NOW)
        s3_client.head_object.assert_called_once_with(Bucket="bkt", Key="base/b1/data.bin")

    @pytest.mark.parametrize("code", ["404", "NotFound", "NoSuchKey"])
    def test_get_file_missing(self, s3_client: MagicMock, code: str) -> None:
        s3_client.head_object.side_effect = _client_error(code)
        with pytest.raises(NotFoundError):
            _storage().get_file("nope")

    def test_get_file_other_error_propagates(self, s3_client: MagicMock) -> None:
        s3_client.head_object.side_effect = _client_error("AccessDenied")
        with pytest.raises(ClientError):
            _storage().get_file("k")

    def test_get_file_reader(self, s3_client: MagicMock) -> None:
        body = io.BytesIO(b"payload")
        s3_client.get_object.return_value = {"Body": body}
        assert _storage().get_file_reader("k").read() == b"payload"

    def test_get_file_reader_missing(self, s3_client: MagicMock) -> None:
        s3_client.get_object.side_effect = _client_error("NoSuchKey", "GetObject")
        with pytest.raises(NotFoundError):
            _storage().get_file_reader("k")

    def test_put_file(self, s3_client: MagicMock) -> None:
        stream = io.BytesIO(b"data")
        key = _storage(sse="AES256").put_file("b1/data.bin", stream)

        assert key == "b1/data.bin"
        args, kwargs = s3_client.upload_fileobj.call_args
        assert args == (stream, "bkt", "base/b1/data.bin")
        assert kwargs["ExtraArgs"] == {"ACL": "private", "ServerSideEncryption": "AES256"}
        assert kwargs["Config"].multipart_chunksize == 64 * 1024 * 1024
        assert kwargs["Config"].max_concurrency == 10

    def test_delete_file(self, s3_client: MagicMock) -> None:
        _storage().delete_file("k")
        s3_client.delete_object.assert_called_once_with(Bucket="bkt", Key="base/k")

    def test_delete_missing(self, s3_client: MagicMock) -> None:
        s3_client.head_object.side_effect = _client_error("404")
        with pytest.raises(NotFoundError):
            _storage().delete_file("k")
        s3_client.delete_object.assert_not_called()


class TestWalk:
    def test_drains_all_pages(self, s3_client: MagicMock) -> None:
        pages = [
            {"Contents": [
                {"Key": "base/b1/a", "Size": 1, "LastModified": _NOW},
                {"Key": "base/b1/b", "Size": 2, "LastModified": _NOW},
            ]},
            {"Contents": [{"Key": "base/b2/c", "Size": 3, "LastModified": _NOW}]},
            {},
        ]
        s3_client.get_paginator.return_value.paginate.return_value = pages

        seen: list[RemoteFile] = []
        _storage().walk("", seen.append)

        assert [(r.name, r.size) for r in seen] == [("b1/a", 1), ("b1/b", 2), ("b2/c", 3)]
        s3_client.get_paginator.assert_called_once_with("list_objects_v2")
        _, kwargs = s3_client.get_paginator.return_value.paginate.call_args
        assert kwargs["Prefix"] == "base/"
        assert kwargs["Bucket"] == "bkt"

    def test_no_prefix_without_path(self, s3_client: MagicMock) -> None:
        s3_client.get_paginator.return_value.paginate.return_value = []
        storage = S3Storage(S3Config(bucket="bkt"))
        storage.connect()
        storage.walk("", lambda r: None)

        _, kwargs = s3_client.get_paginator.return_value.paginate.call_args
        assert "Prefix" not in kwargs

    def test_override_bucket_and_path(self, s3_client: MagicMock) -> None:
        s3_client.get_paginator.return_value.paginate.return_value = [
            {"Contents": [{"Key": "alt/x", "Size": 1, "LastModified": _NOW}]},
        ]
        seen: list[RemoteFile] = []
        _storage().walk("", seen.append, override_bucket="b2", override_path="alt")

        _, kwargs = s3_client.get_paginator.return_value.paginate.call_args
        assert kwargs["Bucket"] == "b2"
        assert kwargs["Prefix"] == "alt/"
        assert [r.name for r in seen] == ["x"]
