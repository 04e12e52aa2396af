"""Storage backend registry."""

from __future__ import annotations

from backup_gateway.core.exceptions import StorageError
from backup_gateway.core.models import AppConfig, StorageType
from backup_gateway.storage.base import BaseStorage


def get_storage(config: AppConfig) -> BaseStorage:
    """Instantiate the backend selected by ``general.remote_storage``.

    The returned backend is not connected yet; call ``connect()`` first.

    Raises:
        StorageError: If remote storage is disabled or the type is unsupported.
    """
    storage_type = config.general.remote_storage

    if storage_type == StorageType.LOCAL:
        from backup_gateway.storage.local import LocalStorage

        return LocalStorage(config.local)

    if storage_type == StorageType.S3:
        from backup_gateway.storage.s3 import S3Storage

        return S3Storage(config.s3)

    if storage_type == StorageType.GCS:
        from backup_gateway.storage.gcs import GCSStorage

        return GCSStorage(config.gcs)

    if storage_type == StorageType.COS:
        from backup_gateway.storage.cos import COSStorage

        return COSStorage(config.cos)

    if storage_type == StorageType.NONE:
        raise StorageError("Remote storage is disabled (general.remote_storage = 'none')")

    raise StorageError(f"Unsupported storage type: {storage_type}")


__all__ = ["BaseStorage", "get_storage"]
