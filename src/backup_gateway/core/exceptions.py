"""Custom exceptions for backup-gateway."""


class BackupGatewayError(Exception):
    """Base exception for all backup-gateway errors."""


class NotFoundError(BackupGatewayError):
    """Raised by every storage adapter when a remote object does not exist."""


class LockContentionError(BackupGatewayError):
    """Raised when a mutating operation is already in progress."""


class ConfigError(BackupGatewayError):
    """Raised when configuration is invalid or missing."""


class ConnectionError(BackupGatewayError):
    """Raised when connecting to a storage backend or database fails."""


class TransferError(BackupGatewayError):
    """Raised when an object transfer fails mid-stream."""


class ListingTimeoutError(BackupGatewayError, TimeoutError):
    """Raised when a remote listing exceeds its configured deadline."""


class StorageError(BackupGatewayError):
    """Raised when a storage operation fails."""


class BackupError(BackupGatewayError):
    """Raised when a backup operation fails."""


class RestoreError(BackupGatewayError):
    """Raised when a restore operation fails."""


class BackupNotFoundError(BackupGatewayError):
    """Raised when a specified backup cannot be found."""
