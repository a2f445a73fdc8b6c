# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgbackup Exceptions - Custom exceptions for the pgbackup package.
"""


class PGBackupError(Exception):
    """Base exception for all pgbackup errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(PGBackupError):
    """Raised when configuration values are invalid."""

    pass


class ConfigurationMissingError(PGBackupError):
    """Raised when runtime-mutable mode has no database configuration yet."""

    pass


class InvalidModeOperationError(PGBackupError):
    """Raised when a runtime setter is called while in static mode."""

    pass


class InvalidCronExpressionError(PGBackupError):
    """Raised when a schedule is not a valid cron expression."""

    pass


class BackupCreationError(PGBackupError):
    """Raised when the dump tool fails or times out."""

    pass


class BackupNotFoundError(PGBackupError):
    """Raised when a backup is absent from every archive consulted."""

    pass


class RestoreError(PGBackupError):
    """Raised when the restore tool fails or times out."""

    pass


class DatabaseConnectionError(PGBackupError):
    """Raised when a connection test against the database fails."""

    pass


class RemoteStorageError(PGBackupError):
    """Base class for object-storage failures."""

    pass


class RemoteNotConfiguredError(RemoteStorageError):
    """Raised when a remote operation is requested without credentials/bucket."""

    pass


class RemoteUploadError(RemoteStorageError):
    """Raised when an upload to object storage fails."""

    pass


class RemoteDownloadError(RemoteStorageError):
    """Raised when a download from object storage fails."""

    pass


class RemoteDeleteError(RemoteStorageError):
    """Raised when a delete in object storage fails."""

    pass
