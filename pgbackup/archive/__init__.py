# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""pgbackup archives: local directory and S3-compatible bucket."""

from pgbackup.archive.local import (
    delete_local_backup,
    ensure_backup_dir,
    list_local_backups,
    resolve_local_path,
    sniff_archive_format,
)
from pgbackup.archive.remote import (
    RemoteClientCache,
    delete_remote_backup,
    download_backup,
    is_remote_configured,
    list_remote_backups,
    upload_backup,
)
from pgbackup.archive.types import (
    ArchiveListing,
    BackupArtifact,
    Location,
    generate_backup_filename,
    is_backup_filename,
    sanitize_filename,
)

__all__ = [
    "ArchiveListing",
    "BackupArtifact",
    "Location",
    "RemoteClientCache",
    "delete_local_backup",
    "delete_remote_backup",
    "download_backup",
    "ensure_backup_dir",
    "generate_backup_filename",
    "is_backup_filename",
    "is_remote_configured",
    "list_local_backups",
    "list_remote_backups",
    "resolve_local_path",
    "sanitize_filename",
    "sniff_archive_format",
    "upload_backup",
]
