# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgbackup Local Archive - Backups stored in a directory on disk.

The directory is also the staging area for every new dump, whatever the
storage mode. It is created lazily on first write.
"""

import os
from datetime import datetime, UTC
from pathlib import Path

import aiofiles
import structlog

from pgbackup.archive.types import (
    ArchiveListing,
    BackupArtifact,
    Location,
    sanitize_filename,
)
from pgbackup.config import ArchiveFormat
from pgbackup.errors import explain_invalid_backup_filename
from pgbackup.exceptions import BackupNotFoundError

logger = structlog.get_logger()


def resolve_local_path(root: Path, filename: str) -> Path:
    """
    Map a caller-supplied filename to a path inside the backup directory.

    Directory components are discarded, so "../../etc/passwd" resolves to
    root / "passwd".

    Raises:
        BackupNotFoundError: If nothing usable is left after sanitising
    """
    name = sanitize_filename(filename)
    if name in ("", ".", ".."):
        raise BackupNotFoundError(
            explain_invalid_backup_filename(filename),
            details={"filename": filename},
        )
    return Path(root) / name


def ensure_backup_dir(root: Path) -> Path:
    root = Path(root)
    root.mkdir(parents=True, exist_ok=True)
    return root


async def list_local_backups(root: Path) -> ArchiveListing:
    """
    List .sql and .dump files directly inside the backup directory.

    A missing directory is simply empty. An unreadable one is reported
    through the listing's ok flag instead of raising.
    """
    root = Path(root)
    if not root.exists():
        return ArchiveListing()

    artifacts = []
    try:
        with os.scandir(root) as entries:
            for entry in entries:
                fmt = ArchiveFormat.for_filename(entry.name)
                if fmt is None or not entry.is_file():
                    continue
                try:
                    stat = entry.stat()
                except FileNotFoundError:
                    # Removed between the scan and the stat
                    continue
                artifacts.append(
                    BackupArtifact(
                        filename=entry.name,
                        size=stat.st_size,
                        created_at=datetime.fromtimestamp(stat.st_mtime, UTC),
                        format=fmt,
                        location=Location.LOCAL,
                    )
                )
    except OSError as e:
        logger.error("local_listing_failed", path=str(root), error=str(e))
        return ArchiveListing(ok=False, error=str(e))

    return ArchiveListing(artifacts=artifacts)


async def delete_local_backup(root: Path, filename: str) -> None:
    """
    Delete one backup from the directory.

    Raises:
        BackupNotFoundError: If the file does not exist
    """
    path = resolve_local_path(root, filename)
    try:
        path.unlink()
    except FileNotFoundError:
        raise BackupNotFoundError(
            f"Backup file not found: {path.name}",
            details={"filename": path.name, "location": "local"},
        )

    logger.info("local_backup_deleted", filename=path.name)


async def sniff_archive_format(path: Path) -> ArchiveFormat:
    """Read the first bytes of a backup to tell custom archives from SQL."""
    async with aiofiles.open(path, "rb") as f:
        header = await f.read(5)
    return ArchiveFormat.sniff(header)
