# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgbackup Archive Types - Backup artifacts and filename rules.

Both archives describe their contents with the same BackupArtifact type.
The filename is the only key shared between them.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict, List
import re

from pgbackup.config import ArchiveFormat


BACKUP_FILENAME_RE = re.compile(r"^backup_[A-Za-z0-9_-]+\.(sql|dump)$")

_UNSAFE_NAME_CHARS_RE = re.compile(r"[^A-Za-z0-9_-]")


class Location(str, Enum):
    """Where an artifact is present after reconciliation."""

    LOCAL = "local"
    REMOTE = "remote"
    BOTH = "both"

    @property
    def has_local(self) -> bool:
        return self in (Location.LOCAL, Location.BOTH)

    @property
    def has_remote(self) -> bool:
        return self in (Location.REMOTE, Location.BOTH)


@dataclass(frozen=True)
class BackupArtifact:
    """A single backup file as seen by one or both archives."""

    filename: str
    size: int
    created_at: datetime  # Timezone-aware, UTC
    format: ArchiveFormat
    location: Location

    def with_location(self, location: Location) -> "BackupArtifact":
        return replace(self, location=location)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "size": self.size,
            "created_at": self.created_at.isoformat(),
            "format": self.format.value,
            "location": self.location.value,
        }


@dataclass
class ArchiveListing:
    """
    Result of listing one archive.

    Listing never raises: a failure yields ok=False with the error message,
    so callers can still report what the other archive holds.
    """

    artifacts: List[BackupArtifact] = field(default_factory=list)
    ok: bool = True
    error: str | None = None


def sanitize_filename(filename: str) -> str:
    """Keep only the final path component of a caller-supplied name."""
    return filename.replace("\\", "/").rsplit("/", 1)[-1]


def is_backup_filename(filename: str) -> bool:
    return bool(BACKUP_FILENAME_RE.match(filename or ""))


def generate_backup_filename(
    database: str,
    fmt: ArchiveFormat,
    now: datetime | None = None,
) -> str:
    """
    Build backup_<database>_<timestamp>.<ext>.

    The timestamp is ISO-8601 UTC with millisecond precision, with ':' and
    '.' replaced by '-' so the name is safe on every filesystem and in S3
    keys, e.g. backup_shop_2026-01-05T02-00-00-000Z.sql
    """
    moment = (now or datetime.now(UTC)).astimezone(UTC)
    stamp = moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    stamp = stamp.replace(":", "-").replace(".", "-")
    safe_name = _UNSAFE_NAME_CHARS_RE.sub("_", database)
    return f"backup_{safe_name}_{stamp}{fmt.extension}"
