# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgbackup Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation. The configuration
store never edits these objects in place: it swaps whole snapshots, so a
reader can never observe a half-applied change.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Tuple
import re

from apscheduler.triggers.cron import CronTrigger

from pgbackup.errors import (
    explain_invalid_config_mode,
    explain_invalid_cron,
    explain_invalid_format,
    explain_invalid_retention_days,
    explain_invalid_storage_mode,
    explain_missing_database_config,
)
from pgbackup.exceptions import ConfigurationError, ConfigurationMissingError


# Endpoints of S3-compatible services that only support path-style addressing
PATH_STYLE_ENDPOINT_MARKERS = (
    "supabase.co",
    "minio",
    "localhost",
    "127.0.0.1",
    "digitaloceanspaces.com",
)

LOCAL_DATABASE_HOSTS = ("localhost", "127.0.0.1", "::1")

DEFAULT_SCHEDULE = "0 2 * * *"
DEFAULT_RETENTION_DAYS = 7
MAX_RETENTION_DAYS = 365

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")
# Table exclusions are pg_dump patterns, so '*' is allowed there
_TABLE_PATTERN_RE = re.compile(r"^[A-Za-z_*][A-Za-z0-9_$*]*$")

# Crontab weekday numbering: 0 (and 7) is Sunday
CRON_WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")
_CRON_DOW_PART_RE = re.compile(r"^(\*|\d+)(?:-(\d+))?(?:/(\d+))?$")
_CRON_DOW_NAME_RE = re.compile(r"^[A-Za-z]{3}(?:-[A-Za-z]{3})?$")


class ConfigMode(str, Enum):
    """Where configuration values come from."""

    STATIC = "static"  # Environment variables, read on every access
    RUNTIME = "runtime-mutable"  # Values set at runtime through the store

    @classmethod
    def parse(cls, value: "ConfigMode | str | None") -> "ConfigMode":
        """Parse a mode, accepting the legacy 'env' / 'manual' names."""
        if isinstance(value, ConfigMode):
            return value
        aliases = {
            "static": cls.STATIC,
            "env": cls.STATIC,
            "runtime-mutable": cls.RUNTIME,
            "runtime": cls.RUNTIME,
            "manual": cls.RUNTIME,
        }
        mode = aliases.get((value or "").strip().lower())
        if mode is None:
            raise ConfigurationError(explain_invalid_config_mode(value))
        return mode


class StorageMode(str, Enum):
    """Where backups are persisted."""

    LOCAL = "local"
    REMOTE = "remote"
    BOTH = "both"

    @property
    def includes_local(self) -> bool:
        return self in (StorageMode.LOCAL, StorageMode.BOTH)

    @property
    def includes_remote(self) -> bool:
        return self in (StorageMode.REMOTE, StorageMode.BOTH)


class ArchiveFormat(str, Enum):
    """Output format of the dump tool."""

    PLAIN = "sql"  # Plain-text SQL, replayed with psql
    CUSTOM = "dump"  # pg_dump custom archive, restored with pg_restore

    @property
    def extension(self) -> str:
        return f".{self.value}"

    @property
    def dump_flag(self) -> str:
        """Value of pg_dump's -F option."""
        return "c" if self is ArchiveFormat.CUSTOM else "p"

    @classmethod
    def parse(cls, value: "ArchiveFormat | str") -> "ArchiveFormat":
        if isinstance(value, ArchiveFormat):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ConfigurationError(explain_invalid_format(value)) from exc

    @classmethod
    def for_filename(cls, filename: str) -> "ArchiveFormat | None":
        """Format implied by a file extension, or None for foreign files."""
        for fmt in cls:
            if filename.endswith(fmt.extension):
                return fmt
        return None

    @classmethod
    def sniff(cls, header: bytes) -> "ArchiveFormat":
        """
        Detect the format from the first bytes of a file.

        Custom-format archives always start with the PGDMP magic; anything
        else is treated as plain SQL.
        """
        return cls.CUSTOM if header.startswith(b"PGDMP") else cls.PLAIN


def should_force_path_style(endpoint: str | None) -> bool:
    """Return True if the endpoint belongs to a known path-style-only service."""
    if not endpoint:
        return False
    endpoint_lower = endpoint.lower()
    return any(marker in endpoint_lower for marker in PATH_STYLE_ENDPOINT_MARKERS)


def is_local_host(host: str, cluster_host: str | None = None) -> bool:
    """Return True for loopback hosts and the in-cluster database hostname."""
    local_hosts = set(LOCAL_DATABASE_HOSTS)
    if cluster_host:
        local_hosts.add(cluster_host)
    return host in local_hosts


def ssl_mode_for_host(host: str, cluster_host: str | None = None) -> str:
    """PGSSLMODE for the CLI tools: TLS optional locally, required elsewhere."""
    return "prefer" if is_local_host(host, cluster_host) else "require"


def _cron_weekdays(field_value: str) -> str:
    """
    Rewrite a crontab day-of-week field using weekday names.

    Crontab numbers weekdays from Sunday (0 and 7 are both Sunday) while
    APScheduler numbers them from Monday, so numeric days, ranges and steps
    are expanded to explicit names. Name-based parts pass through as-is.
    """
    if field_value == "*":
        return field_value

    names: List[str] = []
    for part in field_value.split(","):
        match = _CRON_DOW_PART_RE.match(part)
        if match is None:
            if not _CRON_DOW_NAME_RE.match(part):
                raise ValueError(f"Invalid day of week: {part!r}")
            names.append(part.lower())
            continue

        start, end, step = match.groups()
        if start == "*":
            if end is not None:
                raise ValueError(f"Invalid day of week: {part!r}")
            first, last = 0, 6
        else:
            first = int(start)
            if end is not None:
                last = int(end)
            else:
                last = 7 if step else first
        interval = int(step) if step else 1
        if interval < 1 or first > last or last > 7:
            raise ValueError(f"Invalid day of week: {part!r}")

        for day in range(first, last + 1, interval):
            name = CRON_WEEKDAY_NAMES[day % 7]
            if name not in names:
                names.append(name)

    return ",".join(names)


def crontab_trigger(expression: str, timezone: Any = None) -> CronTrigger:
    """
    Build a CronTrigger from a five-field crontab line.

    Raises:
        ValueError: If the expression is not valid crontab
    """
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Wrong number of fields; got {len(fields)}, expected 5")
    minute, hour, day, month, day_of_week = fields
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=_cron_weekdays(day_of_week),
        timezone=timezone,
    )


def is_valid_cron(expression: str) -> bool:
    """Validate a standard five-field crontab expression."""
    if not expression or not isinstance(expression, str):
        return False
    try:
        crontab_trigger(expression)
    except ValueError:
        return False
    return True


def _is_identifier(name: str) -> bool:
    return bool(_IDENTIFIER_RE.match(name))


def _is_table_pattern(name: str) -> bool:
    parts = name.split(".")
    if len(parts) > 2:
        return False
    return all(_TABLE_PATTERN_RE.match(part) for part in parts)


def _raise_if_errors(what: str, errors: List[str]) -> None:
    if errors:
        raise ConfigurationError(
            f"{what} validation failed",
            details={"errors": errors},
        )


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for the database being backed up."""

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = field(default="", repr=False)
    database: str = "postgres"

    # Restrict dumps to one schema (pg_dump -n)
    schema: str | None = None

    # Tables left out of dumps; qualified with schema when one is set
    exclude_tables: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        errors: List[str] = []

        if not self.host:
            errors.append("host is required")
        if not self.user:
            errors.append("user is required")
        if not self.database:
            errors.append("database is required")
        if not isinstance(self.port, int) or not 1 <= self.port <= 65535:
            errors.append(f"port must be between 1 and 65535, got {self.port!r}")
        if self.schema and not _is_identifier(self.schema):
            errors.append(f"Invalid schema name: {self.schema}")
        for table in self.exclude_tables:
            if not _is_table_pattern(table):
                errors.append(f"Invalid table name: {table}")

        _raise_if_errors("Database configuration", errors)

    @property
    def qualified_exclude_tables(self) -> List[str]:
        """Excluded tables as passed to pg_dump --exclude-table."""
        if not self.schema:
            return list(self.exclude_tables)
        return [
            table if "." in table else f"{self.schema}.{table}"
            for table in self.exclude_tables
        ]

    def redacted(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "database": self.database,
            "schema": self.schema,
            "exclude_tables": list(self.exclude_tables),
        }


@dataclass(frozen=True)
class BackupPolicy:
    """How, when and where backups are taken and kept."""

    auto_enabled: bool = False
    schedule: str = DEFAULT_SCHEDULE
    retention_days: int = DEFAULT_RETENTION_DAYS
    storage_mode: StorageMode = StorageMode.LOCAL
    local_path: Path = field(default_factory=lambda: Path("./backups"))
    format: ArchiveFormat = ArchiveFormat.PLAIN

    def __post_init__(self) -> None:
        errors: List[str] = []

        if not is_valid_cron(self.schedule):
            errors.append(explain_invalid_cron(self.schedule))
        if (
            not isinstance(self.retention_days, int)
            or not 1 <= self.retention_days <= MAX_RETENTION_DAYS
        ):
            errors.append(explain_invalid_retention_days(self.retention_days))
        if not isinstance(self.storage_mode, StorageMode):
            errors.append(explain_invalid_storage_mode(self.storage_mode))
        if not isinstance(self.format, ArchiveFormat):
            errors.append(explain_invalid_format(self.format))
        if not str(self.local_path):
            errors.append("local_path is required")

        _raise_if_errors("Backup policy", errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "auto_enabled": self.auto_enabled,
            "schedule": self.schedule,
            "retention_days": self.retention_days,
            "storage_mode": self.storage_mode.value,
            "local_path": str(self.local_path),
            "format": self.format.value,
        }


@dataclass(frozen=True)
class RemoteStorageConfig:
    """
    S3-compatible object storage settings.

    Path-style addressing is forced when force_path_style is True or the
    endpoint belongs to a known path-style-only service. A False or unset
    flag never turns it off for such an endpoint.
    """

    access_key_id: str | None = None
    secret_access_key: str | None = field(default=None, repr=False)
    region: str = "us-east-1"
    bucket: str | None = None
    prefix: str = ""
    endpoint: str | None = None
    force_path_style: bool | None = None

    def __post_init__(self) -> None:
        errors: List[str] = []

        if self.endpoint and not self.endpoint.startswith(("http://", "https://")):
            errors.append("endpoint must start with http:// or https://")
        if not self.region:
            errors.append("region is required")

        _raise_if_errors("Remote storage configuration", errors)

        if not self.force_path_style:
            object.__setattr__(
                self, "force_path_style", should_force_path_style(self.endpoint)
            )

    @property
    def is_configured(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key and self.bucket)

    @property
    def key_prefix(self) -> str:
        """Prefix normalised to end with exactly one slash (or empty)."""
        stripped = self.prefix.strip().strip("/")
        return f"{stripped}/" if stripped else ""

    def object_key(self, filename: str) -> str:
        return f"{self.key_prefix}{filename}"

    @property
    def client_signature(self) -> Tuple[Any, ...]:
        """Settings that require a new S3 client when they change."""
        return (self.access_key_id, self.region, self.endpoint, self.force_path_style)

    def redacted(self) -> Dict[str, Any]:
        return {
            "access_key_id": self.access_key_id,
            "secret_access_key": "********" if self.secret_access_key else None,
            "region": self.region,
            "bucket": self.bucket,
            "prefix": self.prefix,
            "endpoint": self.endpoint,
            "force_path_style": self.force_path_style,
            "configured": self.is_configured,
        }


@dataclass(frozen=True)
class ConfigurationSnapshot:
    """
    Fully-resolved configuration as seen by one engine call.

    All three sections come from the same source (static or runtime-mutable).
    """

    mode: ConfigMode
    database: DatabaseConfig | None
    policy: BackupPolicy
    remote: RemoteStorageConfig

    def require_database(self) -> DatabaseConfig:
        if self.database is None:
            raise ConfigurationMissingError(explain_missing_database_config())
        return self.database


@dataclass(frozen=True)
class ServiceSettings:
    """Deployment settings that do not change at runtime."""

    # Hostname of the database inside the cluster network (no TLS required)
    cluster_db_host: str = "postgres"

    # Deadline for every pg_dump / pg_restore / psql invocation, in seconds
    tool_timeout: float = 3600.0

    # Timezone used to interpret cron schedules
    scheduler_timezone: str = "UTC"

    # "production" redacts internal error messages in HTTP responses
    environment: str = "development"

    def __post_init__(self) -> None:
        if self.tool_timeout <= 0:
            raise ConfigurationError(
                f"tool_timeout must be > 0, got {self.tool_timeout}"
            )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"
