# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgbackup Builder - Turn loosely-typed input into validated configuration.

Values arrive as strings from environment variables or as JSON from the
HTTP layer. The functions here coerce them, fill in defaults and hand the
result to the frozen dataclasses in pgbackup.config, which perform the
final validation.
"""

from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from pgbackup.config import (
    DEFAULT_RETENTION_DAYS,
    DEFAULT_SCHEDULE,
    ArchiveFormat,
    BackupPolicy,
    DatabaseConfig,
    RemoteStorageConfig,
    StorageMode,
)
from pgbackup.errors import (
    explain_invalid_retention_days,
    explain_invalid_storage_mode,
)
from pgbackup.exceptions import ConfigurationError


# Type alias for raw configuration input
ConfigDict = Dict[str, Any]

_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off", ""}


def parse_bool(value: Any, default: bool = False) -> bool:
    """Interpret booleans the way the environment and JSON clients send them."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise ConfigurationError(f"Invalid boolean value: {value!r}")


def parse_exclude_tables(value: str | Iterable[str] | None) -> Tuple[str, ...]:
    """
    Normalise an excluded-table list.

    Accepts either a comma-separated string ("audit_log, sessions") or a
    list of names. Blank entries are dropped.
    """
    if not value:
        return ()
    if isinstance(value, str):
        items: Iterable[str] = value.split(",")
    else:
        items = value
    return tuple(t.strip() for t in items if t and t.strip())


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _clean(value: Any) -> str | None:
    return None if _blank(value) else str(value).strip()


def _parse_port(value: Any, errors: List[str]) -> int:
    if _blank(value):
        return 5432
    try:
        return int(value)
    except (TypeError, ValueError):
        errors.append(f"port must be an integer, got {value!r}")
        return 5432


def build_database_config(values: Mapping[str, Any]) -> DatabaseConfig:
    """
    Build a DatabaseConfig from raw input.

    Args:
        values: Mapping with host, port, user, password, database and the
                optional schema / exclude_tables keys

    Returns:
        Validated DatabaseConfig

    Raises:
        ConfigurationError: If any field is missing or invalid
    """
    errors: List[str] = []

    for required in ("host", "user", "database"):
        if _blank(values.get(required)):
            errors.append(f"{required} is required")

    port = _parse_port(values.get("port"), errors)

    if errors:
        raise ConfigurationError(
            "Database configuration validation failed",
            details={"errors": errors},
        )

    return DatabaseConfig(
        host=_clean(values.get("host")) or "",
        port=port,
        user=_clean(values.get("user")) or "",
        password=values.get("password") or "",
        database=_clean(values.get("database")) or "",
        schema=_clean(values.get("schema")),
        exclude_tables=parse_exclude_tables(values.get("exclude_tables")),
    )


def build_backup_policy(values: Mapping[str, Any]) -> BackupPolicy:
    """
    Build a BackupPolicy from raw input, defaulting every missing field.

    Args:
        values: Mapping with any of auto_enabled, schedule, retention_days,
                storage_mode, local_path, format

    Returns:
        Validated BackupPolicy

    Raises:
        ConfigurationError: If any field is invalid
    """
    errors: List[str] = []

    retention_raw = values.get("retention_days")
    retention_days = DEFAULT_RETENTION_DAYS
    if not _blank(retention_raw):
        try:
            retention_days = int(retention_raw)
        except (TypeError, ValueError):
            errors.append(explain_invalid_retention_days(retention_raw))

    storage_raw = _clean(values.get("storage_mode")) or StorageMode.LOCAL.value
    try:
        storage_mode = StorageMode(storage_raw.lower())
    except ValueError:
        errors.append(explain_invalid_storage_mode(storage_raw))
        storage_mode = StorageMode.LOCAL

    format_raw = _clean(values.get("format")) or ArchiveFormat.PLAIN.value
    try:
        backup_format = ArchiveFormat.parse(format_raw)
    except ConfigurationError as exc:
        errors.append(exc.message)
        backup_format = ArchiveFormat.PLAIN

    try:
        auto_enabled = parse_bool(values.get("auto_enabled"))
    except ConfigurationError as exc:
        errors.append(exc.message)
        auto_enabled = False

    if errors:
        raise ConfigurationError(
            "Backup policy validation failed",
            details={"errors": errors},
        )

    return BackupPolicy(
        auto_enabled=auto_enabled,
        schedule=_clean(values.get("schedule")) or DEFAULT_SCHEDULE,
        retention_days=retention_days,
        storage_mode=storage_mode,
        local_path=Path(_clean(values.get("local_path")) or "./backups"),
        format=backup_format,
    )


def build_remote_storage_config(
    values: Mapping[str, Any],
    *,
    require_pair: bool = True,
) -> RemoteStorageConfig:
    """
    Build a RemoteStorageConfig from raw input.

    An empty mapping yields an unconfigured remote (remote storage is
    optional). When require_pair is set, supplying either an access key or
    a bucket without the other is rejected.

    Args:
        values: Mapping with any of access_key_id, secret_access_key,
                region, bucket, prefix, endpoint, force_path_style
        require_pair: Reject a lone access key or bucket

    Returns:
        Validated RemoteStorageConfig

    Raises:
        ConfigurationError: If any field is invalid
    """
    access_key_id = _clean(values.get("access_key_id"))
    bucket = _clean(values.get("bucket"))

    if require_pair and bool(access_key_id) != bool(bucket):
        raise ConfigurationError(
            "Remote storage configuration validation failed",
            details={
                "errors": [
                    "Both access_key_id and bucket are required for remote storage"
                ]
            },
        )

    # Only an explicit true skips endpoint inference; blank means unset
    force_path_style = parse_bool(values.get("force_path_style")) or None

    return RemoteStorageConfig(
        access_key_id=access_key_id,
        secret_access_key=_clean(values.get("secret_access_key")),
        region=_clean(values.get("region")) or "us-east-1",
        bucket=bucket,
        prefix=(values.get("prefix") or "").strip(),
        endpoint=_clean(values.get("endpoint")),
        force_path_style=force_path_style,
    )
