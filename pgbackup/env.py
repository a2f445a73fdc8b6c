# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration.

Static mode reads these variables on every snapshot, so a change to the
process environment is picked up by the next engine call:

Database:
    - DB_HOST, DB_PORT, DB_USER, DB_PASSWORD, DB_NAME
    - DB_SCHEMA: Restrict dumps to one schema (optional)
    - DB_EXCLUDE_TABLES: Comma-separated table names (optional)

Backup policy:
    - BACKUP_AUTO: 'true' to start the scheduler at boot
    - BACKUP_SCHEDULE: Five-field cron expression (default: "0 2 * * *")
    - BACKUP_RETENTION_DAYS: Days to keep backups (default: 7)
    - BACKUP_STORAGE: 'local' | 'remote' | 'both' (default: local)
    - BACKUP_LOCAL_PATH: Backup directory (default: ./backups)
    - BACKUP_FORMAT: 'sql' | 'dump' (default: sql)

Remote storage:
    - AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY, AWS_REGION
    - AWS_S3_BUCKET, AWS_S3_PREFIX, AWS_S3_ENDPOINT
    - AWS_S3_FORCE_PATH_STYLE: 'true' forces path-style; otherwise derived from the endpoint

Service:
    - PGBACKUP_CONFIG_MODE: 'static' | 'runtime-mutable' (default: static)
    - PGBACKUP_CLUSTER_DB_HOST: In-cluster database hostname (default: postgres)
    - PGBACKUP_TOOL_TIMEOUT: Seconds allowed per dump/restore tool run (default: 3600)
    - PGBACKUP_SCHEDULER_TIMEZONE: Timezone for cron schedules (default: UTC)
    - PGBACKUP_ENV: 'production' redacts internal errors (default: development)
"""

from __future__ import annotations

import os

from pgbackup.builder import (
    build_backup_policy,
    build_database_config,
    build_remote_storage_config,
)
from pgbackup.config import (
    BackupPolicy,
    ConfigMode,
    ConfigurationSnapshot,
    DatabaseConfig,
    RemoteStorageConfig,
    ServiceSettings,
)
from pgbackup.errors import explain_invalid_int_env
from pgbackup.exceptions import ConfigurationError


def _parse_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_int_env(name, value)) from exc


def _parse_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_int_env(name, value)) from exc


def database_config_from_env() -> DatabaseConfig:
    return build_database_config(
        {
            "host": os.getenv("DB_HOST", "localhost"),
            "port": _parse_int("DB_PORT", 5432),
            "user": os.getenv("DB_USER", "postgres"),
            "password": os.getenv("DB_PASSWORD", ""),
            "database": os.getenv("DB_NAME", "postgres"),
            "schema": os.getenv("DB_SCHEMA"),
            "exclude_tables": os.getenv("DB_EXCLUDE_TABLES", ""),
        }
    )


def backup_policy_from_env() -> BackupPolicy:
    return build_backup_policy(
        {
            "auto_enabled": os.getenv("BACKUP_AUTO", "false"),
            "schedule": os.getenv("BACKUP_SCHEDULE"),
            "retention_days": _parse_int("BACKUP_RETENTION_DAYS", 7),
            "storage_mode": os.getenv("BACKUP_STORAGE"),
            "local_path": os.getenv("BACKUP_LOCAL_PATH"),
            "format": os.getenv("BACKUP_FORMAT"),
        }
    )


def remote_storage_config_from_env() -> RemoteStorageConfig:
    # A partial set of variables is not an error: the remote is just unconfigured
    return build_remote_storage_config(
        {
            "access_key_id": os.getenv("AWS_ACCESS_KEY_ID"),
            "secret_access_key": os.getenv("AWS_SECRET_ACCESS_KEY"),
            "region": os.getenv("AWS_REGION"),
            "bucket": os.getenv("AWS_S3_BUCKET"),
            "prefix": os.getenv("AWS_S3_PREFIX", ""),
            "endpoint": os.getenv("AWS_S3_ENDPOINT"),
            "force_path_style": os.getenv("AWS_S3_FORCE_PATH_STYLE"),
        },
        require_pair=False,
    )


def load_static_snapshot() -> ConfigurationSnapshot:
    """
    Read a complete static-mode snapshot from the environment.

    Raises:
        ConfigurationError: If any variable holds an invalid value
    """
    return ConfigurationSnapshot(
        mode=ConfigMode.STATIC,
        database=database_config_from_env(),
        policy=backup_policy_from_env(),
        remote=remote_storage_config_from_env(),
    )


def initial_mode_from_env() -> ConfigMode:
    return ConfigMode.parse(os.getenv("PGBACKUP_CONFIG_MODE") or ConfigMode.STATIC.value)


def service_settings_from_env() -> ServiceSettings:
    return ServiceSettings(
        cluster_db_host=os.getenv("PGBACKUP_CLUSTER_DB_HOST", "postgres"),
        tool_timeout=_parse_float("PGBACKUP_TOOL_TIMEOUT", 3600.0),
        scheduler_timezone=os.getenv("PGBACKUP_SCHEDULER_TIMEZONE", "UTC"),
        environment=os.getenv("PGBACKUP_ENV", "development"),
    )
