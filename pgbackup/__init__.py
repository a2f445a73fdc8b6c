# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgbackup - PostgreSQL backup manager.

Runs pg_dump / pg_restore / psql, keeps the resulting backups in a local
directory and an S3-compatible bucket, schedules backups with cron
expressions and prunes them with a time-based retention policy.
"""

__version__ = "0.1.0"

# Configuration
from pgbackup.config import (
    ArchiveFormat,
    BackupPolicy,
    ConfigMode,
    DatabaseConfig,
    RemoteStorageConfig,
    ServiceSettings,
    StorageMode,
)
from pgbackup.store import ConfigurationStore

# Core functions
from pgbackup.core import (
    apply_retention_policy,
    create_backup,
    delete_backup,
    initialize_engine_state,
    list_all,
    restore_backup,
    run_backup_cycle,
    shutdown_engine_state,
)

from pgbackup.scheduler import BackupScheduler

__all__ = [
    # Version
    "__version__",
    # Configuration
    "ArchiveFormat",
    "BackupPolicy",
    "ConfigMode",
    "ConfigurationStore",
    "DatabaseConfig",
    "RemoteStorageConfig",
    "ServiceSettings",
    "StorageMode",
    # Engine
    "apply_retention_policy",
    "create_backup",
    "delete_backup",
    "initialize_engine_state",
    "list_all",
    "restore_backup",
    "run_backup_cycle",
    "shutdown_engine_state",
    # Scheduling
    "BackupScheduler",
]
