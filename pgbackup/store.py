# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgbackup Configuration Store - Mode-aware configuration access.

In static mode every read goes back to the environment. In runtime-mutable
mode values live in memory and are changed through the setters. The store
holds one frozen ConfigContext and replaces it with a single assignment,
so readers see either the old or the new context, never a mix.
"""

import threading
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Mapping

import structlog

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
)
from pgbackup.errors import explain_setter_in_static_mode
from pgbackup.exceptions import InvalidModeOperationError

logger = structlog.get_logger()


@dataclass(frozen=True)
class ConfigContext:
    """Runtime-mutable values plus the active mode. None means "not set"."""

    mode: ConfigMode = ConfigMode.STATIC
    database: DatabaseConfig | None = None
    policy: BackupPolicy | None = None
    remote: RemoteStorageConfig | None = None


def _default_static_source() -> ConfigurationSnapshot:
    from pgbackup.env import load_static_snapshot

    return load_static_snapshot()


class ConfigurationStore:
    """
    Single source of truth for configuration.

    Args:
        static_source: Callable producing the static-mode snapshot
                       (defaults to reading environment variables)
        mode: Initial mode
    """

    def __init__(
        self,
        static_source: Callable[[], ConfigurationSnapshot] | None = None,
        mode: ConfigMode | str = ConfigMode.STATIC,
    ):
        self._static_source = static_source or _default_static_source
        self._lock = threading.Lock()
        self._context = ConfigContext(mode=ConfigMode.parse(mode))

    @property
    def mode(self) -> ConfigMode:
        return self._context.mode

    def snapshot(self) -> ConfigurationSnapshot:
        """Read database, policy and remote settings from one source at once."""
        context = self._context
        if context.mode is ConfigMode.STATIC:
            return self._static_source()

        return ConfigurationSnapshot(
            mode=ConfigMode.RUNTIME,
            database=context.database,
            policy=context.policy or BackupPolicy(),
            remote=context.remote or RemoteStorageConfig(),
        )

    def get_database_config(self) -> DatabaseConfig:
        return self.snapshot().require_database()

    def get_backup_policy(self) -> BackupPolicy:
        return self.snapshot().policy

    def get_remote_storage_config(self) -> RemoteStorageConfig:
        return self.snapshot().remote

    def set_mode(self, mode: ConfigMode | str) -> ConfigMode:
        """
        Switch configuration mode.

        Values are not carried across: entering runtime-mutable mode starts
        from an empty context. Setting the current mode again is a no-op.

        Raises:
            ConfigurationError: If the mode is unknown
        """
        new_mode = ConfigMode.parse(mode)
        with self._lock:
            previous = self._context.mode
            if new_mode is not previous:
                self._context = ConfigContext(mode=new_mode)

        if new_mode is not previous:
            logger.info("config_mode_changed", previous=previous.value, mode=new_mode.value)
        return new_mode

    def set_database_config(self, values: Mapping[str, Any]) -> DatabaseConfig:
        self._require_runtime("database configuration")
        database = build_database_config(values)
        self._swap("database configuration", database=database)
        logger.info("database_config_updated", **database.redacted())
        return database

    def set_backup_policy(self, values: Mapping[str, Any]) -> BackupPolicy:
        self._require_runtime("backup policy")
        policy = build_backup_policy(values)
        self._swap("backup policy", policy=policy)
        logger.info("backup_policy_updated", **policy.to_dict())
        return policy

    def set_remote_storage_config(self, values: Mapping[str, Any]) -> RemoteStorageConfig:
        self._require_runtime("remote storage configuration")
        remote = build_remote_storage_config(values)
        self._swap("remote storage configuration", remote=remote)
        logger.info(
            "remote_storage_config_updated",
            bucket=remote.bucket,
            region=remote.region,
            endpoint=remote.endpoint,
        )
        return remote

    def reset_runtime_config(self) -> None:
        with self._lock:
            self._require_runtime("runtime configuration")
            self._context = ConfigContext(mode=ConfigMode.RUNTIME)
        logger.info("runtime_config_reset")

    def describe(self) -> Dict[str, Any]:
        """Current configuration with secrets removed, for display."""
        snapshot = self.snapshot()
        return {
            "mode": snapshot.mode.value,
            "database": snapshot.database.redacted() if snapshot.database else None,
            "backup": snapshot.policy.to_dict(),
            "remote": snapshot.remote.redacted(),
        }

    def _swap(self, what: str, **changes: Any) -> None:
        with self._lock:
            self._require_runtime(what)
            self._context = replace(self._context, **changes)

    def _require_runtime(self, what: str) -> None:
        if self._context.mode is not ConfigMode.RUNTIME:
            raise InvalidModeOperationError(
                explain_setter_in_static_mode(what),
                details={"mode": self._context.mode.value},
            )
