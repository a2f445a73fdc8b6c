# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgbackup Core - Backup lifecycle engine.

This module coordinates the configuration store, the external PostgreSQL
tools and both archives: creating backups, listing and reconciling the
local and remote archives, deleting, restoring, and enforcing retention.
"""

import asyncio
import shutil
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, TypedDict

import structlog

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
    BackupArtifact,
    Location,
    generate_backup_filename,
    sanitize_filename,
)
from pgbackup.config import (
    ArchiveFormat,
    ConfigurationSnapshot,
    ServiceSettings,
    StorageMode,
)
from pgbackup.errors import explain_invalid_backup_filename
from pgbackup.exceptions import (
    BackupCreationError,
    BackupNotFoundError,
    PGBackupError,
    RemoteDownloadError,
    RemoteStorageError,
    RestoreError,
)
from pgbackup.store import ConfigurationStore
from pgbackup.tools import build_dump_command, build_restore_commands, run_tool, tool_env

logger = structlog.get_logger()


class EngineState(TypedDict):
    """Runtime state shared by the engine, the scheduler and the HTTP layer."""

    store: ConfigurationStore
    settings: ServiceSettings
    remote_cache: RemoteClientCache
    total_created: int
    total_restored: int
    total_retention_deleted: int
    last_backup_at: datetime | None
    last_error: str | None


@dataclass
class BackupStats:
    total: int = 0
    local: int = 0
    remote: int = 0
    total_size: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "local": self.local,
            "remote": self.remote,
            "total_size": self.total_size,
        }


@dataclass
class BackupListing:
    """Merged view of both archives, newest first."""

    artifacts: List[BackupArtifact]
    stats: BackupStats
    partial: bool = False  # True when one archive could not be listed
    errors: List[str] = field(default_factory=list)


@dataclass
class DeleteResult:
    filename: str
    deleted_local: bool
    deleted_remote: bool
    errors: List[str] = field(default_factory=list)


@dataclass
class RestoreOutcome:
    filename: str
    source: Location
    format: ArchiveFormat
    output: str


@dataclass
class CycleResult:
    """Result of one scheduled backup run."""

    run_id: str  # ULID
    artifact: BackupArtifact | None
    retention_deleted: int
    error: str | None
    duration_seconds: float


@dataclass
class FetchedBackup:
    """A backup file made available on local disk for reading."""

    filename: str
    path: Path
    source: Location
    temp_dir: Path | None = None  # Set when the file was downloaded


async def initialize_engine_state(
    store: ConfigurationStore | None = None,
    settings: ServiceSettings | None = None,
    remote_cache: RemoteClientCache | None = None,
) -> EngineState:
    """
    Initialize runtime state for the engine.

    Args:
        store: Configuration store (defaults to one in the mode named by
               PGBACKUP_CONFIG_MODE)
        settings: Deployment settings (defaults to environment values)
        remote_cache: S3 client cache (a new one by default)

    Returns:
        Initialized EngineState dictionary
    """
    from pgbackup.env import initial_mode_from_env, service_settings_from_env

    if store is None:
        store = ConfigurationStore(mode=initial_mode_from_env())
    if settings is None:
        settings = service_settings_from_env()

    logger.info(
        "engine_initialized",
        mode=store.mode.value,
        tool_timeout=settings.tool_timeout,
    )

    return EngineState(
        store=store,
        settings=settings,
        remote_cache=remote_cache or RemoteClientCache(),
        total_created=0,
        total_restored=0,
        total_retention_deleted=0,
        last_backup_at=None,
        last_error=None,
    )


async def shutdown_engine_state(state: EngineState) -> None:
    await state["remote_cache"].close()
    logger.info("engine_shutdown")


def get_engine_metrics(state: EngineState) -> Dict[str, Any]:
    last_backup_at = state["last_backup_at"]
    return {
        "total_created": state["total_created"],
        "total_restored": state["total_restored"],
        "total_retention_deleted": state["total_retention_deleted"],
        "last_backup_at": last_backup_at.isoformat() if last_backup_at else None,
        "last_error": state["last_error"],
    }


# =============================================================================
# Create
# =============================================================================


def _remove_partial(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("partial_backup_cleanup_failed", path=str(path), error=str(e))


async def create_backup(
    state: EngineState,
    format_override: ArchiveFormat | str | None = None,
    now: datetime | None = None,
) -> BackupArtifact:
    """
    Create a new backup.

    The dump is always written to the local directory first. Depending on
    the storage mode it is then uploaded, and in remote-only mode the local
    staging copy is deleted afterwards.

    Args:
        state: Engine state
        format_override: Use this format instead of the policy's
        now: Creation time (defaults to the current UTC time)

    Returns:
        The new BackupArtifact

    Raises:
        ConfigurationMissingError: No database configured (runtime mode)
        BackupCreationError: pg_dump failed or timed out
        RemoteUploadError: Upload failed (the local file is kept)
    """
    try:
        artifact = await _create_backup(state, format_override, now)
    except PGBackupError as e:
        state["last_error"] = e.message
        raise

    state["total_created"] += 1
    state["last_backup_at"] = artifact.created_at
    return artifact


async def _create_backup(
    state: EngineState,
    format_override: ArchiveFormat | str | None,
    now: datetime | None,
) -> BackupArtifact:
    snapshot = state["store"].snapshot()
    db = snapshot.require_database()
    policy = snapshot.policy
    settings = state["settings"]

    fmt = ArchiveFormat.parse(format_override) if format_override else policy.format
    created_at = (now or datetime.now(UTC)).astimezone(UTC)
    filename = generate_backup_filename(db.database, fmt, created_at)

    try:
        root = ensure_backup_dir(policy.local_path)
    except OSError as e:
        raise BackupCreationError(
            f"Cannot create backup directory {policy.local_path}: {e}",
            details={"path": str(policy.local_path), "reason": "failed"},
        ) from e

    local_path = root / filename

    logger.info(
        "backup_started",
        filename=filename,
        database=db.database,
        host=db.host,
        format=fmt.value,
        storage_mode=policy.storage_mode.value,
    )

    try:
        await run_tool(
            build_dump_command(db, local_path, fmt),
            env=tool_env(db, settings.cluster_db_host),
            timeout=settings.tool_timeout,
            error_cls=BackupCreationError,
        )
    except (BackupCreationError, asyncio.CancelledError):
        _remove_partial(local_path)
        raise

    try:
        size = local_path.stat().st_size
    except FileNotFoundError:
        raise BackupCreationError(
            f"pg_dump reported success but wrote no file: {filename}",
            details={"filename": filename, "reason": "failed"},
        )

    location = Location.LOCAL

    if policy.storage_mode.includes_remote:
        if is_remote_configured(snapshot.remote):
            await upload_backup(state["remote_cache"], snapshot.remote, local_path, filename)
            location = Location.BOTH

            if policy.storage_mode is StorageMode.REMOTE:
                try:
                    await delete_local_backup(root, filename)
                    location = Location.REMOTE
                except (BackupNotFoundError, OSError) as e:
                    logger.warning(
                        "staging_copy_cleanup_failed",
                        filename=filename,
                        error=str(e),
                    )
        else:
            logger.warning(
                "remote_storage_not_configured",
                filename=filename,
                storage_mode=policy.storage_mode.value,
            )

    logger.info(
        "backup_completed",
        filename=filename,
        size=size,
        location=location.value,
    )

    return BackupArtifact(
        filename=filename,
        size=size,
        created_at=created_at,
        format=fmt,
        location=location,
    )


# =============================================================================
# List
# =============================================================================


def reconcile(
    local: Iterable[BackupArtifact],
    remote: Iterable[BackupArtifact],
) -> List[BackupArtifact]:
    """
    Merge two archive listings by filename, newest first.

    A file present in both archives keeps the local size and timestamp and
    is marked Location.BOTH.
    """
    merged: Dict[str, BackupArtifact] = {
        artifact.filename: artifact.with_location(Location.LOCAL) for artifact in local
    }

    for artifact in remote:
        existing = merged.get(artifact.filename)
        if existing is not None:
            merged[artifact.filename] = existing.with_location(Location.BOTH)
        else:
            merged[artifact.filename] = artifact.with_location(Location.REMOTE)

    return sorted(merged.values(), key=lambda a: a.created_at, reverse=True)


def compute_stats(artifacts: Iterable[BackupArtifact]) -> BackupStats:
    stats = BackupStats()
    for artifact in artifacts:
        stats.total += 1
        stats.total_size += artifact.size
        if artifact.location.has_local:
            stats.local += 1
        if artifact.location.has_remote:
            stats.remote += 1
    return stats


async def _collect(state: EngineState, snapshot: ConfigurationSnapshot) -> BackupListing:
    local = await list_local_backups(snapshot.policy.local_path)
    remote = await list_remote_backups(state["remote_cache"], snapshot.remote)

    errors = []
    if not local.ok:
        errors.append(f"local: {local.error}")
    if not remote.ok:
        errors.append(f"remote: {remote.error}")

    artifacts = reconcile(local.artifacts, remote.artifacts)
    return BackupListing(
        artifacts=artifacts,
        stats=compute_stats(artifacts),
        partial=bool(errors),
        errors=errors,
    )


async def list_all(state: EngineState) -> BackupListing:
    """
    List every backup across both archives.

    Each archive is listed independently. If one fails, the other's
    contents are still returned and the listing is marked partial.
    """
    listing = await _collect(state, state["store"].snapshot())

    if listing.partial:
        logger.warning("backup_listing_partial", errors=listing.errors)

    return listing


# =============================================================================
# Delete
# =============================================================================


async def delete_backup(state: EngineState, filename: str) -> DeleteResult:
    """
    Delete a backup from the archives the storage mode uses.

    A failure in one archive is logged and does not stop the other.

    Raises:
        BackupNotFoundError: If nothing was deleted anywhere
    """
    snapshot = state["store"].snapshot()
    policy = snapshot.policy
    name = sanitize_filename(filename)
    result = DeleteResult(filename=name, deleted_local=False, deleted_remote=False)

    if policy.storage_mode.includes_local:
        try:
            await delete_local_backup(policy.local_path, name)
            result.deleted_local = True
        except (BackupNotFoundError, OSError) as e:
            logger.warning("local_delete_failed", filename=name, error=str(e))
            result.errors.append(f"local: {e}")

    if policy.storage_mode.includes_remote and is_remote_configured(snapshot.remote):
        try:
            await delete_remote_backup(state["remote_cache"], snapshot.remote, name)
            result.deleted_remote = True
        except RemoteStorageError as e:
            logger.warning("remote_delete_failed", filename=name, error=e.message)
            result.errors.append(f"remote: {e.message}")

    if not (result.deleted_local or result.deleted_remote):
        raise BackupNotFoundError(
            f"Backup not found: {name}",
            details={"filename": name, "errors": result.errors},
        )

    logger.info(
        "backup_deleted",
        filename=name,
        deleted_local=result.deleted_local,
        deleted_remote=result.deleted_remote,
    )
    return result


# =============================================================================
# Restore
# =============================================================================


async def fetch_backup_copy(
    state: EngineState,
    filename: str,
    snapshot: ConfigurationSnapshot | None = None,
) -> FetchedBackup:
    """
    Make a backup readable on local disk.

    The local archive is tried first. Otherwise the file is downloaded into
    a fresh temporary directory, which the caller must release with
    discard_fetched().

    Raises:
        BackupNotFoundError: If the backup is in neither archive
        RemoteDownloadError: If the download fails for another reason
    """
    snapshot = snapshot or state["store"].snapshot()
    name = sanitize_filename(filename)

    if ArchiveFormat.for_filename(name) is None:
        raise BackupNotFoundError(
            explain_invalid_backup_filename(filename),
            details={"filename": filename},
        )

    local_path = resolve_local_path(snapshot.policy.local_path, name)
    if local_path.is_file():
        return FetchedBackup(filename=name, path=local_path, source=Location.LOCAL)

    if not is_remote_configured(snapshot.remote):
        raise BackupNotFoundError(
            f"Backup not found: {name}",
            details={"filename": name},
        )

    temp_dir = Path(tempfile.mkdtemp(prefix="pgbackup-"))
    fetched = FetchedBackup(
        filename=name,
        path=temp_dir / name,
        source=Location.REMOTE,
        temp_dir=temp_dir,
    )

    try:
        await download_backup(state["remote_cache"], snapshot.remote, name, fetched.path)
    except RemoteDownloadError as e:
        discard_fetched(fetched)
        if e.details.get("not_found"):
            raise BackupNotFoundError(
                f"Backup not found: {name}",
                details={"filename": name},
            ) from e
        raise
    except BaseException:
        discard_fetched(fetched)
        raise

    return fetched


def discard_fetched(fetched: FetchedBackup) -> None:
    """Remove a downloaded copy. Local archive files are left alone."""
    if fetched.temp_dir is None:
        return
    try:
        shutil.rmtree(fetched.temp_dir)
    except OSError as e:
        logger.warning("temp_cleanup_failed", path=str(fetched.temp_dir), error=str(e))


@asynccontextmanager
async def open_backup_copy(
    state: EngineState,
    filename: str,
    snapshot: ConfigurationSnapshot | None = None,
) -> AsyncIterator[FetchedBackup]:
    fetched = await fetch_backup_copy(state, filename, snapshot)
    try:
        yield fetched
    finally:
        discard_fetched(fetched)


async def restore_backup(state: EngineState, filename: str) -> RestoreOutcome:
    """
    Restore a backup into the configured database.

    The restore tool is chosen from the file's content: custom archives
    (PGDMP header) go through pg_restore, anything else is replayed with
    psql after the schema is dropped and recreated.

    Raises:
        ConfigurationMissingError: No database configured (runtime mode)
        BackupNotFoundError: The backup is in neither archive
        RestoreError: The restore tool failed or timed out
    """
    snapshot = state["store"].snapshot()
    db = snapshot.require_database()
    settings = state["settings"]

    try:
        async with open_backup_copy(state, filename, snapshot) as fetched:
            declared = ArchiveFormat.for_filename(fetched.filename)
            try:
                fmt = await sniff_archive_format(fetched.path)
            except OSError as e:
                logger.warning("archive_sniff_failed", filename=fetched.filename, error=str(e))
                fmt = declared

            if fmt is not declared:
                logger.warning(
                    "archive_format_mismatch",
                    filename=fetched.filename,
                    extension=declared.value if declared else None,
                    detected=fmt.value,
                )

            logger.info(
                "restore_started",
                filename=fetched.filename,
                source=fetched.source.value,
                format=fmt.value,
                database=db.database,
            )

            output: List[str] = []
            for command in build_restore_commands(db, fetched.path, fmt):
                result = await run_tool(
                    command,
                    env=tool_env(db, settings.cluster_db_host),
                    timeout=settings.tool_timeout,
                    error_cls=RestoreError,
                )
                output.extend(text for text in (result.stdout, result.stderr) if text)
    except PGBackupError as e:
        state["last_error"] = e.message
        raise

    state["total_restored"] += 1
    logger.info("restore_completed", filename=fetched.filename, source=fetched.source.value)

    return RestoreOutcome(
        filename=fetched.filename,
        source=fetched.source,
        format=fmt,
        output="".join(output),
    )


# =============================================================================
# Retention
# =============================================================================


async def apply_retention_policy(state: EngineState, now: datetime | None = None) -> int:
    """
    Delete every backup older than the retention period.

    Each expired artifact is removed from every archive it is present in
    and counted once. Failures are logged and skipped; running the policy
    twice in a row deletes nothing the second time.

    Returns:
        Number of artifacts deleted
    """
    snapshot = state["store"].snapshot()
    policy = snapshot.policy
    cutoff = (now or datetime.now(UTC)) - timedelta(days=policy.retention_days)

    listing = await _collect(state, snapshot)
    deleted = 0

    for artifact in listing.artifacts:
        if artifact.created_at >= cutoff:
            continue

        removed = False

        if artifact.location.has_local:
            try:
                await delete_local_backup(policy.local_path, artifact.filename)
                removed = True
            except (BackupNotFoundError, OSError) as e:
                logger.warning(
                    "retention_local_delete_failed",
                    filename=artifact.filename,
                    error=str(e),
                )

        if artifact.location.has_remote:
            try:
                await delete_remote_backup(
                    state["remote_cache"], snapshot.remote, artifact.filename
                )
                removed = True
            except RemoteStorageError as e:
                logger.warning(
                    "retention_remote_delete_failed",
                    filename=artifact.filename,
                    error=e.message,
                )

        if removed:
            deleted += 1

    state["total_retention_deleted"] += deleted

    logger.info(
        "retention_applied",
        retention_days=policy.retention_days,
        cutoff=cutoff.isoformat(),
        deleted=deleted,
    )
    return deleted


# =============================================================================
# Scheduled run
# =============================================================================


async def run_backup_cycle(state: EngineState) -> CycleResult:
    """
    One scheduled run: create a backup, then apply retention.

    A failed backup ends the run before retention, so old backups are
    never pruned while new ones are not being produced.
    """
    from ulid import ULID

    run_id = str(ULID())
    loop = asyncio.get_running_loop()
    started = loop.time()

    logger.info("backup_cycle_started", run_id=run_id)

    try:
        artifact = await create_backup(state)
    except PGBackupError as e:
        logger.error("backup_cycle_failed", run_id=run_id, stage="create", error=e.message)
        return CycleResult(
            run_id=run_id,
            artifact=None,
            retention_deleted=0,
            error=e.message,
            duration_seconds=loop.time() - started,
        )

    try:
        deleted = await apply_retention_policy(state)
    except PGBackupError as e:
        state["last_error"] = e.message
        logger.error("backup_cycle_failed", run_id=run_id, stage="retention", error=e.message)
        return CycleResult(
            run_id=run_id,
            artifact=artifact,
            retention_deleted=0,
            error=e.message,
            duration_seconds=loop.time() - started,
        )

    duration = loop.time() - started
    logger.info(
        "backup_cycle_completed",
        run_id=run_id,
        filename=artifact.filename,
        retention_deleted=deleted,
        duration_seconds=round(duration, 3),
    )

    return CycleResult(
        run_id=run_id,
        artifact=artifact,
        retention_deleted=deleted,
        error=None,
        duration_seconds=duration,
    )
