# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup lifecycle engine tests.

Uses the fake PostgreSQL tools from conftest and a moto S3 server for the
remote archive.
"""

import os
from datetime import datetime, timedelta, UTC
from pathlib import Path

import pytest

from conftest import read_tool_log, set_storage
from pgbackup.archive.types import BackupArtifact, Location
from pgbackup.config import ArchiveFormat, ConfigMode, ServiceSettings
from pgbackup.core import (
    EngineState,
    apply_retention_policy,
    compute_stats,
    create_backup,
    delete_backup,
    initialize_engine_state,
    list_all,
    reconcile,
    restore_backup,
    run_backup_cycle,
    shutdown_engine_state,
)
from pgbackup.exceptions import (
    BackupCreationError,
    BackupNotFoundError,
    ConfigurationMissingError,
    RemoteUploadError,
    RestoreError,
)
from pgbackup.store import ConfigurationStore


def _artifact(name: str, size: int, day: int) -> BackupArtifact:
    return BackupArtifact(
        filename=name,
        size=size,
        created_at=datetime(2026, 1, day, tzinfo=UTC),
        format=ArchiveFormat.PLAIN,
        location=Location.LOCAL,
    )


def _age_file(path: Path, moment: datetime) -> None:
    ts = moment.timestamp()
    os.utime(path, (ts, ts))


# =============================================================================
# Reconciliation
# =============================================================================


def test_reconcile_merges_by_filename():
    local = [_artifact("backup_a.sql", 10, 1), _artifact("backup_b.sql", 20, 2)]
    remote = [
        _artifact("backup_b.sql", 999, 3),
        _artifact("backup_c.sql", 30, 4),
    ]

    merged = reconcile(local, remote)

    assert [a.filename for a in merged] == ["backup_c.sql", "backup_b.sql", "backup_a.sql"]
    locations = {a.filename: a.location for a in merged}
    assert locations == {
        "backup_a.sql": Location.LOCAL,
        "backup_b.sql": Location.BOTH,
        "backup_c.sql": Location.REMOTE,
    }

    both = next(a for a in merged if a.filename == "backup_b.sql")
    assert both.size == 20  # local copy wins

    stats = compute_stats(merged)
    assert stats.total == 3
    assert stats.local == 2
    assert stats.remote == 2
    assert stats.total_size == 60


def test_reconcile_empty():
    assert reconcile([], []) == []
    assert compute_stats([]).to_dict() == {"total": 0, "local": 0, "remote": 0, "total_size": 0}


# =============================================================================
# Create / list
# =============================================================================


@pytest.mark.asyncio
async def test_create_then_list_round_trip(engine: EngineState, backup_dir: Path):
    artifact = await create_backup(engine)

    assert artifact.location is Location.LOCAL
    assert artifact.format is ArchiveFormat.PLAIN
    assert artifact.filename.startswith("backup_shop_")
    assert (backup_dir / artifact.filename).stat().st_size == artifact.size

    listing = await list_all(engine)

    assert not listing.partial
    assert [a.filename for a in listing.artifacts] == [artifact.filename]
    listed = listing.artifacts[0]
    assert listed.size == artifact.size
    assert listed.format is artifact.format
    assert listed.location is Location.LOCAL
    assert engine["total_created"] == 1
    assert engine["last_backup_at"] == artifact.created_at


@pytest.mark.asyncio
async def test_create_custom_format_override(engine: EngineState, backup_dir: Path, fake_pg_tools: Path):
    artifact = await create_backup(engine, format_override="dump")

    assert artifact.filename.endswith(".dump")
    assert artifact.format is ArchiveFormat.CUSTOM
    assert (backup_dir / artifact.filename).read_bytes().startswith(b"PGDMP")

    (line,) = read_tool_log(fake_pg_tools)
    assert "-F c -v -f" in line
    assert "PGSSLMODE=prefer" in line


@pytest.mark.asyncio
async def test_create_failure_removes_partial_file(
    engine: EngineState,
    backup_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
):
    monkeypatch.setenv("FAKE_PG_FAIL", "1")

    with pytest.raises(BackupCreationError) as exc_info:
        await create_backup(engine)

    assert exc_info.value.details["reason"] == "failed"
    assert "connection to server failed" in exc_info.value.details["stderr"]
    assert list(backup_dir.iterdir()) == []
    assert engine["total_created"] == 0
    assert engine["last_error"]


@pytest.mark.asyncio
async def test_create_timeout_kills_dump(
    runtime_store: ConfigurationStore,
    fake_pg_tools: Path,
    backup_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
):
    monkeypatch.setenv("FAKE_PG_SLEEP", "30")
    state = await initialize_engine_state(
        store=runtime_store,
        settings=ServiceSettings(tool_timeout=0.5),
    )

    try:
        with pytest.raises(BackupCreationError) as exc_info:
            await create_backup(state)
    finally:
        await shutdown_engine_state(state)

    assert exc_info.value.details["reason"] == "timeout"
    assert list(backup_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_create_requires_database_in_runtime_mode(fake_pg_tools: Path):
    state = await initialize_engine_state(
        store=ConfigurationStore(mode=ConfigMode.RUNTIME),
        settings=ServiceSettings(),
    )

    try:
        with pytest.raises(ConfigurationMissingError):
            await create_backup(state)
    finally:
        await shutdown_engine_state(state)


@pytest.mark.asyncio
async def test_remote_mode_removes_staging_copy(
    engine: EngineState,
    backup_dir: Path,
    remote_values: dict,
):
    engine["store"].set_remote_storage_config(remote_values)
    set_storage(engine, "remote")

    artifact = await create_backup(engine)

    assert artifact.location is Location.REMOTE
    assert not (backup_dir / artifact.filename).exists()

    listing = await list_all(engine)
    assert [(a.filename, a.location) for a in listing.artifacts] == [
        (artifact.filename, Location.REMOTE)
    ]
    assert listing.stats.remote == 1
    assert listing.stats.local == 0


@pytest.mark.asyncio
async def test_both_mode_keeps_local_copy(
    engine: EngineState,
    backup_dir: Path,
    remote_values: dict,
):
    engine["store"].set_remote_storage_config(remote_values)
    set_storage(engine, "both")

    artifact = await create_backup(engine)

    assert artifact.location is Location.BOTH
    assert (backup_dir / artifact.filename).exists()

    listing = await list_all(engine)
    assert listing.artifacts[0].location is Location.BOTH
    assert listing.stats.to_dict() == {
        "total": 1,
        "local": 1,
        "remote": 1,
        "total_size": artifact.size,
    }


@pytest.mark.asyncio
async def test_remote_mode_without_remote_config_stays_local(
    engine: EngineState,
    backup_dir: Path,
):
    set_storage(engine, "remote")

    artifact = await create_backup(engine)

    assert artifact.location is Location.LOCAL
    assert (backup_dir / artifact.filename).exists()


@pytest.mark.asyncio
async def test_both_mode_without_remote_config_stays_local(
    engine: EngineState,
    backup_dir: Path,
):
    set_storage(engine, "both")
    assert not engine["store"].get_remote_storage_config().is_configured

    artifact = await create_backup(engine)

    assert artifact.location is Location.LOCAL
    assert (backup_dir / artifact.filename).exists()

    listing = await list_all(engine)
    assert [a.filename for a in listing.artifacts] == [artifact.filename]
    assert listing.artifacts[0].location is Location.LOCAL
    assert not listing.partial


@pytest.mark.asyncio
async def test_both_mode_with_remote_down(engine: EngineState, backup_dir: Path):
    """Upload fails loudly but the local copy survives and is still listed."""
    engine["store"].set_remote_storage_config(
        {
            "access_key_id": "testing",
            "secret_access_key": "testing",
            "bucket": "unreachable",
            "endpoint": "http://127.0.0.1:9",
        }
    )
    set_storage(engine, "both")

    with pytest.raises(RemoteUploadError):
        await create_backup(engine)

    files = list(backup_dir.iterdir())
    assert len(files) == 1

    listing = await list_all(engine)

    assert listing.partial
    assert any(e.startswith("remote:") for e in listing.errors)
    assert [a.filename for a in listing.artifacts] == [files[0].name]
    assert listing.artifacts[0].location is Location.LOCAL


# =============================================================================
# Delete
# =============================================================================


@pytest.mark.asyncio
async def test_delete_backup(engine: EngineState, backup_dir: Path):
    artifact = await create_backup(engine)

    result = await delete_backup(engine, artifact.filename)

    assert result.deleted_local
    assert not result.deleted_remote
    assert not (backup_dir / artifact.filename).exists()

    with pytest.raises(BackupNotFoundError):
        await delete_backup(engine, artifact.filename)


@pytest.mark.asyncio
async def test_delete_both_archives(engine: EngineState, backup_dir: Path, remote_values: dict):
    engine["store"].set_remote_storage_config(remote_values)
    set_storage(engine, "both")
    artifact = await create_backup(engine)

    result = await delete_backup(engine, artifact.filename)

    assert result.deleted_local and result.deleted_remote
    assert (await list_all(engine)).artifacts == []


@pytest.mark.asyncio
async def test_delete_path_traversal_stays_in_directory(
    engine: EngineState,
    temp_dir: Path,
):
    outside = temp_dir / "backup_outside.sql"
    outside.write_text("not a managed backup")

    with pytest.raises(BackupNotFoundError):
        await delete_backup(engine, "../backup_outside.sql")

    assert outside.exists()


# =============================================================================
# Restore
# =============================================================================


@pytest.mark.asyncio
async def test_restore_plain_drops_schema_first(engine: EngineState, fake_pg_tools: Path):
    artifact = await create_backup(engine)
    fake_pg_tools.unlink()

    outcome = await restore_backup(engine, artifact.filename)

    assert outcome.source is Location.LOCAL
    assert outcome.format is ArchiveFormat.PLAIN
    assert "psql: done" in outcome.output

    drop, replay = read_tool_log(fake_pg_tools)
    assert drop.startswith("psql ") and "DROP SCHEMA IF EXISTS public CASCADE" in drop
    assert replay.startswith("psql ")
    assert replay.split(" PGSSLMODE=")[0].endswith(artifact.filename)
    assert engine["total_restored"] == 1


@pytest.mark.asyncio
async def test_restore_uses_content_not_extension(
    engine: EngineState,
    backup_dir: Path,
    fake_pg_tools: Path,
):
    """A custom archive saved with a .sql name still goes through pg_restore."""
    backup_dir.mkdir(parents=True, exist_ok=True)
    (backup_dir / "backup_mislabelled.sql").write_bytes(b"PGDMP\x01\x0e fake")

    outcome = await restore_backup(engine, "backup_mislabelled.sql")

    assert outcome.format is ArchiveFormat.CUSTOM
    (line,) = read_tool_log(fake_pg_tools)
    assert line.startswith("pg_restore ")
    assert "--no-owner" in line


@pytest.mark.asyncio
async def test_restore_from_remote_cleans_up_download(
    engine: EngineState,
    remote_values: dict,
    fake_pg_tools: Path,
    monkeypatch: pytest.MonkeyPatch,
    temp_dir: Path,
):
    engine["store"].set_remote_storage_config(remote_values)
    set_storage(engine, "remote")
    artifact = await create_backup(engine, format_override="dump")

    scratch = temp_dir / "scratch"
    scratch.mkdir()
    monkeypatch.setattr("tempfile.tempdir", str(scratch))

    outcome = await restore_backup(engine, artifact.filename)

    assert outcome.source is Location.REMOTE
    assert outcome.format is ArchiveFormat.CUSTOM
    assert list(scratch.iterdir()) == []


@pytest.mark.asyncio
async def test_restore_failure_cleans_up_download(
    engine: EngineState,
    remote_values: dict,
    monkeypatch: pytest.MonkeyPatch,
    temp_dir: Path,
):
    engine["store"].set_remote_storage_config(remote_values)
    set_storage(engine, "remote")
    artifact = await create_backup(engine)

    scratch = temp_dir / "scratch"
    scratch.mkdir()
    monkeypatch.setattr("tempfile.tempdir", str(scratch))
    monkeypatch.setenv("FAKE_PG_FAIL", "1")

    with pytest.raises(RestoreError) as exc_info:
        await restore_backup(engine, artifact.filename)

    assert exc_info.value.details["reason"] == "failed"
    assert list(scratch.iterdir()) == []


@pytest.mark.asyncio
async def test_restore_missing_backup(engine: EngineState, remote_values: dict):
    with pytest.raises(BackupNotFoundError):
        await restore_backup(engine, "backup_nothing_here.sql")

    engine["store"].set_remote_storage_config(remote_values)

    with pytest.raises(BackupNotFoundError):
        await restore_backup(engine, "backup_nothing_here.sql")


# =============================================================================
# Retention
# =============================================================================


@pytest.mark.asyncio
async def test_retention_boundary(engine: EngineState, backup_dir: Path):
    """Only artifacts strictly older than the cutoff are removed."""
    now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    set_storage(engine, "local", retention_days=7)
    backup_dir.mkdir(parents=True, exist_ok=True)

    expired = backup_dir / "backup_shop_expired.sql"
    kept = backup_dir / "backup_shop_kept.sql"
    expired.write_text("old")
    kept.write_text("new")
    _age_file(expired, now - timedelta(days=7, seconds=1))
    _age_file(kept, now - timedelta(days=7) + timedelta(minutes=1))

    deleted = await apply_retention_policy(engine, now=now)

    assert deleted == 1
    assert not expired.exists()
    assert kept.exists()


@pytest.mark.asyncio
async def test_retention_is_idempotent(engine: EngineState, backup_dir: Path):
    now = datetime(2026, 3, 1, tzinfo=UTC)
    backup_dir.mkdir(parents=True, exist_ok=True)
    for i in range(3):
        path = backup_dir / f"backup_shop_{i}.sql"
        path.write_text("x")
        _age_file(path, now - timedelta(days=30))

    assert await apply_retention_policy(engine, now=now) == 3
    assert await apply_retention_policy(engine, now=now) == 0
    assert engine["total_retention_deleted"] == 3


@pytest.mark.asyncio
async def test_retention_counts_both_copies_once(
    engine: EngineState,
    remote_values: dict,
):
    engine["store"].set_remote_storage_config(remote_values)
    set_storage(engine, "both", retention_days=1)
    await create_backup(engine)

    later = datetime.now(UTC) + timedelta(days=8)
    deleted = await apply_retention_policy(engine, now=later)

    assert deleted == 1
    assert (await list_all(engine)).artifacts == []


# =============================================================================
# Scheduled run
# =============================================================================


@pytest.mark.asyncio
async def test_backup_cycle(engine: EngineState, backup_dir: Path):
    backup_dir.mkdir(parents=True, exist_ok=True)
    old = backup_dir / "backup_shop_old.sql"
    old.write_text("x")
    _age_file(old, datetime.now(UTC) - timedelta(days=30))

    result = await run_backup_cycle(engine)

    assert result.error is None
    assert result.artifact is not None
    assert result.retention_deleted == 1
    assert len(result.run_id) == 26
    assert [p.name for p in backup_dir.iterdir()] == [result.artifact.filename]


@pytest.mark.asyncio
async def test_backup_cycle_failure_skips_retention(
    engine: EngineState,
    backup_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
):
    backup_dir.mkdir(parents=True, exist_ok=True)
    old = backup_dir / "backup_shop_old.sql"
    old.write_text("x")
    _age_file(old, datetime.now(UTC) - timedelta(days=30))
    monkeypatch.setenv("FAKE_PG_FAIL", "1")

    result = await run_backup_cycle(engine)

    assert result.artifact is None
    assert result.error
    assert result.retention_deleted == 0
    assert old.exists()
