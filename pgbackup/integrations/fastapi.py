# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgbackup FastAPI Integration - HTTP API for the backup manager.

This module provides:
- Lifespan management (engine state, scheduler, S3 client cleanup)
- Backup, restore, retention and configuration endpoints
- Scheduler control and health checks

Request bodies accept both snake_case and camelCase field names.
"""

from contextlib import asynccontextmanager
from datetime import datetime, UTC
from typing import Any, AsyncIterator, Dict, List, Literal

import structlog
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from pgbackup.archive.types import is_backup_filename, sanitize_filename
from pgbackup.config import ServiceSettings
from pgbackup.core import (
    EngineState,
    apply_retention_policy,
    create_backup,
    delete_backup,
    discard_fetched,
    fetch_backup_copy,
    get_engine_metrics,
    initialize_engine_state,
    list_all,
    restore_backup,
    shutdown_engine_state,
)
from pgbackup.database import check_connection
from pgbackup.errors import explain_invalid_backup_filename
from pgbackup.exceptions import (
    BackupNotFoundError,
    ConfigurationError,
    ConfigurationMissingError,
    InvalidCronExpressionError,
    InvalidModeOperationError,
    PGBackupError,
)
from pgbackup.scheduler import BackupScheduler
from pgbackup.store import ConfigurationStore

logger = structlog.get_logger()

_CLIENT_ERRORS = (
    ConfigurationError,
    ConfigurationMissingError,
    InvalidModeOperationError,
    InvalidCronExpressionError,
)


# =============================================================================
# Request bodies
# =============================================================================


def _field(default: Any, *names: str) -> Any:
    return Field(default=default, validation_alias=AliasChoices(*names))


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CreateBackupRequest(_Body):
    format: Literal["sql", "dump"] | None = None


class RestoreRequest(_Body):
    filename: str


class ModeRequest(_Body):
    mode: str


class SchedulerRequest(_Body):
    schedule: str | None = None


class DatabaseConfigRequest(_Body):
    host: str | None = None
    port: int | str | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    schema_name: str | None = _field(None, "schema", "schema_name")
    exclude_tables: str | List[str] | None = _field(
        None, "exclude_tables", "excludeTables"
    )

    def to_values(self) -> Dict[str, Any]:
        values = self.model_dump()
        values["schema"] = values.pop("schema_name")
        return values


class BackupPolicyRequest(_Body):
    auto_enabled: bool | str | None = _field(None, "auto_enabled", "autoEnabled", "auto")
    schedule: str | None = None
    retention_days: int | str | None = _field(
        None, "retention_days", "retentionDays"
    )
    storage_mode: str | None = _field(None, "storage_mode", "storageMode", "storage")
    local_path: str | None = _field(None, "local_path", "localPath")
    format: str | None = None


class RemoteStorageRequest(_Body):
    access_key_id: str | None = _field(None, "access_key_id", "accessKeyId")
    secret_access_key: str | None = _field(
        None, "secret_access_key", "secretAccessKey"
    )
    region: str | None = None
    bucket: str | None = None
    prefix: str | None = None
    endpoint: str | None = None
    force_path_style: bool | None = _field(
        None, "force_path_style", "forcePathStyle", "s3ForcePathStyle"
    )


# =============================================================================
# Error mapping
# =============================================================================


def _status_for(error: PGBackupError) -> int:
    if isinstance(error, BackupNotFoundError):
        return 404
    if isinstance(error, _CLIENT_ERRORS):
        return 400
    return 500


def register_error_handlers(app: FastAPI) -> None:
    """
    Map pgbackup exceptions and request validation failures to JSON responses.

    Must run before the application starts serving: the handler table is
    frozen on the first request.
    """

    @app.exception_handler(PGBackupError)
    async def handle_pgbackup_error(request: Request, exc: PGBackupError) -> JSONResponse:
        status = _status_for(exc)
        state = getattr(request.app.state, "pgbackup_state", None)
        production = state is not None and state["settings"].is_production

        if status >= 500:
            logger.error(
                "request_failed",
                path=request.url.path,
                error_type=type(exc).__name__,
                error=exc.message,
            )
            if production:
                return JSONResponse(
                    status_code=status,
                    content={"success": False, "message": "Internal server error"},
                )

        return JSONResponse(
            status_code=status,
            content={
                "success": False,
                "message": exc.message,
                "error_type": type(exc).__name__,
                "details": exc.details,
            },
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = [
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "message": "Request validation failed",
                "details": {"errors": errors},
            },
        )


def _checked_filename(filename: str) -> str:
    name = sanitize_filename(filename)
    if not is_backup_filename(name):
        raise HTTPException(
            status_code=400,
            detail=explain_invalid_backup_filename(filename),
        )
    return name


# =============================================================================
# Routes
# =============================================================================


def register_routes(
    app: FastAPI,
    state: EngineState,
    scheduler: BackupScheduler,
) -> None:
    """
    Register the backup manager endpoints on a FastAPI app.

    Args:
        app: FastAPI application
        state: Engine state
        scheduler: Scheduler controlling periodic backups
    """
    store = state["store"]
    settings = state["settings"]

    app.state.pgbackup_state = state
    app.state.pgbackup_scheduler = scheduler
    register_error_handlers(app)

    @app.get("/health")
    async def health_check() -> dict:
        return {
            "status": "ok",
            "timestamp": datetime.now(UTC).isoformat(),
            "mode": store.mode.value,
            "scheduler": scheduler.status(),
            "metrics": get_engine_metrics(state),
        }

    # ----- Backups -----------------------------------------------------------

    @app.get("/api/backups")
    async def list_backups() -> dict:
        listing = await list_all(state)
        return {
            "success": True,
            "backups": [artifact.to_dict() for artifact in listing.artifacts],
            "stats": listing.stats.to_dict(),
            "partial": listing.partial,
            "errors": listing.errors,
        }

    @app.post("/api/backups", status_code=201)
    async def create_backup_endpoint(body: CreateBackupRequest | None = None) -> dict:
        """Create a backup now, optionally overriding the configured format."""
        artifact = await create_backup(state, format_override=body.format if body else None)
        return {
            "success": True,
            "message": "Backup created successfully",
            "backup": artifact.to_dict(),
        }

    @app.delete("/api/backups/{filename}")
    async def delete_backup_endpoint(filename: str) -> dict:
        result = await delete_backup(state, _checked_filename(filename))
        return {
            "success": True,
            "message": "Backup deleted successfully",
            "filename": result.filename,
            "deleted_local": result.deleted_local,
            "deleted_remote": result.deleted_remote,
            "errors": result.errors,
        }

    @app.get("/api/backups/{filename}/download")
    async def download_backup_endpoint(
        filename: str,
        background_tasks: BackgroundTasks,
    ) -> FileResponse:
        """
        Stream a backup file.

        Remote-only backups are downloaded to a temporary directory first,
        which is removed once the response has been sent.
        """
        fetched = await fetch_backup_copy(state, _checked_filename(filename))
        background_tasks.add_task(discard_fetched, fetched)
        return FileResponse(
            fetched.path,
            filename=fetched.filename,
            media_type="application/octet-stream",
        )

    @app.post("/api/restore")
    async def restore_endpoint(body: RestoreRequest) -> dict:
        outcome = await restore_backup(state, _checked_filename(body.filename))
        return {
            "success": True,
            "message": "Database restored successfully",
            "filename": outcome.filename,
            "source": outcome.source.value,
            "format": outcome.format.value,
            "output": outcome.output,
        }

    @app.post("/api/retention")
    async def retention_endpoint() -> dict:
        deleted = await apply_retention_policy(state)
        return {"success": True, "deleted": deleted}

    # ----- Configuration -----------------------------------------------------

    @app.get("/api/config")
    async def get_config() -> dict:
        """Current configuration (sensitive values redacted)."""
        return {"success": True, "config": store.describe()}

    @app.post("/api/config/test")
    async def test_config() -> dict:
        db = store.get_database_config()
        result = await check_connection(db, settings.cluster_db_host)
        return {
            "success": True,
            "message": "Database connection successful",
            **result,
        }

    @app.get("/api/config/mode")
    async def get_mode() -> dict:
        return {"success": True, "mode": store.mode.value}

    @app.post("/api/config/mode")
    async def set_mode(body: ModeRequest) -> dict:
        mode = store.set_mode(body.mode)
        return {"success": True, "mode": mode.value}

    @app.post("/api/config/reset")
    async def reset_config() -> dict:
        store.reset_runtime_config()
        return {"success": True, "message": "Runtime configuration cleared"}

    @app.post("/api/config/manual/database")
    async def set_database(body: DatabaseConfigRequest) -> dict:
        database = store.set_database_config(body.to_values())
        return {
            "success": True,
            "message": "Database configuration saved",
            "config": database.redacted(),
        }

    @app.post("/api/config/manual/backup")
    async def set_backup_policy(body: BackupPolicyRequest) -> dict:
        policy = store.set_backup_policy(body.model_dump())
        return {
            "success": True,
            "message": "Backup configuration saved",
            "config": policy.to_dict(),
        }

    @app.post("/api/config/manual/s3")
    async def set_remote_storage(body: RemoteStorageRequest) -> dict:
        remote = store.set_remote_storage_config(body.model_dump())
        return {
            "success": True,
            "message": "Remote storage configuration saved",
            "config": remote.redacted(),
        }

    @app.get("/api/storage/config")
    async def get_storage_config() -> dict:
        snapshot = store.snapshot()
        return {
            "success": True,
            "config": {
                "storage_mode": snapshot.policy.storage_mode.value,
                "retention_days": snapshot.policy.retention_days,
                "remote": snapshot.remote.redacted(),
            },
        }

    # ----- Scheduler ---------------------------------------------------------

    @app.get("/api/scheduler")
    async def scheduler_status() -> dict:
        return {"success": True, **scheduler.status()}

    @app.post("/api/scheduler")
    async def start_scheduler(body: SchedulerRequest | None = None) -> dict:
        status = scheduler.start(body.schedule if body else None)
        return {"success": True, "message": "Scheduler started", **status}

    @app.delete("/api/scheduler")
    async def stop_scheduler() -> dict:
        scheduler.stop()
        return {"success": True, "message": "Scheduler stopped", **scheduler.status()}


# =============================================================================
# Application setup
# =============================================================================


@asynccontextmanager
async def pgbackup_lifespan(
    app: FastAPI,
    store: ConfigurationStore | None = None,
    settings: ServiceSettings | None = None,
) -> AsyncIterator[None]:
    """
    Lifespan context manager for FastAPI.

        app = FastAPI(lifespan=lambda app: pgbackup_lifespan(app))

    Args:
        app: FastAPI application
        store: Configuration store (defaults to environment-driven)
        settings: Deployment settings (defaults to environment values)
    """
    logger.info("pgbackup_lifespan_starting")

    state = await initialize_engine_state(store=store, settings=settings)
    scheduler = BackupScheduler(state, timezone=state["settings"].scheduler_timezone)

    register_routes(app, state, scheduler)

    try:
        scheduler.initialize()
    except PGBackupError as e:
        logger.error("scheduler_initialization_failed", error=e.message)

    logger.info("pgbackup_lifespan_started")

    try:
        yield
    finally:
        logger.info("pgbackup_lifespan_stopping")
        scheduler.stop()
        await shutdown_engine_state(state)
        logger.info("pgbackup_lifespan_stopped")


def create_app(
    store: ConfigurationStore | None = None,
    settings: ServiceSettings | None = None,
) -> FastAPI:
    """Build the backup manager application."""
    app = FastAPI(
        title="pgbackup",
        lifespan=lambda app: pgbackup_lifespan(app, store=store, settings=settings),
    )
    register_error_handlers(app)
    return app
