# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgbackup Remote Archive - Backups stored in an S3-compatible bucket.

Objects live under <prefix>/backup_*.{sql,dump}. Works with AWS S3 and
with MinIO, Supabase Storage, DigitalOcean Spaces and similar services
through a custom endpoint and path-style addressing.
"""

import asyncio
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any, Tuple

import aiofiles
import structlog
from aiobotocore.config import AioConfig
from aiobotocore.session import AioSession, get_session
from botocore.exceptions import ClientError

from pgbackup.archive.types import (
    ArchiveListing,
    BackupArtifact,
    Location,
    sanitize_filename,
)
from pgbackup.config import ArchiveFormat, RemoteStorageConfig
from pgbackup.errors import explain_remote_not_configured
from pgbackup.exceptions import (
    RemoteDeleteError,
    RemoteDownloadError,
    RemoteNotConfiguredError,
    RemoteUploadError,
)

logger = structlog.get_logger()

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


class RemoteClientCache:
    """
    One S3 client, reused until the connection settings change.

    The client is keyed by (access_key_id, region, endpoint,
    force_path_style). A different key closes the old client and opens a
    new one before the next operation.
    """

    def __init__(self, session: AioSession | None = None):
        self._session = session or get_session()
        self._lock = asyncio.Lock()
        self._stack: AsyncExitStack | None = None
        self._client: Any = None
        self._signature: Tuple[Any, ...] | None = None

    async def get_client(self, config: RemoteStorageConfig) -> Any:
        async with self._lock:
            signature = config.client_signature
            if self._client is not None and signature == self._signature:
                return self._client

            await self._close_locked()

            client_config = None
            if config.force_path_style:
                client_config = AioConfig(s3={"addressing_style": "path"})

            stack = AsyncExitStack()
            self._client = await stack.enter_async_context(
                self._session.create_client(
                    "s3",
                    region_name=config.region,
                    aws_access_key_id=config.access_key_id,
                    aws_secret_access_key=config.secret_access_key,
                    endpoint_url=config.endpoint,
                    config=client_config,
                )
            )
            self._stack = stack
            self._signature = signature

            logger.debug(
                "s3_client_created",
                region=config.region,
                endpoint=config.endpoint,
                force_path_style=config.force_path_style,
            )
            return self._client

    async def close(self) -> None:
        async with self._lock:
            await self._close_locked()

    async def _close_locked(self) -> None:
        if self._stack is not None:
            await self._stack.aclose()
        self._stack = None
        self._client = None
        self._signature = None


def is_remote_configured(config: RemoteStorageConfig) -> bool:
    return config.is_configured


def _require_configured(config: RemoteStorageConfig) -> None:
    if not config.is_configured:
        raise RemoteNotConfiguredError(explain_remote_not_configured())


def _is_not_found(error: ClientError) -> bool:
    code = str(error.response.get("Error", {}).get("Code", ""))
    return code in _NOT_FOUND_CODES


async def list_remote_backups(
    cache: RemoteClientCache,
    config: RemoteStorageConfig,
) -> ArchiveListing:
    """
    List backups under the configured prefix.

    Never raises. An unconfigured remote is an empty, successful listing;
    any S3 failure is logged and returned with ok=False.
    """
    if not config.is_configured:
        return ArchiveListing()

    list_prefix = config.object_key("backup_")
    artifacts = []

    try:
        s3_client = await cache.get_client(config)
        paginator = s3_client.get_paginator("list_objects_v2")

        async for page in paginator.paginate(Bucket=config.bucket, Prefix=list_prefix):
            for obj in page.get("Contents", []):
                filename = obj["Key"].rsplit("/", 1)[-1]
                fmt = ArchiveFormat.for_filename(filename)
                if fmt is None:
                    continue
                artifacts.append(
                    BackupArtifact(
                        filename=filename,
                        size=obj.get("Size", 0),
                        created_at=obj["LastModified"],
                        format=fmt,
                        location=Location.REMOTE,
                    )
                )
    except Exception as e:
        logger.error(
            "remote_listing_failed",
            bucket=config.bucket,
            prefix=list_prefix,
            error=str(e),
        )
        return ArchiveListing(ok=False, error=str(e))

    return ArchiveListing(artifacts=artifacts)


async def upload_backup(
    cache: RemoteClientCache,
    config: RemoteStorageConfig,
    local_path: Path,
    filename: str,
) -> str:
    """
    Upload a local backup file.

    Returns:
        The object key written

    Raises:
        RemoteNotConfiguredError: If credentials or bucket are missing
        RemoteUploadError: If the upload fails
    """
    _require_configured(config)
    key = config.object_key(sanitize_filename(filename))

    try:
        async with aiofiles.open(local_path, "rb") as f:
            body = await f.read()

        s3_client = await cache.get_client(config)
        await s3_client.put_object(
            Bucket=config.bucket,
            Key=key,
            Body=body,
            ContentType="application/sql",
        )
    except Exception as e:
        raise RemoteUploadError(
            f"Failed to upload backup to remote storage: {e}",
            details={"filename": filename, "bucket": config.bucket, "key": key},
        ) from e

    logger.info("remote_backup_uploaded", key=key, bucket=config.bucket, size=len(body))
    return key


async def download_backup(
    cache: RemoteClientCache,
    config: RemoteStorageConfig,
    filename: str,
    destination: Path,
) -> Path:
    """
    Download a backup to a local path.

    Raises:
        RemoteNotConfiguredError: If credentials or bucket are missing
        RemoteDownloadError: If the download fails; details["not_found"]
            is True when the object does not exist
    """
    _require_configured(config)
    key = config.object_key(sanitize_filename(filename))

    try:
        s3_client = await cache.get_client(config)
        response = await s3_client.get_object(Bucket=config.bucket, Key=key)
        async with response["Body"] as stream:
            data = await stream.read()

        async with aiofiles.open(destination, "wb") as f:
            await f.write(data)
    except ClientError as e:
        raise RemoteDownloadError(
            f"Failed to download backup from remote storage: {e}",
            details={"filename": filename, "key": key, "not_found": _is_not_found(e)},
        ) from e
    except Exception as e:
        raise RemoteDownloadError(
            f"Failed to download backup from remote storage: {e}",
            details={"filename": filename, "key": key, "not_found": False},
        ) from e

    logger.info("remote_backup_downloaded", key=key, destination=str(destination))
    return destination


async def delete_remote_backup(
    cache: RemoteClientCache,
    config: RemoteStorageConfig,
    filename: str,
) -> None:
    """
    Delete a backup object.

    S3 answers a delete of an absent key with success, so existence is
    checked first and a missing object is reported as a failure.

    Raises:
        RemoteNotConfiguredError: If credentials or bucket are missing
        RemoteDeleteError: If the object is missing or the delete fails
    """
    _require_configured(config)
    key = config.object_key(sanitize_filename(filename))

    try:
        s3_client = await cache.get_client(config)
        await s3_client.head_object(Bucket=config.bucket, Key=key)
        await s3_client.delete_object(Bucket=config.bucket, Key=key)
    except ClientError as e:
        raise RemoteDeleteError(
            f"Failed to delete backup from remote storage: {e}",
            details={"filename": filename, "key": key, "not_found": _is_not_found(e)},
        ) from e
    except Exception as e:
        raise RemoteDeleteError(
            f"Failed to delete backup from remote storage: {e}",
            details={"filename": filename, "key": key, "not_found": False},
        ) from e

    logger.info("remote_backup_deleted", key=key, bucket=config.bucket)
