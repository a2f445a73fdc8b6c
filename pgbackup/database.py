# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""Connection test against the configured PostgreSQL database."""

import ssl
from typing import Any, Dict

import asyncpg
import structlog

from pgbackup.config import DatabaseConfig, is_local_host
from pgbackup.exceptions import DatabaseConnectionError

logger = structlog.get_logger()


def ssl_context_for_host(host: str, cluster_host: str | None = None) -> ssl.SSLContext | bool:
    """
    TLS settings for asyncpg.

    Local and in-cluster hosts connect without TLS. Remote hosts require
    TLS but do not verify the certificate, matching sslmode=require.
    """
    if is_local_host(host, cluster_host):
        return False

    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


async def check_connection(
    db: DatabaseConfig,
    cluster_host: str | None = None,
    timeout: float = 5.0,
) -> Dict[str, Any]:
    """
    Open a connection and ask the server for its time and version.

    Returns:
        {"server_time": ISO timestamp, "version": server version string}

    Raises:
        DatabaseConnectionError: If the connection or query fails
    """
    try:
        conn = await asyncpg.connect(
            host=db.host,
            port=db.port,
            user=db.user,
            password=db.password or None,
            database=db.database,
            ssl=ssl_context_for_host(db.host, cluster_host),
            timeout=timeout,
        )
    except Exception as e:
        logger.warning("database_connection_failed", host=db.host, database=db.database, error=str(e))
        raise DatabaseConnectionError(
            f"Database connection failed: {e}",
            details={"host": db.host, "port": db.port, "database": db.database},
        ) from e

    try:
        row = await conn.fetchrow("SELECT now() AS server_time, version() AS version")
    except Exception as e:
        raise DatabaseConnectionError(
            f"Database query failed: {e}",
            details={"host": db.host, "database": db.database},
        ) from e
    finally:
        await conn.close()

    logger.info("database_connection_ok", host=db.host, database=db.database)

    return {
        "server_time": row["server_time"].isoformat(),
        "version": row["version"],
    }
