# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgbackup Tools - Running pg_dump, pg_restore and psql.

Commands are built as argument lists and executed without a shell. The
password travels in PGPASSWORD, never on the command line. Every run has
a deadline; on expiry the process is killed and reaped.
"""

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Sequence, Type

import structlog

from pgbackup.config import ArchiveFormat, DatabaseConfig, ssl_mode_for_host
from pgbackup.exceptions import PGBackupError

logger = structlog.get_logger()


@dataclass
class ToolResult:
    """Output of a successful tool run."""

    tool: str
    returncode: int
    stdout: str
    stderr: str
    duration_seconds: float


def tool_env(db: DatabaseConfig, cluster_host: str | None = None) -> Dict[str, str]:
    """Process environment for the PostgreSQL CLI tools."""
    env = dict(os.environ)
    env["PGPASSWORD"] = db.password
    env["PGSSLMODE"] = ssl_mode_for_host(db.host, cluster_host)
    return env


def _connection_args(db: DatabaseConfig) -> List[str]:
    return [
        "--no-password",
        "-h", db.host,
        "-p", str(db.port),
        "-U", db.user,
        "-d", db.database,
    ]


def build_dump_command(db: DatabaseConfig, output_path: Path, fmt: ArchiveFormat) -> List[str]:
    """
    pg_dump arguments for one backup.

    Example (plain format, schema "app", one excluded table):
        pg_dump --no-password -h db -p 5432 -U app -d shop -n app
                --exclude-table=app.audit_log -F p -f /backups/backup_shop_....sql
    """
    args = ["pg_dump", *_connection_args(db)]

    if db.schema:
        args.extend(["-n", db.schema])

    for table in db.qualified_exclude_tables:
        args.append(f"--exclude-table={table}")

    if fmt is ArchiveFormat.CUSTOM:
        args.extend(["-F", fmt.dump_flag, "-v", "-f", str(output_path)])
    else:
        args.extend(["-F", fmt.dump_flag, "-f", str(output_path)])

    return args


def build_restore_commands(
    db: DatabaseConfig,
    input_path: Path,
    fmt: ArchiveFormat,
) -> List[List[str]]:
    """
    Commands to restore one backup, run in order.

    Plain SQL is replayed with psql after the target schema is dropped and
    recreated. Custom archives go through pg_restore with --clean.
    """
    if fmt is ArchiveFormat.CUSTOM:
        return [
            [
                "pg_restore",
                *_connection_args(db),
                "-c",
                "-v",
                "--no-owner",
                "-F", fmt.dump_flag,
                str(input_path),
            ]
        ]

    schema = db.schema or "public"
    return [
        [
            "psql",
            *_connection_args(db),
            "-c",
            f"DROP SCHEMA IF EXISTS {schema} CASCADE; CREATE SCHEMA {schema};",
        ],
        ["psql", *_connection_args(db), "-f", str(input_path)],
    ]


async def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass
    await process.wait()


async def run_tool(
    args: Sequence[str],
    *,
    env: Dict[str, str],
    timeout: float,
    error_cls: Type[PGBackupError],
) -> ToolResult:
    """
    Run one external tool to completion.

    Args:
        args: Program and arguments
        env: Process environment (see tool_env)
        timeout: Seconds before the process is killed
        error_cls: Exception raised on failure

    Returns:
        ToolResult for a zero exit status

    Raises:
        error_cls: With details["reason"] set to "timeout" or "failed"
    """
    tool = args[0]
    loop = asyncio.get_running_loop()
    started = loop.time()

    logger.debug("tool_started", tool=tool, timeout=timeout)

    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
    except OSError as e:
        raise error_cls(
            f"Failed to start {tool}: {e}",
            details={"tool": tool, "reason": "failed", "stderr": str(e)},
        ) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(process)
        logger.error("tool_timed_out", tool=tool, timeout=timeout)
        raise error_cls(
            f"{tool} did not finish within {timeout} seconds",
            details={"tool": tool, "reason": "timeout", "timeout": timeout},
        )
    except asyncio.CancelledError:
        await _kill(process)
        raise

    duration = loop.time() - started
    stderr_text = stderr.decode(errors="replace")

    if process.returncode != 0:
        logger.error(
            "tool_failed",
            tool=tool,
            returncode=process.returncode,
            stderr=stderr_text[-2000:],
        )
        raise error_cls(
            f"{tool} exited with status {process.returncode}: {stderr_text.strip()}",
            details={
                "tool": tool,
                "reason": "failed",
                "returncode": process.returncode,
                "stderr": stderr_text,
            },
        )

    logger.debug("tool_finished", tool=tool, duration_seconds=round(duration, 3))

    return ToolResult(
        tool=tool,
        returncode=process.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr_text,
        duration_seconds=duration,
    )
