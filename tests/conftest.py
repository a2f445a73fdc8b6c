# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for pgbackup tests.

Provides a moto S3 server, stand-in PostgreSQL command-line tools and
engine state helpers.
"""

import os
import socket
import stat
import tempfile
import uuid
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, Generator

import pytest
import pytest_asyncio

from pgbackup.config import ConfigMode, ServiceSettings
from pgbackup.core import EngineState, initialize_engine_state, shutdown_engine_state
from pgbackup.store import ConfigurationStore

# Stand-ins for pg_dump / psql / pg_restore. Each appends its arguments and
# PGSSLMODE to $PGBACKUP_FAKE_LOG. FAKE_PG_FAIL=1 makes them fail after
# writing a partial file; FAKE_PG_SLEEP makes them hang.
FAKE_PG_DUMP = """#!/bin/sh
echo "pg_dump $* PGSSLMODE=$PGSSLMODE" >> "$PGBACKUP_FAKE_LOG"
out=""
fmt="p"
while [ $# -gt 0 ]; do
  case "$1" in
    -f) out="$2"; shift ;;
    -F) fmt="$2"; shift ;;
  esac
  shift
done
if [ -n "$FAKE_PG_SLEEP" ]; then
  echo "partial" > "$out"
  exec sleep "$FAKE_PG_SLEEP"
fi
if [ "$FAKE_PG_FAIL" = "1" ]; then
  echo "partial" > "$out"
  echo "pg_dump: error: connection to server failed" >&2
  exit 1
fi
if [ "$fmt" = "c" ]; then
  printf '%s\\n' 'PGDMP fake custom archive' > "$out"
else
  printf '%s\\n' '-- PostgreSQL database dump' 'CREATE TABLE t (id int);' > "$out"
fi
"""

FAKE_RESTORE_TOOL = """#!/bin/sh
echo "{name} $* PGSSLMODE=$PGSSLMODE" >> "$PGBACKUP_FAKE_LOG"
if [ -n "$FAKE_PG_SLEEP" ]; then
  exec sleep "$FAKE_PG_SLEEP"
fi
if [ "$FAKE_PG_FAIL" = "1" ]; then
  echo "{name}: error: restore failed" >&2
  exit 1
fi
echo "{name}: done"
"""


def _write_script(path: Path, content: str) -> None:
    path.write_text(content)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def read_tool_log(log_path: Path) -> list[str]:
    if not log_path.exists():
        return []
    return log_path.read_text().splitlines()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_pg_tools(temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """
    Put fake pg_dump, psql and pg_restore first on PATH.

    Returns:
        Path of the log file the fake tools append to
    """
    bin_dir = temp_dir / "bin"
    bin_dir.mkdir()

    _write_script(bin_dir / "pg_dump", FAKE_PG_DUMP)
    for name in ("psql", "pg_restore"):
        _write_script(bin_dir / name, FAKE_RESTORE_TOOL.replace("{name}", name))

    log_path = temp_dir / "tools.log"
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    monkeypatch.setenv("PGBACKUP_FAKE_LOG", str(log_path))
    monkeypatch.delenv("FAKE_PG_FAIL", raising=False)
    monkeypatch.delenv("FAKE_PG_SLEEP", raising=False)
    return log_path


@pytest.fixture(scope="session")
def s3_endpoint() -> Generator[str, None, None]:
    """Run a moto S3 server reachable over HTTP."""
    from moto.server import ThreadedMotoServer

    port = _free_port()
    server = ThreadedMotoServer(ip_address="127.0.0.1", port=port, verbose=False)
    server.start()
    yield f"http://127.0.0.1:{port}"
    server.stop()


@pytest_asyncio.fixture
async def s3_bucket(s3_endpoint: str) -> str:
    """Create a fresh bucket on the moto server."""
    from aiobotocore.session import get_session

    bucket = f"pgbackup-test-{uuid.uuid4().hex[:12]}"
    session = get_session()

    async with session.create_client(
        "s3",
        region_name="us-east-1",
        endpoint_url=s3_endpoint,
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    ) as client:
        await client.create_bucket(Bucket=bucket)

    return bucket


@pytest.fixture
def remote_values(s3_endpoint: str, s3_bucket: str) -> Dict[str, Any]:
    """Runtime remote storage settings pointing at the moto bucket."""
    return {
        "access_key_id": "testing",
        "secret_access_key": "testing",
        "region": "us-east-1",
        "bucket": s3_bucket,
        "prefix": "db-backups",
        "endpoint": s3_endpoint,
    }


@pytest.fixture
def backup_dir(temp_dir: Path) -> Path:
    return temp_dir / "backups"


@pytest.fixture
def runtime_store(backup_dir: Path) -> ConfigurationStore:
    """A runtime-mutable store with a database and a local-only policy."""
    store = ConfigurationStore(mode=ConfigMode.RUNTIME)
    store.set_database_config(
        {
            "host": "localhost",
            "port": 5432,
            "user": "postgres",
            "password": "secret",
            "database": "shop",
        }
    )
    store.set_backup_policy({"local_path": str(backup_dir)})
    return store


@pytest_asyncio.fixture
async def engine(
    runtime_store: ConfigurationStore,
    fake_pg_tools: Path,
) -> AsyncGenerator[EngineState, None]:
    """Engine state wired to the fake tools and a runtime store."""
    state = await initialize_engine_state(
        store=runtime_store,
        settings=ServiceSettings(tool_timeout=30.0),
    )
    yield state
    await shutdown_engine_state(state)


def set_storage(state: EngineState, storage_mode: str, **policy: Any) -> None:
    """Change the storage mode of a runtime engine, keeping its directory."""
    current = state["store"].get_backup_policy().to_dict()
    current.update(policy)
    current["storage_mode"] = storage_mode
    state["store"].set_backup_policy(current)
