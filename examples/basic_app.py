# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example pgbackup service.

Run with:
    uvicorn examples.basic_app:app --reload

Environment variables (static mode):
    DB_HOST, DB_PORT, DB_USER, DB_PASSWORD, DB_NAME: Database to back up
    BACKUP_AUTO, BACKUP_SCHEDULE: Enable the "0 2 * * *" style schedule
    BACKUP_STORAGE: local | remote | both
    AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY, AWS_S3_BUCKET: Remote archive
    LOG_JSON: 'true' for one JSON object per log line

Set PGBACKUP_CONFIG_MODE=runtime-mutable to configure everything over HTTP
instead, e.g.:

    curl -X POST localhost:8000/api/config/manual/database \\
         -H 'content-type: application/json' \\
         -d '{"host": "db.internal", "user": "app", "password": "...", "database": "shop"}'
    curl -X POST localhost:8000/api/backups
"""

from pgbackup.integrations.fastapi import create_app
from pgbackup.logging_config import configure_logging

configure_logging()

app = create_app()


# ============================================================================
# Endpoints (registered at startup)
# ============================================================================
#
# GET    /health                          - Health, scheduler status, counters
# GET    /api/backups                     - Merged listing of both archives
# POST   /api/backups                     - Create a backup now
# DELETE /api/backups/{filename}          - Delete a backup
# GET    /api/backups/{filename}/download - Download a backup
# POST   /api/restore                     - Restore a backup
# POST   /api/retention                   - Apply the retention policy now
# GET    /api/config                      - Configuration (redacted)
# POST   /api/config/test                 - Test the database connection
# GET    /api/config/mode                 - Current configuration mode
# POST   /api/config/mode                 - Switch configuration mode
# POST   /api/config/reset                - Clear runtime configuration
# POST   /api/config/manual/database      - Set database settings
# POST   /api/config/manual/backup        - Set backup policy
# POST   /api/config/manual/s3            - Set remote storage settings
# GET    /api/storage/config              - Storage mode and remote settings
# GET    /api/scheduler                   - Scheduler status
# POST   /api/scheduler                   - Start the scheduler
# DELETE /api/scheduler                   - Stop the scheduler


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
