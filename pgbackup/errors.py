# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for pgbackup.

These helpers centralize wording for common configuration errors so that
the environment loader, the runtime setters and the HTTP layer all present
consistent, actionable messages.
"""


def explain_missing_database_config() -> str:
    """
    Explain that runtime-mutable mode has no database settings yet.
    """

    return (
        "Database configuration not set. "
        "Runtime-mutable mode does not fall back to environment variables; "
        "set the database configuration first."
    )


def explain_setter_in_static_mode(what: str) -> str:
    """
    Explain that runtime setters are rejected in static mode.
    """

    return (
        f"Cannot change {what} while in static mode. "
        "Switch to runtime-mutable mode first."
    )


def explain_invalid_config_mode(value: str | None) -> str:
    """
    Explain that a configuration mode value is unknown.
    """

    return (
        f"Invalid configuration mode: {value!r}. "
        "Expected 'static' (alias 'env') or 'runtime-mutable' (alias 'manual')."
    )


def explain_invalid_int_env(name: str, value: str | None) -> str:
    """
    Explain that an integer environment variable could not be parsed.
    """

    return f"Invalid {name} value: {value!r}. It must be an integer."


def explain_invalid_retention_days(value: object) -> str:
    """
    Explain that a retention period is out of range.
    """

    return (
        f"Invalid retention days value: {value!r}. "
        "It must be an integer number of days between 1 and 365."
    )


def explain_invalid_storage_mode(value: object) -> str:
    """
    Explain that a storage mode is unknown.
    """

    return (
        f"Invalid storage mode: {value!r}. "
        "Expected one of: 'local', 'remote', or 'both'."
    )


def explain_invalid_format(value: object) -> str:
    """
    Explain that a backup format is unknown.
    """

    return f"Invalid backup format: {value!r}. Expected 'sql' or 'dump'."


def explain_invalid_cron(value: object) -> str:
    """
    Explain that a schedule is not a five-field cron expression.
    """

    return (
        f"Invalid cron schedule: {value!r}. "
        "Expected five fields: minute hour day-of-month month day-of-week "
        "(e.g. '0 2 * * *')."
    )


def explain_invalid_backup_filename(value: object) -> str:
    """
    Explain that a filename does not look like one of our backups.
    """

    return (
        f"Invalid backup filename: {value!r}. "
        "Expected backup_<name>.sql or backup_<name>.dump."
    )


def explain_remote_not_configured() -> str:
    """
    Explain that object storage needs credentials and a bucket.
    """

    return (
        "Remote storage is not configured. "
        "Set the access key ID, secret access key and bucket first."
    )
