# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgbackup Scheduler - Cron-driven backup runs.

Wraps APScheduler's AsyncIOScheduler. Only one scheduled run executes at
a time; a run that fires while the previous one is still going is
skipped. Manual backups started over HTTP are not coordinated with it.
"""

from datetime import datetime, UTC
from typing import Any, Dict

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from pgbackup.config import crontab_trigger
from pgbackup.core import EngineState, run_backup_cycle
from pgbackup.errors import explain_invalid_cron
from pgbackup.exceptions import InvalidCronExpressionError

logger = structlog.get_logger()

JOB_ID = "pgbackup_scheduled"


def _build_trigger(schedule: str, timezone: str) -> CronTrigger:
    try:
        return crontab_trigger(schedule, timezone=timezone)
    except (ValueError, TypeError) as e:
        raise InvalidCronExpressionError(
            explain_invalid_cron(schedule),
            details={"schedule": schedule},
        ) from e


def compute_next_run(
    schedule: str,
    now: datetime | None = None,
    timezone: str = "UTC",
) -> datetime | None:
    """
    Next time a cron schedule fires after now.

    Raises:
        InvalidCronExpressionError: If the schedule cannot be parsed
    """
    trigger = _build_trigger(schedule, timezone)
    return trigger.get_next_fire_time(None, now or datetime.now(UTC))


class BackupScheduler:
    """
    Starts, stops and reports on the periodic backup job.

    Args:
        state: Engine state the job runs against
        timezone: Timezone cron expressions are interpreted in
    """

    def __init__(self, state: EngineState, timezone: str = "UTC"):
        self._state = state
        self._timezone = timezone
        self._scheduler: AsyncIOScheduler | None = None
        self._schedule: str | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self, schedule: str | None = None) -> Dict[str, Any]:
        """
        Start the periodic job, replacing any existing one.

        Args:
            schedule: Cron expression (defaults to the policy's schedule)

        Raises:
            InvalidCronExpressionError: If the schedule is invalid
        """
        if schedule is None:
            schedule = self._state["store"].get_backup_policy().schedule

        trigger = _build_trigger(schedule, self._timezone)

        self.stop()

        scheduler = AsyncIOScheduler(timezone=self._timezone)
        scheduler.add_job(
            self._run_job,
            trigger=trigger,
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )
        scheduler.start()

        self._scheduler = scheduler
        self._schedule = schedule

        status = self.status()
        logger.info("scheduler_started", schedule=schedule, next_run=status["next_run"])
        return status

    def stop(self) -> None:
        if self._scheduler is None:
            return

        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

        self._scheduler = None
        self._schedule = None
        logger.info("scheduler_stopped")

    def status(self) -> Dict[str, Any]:
        next_run = None
        if self.running:
            job = self._scheduler.get_job(JOB_ID)
            next_run_time = getattr(job, "next_run_time", None)
            if next_run_time is not None:
                next_run = next_run_time.isoformat()

        return {
            "running": self.running,
            "schedule": self._schedule,
            "next_run": next_run,
        }

    def initialize(self) -> bool:
        """
        Start the job at boot when automatic backups are enabled.

        Returns:
            True if the scheduler was started
        """
        policy = self._state["store"].get_backup_policy()
        if not policy.auto_enabled:
            logger.info("scheduler_disabled")
            return False

        self.start(policy.schedule)
        return True

    async def _run_job(self) -> None:
        logger.info("scheduled_backup_starting")
        try:
            result = await run_backup_cycle(self._state)
        except Exception as e:
            self._state["last_error"] = str(e)
            logger.error("scheduled_backup_failed", error=str(e))
            return

        logger.info(
            "scheduled_backup_finished",
            run_id=result.run_id,
            ok=result.error is None,
            retention_deleted=result.retention_deleted,
        )
