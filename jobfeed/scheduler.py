"""Cron-driven import passes on APScheduler."""

import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel

from jobfeed.errors import ConfigurationError, ImportBusyError
from jobfeed.ingest import ImportOrchestrator
from jobfeed.notify import CRON_STATUS, NullNotifier, ProgressNotifierInterface

logger = logging.getLogger(__name__)

DEFAULT_CRON_SCHEDULE = "0 * * * *"
JOB_ID = "scheduled-import"


class SchedulerStatus(BaseModel):
    is_running: bool
    schedule: str
    timezone: str
    next_run: datetime | None = None


def validate_cron(expression: str, timezone: str = "UTC") -> CronTrigger:
    """Parse a five-field crontab expression.

    Raises:
        ConfigurationError: If the expression or timezone is invalid.
    """
    try:
        return CronTrigger.from_crontab(expression, timezone=timezone)
    except (ValueError, TypeError, LookupError) as e:
        raise ConfigurationError(f"Invalid cron schedule {expression!r}: {e}") from e


class ImportScheduler:
    """Run `ImportOrchestrator.start_import` on a cron schedule.

    A tick that finds a pass already running is skipped, never queued.

    Args:
        orchestrator: The orchestrator whose passes are scheduled.
        notifier: Receives ``cron-status`` events.
        cron_schedule: Five-field crontab expression; hourly by default.
        timezone: Timezone the expression is evaluated in.
    """

    def __init__(
        self,
        orchestrator: ImportOrchestrator,
        notifier: ProgressNotifierInterface | None = None,
        cron_schedule: str = DEFAULT_CRON_SCHEDULE,
        timezone: str = "UTC",
    ):
        self.orchestrator = orchestrator
        self.notifier = notifier or NullNotifier()
        self.cron_schedule = cron_schedule
        self.timezone = timezone
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Validate the schedule and start ticking. Requires a running event loop.

        Raises:
            ConfigurationError: If the schedule is invalid.
        """
        trigger = validate_cron(self.cron_schedule, self.timezone)
        if self.is_running:
            logger.warning("Scheduler already running")
            return
        scheduler = AsyncIOScheduler(timezone=self.timezone)
        scheduler.add_job(
            self.run_scheduled_import,
            trigger,
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Scheduled imports with %r (%s)", self.cron_schedule, self.timezone)

    def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Scheduler stopped")

    def restart(self, cron_schedule: str | None = None) -> None:
        """Stop, optionally switch to ``cron_schedule``, and start again."""
        if cron_schedule is not None:
            validate_cron(cron_schedule, self.timezone)
            self.cron_schedule = cron_schedule
        self.stop()
        self.start()

    def get_status(self) -> SchedulerStatus:
        next_run = None
        if self._scheduler is not None:
            job = self._scheduler.get_job(JOB_ID)
            next_run = job.next_run_time if job else None
        return SchedulerStatus(
            is_running=self.is_running,
            schedule=self.cron_schedule,
            timezone=self.timezone,
            next_run=next_run,
        )

    async def run_scheduled_import(self) -> None:
        """One tick: start a pass unless one is already running. Never raises."""
        logger.info("Cron job triggered")
        self.notifier.publish(CRON_STATUS, {"type": "cron-triggered"})
        if self.orchestrator.is_running:
            logger.info("Import already running, skipping scheduled import")
            self.notifier.publish(CRON_STATUS, {"type": "cron-skipped", "reason": "Import already running"})
            return
        try:
            summary = await self.orchestrator.start_import()
        except ImportBusyError:
            self.notifier.publish(CRON_STATUS, {"type": "cron-skipped", "reason": "Import already running"})
            return
        except Exception as e:
            # The orchestrator has already published import-error for this pass.
            logger.error("Scheduled import failed: %s", e)
            return
        logger.info("Scheduled import %s completed: %s feed(s) enqueued", summary.import_id, summary.succeeded)
