"""
Cron helpers and single-shot job arming on APScheduler.

Schedules are driven one fire at a time: each fire arms a DateTrigger job for
the next occurrence, computed from the previous fire time.
"""
from datetime import datetime, timezone as dt_timezone
from typing import Any, Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from core.logging import get_logger
from services.execution.errors import InvalidCronError

logger = get_logger(__name__)


def create_scheduler(timezone: str = "UTC") -> AsyncIOScheduler:
    """Create an (unstarted) scheduler instance."""
    return AsyncIOScheduler(timezone=timezone)


def start_scheduler(scheduler: AsyncIOScheduler) -> None:
    """Start the scheduler if not already running."""
    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started")


def shutdown_scheduler(scheduler: AsyncIOScheduler) -> None:
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler shutdown")


def build_cron_trigger(cron_expression: str, timezone: str = "UTC") -> CronTrigger:
    """Parse a cron expression into a CronTrigger.

    Supports 5-field (minute hour day month weekday, second defaults to 0) and
    6-field (second minute hour day month weekday) formats. Numeric weekdays
    follow APScheduler numbering (0 = Monday); names (mon-sun) are accepted too.

    Raises:
        InvalidCronError: wrong field count, bad field value or unknown timezone
    """
    if not isinstance(cron_expression, str) or not cron_expression.strip():
        raise InvalidCronError(str(cron_expression), "expression is empty")

    parts = cron_expression.split()
    if len(parts) == 6:
        fields = dict(zip(("second", "minute", "hour", "day", "month", "day_of_week"), parts))
    elif len(parts) == 5:
        fields = dict(zip(("minute", "hour", "day", "month", "day_of_week"), parts))
        fields["second"] = "0"
    else:
        raise InvalidCronError(cron_expression, f"expected 5 or 6 fields, got {len(parts)}")

    try:
        return CronTrigger(timezone=timezone or "UTC", **fields)
    except Exception as e:
        raise InvalidCronError(cron_expression, str(e)) from e


def validate_cron(cron_expression: str, timezone: str = "UTC") -> None:
    """Raise InvalidCronError if the expression or timezone cannot be used."""
    build_cron_trigger(cron_expression, timezone)


def next_fire_time(trigger: CronTrigger, after: datetime, inclusive: bool = False) -> Optional[datetime]:
    """Next occurrence relative to `after`, as an aware UTC datetime.

    With inclusive=False the result is strictly later than `after`, which is
    what rescheduling from a fire time needs.
    """
    if after.tzinfo is None:
        after = after.replace(tzinfo=dt_timezone.utc)

    if inclusive:
        result = trigger.get_next_fire_time(None, after)
    else:
        result = trigger.get_next_fire_time(after, after)

    return result.astimezone(dt_timezone.utc) if result else None


def arm_job(
    scheduler: AsyncIOScheduler,
    job_id: str,
    run_at: datetime,
    callback: Callable,
    args: Optional[List[Any]] = None,
) -> str:
    """Arm a single-shot job, replacing any job with the same id."""
    cancel_job(scheduler, job_id)
    scheduler.add_job(
        callback,
        trigger=DateTrigger(run_date=run_at),
        id=job_id,
        args=args or [],
        misfire_grace_time=None,
        replace_existing=True,
    )
    logger.debug("Armed job", job_id=job_id, run_at=run_at.isoformat())
    return job_id


def cancel_job(scheduler: AsyncIOScheduler, job_id: str) -> bool:
    """Remove a job. Returns False if it was not armed."""
    try:
        scheduler.remove_job(job_id)
        logger.debug("Removed job", job_id=job_id)
        return True
    except JobLookupError:
        return False


def get_job_info(scheduler: AsyncIOScheduler, job_id: str) -> Optional[Dict]:
    """Get information about an armed job."""
    job = scheduler.get_job(job_id)
    if job:
        run_date = getattr(job.trigger, "run_date", None)
        return {
            "id": job.id,
            "run_at": run_date.isoformat() if run_date else None,
            "trigger": str(job.trigger),
        }
    return None
