"""
APScheduler configuration for the backup service.

Manages:
- The scheduled backup job (cron expression from BACKUP_CRON)
- The optional backup on startup
"""

import logging
import re
from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from redis_backup.config import ConfigValidationError
from redis_backup.utils.cancellation import CycleContext

logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'redis_backup'

# Global scheduler instance and the executor it drives
scheduler = None
backup_executor = None
backup_timeout = None

# Context of the cycle currently running, cancelled on shutdown
active_context = None

DESCRIPTORS = {
    '@yearly': '0 0 1 1 *',
    '@annually': '0 0 1 1 *',
    '@monthly': '0 0 1 * *',
    '@weekly': '0 0 * * 0',
    '@daily': '0 0 * * *',
    '@midnight': '0 0 * * *',
    '@hourly': '0 * * * *',
}

_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(h|ms|m|s)')
_DURATION_UNITS = {'h': 3600, 'm': 60, 's': 1, 'ms': 0.001}


def parse_duration(value: str) -> timedelta:
    """
    Parse a duration such as '1h30m', '45s' or '2h'.

    Raises:
        ValueError: If the string is not a valid duration
    """
    value = value.strip()
    pos = 0
    seconds = 0.0

    for match in _DURATION_PART.finditer(value):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if not value or pos != len(value):
        raise ValueError(f"Invalid duration: {value!r}")
    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")

    return timedelta(seconds=seconds)


# Crontab numbers weekdays from Sunday=0 (7 is Sunday too); APScheduler
# numbers them from Monday=0, so day-of-week fields are rewritten to names.
_CRON_WEEKDAYS = ('sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat')


def _weekday_number(token: str) -> int:
    token = token.lower()
    if token in _CRON_WEEKDAYS:
        return _CRON_WEEKDAYS.index(token)

    value = int(token)
    if not 0 <= value <= 7:
        raise ValueError(f"Day of week out of range: {token}")
    return value


def translate_day_of_week(field: str) -> str:
    """
    Rewrite a crontab day-of-week field into APScheduler weekday names.

    '1-5' -> 'mon,tue,wed,thu,fri', '0' and '7' -> 'sun', '*/2' -> 'sun,tue,thu,sat'

    Raises:
        ValueError: If the field is not a valid day-of-week expression
    """
    if field in ('*', '?'):
        return '*'

    days = set()
    for part in field.split(','):
        part, has_step, step = part.partition('/')
        step = int(step) if has_step else 1
        if step <= 0:
            raise ValueError(f"Invalid step in day of week: {field}")

        if part in ('*', '?'):
            first, last = 0, 6
        elif '-' in part:
            start, end = part.split('-', 1)
            first, last = _weekday_number(start), _weekday_number(end)
            if first > last:
                raise ValueError(f"Invalid day of week range: {part}")
        else:
            first = _weekday_number(part)
            last = max(first, 6) if has_step else first

        days.update(day % 7 for day in range(first, last + 1, step))

    return ','.join(_CRON_WEEKDAYS[day] for day in sorted(days))


def _cron_trigger(second, minute, hour, day, month, day_of_week):
    return CronTrigger(
        second=second,
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=translate_day_of_week(day_of_week),
        timezone='UTC'
    )


def build_trigger(expression: str):
    """
    Build an APScheduler trigger from a schedule expression.

    Accepts:
    - 5-field crontab ('0 2 * * *')
    - 6-field crontab with leading seconds ('30 0 2 * * *')
    - Descriptors ('@daily', '@hourly', ...)
    - Fixed intervals ('@every 1h30m')

    Raises:
        ConfigValidationError: If the expression is invalid
    """
    expression = expression.strip()

    try:
        if expression.startswith('@every'):
            return IntervalTrigger(seconds=parse_duration(expression[len('@every'):]).total_seconds(), timezone='UTC')

        if expression.startswith('@'):
            if expression not in DESCRIPTORS:
                raise ValueError(f"Unknown descriptor: {expression}")
            expression = DESCRIPTORS[expression]

        fields = expression.split()
        if len(fields) == 5:
            return _cron_trigger('0', *fields)
        if len(fields) == 6:
            return _cron_trigger(*fields)

        raise ValueError(f"Expected 5 or 6 fields, got {len(fields)}")

    except ValueError as e:
        raise ConfigValidationError(f"Invalid BACKUP_CRON expression {expression!r}: {e}")


def init_scheduler(executor, config):
    """
    Initialize and configure APScheduler.

    Args:
        executor: BackupExecutor to run on schedule
        config: Validated Config instance
    """
    global scheduler, backup_executor, backup_timeout

    if scheduler is not None:
        return scheduler

    trigger = build_trigger(config.backup_cron)

    backup_executor = executor
    backup_timeout = config.backup_timeout

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending runs into one
        'max_instances': 1,  # Cycles never overlap
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    scheduler.add_job(
        func=run_backup_cycle,
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name='Redis Backup',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after init_scheduler().
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started")

        for job in get_scheduled_jobs():
            logger.info(f"  - {job['id']}: {job['name']} (next run: {job['next_run'] or 'N/A'})")
    else:
        logger.info("Scheduler already running")


def stop_scheduler(wait: bool = True):
    """Stop the APScheduler, cancelling a running cycle and waiting for it by default."""
    global scheduler

    cancel_active_cycle()

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=wait)
        logger.info("Scheduler stopped")


def cancel_active_cycle():
    """Cancel the running backup cycle, if any."""
    ctx = active_context

    if ctx is not None and not ctx.cancelled:
        logger.info("Cancelling running backup cycle")
        ctx.cancel()


def run_backup_cycle():
    """
    Run one backup cycle with the configured deadline.

    Used both by the scheduled job and for the backup on startup. Never
    raises; the outcome is logged.

    Returns:
        CycleResult, or None if the cycle crashed
    """
    global backup_executor, backup_timeout, active_context

    if backup_executor is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    ctx = CycleContext(timeout=backup_timeout)
    active_context = ctx

    try:
        result = backup_executor.run_cycle(ctx)
    except Exception:
        logger.exception("Backup cycle crashed")
        return None
    finally:
        active_context = None

    if result.ok:
        logger.info(f"Backup cycle completed with status: {result.status} ({result.artifact_name})")
    elif result.cancelled:
        logger.error(f"Backup cycle cancelled during {result.failed_stage.value}: {result.error}")
    else:
        logger.error(f"Backup cycle failed: {result.error}")

    return result


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    global scheduler

    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        next_run = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs
