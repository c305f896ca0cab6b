"""
APScheduler configuration and job scheduling for sqlkeeper.

Manages:
- The automatic backup job (hourly, daily or weekly)
- Manual "run now" triggers
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from sqlkeeper import db
from sqlkeeper.backup.jobs import build_request, execute_backup


logger = logging.getLogger(__name__)

AUTOMATIC_JOB_ID = 'automatic_backup'
FREQUENCIES = ('hourly', 'daily', 'weekly')

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def _count_jobs_in_database() -> int:
    """
    Count jobs in APScheduler's persistent job store.

    Used to detect scheduler health when the in-memory scheduler object is
    not available (e.g., in Flask's reloader parent process).

    Returns:
        Number of jobs in database, or 0 if the table does not exist
    """
    try:
        result = db.session.execute(
            text("SELECT COUNT(*) FROM apscheduler_jobs")
        ).scalar()
    except SQLAlchemyError:
        # Job store table not created yet
        db.session.rollback()
        return 0
    except RuntimeError:
        # Outside an application context
        return 0
    return result or 0


def build_trigger(frequency: str, time: str = '01:00', tz: str = 'UTC') -> CronTrigger:
    """
    Build the cron trigger for the automatic backup.

    Args:
        frequency: hourly, daily or weekly
        time: HH:MM; hourly backups only use the minutes, weekly ones run on Sunday
        tz: Timezone of ``time``

    Returns:
        CronTrigger

    Raises:
        ValueError: On an unknown frequency or a malformed time
    """
    frequency = (frequency or '').lower()
    if frequency not in FREQUENCIES:
        raise ValueError(f"Invalid backup frequency: {frequency}. Valid options: {list(FREQUENCIES)}")

    try:
        hour, minute = (int(part) for part in time.split(':'))
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid backup time: {time}. Expected HH:MM")

    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Invalid backup time: {time}. Expected HH:MM")

    if frequency == 'hourly':
        return CronTrigger(minute=minute, timezone=tz)
    if frequency == 'daily':
        return CronTrigger(hour=hour, minute=minute, timezone=tz)
    return CronTrigger(day_of_week='sun', hour=hour, minute=minute, timezone=tz)


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    # Backups of one service never overlap
    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    schedule_automatic_backup(app)

    return scheduler


def schedule_automatic_backup(app):
    """
    Add, replace or remove the automatic backup job according to config.

    Args:
        app: Flask app instance
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not app.config.get('BACKUP_SCHEDULE_ENABLED'):
        if scheduler.get_job(AUTOMATIC_JOB_ID):
            scheduler.remove_job(AUTOMATIC_JOB_ID)
            logger.info("Automatic backups disabled, removed scheduled job")
        return None

    frequency = app.config.get('BACKUP_FREQUENCY', 'daily')
    backup_time = app.config.get('BACKUP_TIME', '01:00')
    trigger = build_trigger(frequency, backup_time, app.config.get('SCHEDULER_TIMEZONE', 'UTC'))

    job = scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[None, 'scheduled'],
        trigger=trigger,
        id=AUTOMATIC_JOB_ID,
        name=f"Automatic backup ({frequency} at {backup_time})",
        replace_existing=True
    )

    logger.info(f"Scheduled automatic backup: {frequency} at {backup_time}")
    return job


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started successfully (state={scheduler.state})")

    jobs = scheduler.get_jobs()
    if jobs:
        logger.info(f"Loaded {len(jobs)} scheduled jobs:")
        for job in jobs:
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info("No scheduled jobs loaded")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def _execute_backup_wrapper(overrides=None, trigger='scheduled'):
    """
    Run a backup inside the stored application context.

    Failures are recorded on the BackupRun row; configuration errors are
    logged since there is no caller to report them to.
    """
    global flask_app

    with flask_app.app_context():
        try:
            request = build_request(flask_app.config, **(overrides or {}))
            run = execute_backup(request, trigger=trigger)
            logger.info(f"Scheduled backup run {run.id} completed with status: {run.status}")
        except ValueError as e:
            logger.error(f"Scheduled backup could not start: {e}")


def trigger_backup_now(overrides=None):
    """
    Queue a backup to run immediately in the scheduler's worker thread.

    Args:
        overrides: Backup request options for this run

    Returns:
        ID of the queued scheduler job

    Raises:
        ValueError: If the options are invalid
    """
    global scheduler, flask_app

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    # Validate before queueing so callers see bad options right away
    build_request(flask_app.config, **(overrides or {}))

    # 1 second delay to avoid racing the caller's own commit
    now = datetime.now(timezone.utc)
    job_id = f"manual_{int(now.timestamp() * 1000)}"
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[overrides or {}, 'manual'],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=job_id,
        name="Manual backup",
        replace_existing=False
    )

    logger.info(f"Manually triggered backup: {job_id}")
    return job_id


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
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    """
    Check if scheduler is running.

    Falls back to the job store table when the in-memory scheduler lives in
    another process (Flask's reloader in development).
    """
    global scheduler

    if scheduler is not None and scheduler.running:
        return True

    return _count_jobs_in_database() > 0
