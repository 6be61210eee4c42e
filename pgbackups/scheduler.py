"""
APScheduler configuration for scheduled backup runs.

Runs every configured site on the BACKUP_SCHEDULE cron expression. Runs
never overlap: a run that is still going when the next one is due
swallows it.
"""

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from pgbackups.backup.coordinator import create_coordinator
from pgbackups.config import load_sites, ConfigError


logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

BACKUP_JOB_ID = 'scheduled_backup'


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in scheduled runs
    flask_app = app

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one run at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    timezone = app.config['SCHEDULER_TIMEZONE']
    scheduler = BlockingScheduler(job_defaults=job_defaults, timezone=timezone)

    trigger = CronTrigger.from_crontab(app.config['BACKUP_SCHEDULE'], timezone=timezone)
    scheduler.add_job(
        func=run_scheduled_backup,
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name='Scheduled Backup Run',
        replace_existing=True
    )

    logger.info(f"Scheduled backups: {app.config['BACKUP_SCHEDULE']} ({timezone})")
    return scheduler


def start_scheduler():
    """
    Start the scheduler. Blocks until stop_scheduler() or a signal.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    for job in scheduler.get_jobs():
        next_run = getattr(job, 'next_run_time', None)
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run.isoformat() if next_run else 'pending'})")

    scheduler.start()


def stop_scheduler():
    """Stop the scheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler stopped")


def run_scheduled_backup():
    """
    Run every configured site inside the stored app's context.

    Errors are logged; the scheduler keeps running for the next slot.
    """
    with flask_app.app_context():
        try:
            sites = load_sites(flask_app.config['SITES_FILE'])
        except ConfigError as e:
            logger.error(f"Scheduled backup skipped: {e}")
            return None

        if not sites:
            logger.error(f"No sites configured in {flask_app.config['SITES_FILE']}")
            return None

        summary = create_coordinator(flask_app.config).run(sites)
        logger.info(
            f"Scheduled backup finished: {summary.succeeded}/{summary.total} succeeded"
        )
        return summary
