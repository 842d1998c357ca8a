"""
APScheduler configuration for long-running deployments.

Fires a backup run on the configured crontab expression. Each run still
takes the run lock, so a scheduled run and a manual one never overlap.
"""

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from dbbackup.config import RunConfig
from dbbackup.exceptions import ConfigError
from dbbackup.backup.executor import run_backup


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'db_backup'


def scheduled_backup(config: RunConfig) -> int:
    """
    Scheduler entry point for one backup run.

    Returns:
        The run's exit code
    """
    report = run_backup(config)
    logger.info(f"Scheduled backup finished: {report.state.value} (exit code {report.exit_code})")
    return report.exit_code


def build_trigger(expression: str) -> CronTrigger:
    """
    Parse a crontab expression.

    Raises:
        ConfigError: If the expression is invalid
    """
    try:
        return CronTrigger.from_crontab(expression)
    except ValueError as e:
        raise ConfigError(f"Invalid schedule '{expression}': {e}")


def init_scheduler(config: RunConfig) -> BlockingScheduler:
    """
    Create and configure the scheduler.

    Args:
        config: Run configuration (schedule is read from it)

    Returns:
        Configured, not yet started scheduler
    """
    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(executors=executors, job_defaults=job_defaults)

    scheduler.add_job(
        func=scheduled_backup,
        args=[config],
        trigger=build_trigger(config.schedule),
        id=BACKUP_JOB_ID,
        name='Database Backup',
        replace_existing=True
    )

    return scheduler


def start_scheduler(config: RunConfig):
    """
    Run the scheduler until interrupted.

    Blocks the calling thread.
    """
    scheduler = init_scheduler(config)
    logger.info(f"Scheduling backups with '{config.schedule}'")

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
        if scheduler.running:
            scheduler.shutdown(wait=False)
