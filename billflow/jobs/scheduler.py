"""
APScheduler configuration.

Background jobs run in the API process on the asyncio event loop:
- Overdue invoice sweep (daily, cron)
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from billflow.config import settings

logger = logging.getLogger(__name__)

# Job stores
jobstores = {
    'default': MemoryJobStore()
}

# Executors
executors = {
    'default': AsyncIOExecutor(),
}

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 3600,
}

scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.SCHEDULER_TIMEZONE
)


def register_jobs(target: AsyncIOScheduler = scheduler) -> None:
    """Add the application's jobs to a scheduler (idempotent)."""
    from billflow.jobs.overdue_invoices import scheduled_overdue_sweep

    target.add_job(
        scheduled_overdue_sweep,
        'cron',
        hour=settings.OVERDUE_SWEEP_HOUR,
        minute=settings.OVERDUE_SWEEP_MINUTE,
        id='mark_overdue_invoices',
        name='Mark Overdue Invoices',
        replace_existing=True,
    )


def start_scheduler():
    """Start the background job scheduler."""
    if not scheduler.running:
        register_jobs(scheduler)
        scheduler.start()
        logger.info("Background job scheduler started")

        for job in scheduler.get_jobs():
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")


def get_job_status():
    """Get status of all scheduled jobs."""
    status = []
    for job in scheduler.get_jobs():
        # Jobs added before start() have no next run time yet
        next_run_time = getattr(job, 'next_run_time', None)
        status.append({
            'id': job.id,
            'name': job.name,
            'next_run_time': str(next_run_time) if next_run_time else None,
            'trigger': str(job.trigger),
        })
    return status
