"""
Background Jobs Module

Handles scheduled tasks for:
- Overdue invoice sweep
"""

from billflow.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler
from billflow.jobs.overdue_invoices import run_overdue_invoices_job

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "run_overdue_invoices_job",
]
