"""
Overdue Invoice Sweep.

Moves ``sent`` and ``viewed`` invoices whose due date has passed (and that
have no payment date) to the stored ``overdue`` status.

Triggers:
- Daily scheduled job (via APScheduler)
"""
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billflow.services.invoice_service import InvoiceService

logger = logging.getLogger(__name__)


async def run_overdue_invoices_job(db: AsyncSession, today: Optional[date] = None) -> Dict[str, Any]:
    """
    Run one sweep.

    Returns:
        Summary with the invoice numbers that were marked overdue
    """
    logger.info("Starting overdue invoices job...")

    results: Dict[str, Any] = {
        "started_at": datetime.now(timezone.utc).isoformat(),
        "errors": [],
    }

    try:
        summary = await InvoiceService(db).mark_overdue_invoices(today=today)
        results.update(summary)
    except Exception as e:
        error_msg = f"Overdue invoices job failed: {e}"
        logger.exception(error_msg)
        await db.rollback()
        results["errors"].append(error_msg)

    results["completed_at"] = datetime.now(timezone.utc).isoformat()
    logger.info(
        f"Overdue job completed: {results.get('marked_overdue', 0)} of "
        f"{results.get('checked', 0)} candidate invoice(s) marked overdue"
    )
    return results


async def scheduled_overdue_sweep() -> Dict[str, Any]:
    """Entry point for the scheduler; opens its own session."""
    from billflow.database import get_db_session

    async with get_db_session() as db:
        return await run_overdue_invoices_job(db)
