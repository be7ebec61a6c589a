"""
Invoice Number Allocation

Sequential, gap-tolerant invoice numbers per business:
- Continuous sequence per business (no yearly reset; the year is display only)
- Atomic increment at the database level, never read-then-write
- Format: {PREFIX}-{YEAR}-{SEQUENCE}, e.g. INV-2026-0042

USAGE:
    from billflow.services.invoice_number_service import InvoiceNumberService

    async def create(db: AsyncSession, business_id):
        service = InvoiceNumberService(db)
        allocated = await service.allocate(business_id)
        # allocated.invoice_number -> INV-2026-0042

A sequence consumed by a transaction that later rolls back is returned with
the rollback, so numbers are only skipped when an allocation commits
separately from the invoice that uses it.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from billflow.config import settings
from billflow.core.exceptions import BusinessNotFoundError, TransientStorageError
from billflow.models.business import Business


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AllocatedNumber:
    sequence: int
    invoice_number: str


def format_invoice_number(prefix: str, year: int, sequence: int, padding: Optional[int] = None) -> str:
    """
    >>> format_invoice_number("INV", 2026, 42)
    'INV-2026-0042'
    """
    padding = settings.INVOICE_NUMBER_PADDING if padding is None else padding
    return f"{prefix}-{year}-{str(sequence).zfill(padding)}"


def is_transient(exc: DBAPIError) -> bool:
    """Lock contention, serialization failures and dropped connections are worth retrying."""
    if exc.connection_invalidated or isinstance(exc, OperationalError):
        return True
    sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    # serialization_failure, deadlock_detected, lock_not_available
    return sqlstate in {"40001", "40P01", "55P03"}


class InvoiceNumberService:
    """
    Allocates invoice numbers from ``businesses.invoice_next_number``.

    The counter row is the only serialization point: a single
    ``UPDATE ... SET n = n + 1 RETURNING`` takes the row lock, increments and
    returns in one statement, so concurrent allocations for one business
    always receive distinct sequences.
    """

    def __init__(
        self,
        db: AsyncSession,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        padding: Optional[int] = None,
    ):
        """
        Args:
            db: Async database session
            max_retries: Retries after the first transient failure
            backoff_seconds: Initial backoff; doubled on every retry
            padding: Zero padding of the sequence part
        """
        self.db = db
        self.max_retries = settings.ALLOCATOR_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_seconds = settings.ALLOCATOR_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self.padding = settings.INVOICE_NUMBER_PADDING if padding is None else padding

    async def allocate(self, business_id: uuid.UUID, year: Optional[int] = None) -> AllocatedNumber:
        """
        Consume the next sequence for a business.

        Must be the first write of its transaction: a transient failure rolls
        the session back before the retry.

        Args:
            business_id: Owning business
            year: Year shown in the number. Defaults to the current UTC year.

        Returns:
            AllocatedNumber(sequence, invoice_number)

        Raises:
            BusinessNotFoundError: Business doesn't exist
            TransientStorageError: Storage stayed unavailable after all retries
        """
        year = year or datetime.now(timezone.utc).year
        attempt = 0

        while True:
            try:
                sequence, prefix = await self._increment(business_id)
                break
            except DBAPIError as e:
                if not is_transient(e):
                    raise
                if attempt >= self.max_retries:
                    logger.error(
                        f"Invoice number allocation for business {business_id} failed "
                        f"after {attempt + 1} attempts: {e}"
                    )
                    raise TransientStorageError(
                        "Invoice number allocation failed, please retry",
                        details={"business_id": str(business_id), "attempts": attempt + 1},
                    ) from e
                # The failed statement may have aborted the transaction
                await self.db.rollback()
                delay = self.backoff_seconds * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"Invoice number allocation contended for business {business_id}, "
                    f"retry {attempt}/{self.max_retries} in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

        invoice_number = format_invoice_number(prefix, year, sequence, self.padding)
        logger.info(f"Allocated invoice number {invoice_number} for business {business_id}")
        return AllocatedNumber(sequence=sequence, invoice_number=invoice_number)

    async def _increment(self, business_id: uuid.UUID):
        """Run the atomic increment; returns (allocated sequence, prefix)."""
        result = await self.db.execute(
            update(Business)
            .where(Business.id == business_id)
            .values(invoice_next_number=Business.invoice_next_number + 1)
            .returning(Business.invoice_next_number, Business.invoice_prefix)
            .execution_options(synchronize_session=False)
        )
        row = result.one_or_none()
        if row is None:
            raise BusinessNotFoundError(
                f"Business {business_id} not found",
                details={"business_id": str(business_id)},
            )
        next_number, prefix = row
        return next_number - 1, prefix

    async def preview_next_number(self, business_id: uuid.UUID, year: Optional[int] = None) -> AllocatedNumber:
        """
        What the next allocation would return, without consuming it.

        The answer is advisory: another request may allocate it first.
        """
        year = year or datetime.now(timezone.utc).year
        result = await self.db.execute(
            select(Business.invoice_next_number, Business.invoice_prefix)
            .where(Business.id == business_id)
        )
        row = result.one_or_none()
        if row is None:
            raise BusinessNotFoundError(
                f"Business {business_id} not found",
                details={"business_id": str(business_id)},
            )
        sequence, prefix = row
        return AllocatedNumber(
            sequence=sequence,
            invoice_number=format_invoice_number(prefix, year, sequence, self.padding),
        )

    async def get_current_number(self, business_id: uuid.UUID) -> int:
        """Last sequence handed out (0 if none yet)."""
        result = await self.db.execute(
            select(Business.invoice_next_number).where(Business.id == business_id)
        )
        next_number = result.scalar_one_or_none()
        if next_number is None:
            raise BusinessNotFoundError(f"Business {business_id} not found")
        return next_number - 1
