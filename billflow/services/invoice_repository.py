"""
Invoice persistence.

All reads are scoped to a business. Writes only flush; the surrounding
session (request dependency or job context manager) owns commit and
rollback, so an invoice, its line items and its allocated number are
persisted together or not at all.
"""
import logging
import uuid
from datetime import date
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import select, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from billflow.core.exceptions import ConflictError
from billflow.models.business import Business, Client
from billflow.models.invoice import Invoice, InvoiceLineItem
from billflow.services.invoice_number_service import InvoiceNumberService, AllocatedNumber
from billflow.services.invoice_status import InvoiceStatus


logger = logging.getLogger(__name__)


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class InvoiceRepository:
    """SQLAlchemy-backed storage for invoices and their numbering."""

    def __init__(self, db: AsyncSession, number_service: Optional[InvoiceNumberService] = None):
        self.db = db
        self.number_service = number_service or InvoiceNumberService(db)

    # ==================== Support records ====================

    async def get_business(self, business_id: uuid.UUID) -> Optional[Business]:
        return await self.db.get(Business, business_id)

    async def get_client(self, business_id: uuid.UUID, client_id: uuid.UUID) -> Optional[Client]:
        result = await self.db.execute(
            select(Client).where(Client.id == client_id, Client.business_id == business_id)
        )
        return result.scalar_one_or_none()

    # ==================== Numbering ====================

    async def allocate_next_number(self, business_id: uuid.UUID, year: Optional[int] = None) -> AllocatedNumber:
        return await self.number_service.allocate(business_id, year)

    async def invoice_number_exists(self, business_id: uuid.UUID, invoice_number: str) -> bool:
        result = await self.db.execute(
            select(func.count(Invoice.id)).where(
                Invoice.business_id == business_id,
                Invoice.invoice_number == invoice_number,
            )
        )
        return (result.scalar() or 0) > 0

    # ==================== Writes ====================

    async def create_invoice(self, invoice: Invoice, items: Sequence[InvoiceLineItem]) -> Invoice:
        invoice.items = list(items)
        self.db.add(invoice)
        await self._flush(invoice)
        return invoice

    async def update_invoice(self, invoice: Invoice, items: Optional[Sequence[InvoiceLineItem]] = None) -> Invoice:
        """
        Flush header changes and, when ``items`` is given, replace the line
        items (delete then insert, so sort_order stays unique per invoice).
        """
        if items is not None:
            invoice.items.clear()
            await self._flush(invoice)
            invoice.items.extend(items)
        await self._flush(invoice)
        return invoice

    async def delete_invoice(self, invoice: Invoice) -> None:
        await self.db.delete(invoice)
        await self._flush(invoice)

    async def _flush(self, invoice: Invoice) -> None:
        # A failed flush expires the instance, so read identity first
        invoice_id = invoice.id
        invoice_number = invoice.invoice_number
        try:
            await self.db.flush()
        except StaleDataError as e:
            logger.warning(f"Concurrent modification of invoice {invoice_number} ({invoice_id}): {e}")
            raise ConflictError(
                "Invoice was modified by another request, reload and try again",
                details={"invoice_id": str(invoice_id) if invoice_id else None},
            ) from e
        except IntegrityError as e:
            if "invoice_number" in str(e.orig):
                raise ConflictError(
                    f"Invoice number {invoice_number} is already in use",
                    details={"invoice_number": invoice_number},
                ) from e
            raise

    # ==================== Reads ====================

    async def get_invoice(self, business_id: uuid.UUID, invoice_id: uuid.UUID) -> Optional[Invoice]:
        result = await self.db.execute(
            select(Invoice)
            .where(Invoice.id == invoice_id, Invoice.business_id == business_id)
            .execution_options(populate_existing=True)
        )
        return result.unique().scalar_one_or_none()

    async def list_invoices(
        self,
        business_id: uuid.UUID,
        page: int = 1,
        limit: int = 20,
        status: Optional[InvoiceStatus] = None,
        client_id: Optional[uuid.UUID] = None,
        search: Optional[str] = None,
    ) -> Tuple[List[Invoice], int]:
        """Newest first. ``search`` matches invoice number or client display name, case-insensitively."""
        query = select(Invoice).join(Client, Invoice.client_id == Client.id).where(
            Invoice.business_id == business_id
        )
        count_query = (
            select(func.count(Invoice.id))
            .select_from(Invoice)
            .join(Client, Invoice.client_id == Client.id)
            .where(Invoice.business_id == business_id)
        )

        filters = []
        if status:
            filters.append(Invoice.status == InvoiceStatus(status).value)
        if client_id:
            filters.append(Invoice.client_id == client_id)
        if search and search.strip():
            pattern = f"%{_escape_like(search.strip())}%"
            filters.append(or_(
                Invoice.invoice_number.ilike(pattern, escape="\\"),
                Client.display_name.ilike(pattern, escape="\\"),
            ))

        if filters:
            query = query.where(*filters)
            count_query = count_query.where(*filters)

        total_result = await self.db.execute(count_query)
        total = total_result.scalar() or 0

        query = (
            query.order_by(Invoice.created_at.desc(), Invoice.invoice_number.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self.db.execute(query)
        return list(result.unique().scalars().all()), total

    async def find_overdue_candidates(self, today: date, business_id: Optional[uuid.UUID] = None) -> List[Invoice]:
        """Sent or viewed invoices past their due date that have no payment date."""
        query = select(Invoice).where(
            Invoice.status.in_([InvoiceStatus.SENT.value, InvoiceStatus.VIEWED.value]),
            Invoice.due_date < today,
            Invoice.paid_date.is_(None),
        )
        if business_id:
            query = query.where(Invoice.business_id == business_id)
        result = await self.db.execute(query.order_by(Invoice.due_date))
        return list(result.unique().scalars().all())
