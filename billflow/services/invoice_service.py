"""
Invoice lifecycle service.

Single entry point for everything that changes an invoice:
- create / edit / delete drafts (totals recomputed and frozen on every write)
- status transitions through the state machine
- rendering and notification collaborators

Each mutating operation commits its own transaction. Collaborator side
effects (email on send) run after the commit; their failure is logged and
never undoes the status change.
"""
import asyncio
import logging
import math
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from billflow.config import settings
from billflow.core.exceptions import (
    BusinessNotFoundError, ConflictError, InvoiceNotFoundError, ValidationError
)
from billflow.core.money import ZERO, format_money, get_currency, round_money, to_decimal
from billflow.models.business import Client
from billflow.models.invoice import Invoice, InvoiceLineItem, PaymentRecord
from billflow.schemas.invoice import (
    InvoiceCreate, InvoiceUpdate, TotalsPreviewRequest, discount_spec, to_line_inputs
)
from billflow.services.invoice_number_service import AllocatedNumber
from billflow.services.invoice_repository import InvoiceRepository
from billflow.services.invoice_status import (
    InvoiceStatus, InvoiceStatusMachine, TransitionTrigger, status_machine as default_status_machine
)
from billflow.services.totals_calculator import (
    DiscountSpec, LineItemEngine, LineItemInput, NoDiscount, Totals, TotalsCalculator, discount_from_fields
)


logger = logging.getLogger(__name__)


class InvoiceService:
    """Create, edit, transition and render invoices for one business at a time."""

    def __init__(
        self,
        db: AsyncSession,
        repository: Optional[InvoiceRepository] = None,
        calculator: Optional[TotalsCalculator] = None,
        notifier: Any = None,
        renderer: Any = None,
        machine: Optional[InvoiceStatusMachine] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.db = db
        self.repository = repository or InvoiceRepository(db)
        self.calculator = calculator or TotalsCalculator(
            reject_excess_fixed_discount=settings.REJECT_EXCESS_FIXED_DISCOUNT
        )
        self.notifier = notifier
        self.renderer = renderer
        self.machine = machine or default_status_machine
        self.today = today or date.today

    # ==================== Helpers ====================

    async def _get_invoice_or_404(self, business_id: uuid.UUID, invoice_id: uuid.UUID) -> Invoice:
        invoice = await self.repository.get_invoice(business_id, invoice_id)
        if not invoice:
            raise InvoiceNotFoundError(
                "Invoice not found",
                details={"invoice_id": str(invoice_id)},
            )
        return invoice

    async def _get_client(self, business_id: uuid.UUID, client_id: uuid.UUID) -> Client:
        client = await self.repository.get_client(business_id, client_id)
        if not client:
            raise ValidationError.for_field("client_id", "Client not found for this business")
        return client

    @staticmethod
    def _check_version(invoice: Invoice, expected: Optional[int]) -> None:
        if expected is not None and expected != invoice.version:
            raise ConflictError(
                "Invoice was modified by another request, reload and try again",
                details={"expected_version": expected, "current_version": invoice.version},
            )

    @staticmethod
    def _check_dates(issue_date: date, due_date: date) -> None:
        if due_date < issue_date:
            raise ValidationError.for_field("due_date", "Due date cannot be before issue date")

    @staticmethod
    def _build_items(currency: str, items: Sequence[LineItemInput]) -> List[InvoiceLineItem]:
        engine = LineItemEngine(currency)
        return [
            InvoiceLineItem(
                description=item.description,
                quantity=item.quantity,
                unit_price=item.unit_price,
                amount=amount,
                sort_order=item.sort_order,
            )
            for item, amount in zip(items, engine.amounts(items))
        ]

    @staticmethod
    def _apply_totals(invoice: Invoice, totals: Totals, tax_rate: Decimal, discount: DiscountSpec) -> None:
        invoice.subtotal = totals.subtotal
        invoice.tax_rate = tax_rate
        invoice.tax_amount = totals.tax_amount
        invoice.discount_type = None if isinstance(discount, NoDiscount) else discount.type
        invoice.discount_value = ZERO if isinstance(discount, NoDiscount) else discount.value
        invoice.discount_amount = totals.discount_amount
        invoice.total = totals.total

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # ==================== CRUD ====================

    async def create_invoice(self, business_id: uuid.UUID, data: InvoiceCreate) -> Invoice:
        """
        Create a draft invoice.

        The invoice number is either the caller's (must be unused for this
        business) or allocated from the business counter. Totals, items and
        number are committed together.
        """
        issue_date = data.issue_date or self.today()
        items = to_line_inputs(data.items)
        discount = discount_spec(data.discount)

        if data.invoice_number:
            invoice_number = data.invoice_number.strip()
            if await self.repository.invoice_number_exists(business_id, invoice_number):
                raise ConflictError(
                    f"Invoice number {invoice_number} is already in use",
                    details={"invoice_number": invoice_number},
                )
            allocated = None
        else:
            allocated = await self.repository.allocate_next_number(business_id, issue_date.year)
            invoice_number = allocated.invoice_number

        business = await self.repository.get_business(business_id)
        if not business:
            raise BusinessNotFoundError(f"Business {business_id} not found")
        client = await self._get_client(business_id, data.client_id)

        currency = get_currency(data.currency or client.preferred_currency or business.default_currency).value
        tax_rate = data.tax_rate if data.tax_rate is not None else business.default_tax_rate
        payment_terms = client.default_payment_terms or business.default_payment_terms
        due_date = data.due_date or issue_date + timedelta(days=payment_terms)
        self._check_dates(issue_date, due_date)

        totals = self.calculator.compute(items, tax_rate, discount, currency)

        invoice = Invoice(
            business_id=business_id,
            client_id=client.id,
            invoice_number=invoice_number,
            status=InvoiceStatus.DRAFT.value,
            currency=currency,
            exchange_rate_to_base=data.exchange_rate_to_base,
            issue_date=issue_date,
            due_date=due_date,
            paid_amount=ZERO,
            language=data.language or client.preferred_language or settings.DEFAULT_LANGUAGE,
            notes_external=data.notes_external,
            notes_internal=data.notes_internal,
        )
        self._apply_totals(invoice, totals, tax_rate, discount)
        invoice.client = client
        invoice.business = business
        invoice.payments = []

        await self.repository.create_invoice(invoice, self._build_items(currency, items))
        await self.db.commit()

        logger.info(
            f"Created invoice {invoice.invoice_number} for business {business_id}: "
            f"total {invoice.total} {currency}"
            + ("" if allocated else " (caller-supplied number)")
        )
        return invoice

    async def update_invoice(self, business_id: uuid.UUID, invoice_id: uuid.UUID, data: InvoiceUpdate) -> Invoice:
        """
        Edit a draft invoice and re-freeze its totals.

        Line items are replaced as a whole when given; otherwise the stored
        items are re-priced with the (possibly new) currency, tax and discount.

        Raises:
            InvalidStateTransition: Invoice is not a draft (nothing is changed)
            ConflictError: ``version`` doesn't match, or a concurrent write won
        """
        invoice = await self._get_invoice_or_404(business_id, invoice_id)
        self.machine.assert_editable(invoice.status)
        self._check_version(invoice, data.version)

        fields = data.model_fields_set

        if data.client_id is not None and data.client_id != invoice.client_id:
            invoice.client = await self._get_client(business_id, data.client_id)

        currency = get_currency(data.currency).value if data.currency is not None else invoice.currency
        tax_rate = data.tax_rate if data.tax_rate is not None else invoice.tax_rate
        discount = (
            discount_spec(data.discount) if "discount" in fields
            else discount_from_fields(invoice.discount_type, invoice.discount_value)
        )
        if data.items is not None:
            items = to_line_inputs(data.items)
        else:
            items = [
                LineItemInput(item.description, item.quantity, item.unit_price, item.sort_order)
                for item in invoice.items
            ]

        issue_date = data.issue_date or invoice.issue_date
        due_date = data.due_date or invoice.due_date
        self._check_dates(issue_date, due_date)

        totals = self.calculator.compute(items, tax_rate, discount, currency)

        invoice.currency = currency
        invoice.issue_date = issue_date
        invoice.due_date = due_date
        if data.exchange_rate_to_base is not None:
            invoice.exchange_rate_to_base = data.exchange_rate_to_base
        if data.language is not None:
            invoice.language = data.language
        if "notes_external" in fields:
            invoice.notes_external = data.notes_external
        if "notes_internal" in fields:
            invoice.notes_internal = data.notes_internal
        self._apply_totals(invoice, totals, tax_rate, discount)
        invoice.updated_at = self._now()

        await self.repository.update_invoice(invoice, self._build_items(currency, items))
        await self.db.commit()

        logger.info(f"Updated invoice {invoice.invoice_number}: total {invoice.total} {currency}")
        return invoice

    async def delete_invoice(self, business_id: uuid.UUID, invoice_id: uuid.UUID, version: Optional[int] = None) -> None:
        invoice = await self._get_invoice_or_404(business_id, invoice_id)
        self.machine.assert_deletable(invoice.status)
        self._check_version(invoice, version)

        invoice_number = invoice.invoice_number
        await self.repository.delete_invoice(invoice)
        await self.db.commit()
        logger.info(f"Deleted draft invoice {invoice_number} for business {business_id}")

    async def get_invoice(self, business_id: uuid.UUID, invoice_id: uuid.UUID) -> Invoice:
        return await self._get_invoice_or_404(business_id, invoice_id)

    async def list_invoices(
        self,
        business_id: uuid.UUID,
        page: int = 1,
        limit: int = 20,
        status: Optional[InvoiceStatus] = None,
        client_id: Optional[uuid.UUID] = None,
        search: Optional[str] = None,
    ) -> Dict[str, Any]:
        if page < 1:
            raise ValidationError.for_field("page", "Must be at least 1")
        if not 1 <= limit <= 100:
            raise ValidationError.for_field("limit", "Must be between 1 and 100")

        invoices, total = await self.repository.list_invoices(
            business_id, page=page, limit=limit, status=status, client_id=client_id, search=search
        )
        return {
            "items": invoices,
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit) if total > 0 else 1,
        }

    # ==================== Status transitions ====================

    async def _load_for_transition(
        self,
        business_id: uuid.UUID,
        invoice_id: uuid.UUID,
        target: InvoiceStatus,
        trigger: TransitionTrigger,
        version: Optional[int] = None,
    ) -> Invoice:
        invoice = await self._get_invoice_or_404(business_id, invoice_id)
        self._check_version(invoice, version)
        self.machine.assert_transition(invoice.status, target, trigger)
        return invoice

    async def _apply_transition(self, invoice: Invoice, target: InvoiceStatus) -> Invoice:
        previous = invoice.status
        invoice.status = target.value
        invoice.updated_at = self._now()
        if target == InvoiceStatus.SENT and invoice.sent_at is None:
            invoice.sent_at = invoice.updated_at

        await self.repository.update_invoice(invoice)
        await self.db.commit()
        logger.info(f"Invoice {invoice.invoice_number}: {previous} -> {invoice.status}")
        return invoice

    async def send_invoice(self, business_id: uuid.UUID, invoice_id: uuid.UUID, version: Optional[int] = None) -> Invoice:
        invoice = await self._load_for_transition(
            business_id, invoice_id, InvoiceStatus.SENT, TransitionTrigger.USER, version
        )
        await self._apply_transition(invoice, InvoiceStatus.SENT)
        await self._notify_sent(invoice)
        return invoice

    async def mark_viewed(self, business_id: uuid.UUID, invoice_id: uuid.UUID, version: Optional[int] = None) -> Invoice:
        """Record that the client opened the invoice. Repeated views are no-ops."""
        invoice = await self._get_invoice_or_404(business_id, invoice_id)
        if invoice.status_enum == InvoiceStatus.VIEWED:
            return invoice

        invoice = await self._load_for_transition(
            business_id, invoice_id, InvoiceStatus.VIEWED, TransitionTrigger.CLIENT_VIEW, version
        )
        return await self._apply_transition(invoice, InvoiceStatus.VIEWED)

    async def mark_paid(
        self,
        business_id: uuid.UUID,
        invoice_id: uuid.UUID,
        paid_amount: Optional[Decimal] = None,
        paid_date: Optional[date] = None,
        payment_method: Optional[str] = None,
        notes: Optional[str] = None,
        version: Optional[int] = None,
    ) -> Invoice:
        """
        Mark an invoice paid and record the payment.

        ``paid_amount`` defaults to the invoice total and must lie in
        [0, total]; ``paid_date`` defaults to today. Works from sent, viewed
        and overdue alike.
        """
        invoice = await self._load_for_transition(
            business_id, invoice_id, InvoiceStatus.PAID, TransitionTrigger.PAYMENT, version
        )

        amount = invoice.total if paid_amount is None else to_decimal(paid_amount, "paid_amount")
        amount = round_money(amount, invoice.currency)
        if amount < 0 or amount > invoice.total:
            raise ValidationError.for_field(
                "paid_amount",
                f"Must be between 0 and the invoice total ({format_money(invoice.total, invoice.currency)})",
            )

        invoice.paid_amount = amount
        invoice.paid_date = paid_date or self.today()
        if amount > 0:
            invoice.payments.append(PaymentRecord(
                amount=amount,
                payment_date=invoice.paid_date,
                payment_method=payment_method,
                notes=notes,
            ))
        return await self._apply_transition(invoice, InvoiceStatus.PAID)

    async def cancel_invoice(self, business_id: uuid.UUID, invoice_id: uuid.UUID, version: Optional[int] = None) -> Invoice:
        invoice = await self._load_for_transition(
            business_id, invoice_id, InvoiceStatus.CANCELLED, TransitionTrigger.USER, version
        )
        return await self._apply_transition(invoice, InvoiceStatus.CANCELLED)

    async def mark_overdue_invoices(self, today: Optional[date] = None, business_id: Optional[uuid.UUID] = None) -> Dict[str, Any]:
        """
        Move sent/viewed invoices past their due date to ``overdue``.

        Each invoice is reloaded and committed on its own; one that changed
        in the meantime (paid, cancelled, or a concurrent write) is skipped
        and left for the next sweep.
        """
        today = today or self.today()
        candidates = [
            (invoice.business_id, invoice.id, invoice.invoice_number)
            for invoice in await self.repository.find_overdue_candidates(today, business_id)
        ]

        marked: List[str] = []
        skipped: List[str] = []
        for owner_id, invoice_id, invoice_number in candidates:
            invoice = await self.repository.get_invoice(owner_id, invoice_id)
            if invoice is None or invoice.paid_date is not None or not self.machine.can_transition(
                invoice.status, InvoiceStatus.OVERDUE, TransitionTrigger.SCHEDULE
            ):
                skipped.append(invoice_number)
                continue
            try:
                await self._apply_transition(invoice, InvoiceStatus.OVERDUE)
            except ConflictError:
                await self.db.rollback()
                skipped.append(invoice_number)
                continue
            marked.append(invoice_number)

        if candidates:
            logger.info(
                f"Overdue sweep for {today.isoformat()}: {len(marked)} marked, "
                f"{len(skipped)} skipped of {len(candidates)} candidate(s)"
            )
        return {
            "date": today.isoformat(),
            "checked": len(candidates),
            "marked_overdue": len(marked),
            "invoice_numbers": marked,
            "skipped": skipped,
        }

    # ==================== Collaborators ====================

    async def _notify_sent(self, invoice: Invoice) -> None:
        if self.notifier is None:
            return
        try:
            sent = await asyncio.to_thread(
                self.notifier.send_invoice_email, invoice, invoice.business, invoice.client
            )
            if not sent:
                logger.warning(f"Invoice {invoice.invoice_number} was sent but the client email was not delivered")
        except Exception as e:
            logger.warning(f"Invoice {invoice.invoice_number} notification failed: {e}", exc_info=True)

    async def render_invoice_document(self, business_id: uuid.UUID, invoice_id: uuid.UUID) -> Tuple[bytes, str, str]:
        """
        Render the stored snapshot.

        Returns:
            (content, filename, media_type)
        """
        if self.renderer is None:
            raise RuntimeError("No invoice renderer configured")
        invoice = await self._get_invoice_or_404(business_id, invoice_id)
        content = self.renderer.render(invoice, invoice.business)
        filename = f"{invoice.invoice_number}.{self.renderer.file_extension}"
        return content, filename, self.renderer.media_type

    # ==================== Calculations ====================

    def recompute_totals(self, invoice: Invoice) -> Totals:
        """Re-derive totals from the persisted items; must equal the stored snapshot."""
        items = [
            LineItemInput(item.description, item.quantity, item.unit_price, item.sort_order)
            for item in invoice.items
        ]
        discount = discount_from_fields(invoice.discount_type, invoice.discount_value)
        return self.calculator.compute(items, invoice.tax_rate, discount, invoice.currency)

    def totals_match_snapshot(self, invoice: Invoice) -> bool:
        totals = self.recompute_totals(invoice)
        return (
            totals.subtotal == invoice.subtotal
            and totals.discount_amount == invoice.discount_amount
            and totals.tax_amount == invoice.tax_amount
            and totals.total == invoice.total
        )

    def preview_totals(self, data: TotalsPreviewRequest) -> Dict[str, Any]:
        """Totals for an unsaved form. Nothing is persisted."""
        items = to_line_inputs(data.items)
        currency = data.currency.value
        totals = self.calculator.compute(items, data.tax_rate, discount_spec(data.discount), currency)
        return {
            "currency": currency,
            "line_amounts": LineItemEngine(currency).amounts(items),
            "subtotal": totals.subtotal,
            "discount_amount": totals.discount_amount,
            "taxable_base": totals.taxable_base,
            "tax_amount": totals.tax_amount,
            "total": totals.total,
            "formatted_total": format_money(totals.total, currency),
        }

    async def preview_next_number(self, business_id: uuid.UUID) -> AllocatedNumber:
        return await self.repository.number_service.preview_next_number(business_id, self.today().year)
