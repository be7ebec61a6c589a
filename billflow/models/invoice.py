"""Invoice models.

Totals (subtotal, discount_amount, tax_amount, total) are a snapshot written
in the same transaction as the line items that produced them. They are never
recomputed lazily on read, so historical invoices stay stable.

Supports:
- Invoice with frozen totals snapshot and optimistic-concurrency version
- Ordered line items (unique sort_order per invoice)
- Payment records written when an invoice is marked paid
"""
import uuid
from datetime import datetime, date, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import String, Integer, DateTime, Date, ForeignKey, Text, CheckConstraint, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billflow.database import Base
from billflow.db_types import UUIDType, MoneyType, UnitPriceType, QuantityType, RateType, ExchangeRateType
from billflow.services.invoice_status import InvoiceStatus

if TYPE_CHECKING:
    from billflow.models.business import Business, Client


class Invoice(Base):
    """
    Invoice header with its totals snapshot.

    ``version`` is bumped by SQLAlchemy on every UPDATE and checked on
    UPDATE/DELETE; a concurrent writer that lost the race gets StaleDataError.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("business_id", "invoice_number", name="uq_invoices_business_number"),
        CheckConstraint("total >= 0", name="ck_invoices_total_non_negative"),
        CheckConstraint("paid_amount >= 0", name="ck_invoices_paid_amount_non_negative"),
        CheckConstraint("due_date >= issue_date", name="ck_invoices_due_after_issue"),
        Index("ix_invoices_business_status", "business_id", "status"),
        Index("ix_invoices_issue_date", "issue_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    business_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("clients.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    # Identification
    invoice_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Unique per business, e.g. INV-2026-0042; immutable once assigned"
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=InvoiceStatus.DRAFT.value,
        nullable=False
    )

    # Currency
    currency: Mapped[str] = mapped_column(String(3), default="TWD", nullable=False)
    exchange_rate_to_base: Mapped[Decimal] = mapped_column(
        ExchangeRateType,
        default=Decimal("1"),
        nullable=False
    )

    # Totals snapshot
    subtotal: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(RateType, nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    discount_type: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment="percentage | fixed | NULL"
    )
    discount_value: Mapped[Decimal] = mapped_column(UnitPriceType, default=Decimal("0"), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)
    total: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)

    # Dates
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    paid_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    paid_amount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)

    # Content
    language: Mapped[str] = mapped_column(String(2), default="en", nullable=False)
    notes_external: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes_internal: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pdf_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Lifecycle
    sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set on first transition to sent; write-once"
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    # Relationships
    items: Mapped[List["InvoiceLineItem"]] = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.sort_order",
        lazy="selectin"
    )
    payments: Mapped[List["PaymentRecord"]] = relationship(
        "PaymentRecord",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="PaymentRecord.created_at",
        lazy="selectin"
    )
    client: Mapped["Client"] = relationship("Client", back_populates="invoices", lazy="joined")
    business: Mapped["Business"] = relationship("Business", lazy="joined")

    __mapper_args__ = {"version_id_col": version}

    @property
    def status_enum(self) -> InvoiceStatus:
        return InvoiceStatus(self.status)

    @property
    def taxable_base(self) -> Decimal:
        return self.subtotal - self.discount_amount

    @property
    def amount_due(self) -> Decimal:
        return max(self.total - (self.paid_amount or Decimal("0")), Decimal("0"))

    @property
    def client_name(self) -> Optional[str]:
        return self.client.display_name if self.client else None

    def __repr__(self) -> str:
        return f"<Invoice(number='{self.invoice_number}', status='{self.status}', total={self.total})>"


class InvoiceLineItem(Base):
    """Invoice line; ``amount`` is always round(quantity * unit_price)."""
    __tablename__ = "invoice_line_items"
    __table_args__ = (
        UniqueConstraint("invoice_id", "sort_order", name="uq_invoice_line_items_sort_order"),
        CheckConstraint("quantity > 0", name="ck_invoice_line_items_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="ck_invoice_line_items_unit_price_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(QuantityType, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(UnitPriceType, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="items")

    def __repr__(self) -> str:
        return f"<InvoiceLineItem(description='{self.description}', qty={self.quantity})>"


class PaymentRecord(Base):
    """Payment received against an invoice."""
    __tablename__ = "payment_records"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="payments")

    def __repr__(self) -> str:
        return f"<PaymentRecord(amount={self.amount}, date={self.payment_date})>"
