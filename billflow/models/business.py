"""Business and client records.

A Business owns its invoices and the invoice number counter
(``invoice_next_number``). The counter is only ever changed through the
atomic allocation in ``InvoiceNumberService``.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import String, Integer, DateTime, ForeignKey, Text, JSON, CheckConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billflow.database import Base
from billflow.db_types import UUIDType, RateType

if TYPE_CHECKING:
    from billflow.models.invoice import Invoice


class Business(Base):
    """Invoicing business (the seller)."""
    __tablename__ = "businesses"
    __table_args__ = (
        CheckConstraint("invoice_next_number >= 1", name="ck_businesses_next_number_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)

    # Identity
    name_zh: Mapped[str] = mapped_column(String(200), nullable=False)
    name_en: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    tax_id: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    logo_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Invoice Defaults
    default_payment_terms: Mapped[int] = mapped_column(
        Integer,
        default=14,
        nullable=False,
        comment="Days between issue and due date"
    )
    default_currency: Mapped[str] = mapped_column(String(3), default="TWD", nullable=False)
    default_tax_rate: Mapped[Decimal] = mapped_column(
        RateType,
        default=Decimal("0.05"),
        nullable=False
    )

    # Invoice Numbering
    invoice_prefix: Mapped[str] = mapped_column(
        String(10),
        default="INV",
        nullable=False,
        comment="e.g., INV in INV-2026-0042"
    )
    invoice_next_number: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
        comment="Next sequence to hand out; incremented atomically"
    )

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

    clients: Mapped[List["Client"]] = relationship("Client", back_populates="business")

    @property
    def display_name(self) -> str:
        return self.name_en or self.name_zh

    def __repr__(self) -> str:
        return f"<Business(name='{self.name_zh}', next_number={self.invoice_next_number})>"


class Client(Base):
    """Invoice recipient."""
    __tablename__ = "clients"
    __table_args__ = (
        Index("ix_clients_business_display_name", "business_id", "display_name"),
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

    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    company_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    tax_id: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    contact_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    postal_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    country: Mapped[str] = mapped_column(String(100), default="Taiwan", nullable=False)

    # Preferences
    default_payment_terms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    preferred_currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    preferred_language: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    tags: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

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

    business: Mapped["Business"] = relationship("Business", back_populates="clients")
    invoices: Mapped[List["Invoice"]] = relationship("Invoice", back_populates="client")

    def __repr__(self) -> str:
        return f"<Client(display_name='{self.display_name}')>"
